"""rosetta_core.graph.unify
===========================

Symbol unification and the type compatibility relation.

A :class:`Bindings` object is the binding environment threaded through graph
construction.  It is a union-find over shape symbols; a root may additionally
carry a value, either a concrete int or a sum expression over other roots.

Functions
---------
unify        unify(template, candidate, bindings) -> Bindings | None
unify_slots  Slot-wise unification of several (template, candidate) pairs
compatible   EQUAL / ADAPTABLE(adapter) / INCOMPATIBLE between two types
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, Optional, Sequence, Tuple

from rosetta_core.core.enums import Relation
from rosetta_core.graph.ir_types import (
    DimExpr,
    TypeSpec,
    fresh_symbols,
    substitute_dim,
)

if TYPE_CHECKING:
    from rosetta_core.graph.operators import Operator


class Bindings:
    """Union-find binding environment for shape symbols.

    Copies are independent, so callers can stage a unification on a copy
    and commit it only on success.
    """

    def __init__(self) -> None:
        self._parent: Dict[str, str] = {}
        self._value: Dict[str, DimExpr] = {}

    def copy(self) -> "Bindings":
        other = Bindings()
        other._parent = dict(self._parent)
        other._value = dict(self._value)
        return other

    def __len__(self) -> int:
        return len(self._parent)

    def find(self, sym: str) -> str:
        parent = self._parent.setdefault(sym, sym)
        if parent == sym:
            return sym
        root = self.find(parent)
        self._parent[sym] = root
        return root

    def resolve(self, sym: str) -> DimExpr:
        """Fully substituted expression currently bound to ``sym``."""
        root = self.find(sym)
        value = self._value.get(root)
        if value is None:
            return DimExpr(coeffs=((root, 1),))
        return self.resolve_expr(value)

    def resolve_expr(self, expr: DimExpr) -> DimExpr:
        return substitute_dim(expr, self.resolve)

    def resolve_type(self, t: TypeSpec) -> TypeSpec:
        return t.map_dims(self.resolve_expr)

    def concrete(self, sym: str) -> Optional[int]:
        expr = self.resolve(sym)
        return expr.const if expr.is_concrete else None

    def as_dict(self) -> Dict[str, object]:
        """Resolved value of every known symbol (for export and debugging)."""
        return {s: self.resolve(s).to_term() for s in sorted(self._parent)}

    # ---- mutation ----

    def _assign(self, sym: str, expr: DimExpr) -> bool:
        root = self.find(sym)
        if expr.is_symbol:
            other = self.find(expr.coeffs[0][0])
            if other != root:
                self._parent[root] = other
            return True
        if root in expr.symbols:
            # occurs check: T = T + 1 has no solution
            return False
        self._value[root] = expr
        return True

    def unify_dim(self, a: DimExpr, b: DimExpr) -> bool:
        ra = self.resolve_expr(a)
        rb = self.resolve_expr(b)
        if ra == rb:
            return True
        if ra.is_concrete and rb.is_concrete:
            return False
        if ra.is_symbol:
            return self._assign(ra.coeffs[0][0], rb)
        if rb.is_symbol:
            return self._assign(rb.coeffs[0][0], ra)

        # ra - rb == 0 with exactly one free symbol can be solved directly
        coeffs: Dict[str, int] = dict(ra.coeffs)
        for sym, n in rb.coeffs:
            coeffs[sym] = coeffs.get(sym, 0) - n
        coeffs = {s: n for s, n in coeffs.items() if n}
        const = ra.const - rb.const
        if not coeffs:
            return const == 0
        if len(coeffs) == 1:
            (sym, n), = coeffs.items()
            if (-const) % n != 0 or (-const) // n < 0:
                return False
            return self._assign(sym, DimExpr(const=(-const) // n))
        return False


@dataclass
class UnifyFailure:
    """Why a unification failed (used for error messages)."""

    reason: str


def _unify_into(b: Bindings, template: TypeSpec, candidate: TypeSpec) -> Optional[UnifyFailure]:
    if template.kind != candidate.kind:
        return UnifyFailure(f"kind {candidate.kind!r} != {template.kind!r}")
    if template.metric != candidate.metric:
        return UnifyFailure(f"metric {candidate.metric!r} != {template.metric!r}")
    if template.group != candidate.group:
        return UnifyFailure(
            f"group {sorted(candidate.group)} != {sorted(template.group)}"
        )
    if len(template.shape) != len(candidate.shape):
        return UnifyFailure(
            f"rank {len(candidate.shape)} != {len(template.shape)}"
        )
    for axis, (ta, ca) in enumerate(zip(template.dims(), candidate.dims())):
        if not b.unify_dim(ta, ca):
            return UnifyFailure(
                f"axis {axis}: {b.resolve_expr(ca).to_term()!r} conflicts with "
                f"{b.resolve_expr(ta).to_term()!r}"
            )
    return None


def unify(
    template: TypeSpec,
    candidate: TypeSpec,
    bindings: Optional[Bindings] = None,
) -> Optional[Bindings]:
    """Unify ``candidate`` against ``template``.

    Returns the extended bindings (a new object) or ``None`` on failure.
    The input ``bindings`` is never modified.
    """
    b = bindings.copy() if bindings is not None else Bindings()
    if _unify_into(b, template, candidate) is not None:
        return None
    return b


def unify_explain(
    template: TypeSpec,
    candidate: TypeSpec,
    bindings: Optional[Bindings] = None,
) -> Tuple[Optional[Bindings], str]:
    b = bindings.copy() if bindings is not None else Bindings()
    failure = _unify_into(b, template, candidate)
    if failure is not None:
        return None, failure.reason
    return b, ""


def unify_slots(
    pairs: Iterable[Tuple[TypeSpec, TypeSpec]],
    bindings: Optional[Bindings] = None,
) -> Optional[Bindings]:
    """Unify every (template, candidate) pair in one shared environment."""
    b = bindings.copy() if bindings is not None else Bindings()
    for template, candidate in pairs:
        if _unify_into(b, template, candidate) is not None:
            return None
    return b


# ---------------------------------------------------------------------------
# Compatibility relation
# ---------------------------------------------------------------------------


@dataclass
class Compatibility:
    """Result of :func:`compatible`."""

    relation: Relation
    adapter: Optional[str] = None
    bindings: Optional[Bindings] = field(default=None, repr=False)

    def __bool__(self) -> bool:
        return self.relation != Relation.incompatible


def compatible(
    actual: TypeSpec,
    expected: TypeSpec,
    adapters: Sequence["Operator"] = (),
    bindings: Optional[Bindings] = None,
) -> Compatibility:
    """Decide whether a value of type ``actual`` can feed a slot ``expected``.

    Adapters are tried in the given order (catalog sort order); the first
    whose input unifies with ``actual`` and whose output unifies with
    ``expected`` wins.
    """
    b = unify(expected, actual, bindings)
    if b is not None:
        return Compatibility(Relation.equal, bindings=b)

    for idx, adapter in enumerate(adapters):
        mapping = fresh_symbols([*adapter.in_types, adapter.out_type], f"a{idx}")
        a_in = adapter.in_types[0].rename(mapping)
        a_out = adapter.out_type.rename(mapping)
        b = unify_slots([(a_in, actual), (expected, a_out)], bindings)
        if b is not None:
            return Compatibility(Relation.adaptable, adapter=adapter.name, bindings=b)

    return Compatibility(Relation.incompatible)

