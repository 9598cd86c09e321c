"""rosetta_core.graph.ir_types
=============================

Formal IR types for the Rosetta network intermediate representation.

Types
-----
StrictBaseModel   Pydantic root model (extra='forbid', NaN/Inf rejection)
TypeSpec          (kind, shape, metric, group) descriptor for graph edges
DimExpr           Parsed dimension term: symbol coefficients + constant

Dimension terms
---------------
A shape is a tuple of terms.  Each term is one of

* a concrete non-negative ``int`` (must match exactly),
* a symbol such as ``"T"`` (unifies across a graph),
* a sum expression such as ``"A+B+2"`` (produced by concatenation).

Sum expressions are stored in canonical form (symbols sorted, constant folded
last) so that ``(A+B)+C`` and ``A+(B+C)`` are the same term.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

Dim = Union[int, str]

# Kinds known to every catalog.  The enumeration is open: catalogs accept new
# kinds through ``Catalog.register_kind``.
DEFAULT_KINDS: Tuple[str, ...] = (
    "path",
    "sequence",
    "spectrum",
    "feature",
    "vector",
    "diagram",
    "barcode",
    "pointcloud",
    "image",
    "graph_signal",
    "measure",
)

_SYMBOL_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_#']*$")
_SHAPE_SPLIT_RE = re.compile(r"\s*[×,]\s*")


def normalize_tag(tag: str) -> str:
    """Kinds and metric names are case-insensitive (``Path`` == ``path``)."""
    return tag.strip().lower()


# ---------------------------------------------------------------------------
# StrictBaseModel
# ---------------------------------------------------------------------------


class StrictBaseModel(BaseModel):
    """Root model with extra='forbid' and NaN/Inf rejection."""

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        ser_json_inf_nan="constants",
    )

    @model_validator(mode="after")
    def _reject_nan_inf(self) -> "StrictBaseModel":
        for field_name in self.__class__.model_fields:
            val = getattr(self, field_name)
            if isinstance(val, float) and (math.isnan(val) or math.isinf(val)):
                raise ValueError(
                    f"Field '{field_name}' contains {val!r}, which is not allowed."
                )
        return self


# ---------------------------------------------------------------------------
# Dimension expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DimExpr:
    """Linear dimension term ``sum(coeff * symbol) + const``."""

    coeffs: Tuple[Tuple[str, int], ...] = ()
    const: int = 0

    @property
    def symbols(self) -> FrozenSet[str]:
        return frozenset(s for s, _ in self.coeffs)

    @property
    def is_concrete(self) -> bool:
        return not self.coeffs

    @property
    def is_symbol(self) -> bool:
        return len(self.coeffs) == 1 and self.coeffs[0][1] == 1 and self.const == 0

    def to_term(self) -> Dim:
        if self.is_concrete:
            return self.const
        if self.is_symbol:
            return self.coeffs[0][0]
        parts: List[str] = []
        for sym, n in self.coeffs:
            parts.extend([sym] * n)
        if self.const:
            parts.append(str(self.const))
        return "+".join(parts)


def _make_expr(coeffs: Dict[str, int], const: int) -> DimExpr:
    items = tuple(sorted((s, n) for s, n in coeffs.items() if n))
    return DimExpr(coeffs=items, const=const)


def parse_dim(term: Any) -> DimExpr:
    """Parse a dimension term into a :class:`DimExpr`.

    Raises
    ------
    ValueError
        On negative integers or unparseable strings.
    """
    if isinstance(term, bool):
        raise ValueError(f"Invalid dimension term {term!r}")
    if isinstance(term, int):
        if term < 0:
            raise ValueError(f"Dimension must be non-negative, got {term}")
        return DimExpr(const=term)
    if not isinstance(term, str):
        raise ValueError(f"Invalid dimension term {term!r}")

    coeffs: Dict[str, int] = {}
    const = 0
    pieces = [p.strip() for p in term.split("+")]
    if not pieces or any(not p for p in pieces):
        raise ValueError(f"Invalid dimension expression {term!r}")
    for piece in pieces:
        if piece.isdigit():
            const += int(piece)
        elif _SYMBOL_RE.match(piece):
            coeffs[piece] = coeffs.get(piece, 0) + 1
        else:
            raise ValueError(f"Invalid dimension expression {term!r}")
    return _make_expr(coeffs, const)


def add_dims(a: DimExpr, b: DimExpr) -> DimExpr:
    coeffs = dict(a.coeffs)
    for sym, n in b.coeffs:
        coeffs[sym] = coeffs.get(sym, 0) + n
    return _make_expr(coeffs, a.const + b.const)


def substitute_dim(expr: DimExpr, resolve: Callable[[str], DimExpr]) -> DimExpr:
    """Replace every symbol by ``resolve(symbol)`` and re-canonicalise."""
    out = DimExpr(const=expr.const)
    for sym, n in expr.coeffs:
        rep = resolve(sym)
        for _ in range(n):
            out = add_dims(out, rep)
    return out


def canonical_dim(term: Any) -> Dim:
    return parse_dim(term).to_term()


# ---------------------------------------------------------------------------
# TypeSpec
# ---------------------------------------------------------------------------


class TypeSpec(StrictBaseModel):
    """Type descriptor ``(kind, shape, metric, group)``.

    Attributes
    ----------
    kind : str
        Tag from the open kind enumeration (``path``, ``spectrum``, ...).
    shape : tuple
        Dimension terms; ints, symbols or sum expressions.  A string such
        as ``"T×C"`` is accepted and split into terms.
    metric : str
        Distance assumed on values of this type.
    group : frozenset[str]
        Invariance tags the type is asserted to respect.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str
    shape: Tuple[Dim, ...] = ()
    metric: str = "l2"
    group: FrozenSet[str] = frozenset()

    @field_validator("kind", "metric")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return normalize_tag(v)

    @field_validator("shape", mode="before")
    @classmethod
    def _canonical_shape(cls, v: Any) -> Tuple[Dim, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            v = [p for p in _SHAPE_SPLIT_RE.split(v.strip()) if p]
        elif isinstance(v, (int, bool)):
            v = [v]
        return tuple(canonical_dim(t) for t in v)

    @field_validator("group", mode="before")
    @classmethod
    def _group_set(cls, v: Any) -> FrozenSet[str]:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset([v])
        return frozenset(v)

    # ---- helpers ----

    def dims(self) -> Tuple[DimExpr, ...]:
        return tuple(parse_dim(t) for t in self.shape)

    def symbols(self) -> FrozenSet[str]:
        out: set[str] = set()
        for d in self.dims():
            out |= d.symbols
        return frozenset(out)

    @property
    def is_concrete(self) -> bool:
        return not self.symbols()

    def map_dims(self, fn: Callable[[DimExpr], DimExpr]) -> "TypeSpec":
        return self.model_copy(
            update={"shape": tuple(fn(d).to_term() for d in self.dims())}
        )

    def rename(self, mapping: Dict[str, str]) -> "TypeSpec":
        """Rename symbols; unmapped symbols are kept."""

        def _resolve(sym: str) -> DimExpr:
            return parse_dim(mapping.get(sym, sym))

        return self.map_dims(lambda d: substitute_dim(d, _resolve))

    def signature_key(self) -> Tuple[Any, ...]:
        """Hashable key with symbol names replaced by first-occurrence index.

        Two types that differ only in the naming of their symbols share a key.
        """
        order: Dict[str, int] = {}
        shape_key = []
        for d in self.dims():
            terms = tuple(sorted((order.setdefault(sym, len(order)), n) for sym, n in d.coeffs))
            shape_key.append((terms, d.const))
        return (self.kind, tuple(shape_key), self.metric, tuple(sorted(self.group)))

    def __str__(self) -> str:
        shape = ", ".join(str(t) for t in self.shape)
        group = f"<{','.join(sorted(self.group))}>" if self.group else ""
        return f"{self.kind}[{shape}]{{{self.metric}}}{group}"


def as_type(value: Union[TypeSpec, Dict[str, Any]]) -> TypeSpec:
    if isinstance(value, TypeSpec):
        return value
    return TypeSpec.model_validate(value)


def fresh_symbols(types: Iterable[TypeSpec], suffix: str) -> Dict[str, str]:
    """Map every symbol in ``types`` to a node-local fresh name."""
    mapping: Dict[str, str] = {}
    for t in types:
        for sym in sorted(t.symbols()):
            mapping.setdefault(sym, f"{sym}#{suffix}")
    return mapping
