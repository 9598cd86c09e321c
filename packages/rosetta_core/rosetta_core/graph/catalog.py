"""rosetta_core.graph.catalog
=============================

Catalog: the in-memory collection of declared operators and adapters.

The catalog is built once at load time and then frozen.  A frozen catalog is
an immutable snapshot shared by reference with every search worker; adding
an operator afterwards produces a new snapshot (:meth:`Catalog.with_operators`)
rather than mutating the shared one.

Lookups are sorted deterministically (declared cost ascending, then name) so
that supergraph masking and decode tie-breaks are reproducible.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from rosetta_core.api.errors import (
    CatalogFrozenError,
    DuplicateNameError,
    MalformedSignatureError,
    MalformedTypeAliasError,
)
from rosetta_core.core.enums import Relation
from rosetta_core.graph.ir_types import DEFAULT_KINDS, TypeSpec, fresh_symbols, normalize_tag
from rosetta_core.graph.operators import Operator, OperatorDecl, TypeRef
from rosetta_core.graph.unify import Bindings, compatible, unify_slots

logger = logging.getLogger(__name__)

IndexKey = Tuple[Tuple[str, ...], str]


@dataclass
class LoadReport:
    """Outcome of :meth:`Catalog.load`."""

    registered: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.rejected


class Catalog:
    """Operator catalog with a reverse ``(input kinds, output kind)`` index.

    Parameters
    ----------
    kinds : iterable of str, optional
        Known type kinds (default: :data:`DEFAULT_KINDS`).
    type_aliases : mapping, optional
        Named types that declarations may reference by name.
    sort_metric : str
        Cost metric used for the deterministic lookup order.
    """

    def __init__(
        self,
        kinds: Optional[Iterable[str]] = None,
        type_aliases: Optional[Mapping[str, TypeSpec]] = None,
        sort_metric: str = "cost",
    ) -> None:
        self._kinds: Set[str] = {
            normalize_tag(k) for k in (kinds if kinds is not None else DEFAULT_KINDS)
        }
        self._aliases: Dict[str, TypeSpec] = {}
        self._ops: Dict[str, Operator] = {}
        self._index: Dict[IndexKey, Set[str]] = defaultdict(set)
        self._frozen = False
        self.sort_metric = sort_metric
        for alias, t in (type_aliases or {}).items():
            self.define_type(alias, t)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise CatalogFrozenError(
                "Catalog is frozen; use with_operators() to derive a new snapshot"
            )

    def freeze(self) -> "Catalog":
        self._frozen = True
        return self

    def register_kind(self, kind: str) -> None:
        self._check_mutable()
        self._kinds.add(normalize_tag(kind))

    def define_type(self, alias: str, t: Union[TypeSpec, Dict[str, Any]]) -> TypeSpec:
        """Register a named type that declarations may reference.

        Raises
        ------
        MalformedTypeAliasError
            If the descriptor is invalid or uses an unknown kind.
        """
        self._check_mutable()
        try:
            spec = t if isinstance(t, TypeSpec) else TypeSpec.model_validate(t)
        except ValidationError as exc:
            raise MalformedTypeAliasError(alias, exc.errors()[0].get("msg", str(exc))) from exc
        if spec.kind not in self._kinds:
            raise MalformedTypeAliasError(alias, f"unknown type kind '{spec.kind}'")
        self._aliases[alias] = spec
        return spec

    def resolve_type(self, ref: TypeRef, owner: str = "<type>") -> TypeSpec:
        """Type alias first, then a bare kind name with an unconstrained shape."""
        if isinstance(ref, TypeSpec):
            return ref
        if ref in self._aliases:
            return self._aliases[ref]
        if normalize_tag(ref) in self._kinds:
            return TypeSpec(kind=ref)
        raise MalformedSignatureError(owner, f"unknown type alias or kind '{ref}'")

    def _check_signature(self, op: Operator) -> None:
        if op.arity < 1:
            raise MalformedSignatureError(op.name, "operator must take at least one input")
        for slot, t in enumerate([*op.in_types, op.out_type]):
            if not isinstance(t, TypeSpec):
                raise MalformedSignatureError(op.name, f"slot {slot} is not a TypeSpec")
            if t.kind not in self._kinds:
                raise MalformedSignatureError(op.name, f"unknown type kind '{t.kind}'")
        if op.adapter and op.arity != 1:
            raise MalformedSignatureError(op.name, "adapters must be unary")
        for metric, value in op.cost.items():
            if value < 0:
                raise MalformedSignatureError(op.name, f"negative cost for '{metric}'")
        if op.stability is not None and op.stability < 0:
            raise MalformedSignatureError(op.name, "negative stability bound")
        # Output-only symbols are fine (existential); nothing to check.

    def register(self, op: Operator) -> Operator:
        """Add an operator.

        Raises
        ------
        DuplicateNameError
            If an operator with the same name exists.
        MalformedSignatureError
            If the signature references unknown kinds or is otherwise invalid.
        CatalogFrozenError
            If the catalog has been frozen.
        """
        self._check_mutable()
        if op.name in self._ops:
            raise DuplicateNameError(op.name)
        self._check_signature(op)
        self._ops[op.name] = op
        self._index[self._key(op)].add(op.name)
        logger.debug(f"Registered operator '{op.name}' {self._key(op)}")
        return op

    def build_operator(self, decl: OperatorDecl, executor: Any = None) -> Operator:
        return Operator(
            name=decl.name,
            in_types=tuple(self.resolve_type(t, decl.name) for t in decl.in_types),
            out_type=self.resolve_type(decl.out_type, decl.name),
            differentiable=decl.differentiable,
            invariance=frozenset(decl.invariance),
            stability=decl.stability,
            cost=decl.cost,
            params=decl.params,
            adapter=decl.adapter,
            executor=executor,
            description=decl.description,
        )

    def load(
        self,
        decls: Iterable[Union[OperatorDecl, Dict[str, Any]]],
        executors: Optional[Mapping[str, Any]] = None,
        freeze: bool = True,
    ) -> LoadReport:
        """Register a collection of already-parsed declarations.

        A malformed or duplicate entry is rejected and logged; the rest of the
        collection is still loaded.
        """
        executors = executors or {}
        report = LoadReport()
        for raw in decls:
            name = raw.get("name", "<unnamed>") if isinstance(raw, dict) else raw.name
            try:
                decl = raw if isinstance(raw, OperatorDecl) else OperatorDecl.model_validate(raw)
                executor = executors.get(decl.executor or decl.name)
                self.register(self.build_operator(decl, executor))
            except ValidationError as exc:
                reason = f"invalid declaration: {exc.errors()[0].get('msg', exc)}"
                report.rejected[name] = reason
                logger.warning(f"Rejected catalog entry '{name}': {reason}")
                continue
            except (MalformedSignatureError, DuplicateNameError) as exc:
                report.rejected[name] = str(exc)
                logger.warning(f"Rejected catalog entry '{name}': {exc}")
                continue
            report.registered.append(decl.name)
        if freeze:
            self.freeze()
        logger.info(
            f"Catalog loaded: {len(report.registered)} operators, "
            f"{len(report.rejected)} rejected"
        )
        return report

    def load_registry(
        self,
        registry: Mapping[str, Any],
        executors: Optional[Mapping[str, Any]] = None,
        freeze: bool = True,
    ) -> LoadReport:
        """Load an already-parsed registry mapping.

        The mapping holds an optional ``kinds`` list, a ``types`` section of
        named type descriptors and the operator declarations under ``atoms``
        (or ``operators``).  A bad type alias is rejected like a bad operator;
        declarations referencing it are rejected in turn.
        """
        self._check_mutable()
        rejected: Dict[str, str] = {}
        for kind in registry.get("kinds") or ():
            self.register_kind(kind)
        for alias, descriptor in (registry.get("types") or {}).items():
            try:
                self.define_type(alias, descriptor)
            except MalformedTypeAliasError as exc:
                rejected[alias] = str(exc)
                logger.warning(f"Rejected type alias '{alias}': {exc}")
        decls = list(registry.get("atoms") or ()) + list(registry.get("operators") or ())
        report = self.load(decls, executors=executors, freeze=freeze)
        report.rejected = {**rejected, **report.rejected}
        return report

    def with_operators(self, ops: Iterable[Operator]) -> "Catalog":
        """Return a new frozen snapshot containing this catalog plus ``ops``."""
        snapshot = Catalog(kinds=self._kinds, type_aliases=self._aliases, sort_metric=self.sort_metric)
        for op in self.operators():
            snapshot.register(op)
        for op in ops:
            snapshot.register(op)
        return snapshot.freeze()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _key(op: Operator) -> IndexKey:
        return tuple(t.kind for t in op.in_types), op.out_type.kind

    @property
    def kinds(self) -> frozenset:
        return frozenset(self._kinds)

    @property
    def type_aliases(self) -> Dict[str, TypeSpec]:
        return dict(self._aliases)

    def __contains__(self, name: object) -> bool:
        return name in self._ops

    def __len__(self) -> int:
        return len(self._ops)

    def __getitem__(self, name: str) -> Operator:
        return self.get(name)

    def get(self, name: str) -> Operator:
        if name not in self._ops:
            raise KeyError(
                f"Unknown operator '{name}'. Available: {sorted(self._ops)}"
            )
        return self._ops[name]

    def sort_key(self, op: Operator) -> Tuple[float, str]:
        return (op.cost_of(self.sort_metric), op.name)

    def operators(self) -> List[Operator]:
        """All operators in catalog sort order."""
        return sorted(self._ops.values(), key=self.sort_key)

    def rank(self, name: str) -> int:
        """Position of ``name`` in catalog sort order."""
        return [op.name for op in self.operators()].index(name)

    def adapters(self) -> List[Operator]:
        return [op for op in self.operators() if op.adapter]

    def by_kinds(self, in_kinds: Sequence[str], out_kind: str) -> List[Operator]:
        key = (tuple(normalize_tag(k) for k in in_kinds), normalize_tag(out_kind))
        names = self._index.get(key, set())
        return sorted((self._ops[n] for n in names), key=self.sort_key)

    def match(
        self,
        op: Operator,
        in_types: Sequence[TypeSpec],
        out_type: Optional[TypeSpec] = None,
    ) -> Relation:
        """Relation between ``op``'s signature and a requested signature.

        EQUAL when every slot and the output unify directly, ADAPTABLE when
        at least one slot or the output needs a registered adapter.
        """
        if len(in_types) != op.arity:
            return Relation.incompatible
        mapping = fresh_symbols([*op.in_types, op.out_type], "q")
        op_in = [t.rename(mapping) for t in op.in_types]
        op_out = op.out_type.rename(mapping)

        pairs = list(zip(op_in, in_types))
        if out_type is not None:
            pairs.append((out_type, op_out))
        if unify_slots(pairs) is not None:
            return Relation.equal

        adapters = [a for a in self.adapters() if a.name != op.name]
        bindings: Optional[Bindings] = Bindings()
        for slot_type, requested in zip(op_in, in_types):
            res = compatible(requested, slot_type, adapters, bindings)
            if not res:
                return Relation.incompatible
            bindings = res.bindings
        if out_type is not None:
            res = compatible(op_out, out_type, adapters, bindings)
            if not res:
                return Relation.incompatible
        return Relation.adaptable

    def lookup(
        self,
        in_types: Union[TypeSpec, Sequence[TypeSpec]],
        out_type: Optional[TypeSpec] = None,
        include_adaptable: bool = True,
    ) -> Tuple[Operator, ...]:
        """All operators EQUAL (or ADAPTABLE) to the requested signature.

        ``in_types`` is a single type for unary requests or a sequence for
        combinators; ``out_type=None`` accepts any output.  The result is in
        catalog sort order.
        """
        requested = (in_types,) if isinstance(in_types, TypeSpec) else tuple(in_types)
        accepted = (Relation.equal, Relation.adaptable) if include_adaptable else (Relation.equal,)
        return tuple(
            op for op in self.operators()
            if self.match(op, requested, out_type) in accepted
        )

    def consumers(self, in_type: TypeSpec) -> Tuple[Operator, ...]:
        """Unary operators whose input slot is EQUAL to ``in_type``."""
        return self.lookup(in_type, None, include_adaptable=False)

    def combinators(self) -> List[Operator]:
        return [op for op in self.operators() if op.is_combinator]
