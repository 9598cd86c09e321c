"""rosetta_core.search.supergraph
=================================

Supergraph: the search-time graph in which every position holds a weighted
set of type-compatible candidate operators.

Layout
------
Positions are laid out along ``depth_bound`` sequential stages.  Stage ``s``
consumes the types produced at stage ``s - 1`` (stage 0 is the graph input):

* unary candidates reading the same source and producing the same output
  type form one node;
* fan-in combinators (concat, attention, ...) form nodes over ordered
  combinations of earlier sources, at least one of which comes from stage
  ``s - 1``.

Nodes whose output type equals the requested output are *exits*.  Nodes that
cannot reach an exit are dropped.  If stage 1 is empty or no exit exists the
request is infeasible and :class:`NoCandidatesError` is raised; no partial
supergraph is returned.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from scipy.special import softmax

from rosetta_core.api.errors import NoCandidatesError
from rosetta_core.core.enums import NodeState
from rosetta_core.graph.catalog import Catalog
from rosetta_core.graph.ir_types import TypeSpec, fresh_symbols
from rosetta_core.graph.operators import Operator
from rosetta_core.graph.unify import unify, unify_slots

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[NodeState, Tuple[NodeState, ...]] = {
    NodeState.masked: (NodeState.mixing, NodeState.decoded),
    NodeState.mixing: (NodeState.annealed, NodeState.pruned, NodeState.decoded),
    NodeState.annealed: (NodeState.annealed, NodeState.pruned, NodeState.decoded),
    NodeState.pruned: (NodeState.pruned, NodeState.decoded),
    NodeState.decoded: (),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class SupergraphNode:
    """One searchable position.

    Attributes
    ----------
    node_id : int
        Ascending in creation (and therefore topological) order.
    stage : int
        1-based stage index.
    inputs : tuple
        Source node ids; ``None`` stands for the graph input.
    out_type : TypeSpec
        Output type shared by every candidate.
    candidates : list[Operator]
        Remaining candidates in catalog sort order.
    logits : numpy.ndarray
        Architecture logits over the differentiable candidates, aligned with
        :meth:`mixing`.  Written only by the optimisation loop.
    """

    node_id: int
    stage: int
    inputs: Tuple[Optional[int], ...]
    out_type: TypeSpec
    candidates: List[Operator]
    state: NodeState = NodeState.masked
    logits: np.ndarray = field(default_factory=lambda: np.zeros(0))
    chosen: Optional[str] = None

    def mixing(self) -> List[Operator]:
        """Differentiable candidates taking part in the mixture."""
        return [op for op in self.candidates if op.supports_vjp]

    def deferred(self) -> List[Operator]:
        """Non-differentiable candidates, left to the discrete controller."""
        return [op for op in self.candidates if not op.supports_vjp]

    @property
    def frozen(self) -> bool:
        """True when no candidate can be mixed (evaluated as a fixed op)."""
        return not self.mixing()

    @property
    def is_fan_in(self) -> bool:
        return len(self.inputs) > 1

    def transition(self, state: NodeState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Supergraph node {self.node_id}: {self.state.value} -> {state.value} "
                "is not a valid transition"
            )
        self.state = state

    def weights(self, temperature: float) -> np.ndarray:
        if self.logits.size == 0:
            return self.logits
        return softmax(self.logits / temperature)

    def remove(self, names: Sequence[str]) -> None:
        """Permanently drop candidates (pruning).  Logits stay aligned."""
        names = set(names)
        keep_mix = [i for i, op in enumerate(self.mixing()) if op.name not in names]
        self.logits = self.logits[keep_mix]
        self.candidates = [op for op in self.candidates if op.name not in names]

    def describe(self) -> str:
        srcs = ",".join("in" if s is None else str(s) for s in self.inputs)
        names = ",".join(op.name for op in self.candidates)
        return f"[{self.node_id}] stage {self.stage} ({srcs}) -> {self.out_type}: {{{names}}}"


@dataclass
class Supergraph:
    """Searchable structure for one ``(input_type, output_type)`` request."""

    catalog: Catalog
    input_type: TypeSpec
    output_type: TypeSpec
    depth_bound: int
    nodes: Dict[int, SupergraphNode] = field(default_factory=dict)
    exits: List[int] = field(default_factory=list)
    route_logits: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def node(self, node_id: int) -> SupergraphNode:
        return self.nodes[node_id]

    def order(self) -> List[int]:
        return sorted(self.nodes)

    def stages(self) -> Dict[int, List[SupergraphNode]]:
        out: Dict[int, List[SupergraphNode]] = {}
        for nid in self.order():
            node = self.nodes[nid]
            out.setdefault(node.stage, []).append(node)
        return out

    def ancestors(self, node_id: int) -> Set[int]:
        """``node_id`` and every supergraph node it reads from."""
        seen: Set[int] = set()
        stack = [node_id]
        while stack:
            nid = stack.pop()
            if nid is None or nid in seen:
                continue
            seen.add(nid)
            stack.extend(s for s in self.nodes[nid].inputs if s is not None)
        return seen

    def route_weights(self, temperature: float) -> np.ndarray:
        return softmax(self.route_logits / temperature)

    def remove_exits(self, exit_ids: Sequence[int]) -> None:
        drop = set(exit_ids)
        keep = [i for i, e in enumerate(self.exits) if e not in drop]
        self.route_logits = self.route_logits[keep]
        self.exits = [self.exits[i] for i in keep]

    def n_candidates(self) -> int:
        return sum(len(n.candidates) for n in self.nodes.values())

    def summary(self) -> str:
        lines = [
            f"Supergraph({self.input_type} -> {self.output_type}, "
            f"depth={self.depth_bound}, nodes={len(self.nodes)}, exits={self.exits})"
        ]
        lines.extend(f"  {self.nodes[nid].describe()}" for nid in self.order())
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class _Source:
    ref: Optional[int]
    type: TypeSpec
    stage: int


class SupergraphBuilder:
    """Build the masked supergraph for a request.

    Parameters
    ----------
    catalog : Catalog
        Frozen operator catalog.
    max_fan_in : int
        Largest combinator arity considered.
    exclude : callable, optional
        ``exclude(op) -> bool`` masks candidates up front (e.g. operators that
        alone exceed the budget).
    """

    def __init__(
        self,
        catalog: Catalog,
        max_fan_in: int = 2,
        exclude: Optional[Callable[[Operator], bool]] = None,
    ) -> None:
        self.catalog = catalog
        self.max_fan_in = max_fan_in
        self.exclude = exclude
        self._counter = 0

    def _instantiate(self, op: Operator, in_types: Sequence[TypeSpec]) -> Optional[TypeSpec]:
        """Output type of ``op`` on ``in_types``, or None if a slot fails."""
        mapping = fresh_symbols([*op.in_types, op.out_type], f"s{self._counter}")
        self._counter += 1
        pairs = [(t.rename(mapping), actual) for t, actual in zip(op.in_types, in_types)]
        b = unify_slots(pairs)
        if b is None:
            return None
        return b.resolve_type(op.out_type.rename(mapping))

    def _masked(self, op: Operator) -> bool:
        return self.exclude is not None and self.exclude(op)

    def build(
        self,
        input_type: TypeSpec,
        output_type: TypeSpec,
        depth_bound: int,
    ) -> Supergraph:
        if depth_bound < 1:
            raise ValueError(f"depth_bound must be >= 1, got {depth_bound}")

        sg = Supergraph(
            catalog=self.catalog,
            input_type=input_type,
            output_type=output_type,
            depth_bound=depth_bound,
        )
        sources: List[_Source] = [_Source(None, input_type, 0)]
        combinators = [
            op for op in self.catalog.combinators()
            if op.arity <= self.max_fan_in and not self._masked(op)
        ]

        for stage in range(1, depth_bound + 1):
            groups: Dict[Tuple, Tuple[TypeSpec, List[Operator]]] = {}
            previous = [s for s in sources if s.stage == stage - 1]

            for src in previous:
                for op in self.catalog.consumers(src.type):
                    if op.is_combinator or self._masked(op):
                        continue
                    out = self._instantiate(op, [src.type])
                    if out is None:
                        continue
                    key = ((src.ref,), out.signature_key())
                    groups.setdefault(key, (out, []))[1].append(op)

            for op in combinators:
                for combo in itertools.permutations(sources, op.arity):
                    if not any(s.stage == stage - 1 for s in combo):
                        continue
                    out = self._instantiate(op, [s.type for s in combo])
                    if out is None:
                        continue
                    key = (tuple(s.ref for s in combo), out.signature_key())
                    groups.setdefault(key, (out, []))[1].append(op)

            if not groups:
                if stage == 1:
                    raise NoCandidatesError(
                        f"No operator in the catalog consumes {input_type}",
                        stage=1,
                        in_type=input_type,
                    )
                break

            for (refs, _), (out, ops) in groups.items():
                nid = len(sg.nodes)
                sg.nodes[nid] = SupergraphNode(
                    node_id=nid,
                    stage=stage,
                    inputs=refs,
                    out_type=out,
                    candidates=sorted(ops, key=self.catalog.sort_key),
                )
                sources.append(_Source(nid, out, stage))

        sg.exits = [
            nid for nid in sg.order()
            if unify(output_type, sg.nodes[nid].out_type) is not None
        ]
        if not sg.exits:
            raise NoCandidatesError(
                f"No operator sequence of depth <= {depth_bound} maps "
                f"{input_type} to {output_type}",
                stage=depth_bound,
                in_type=input_type,
            )

        live: Set[int] = set()
        for e in sg.exits:
            live |= sg.ancestors(e)
        for nid in [n for n in sg.nodes if n not in live]:
            del sg.nodes[nid]

        sg.route_logits = np.zeros(len(sg.exits))
        for node in sg.nodes.values():
            node.logits = np.zeros(len(node.mixing()))

        logger.info(
            f"Built supergraph {input_type} -> {output_type}: "
            f"{len(sg.nodes)} nodes, {sg.n_candidates()} candidates, "
            f"{len(sg.exits)} exits (depth_bound={depth_bound})"
        )
        return sg


def build_supergraph(
    catalog: Catalog,
    input_type: TypeSpec,
    output_type: TypeSpec,
    depth_bound: int,
    max_fan_in: int = 2,
    exclude: Optional[Callable[[Operator], bool]] = None,
) -> Supergraph:
    """Functional entry point for :class:`SupergraphBuilder`."""
    return SupergraphBuilder(catalog, max_fan_in=max_fan_in, exclude=exclude).build(
        input_type, output_type, depth_bound
    )
