"""rosetta_core.search.controller
================================

Discrete controller: collapse a relaxed supergraph into one typed Graph.

Decoding
--------
1. Every node on the chosen route takes its argmax-weight candidate (ties by
   catalog sort order); the exit is the route argmax (ties by lower route
   cost, then node order).  Frozen nodes keep their fixed operator.
2. If the decoded graph exceeds the budget, greedy single swaps (a cheaper
   candidate at one node, or another exit route) are applied, each time
   picking the swap with the least validation degradation per unit of
   normalized budget recovered.  Exact ties are broken by the configured
   rules (default: lower aggregate cost, then catalog order).  When no swap
   recovers budget, :class:`SearchInfeasibleError` carries the best-effort
   graph and its costs.
3. Non-differentiable candidates are tried as substitutions one node at a
   time; a substitution is kept only if it lowers the validation metric and
   the budget still holds.

The validation metric is a ridge readout fitted on training features and
scored on validation features with the task objective (lower is better).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import numpy as np
from scipy import linalg

from rosetta_core.api.errors import NoCandidatesError, SearchInfeasibleError, TypeCheckError
from rosetta_core.core.config import SearchConfig
from rosetta_core.core.enums import NodeState
from rosetta_core.graph.cost import Budget, CostValue, aggregate, aggregate_all, is_unknown
from rosetta_core.graph.graph_model import Graph
from rosetta_core.graph.unify import unify
from rosetta_core.objectives.base import TaskObjective
from rosetta_core.search.supergraph import Supergraph, SupergraphNode

logger = logging.getLogger(__name__)

ParamSource = Callable[[int, str], Mapping[str, np.ndarray]]


# ---------------------------------------------------------------------------
# Validation metric
# ---------------------------------------------------------------------------


class ValidationScorer:
    """Held-out validation metric of a discrete graph.

    Features are the graph output on the training and validation inputs,
    standardized with training statistics.  A ridge readout is solved in
    closed form on the training features and scored on the validation set.
    """

    def __init__(
        self,
        objective: TaskObjective,
        train_data: Tuple[np.ndarray, np.ndarray],
        val_data: Tuple[np.ndarray, np.ndarray],
        ridge: float = 1e-3,
    ) -> None:
        self.objective = objective
        self.X_train, self.y_train = np.asarray(train_data[0]), np.asarray(train_data[1])
        self.X_val, self.y_val = np.asarray(val_data[0]), np.asarray(val_data[1])
        self.ridge = ridge
        self.n_evaluations = 0

    @staticmethod
    def _features(graph: Graph, X: np.ndarray) -> np.ndarray:
        value = np.asarray(graph.execute([X]), dtype=np.float64)
        return value.reshape(value.shape[0], -1)

    def __call__(self, graph: Graph) -> float:
        self.n_evaluations += 1
        F_tr = self._features(graph, self.X_train)
        F_val = self._features(graph, self.X_val)
        if not (np.all(np.isfinite(F_tr)) and np.all(np.isfinite(F_val))):
            return float("inf")

        mean = F_tr.mean(axis=0)
        std = F_tr.std(axis=0)
        std[std == 0] = 1.0
        A_tr = np.hstack([(F_tr - mean) / std, np.ones((F_tr.shape[0], 1))])
        A_val = np.hstack([(F_val - mean) / std, np.ones((F_val.shape[0], 1))])

        targets = self.objective.encode(self.y_train)
        gram = A_tr.T @ A_tr + self.ridge * np.eye(A_tr.shape[1])
        coef = linalg.solve(gram, A_tr.T @ targets, assume_a="pos")
        return float(self.objective.score(self.y_val, A_val @ coef))


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Selection:
    """One discrete choice: an exit plus an operator per node on its route."""

    exit_id: int
    ops: Tuple[Tuple[int, str], ...]

    def get(self, node_id: int) -> str:
        return dict(self.ops)[node_id]

    def replace(self, node_id: int, name: str) -> "Selection":
        return Selection(
            self.exit_id,
            tuple((nid, name if nid == node_id else op) for nid, op in self.ops),
        )


@dataclass
class DecodeResult:
    graph: Graph
    costs: Dict[str, CostValue]
    score: float
    selection: Selection
    swaps: int = 0
    insertions: int = 0


class DiscreteController:
    """Decode a supergraph under a budget.

    Parameters
    ----------
    supergraph : Supergraph
        Relaxed supergraph (weights are read, never written).
    scorer : callable
        ``scorer(graph) -> float``, lower is better.
    budget : Budget
    config : SearchConfig, optional
    params : callable, optional
        ``params(node_id, op_name)`` returns trained parameter overrides.
    """

    def __init__(
        self,
        supergraph: Supergraph,
        scorer: Callable[[Graph], float],
        budget: Optional[Budget] = None,
        config: Optional[SearchConfig] = None,
        params: Optional[ParamSource] = None,
        graph_id: str = "decoded",
    ) -> None:
        self.sg = supergraph
        self.catalog = supergraph.catalog
        self.scorer = scorer
        self.budget = Budget.of(budget)
        self.config = config or SearchConfig()
        self.params = params
        self.graph_id = graph_id
        self._temperature = self.config.final_temperature
        self._scores: Dict[Selection, float] = {}

    # ------------------------------------------------------------------
    # Argmax
    # ------------------------------------------------------------------

    def _argmax(self, node: SupergraphNode) -> str:
        if node.state == NodeState.decoded and node.chosen is not None:
            return node.chosen
        if node.frozen:
            return node.deferred()[0].name
        w = node.weights(self._temperature)
        return node.mixing()[int(np.argmax(w))].name

    def _route_selection(self, exit_id: int, keep: Optional[Selection] = None) -> Selection:
        previous = dict(keep.ops) if keep is not None else {}
        ops = tuple(
            (nid, previous.get(nid, self._argmax(self.sg.node(nid))))
            for nid in sorted(self.sg.ancestors(exit_id))
        )
        return Selection(exit_id, ops)

    def _sort_cost(self, selection: Selection) -> float:
        return sum(self.catalog.get(name).cost_of(self.catalog.sort_metric) for _, name in selection.ops)

    def ranked_selections(self) -> List[Selection]:
        """Argmax selection of every exit, best route first."""
        r = self.sg.route_weights(self._temperature)
        selections = [self._route_selection(e) for e in self.sg.exits]
        order = sorted(
            range(len(selections)),
            key=lambda i: (-r[i], self._sort_cost(selections[i]), self.sg.exits[i]),
        )
        return [selections[i] for i in order]

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def materialize(self, selection: Selection) -> Graph:
        """Build the typed graph for ``selection``.

        Raises
        ------
        TypeCheckError
            If the operators chosen along the route do not compose, or the
            result does not have the requested output type.
        """
        graph = Graph(self.catalog, graph_id=self.graph_id)
        refs = {None: graph.add_input("x", self.sg.input_type)}
        for nid, name in selection.ops:
            node = self.sg.node(nid)
            params = dict(self.params(nid, name)) if self.params is not None else None
            refs[nid] = graph.add_node(name, [refs[s] for s in node.inputs], params=params)
        out = graph.set_output(refs[selection.exit_id])
        if unify(self.sg.output_type, out.template, graph.bindings) is None:
            raise TypeCheckError(
                slot_index=0,
                expected=self.sg.output_type,
                actual=out.resolved_type,
                node_id=out.node_id,
                reason="decoded output does not match the requested output type",
            )
        graph.metadata["exit"] = selection.exit_id
        return graph

    def _try(self, selection: Selection) -> Optional[Tuple[Graph, Dict[str, CostValue]]]:
        try:
            graph = self.materialize(selection)
        except TypeCheckError as exc:
            logger.debug(f"Selection {selection.ops} does not type-check: {exc}")
            return None
        return graph, aggregate_all(graph, self.budget.metrics, self.config.metric_kinds)

    def score(self, selection: Selection, graph: Graph) -> float:
        if selection not in self._scores:
            self._scores[selection] = float(self.scorer(graph))
        return self._scores[selection]

    # ------------------------------------------------------------------
    # Budget repair
    # ------------------------------------------------------------------

    def _neighbours(self, selection: Selection) -> Iterator[Tuple[Selection, str]]:
        """Single swaps: (new selection, name of the operator swapped in)."""
        for nid, current in selection.ops:
            node = self.sg.node(nid)
            pool = node.deferred() if node.frozen else node.mixing()
            for op in pool:
                if op.name != current:
                    yield selection.replace(nid, op.name), op.name
        for e in self.sg.exits:
            if e != selection.exit_id:
                alt = self._route_selection(e, keep=selection)
                yield alt, alt.get(e)

    def _recovered(self, before: Mapping[str, CostValue], after: Mapping[str, CostValue]) -> float:
        a = self.budget.overage(before)
        b = self.budget.overage(after)
        if np.isinf(b):
            return 0.0
        return float("inf") if np.isinf(a) else a - b

    def _tie_values(self, graph: Graph, swapped: str) -> Tuple[float, ...]:
        values: List[float] = []
        for rule in self.config.tie_break:
            if rule == "cost":
                total = aggregate(graph, self.catalog.sort_metric, self.config.metric_kinds)
                values.append(float("inf") if is_unknown(total) else float(total))
            elif rule == "catalog_order":
                values.append(float(self.catalog.rank(swapped)))
        return tuple(values)

    def repair(
        self, selection: Selection, graph: Graph, costs: Dict[str, CostValue]
    ) -> Tuple[Selection, Graph, Dict[str, CostValue], int]:
        swaps = 0
        while not self.budget.satisfied_by(costs):
            base = self.score(selection, graph)
            best = None
            for order, (alt, swapped) in enumerate(self._neighbours(selection)):
                tried = self._try(alt)
                if tried is None:
                    continue
                alt_graph, alt_costs = tried
                recovered = self._recovered(costs, alt_costs)
                if not recovered > 0:
                    continue
                degradation = self.score(alt, alt_graph) - base
                rate = 0.0 if np.isinf(recovered) else degradation / recovered
                key = (rate, *self._tie_values(alt_graph, swapped), order)
                if best is None or key < best[0]:
                    best = (key, alt, alt_graph, alt_costs, swapped)
            if best is None:
                raise SearchInfeasibleError(
                    f"No swap brings the decoded graph within budget {self.budget.limits}; "
                    f"best effort costs {costs}",
                    graph=graph,
                    costs=costs,
                )
            _, selection, graph, costs, swapped = best
            swaps += 1
            logger.info(f"Budget swap {swaps}: '{swapped}' in, costs now {costs}")
        return selection, graph, costs, swaps

    # ------------------------------------------------------------------
    # Non-differentiable insertion
    # ------------------------------------------------------------------

    def insert_non_differentiable(
        self, selection: Selection, graph: Graph, costs: Dict[str, CostValue]
    ) -> Tuple[Selection, Graph, Dict[str, CostValue], int]:
        best_score = self.score(selection, graph)
        inserted = 0
        for nid, _ in selection.ops:
            node = self.sg.node(nid)
            for op in node.deferred():
                if op.name == selection.get(nid):
                    continue
                alt = selection.replace(nid, op.name)
                tried = self._try(alt)
                if tried is None:
                    continue
                alt_graph, alt_costs = tried
                if not self.budget.satisfied_by(alt_costs):
                    continue
                alt_score = self.score(alt, alt_graph)
                if alt_score < best_score:
                    logger.info(
                        f"Inserted non-differentiable '{op.name}' at node {nid}: "
                        f"validation {best_score:.5g} -> {alt_score:.5g}"
                    )
                    selection, graph, costs, best_score = alt, alt_graph, alt_costs, alt_score
                    inserted += 1
        return selection, graph, costs, inserted

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def decode(self, temperature: Optional[float] = None) -> DecodeResult:
        """Argmax decode, budget repair, then non-differentiable insertion.

        Raises
        ------
        TypeCheckError
            No exit route composes; the error of the best-ranked route is
            re-raised.
        SearchInfeasibleError
            No swap sequence brings the decoded graph within budget.
        """
        if temperature is not None:
            self._temperature = temperature

        start = None
        first_error: Optional[TypeCheckError] = None
        for selection in self.ranked_selections():
            try:
                graph = self.materialize(selection)
            except TypeCheckError as exc:
                logger.debug(f"Selection {selection.ops} does not type-check: {exc}")
                first_error = first_error or exc
                continue
            start = (selection, graph, aggregate_all(graph, self.budget.metrics, self.config.metric_kinds))
            break
        if start is None:
            if first_error is None:
                raise NoCandidatesError("Supergraph has no exit left to decode")
            first_error.add_note("no route of the supergraph decodes to a well-typed graph")
            raise first_error

        selection, graph, costs = start
        selection, graph, costs, swaps = self.repair(selection, graph, costs)
        inserted = 0
        if self.config.insert_non_differentiable:
            selection, graph, costs, inserted = self.insert_non_differentiable(
                selection, graph, costs
            )

        chosen = dict(selection.ops)
        for nid in self.sg.order():
            node = self.sg.node(nid)
            if nid in chosen:
                node.chosen = chosen[nid]
            if node.state != NodeState.decoded:
                node.transition(NodeState.decoded)

        score = self.score(selection, graph)
        graph.metadata["val_score"] = score
        logger.info(
            f"Decoded graph '{graph.graph_id}' via exit {selection.exit_id}: "
            f"{[name for _, name in selection.ops]} costs={costs} val={score:.5g} "
            f"({swaps} swaps, {inserted} insertions)"
        )
        return DecodeResult(graph, costs, score, selection, swaps, inserted)


def decode(
    supergraph: Supergraph,
    scorer: Callable[[Graph], float],
    budget: Optional[Budget] = None,
    config: Optional[SearchConfig] = None,
    params: Optional[ParamSource] = None,
) -> Graph:
    """Decode ``supergraph`` to a single graph within ``budget``."""
    return DiscreteController(supergraph, scorer, budget, config, params).decode().graph
