"""rosetta_core.search.engine
============================

``search()`` entry point: supergraph build -> relaxation -> decode.

Usage
-----
>>> graph = search(catalog, path_t, feature_t, "regression",
...                (X_tr, y_tr), (X_val, y_val), budget={"cost": 20},
...                depth_bound=2, seed=0)
>>> graph.execute([X_new])

Given the same seed, data order and config, two calls produce bit-identical
decoded graphs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from rosetta_core.core.config import SearchConfig
from rosetta_core.core.enums import MetricKind, TaskKind
from rosetta_core.graph.catalog import Catalog
from rosetta_core.graph.cost import Budget, CostValue, is_unknown, metric_kind
from rosetta_core.graph.graph_model import Graph
from rosetta_core.graph.ir_types import TypeSpec, as_type
from rosetta_core.graph.operators import Operator
from rosetta_core.objectives.base import get_objective
from rosetta_core.search.controller import DiscreteController, ValidationScorer
from rosetta_core.search.relaxation import RelaxationSearch, StepRecord
from rosetta_core.search.schedule import StopSignal
from rosetta_core.search.supergraph import build_supergraph

logger = logging.getLogger(__name__)

Dataset = Tuple[np.ndarray, np.ndarray]


@dataclass
class SearchResult:
    """Everything a search run produced."""

    graph: Graph
    costs: Dict[str, CostValue]
    val_score: float
    history: List[StepRecord] = field(default_factory=list)
    stopped_early: bool = False
    steps: int = 0
    swaps: int = 0
    insertions: int = 0


def over_budget(budget: Budget, kinds: Optional[Mapping[str, MetricKind]] = None) -> Callable[[Operator], bool]:
    """Predicate true for operators that alone exceed a budget limit."""

    def _exceeds(op: Operator) -> bool:
        for metric in budget.metrics:
            if metric_kind(metric, kinds) == MetricKind.lipschitz:
                bound = op.lipschitz()
                if bound is not None and bound > budget[metric]:
                    return True
            elif op.cost_of(metric) > budget[metric]:
                return True
        return False

    return _exceeds


def run_search(
    catalog: Catalog,
    input_type: Union[TypeSpec, Dict[str, Any]],
    output_type: Union[TypeSpec, Dict[str, Any]],
    task_kind: Union[str, TaskKind],
    train_data: Dataset,
    val_data: Dataset,
    budget: Union[Budget, Mapping[str, float], None] = None,
    depth_bound: int = 2,
    seed: int = 0,
    config: Optional[SearchConfig] = None,
    stop: Optional[StopSignal] = None,
    on_step: Optional[Callable[[RelaxationSearch], None]] = None,
) -> SearchResult:
    """Search for a typed graph mapping ``input_type`` to ``output_type``.

    Raises
    ------
    NoCandidatesError
        The catalog cannot map the input to the output within ``depth_bound``.
    SearchInfeasibleError
        No decoded graph satisfies the budget.
    """
    config = config or SearchConfig()
    budget = Budget.of(budget)
    input_type = as_type(input_type)
    output_type = as_type(output_type)
    objective = get_objective(task_kind, config.objective_params)
    kinds = config.metric_kinds
    task = str(getattr(task_kind, "value", task_kind))

    logger.info(
        f"Search {input_type} -> {output_type} ({task}), "
        f"budget={budget.limits}, depth_bound={depth_bound}, seed={seed}"
    )
    exclude = over_budget(budget, kinds) if config.mask_over_budget and len(budget) else None
    supergraph = build_supergraph(
        catalog,
        input_type,
        output_type,
        depth_bound,
        max_fan_in=config.max_fan_in,
        exclude=exclude,
    )
    logger.debug(supergraph.summary())

    relaxation = RelaxationSearch(
        supergraph,
        objective,
        train_data,
        val_data,
        budget=budget,
        config=config,
        seed=seed,
        stop=stop,
        on_step=on_step,
    )
    history = relaxation.run()

    scorer = ValidationScorer(objective, train_data, val_data, ridge=config.ridge)
    controller = DiscreteController(
        supergraph,
        scorer,
        budget=budget,
        config=config,
        params=relaxation.node_params,
        graph_id=f"rosetta-{seed}",
    )
    decoded = controller.decode(temperature=relaxation.temperature)

    graph = decoded.graph
    graph.metadata.update(
        {
            "seed": seed,
            "task_kind": task,
            "steps": relaxation.step,
            "stopped_early": relaxation.stopped_early,
            "costs": {m: repr(v) if is_unknown(v) else v for m, v in decoded.costs.items()},
        }
    )
    return SearchResult(
        graph=graph,
        costs=decoded.costs,
        val_score=decoded.score,
        history=history,
        stopped_early=relaxation.stopped_early,
        steps=relaxation.step,
        swaps=decoded.swaps,
        insertions=decoded.insertions,
    )


def search(
    catalog: Catalog,
    input_type: Union[TypeSpec, Dict[str, Any]],
    output_type: Union[TypeSpec, Dict[str, Any]],
    task_kind: Union[str, TaskKind],
    train_data: Dataset,
    val_data: Dataset,
    budget: Union[Budget, Mapping[str, float], None] = None,
    depth_bound: int = 2,
    seed: int = 0,
    config: Optional[SearchConfig] = None,
) -> Graph:
    """Decoded graph of :func:`run_search`."""
    return run_search(
        catalog,
        input_type,
        output_type,
        task_kind,
        train_data,
        val_data,
        budget=budget,
        depth_bound=depth_bound,
        seed=seed,
        config=config,
    ).graph
