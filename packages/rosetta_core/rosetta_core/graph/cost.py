"""rosetta_core.graph.cost
==========================

Cost & stability propagation over a typed graph.

Aggregation rules
-----------------
additive        Sum of declared per-node costs over the nodes the output
                depends on (dead branches excluded).  Default for any metric.
critical_path   Longest-path sum (latency when independent branches overlap).
lipschitz       Product along sequential composition, maximum across fan-in.
                A node without a declared or estimated bound yields UNKNOWN,
                and any aggregate containing UNKNOWN is reported as UNKNOWN.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, Mapping, Optional, Union

from pydantic import ConfigDict, Field, field_validator

from rosetta_core.core.enums import MetricKind
from rosetta_core.graph.ir_types import StrictBaseModel

if TYPE_CHECKING:
    from rosetta_core.graph.graph_model import Graph

logger = logging.getLogger(__name__)


class _Unknown:
    """Marker for an aggregate that cannot be computed."""

    _instance: Optional["_Unknown"] = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()

CostValue = Union[float, _Unknown]

DEFAULT_METRIC_KINDS: Dict[str, MetricKind] = {
    "lipschitz": MetricKind.lipschitz,
    "stability": MetricKind.lipschitz,
    "latency": MetricKind.critical_path,
}


def is_unknown(value: object) -> bool:
    return value is UNKNOWN


def metric_kind(metric: str, kinds: Optional[Mapping[str, MetricKind]] = None) -> MetricKind:
    if kinds is not None and metric in kinds:
        return MetricKind(kinds[metric])
    return DEFAULT_METRIC_KINDS.get(metric, MetricKind.additive)


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class Budget(StrictBaseModel):
    """Resource limits ``{metric: limit}`` a decoded graph must satisfy.

    Held by the search run that created it; read-only everywhere else.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    limits: Dict[str, float] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def _positive(cls, v: Dict[str, float]) -> Dict[str, float]:
        for metric, limit in v.items():
            if not limit > 0:
                raise ValueError(f"Budget for '{metric}' must be positive, got {limit}")
        return v

    @classmethod
    def of(cls, limits: Union["Budget", Mapping[str, float], None]) -> "Budget":
        if isinstance(limits, Budget):
            return limits
        return cls(limits=dict(limits or {}))

    @property
    def metrics(self) -> list:
        return sorted(self.limits)

    def __getitem__(self, metric: str) -> float:
        return self.limits[metric]

    def __contains__(self, metric: object) -> bool:
        return metric in self.limits

    def __len__(self) -> int:
        return len(self.limits)

    def violations(self, costs: Mapping[str, CostValue]) -> Dict[str, CostValue]:
        """Metrics whose cost exceeds the limit (UNKNOWN always violates)."""
        out: Dict[str, CostValue] = {}
        for metric, limit in self.limits.items():
            value = costs.get(metric, UNKNOWN)
            if is_unknown(value) or value > limit:
                out[metric] = value
        return out

    def satisfied_by(self, costs: Mapping[str, CostValue]) -> bool:
        return not self.violations(costs)

    def overage(self, costs: Mapping[str, CostValue]) -> float:
        """Total normalized excess ``sum max(0, cost - limit) / limit``."""
        total = 0.0
        for metric, limit in self.limits.items():
            value = costs.get(metric, UNKNOWN)
            if is_unknown(value):
                return float("inf")
            total += max(0.0, float(value) - limit) / limit
        return total


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def aggregate(
    graph: "Graph",
    metric_name: str,
    kinds: Optional[Mapping[str, MetricKind]] = None,
) -> CostValue:
    """Aggregate a per-node metric over the live part of ``graph``."""
    kind = metric_kind(metric_name, kinds)
    live = graph.live_node_ids()
    order = graph.topological_order(live)

    if kind == MetricKind.additive:
        return float(sum(
            graph.node(nid).operator.cost_of(metric_name)
            for nid in order
            if not graph.node(nid).is_input
        ))

    if kind == MetricKind.critical_path:
        dist: Dict[int, float] = {}
        for nid in order:
            node = graph.node(nid)
            if node.is_input:
                dist[nid] = 0.0
                continue
            upstream = max((dist[src] for src in node.inputs), default=0.0)
            dist[nid] = upstream + node.operator.cost_of(metric_name)
        return dist[graph.output_node.node_id]

    bounds: Dict[int, CostValue] = {}
    for nid in order:
        node = graph.node(nid)
        if node.is_input:
            bounds[nid] = 1.0
            continue
        upstream = [bounds[src] for src in node.inputs]
        own = node.operator.lipschitz(node.params)
        if own is None or any(is_unknown(u) for u in upstream):
            bounds[nid] = UNKNOWN
            continue
        bounds[nid] = own * max(upstream, default=1.0)
    return bounds[graph.output_node.node_id]


def aggregate_all(
    graph: "Graph",
    metrics: Iterable[str],
    kinds: Optional[Mapping[str, MetricKind]] = None,
) -> Dict[str, CostValue]:
    return {m: aggregate(graph, m, kinds) for m in metrics}
