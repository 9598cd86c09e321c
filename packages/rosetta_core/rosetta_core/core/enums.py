"""rosetta_core.core.enums
==========================

Enumerations shared by the type model, cost propagation and search.

Enums
-----
Relation      EQUAL / ADAPTABLE / INCOMPATIBLE result of ``compatible()``
NodeState     Lifecycle of a supergraph node during search
MetricKind    How a cost metric is aggregated over a graph
TaskKind      Training objective selector for the search signal
"""

from __future__ import annotations

from enum import Enum


class Relation(str, Enum):
    """Compatibility relation between two types."""

    equal = "equal"
    adaptable = "adaptable"
    incompatible = "incompatible"


class NodeState(str, Enum):
    """Lifecycle of a supergraph node.

    masked -> mixing -> annealed -> pruned -> decoded
    """

    masked = "masked"
    mixing = "mixing"
    annealed = "annealed"
    pruned = "pruned"
    decoded = "decoded"


class MetricKind(str, Enum):
    """Aggregation rule for a per-node metric."""

    additive = "additive"
    critical_path = "critical_path"
    lipschitz = "lipschitz"


class TaskKind(str, Enum):
    """Objective used to drive the relaxation search."""

    regression = "regression"
    classification = "classification"
