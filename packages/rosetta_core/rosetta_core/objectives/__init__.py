"""rosetta_core.objectives -- task objectives that drive the search signal."""

from rosetta_core.objectives.base import (
    OBJECTIVE_REGISTRY,
    ClassificationObjective,
    RegressionObjective,
    TaskObjective,
    get_objective,
)

__all__ = [
    "OBJECTIVE_REGISTRY",
    "ClassificationObjective",
    "RegressionObjective",
    "TaskObjective",
    "get_objective",
]
