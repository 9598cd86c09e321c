"""rosetta_core.objectives.base
===============================

TaskObjective ABC + concrete implementations + OBJECTIVE_REGISTRY.

``task_kind`` passed to ``search()`` selects the objective that drives the
relaxation search.  Each objective implements

* ``__call__(y, yhat) -> float``       training loss
* ``gradient(y, yhat) -> ndarray``     d loss / d yhat
* ``score(y, yhat) -> float``          held-out validation metric (lower is better)
* ``encode(y) -> ndarray``             targets as a 2-D float array

Implementations
---------------
RegressionObjective       Mean squared error
ClassificationObjective   Softmax cross-entropy; validation metric is error rate
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

import numpy as np
from scipy.special import log_softmax, softmax

from rosetta_core.core.enums import TaskKind


class TaskObjective(ABC):
    """Abstract base class for search objectives."""

    def __init__(self, **params: Any) -> None:
        self._params = params

    @abstractmethod
    def output_dim(self, y: np.ndarray) -> int:
        """Width of the readout needed for targets ``y``."""
        ...

    @abstractmethod
    def encode(self, y: np.ndarray) -> np.ndarray:
        """Targets as an ``(N, output_dim)`` float array."""
        ...

    @abstractmethod
    def __call__(self, y: np.ndarray, yhat: np.ndarray) -> float:
        ...

    @abstractmethod
    def gradient(self, y: np.ndarray, yhat: np.ndarray) -> np.ndarray:
        """Gradient of the loss w.r.t. yhat."""
        ...

    @abstractmethod
    def score(self, y: np.ndarray, yhat: np.ndarray) -> float:
        ...


class RegressionObjective(TaskObjective):
    """0.5 * mean squared error; validation metric is plain MSE."""

    def output_dim(self, y: np.ndarray) -> int:
        y = np.asarray(y)
        return 1 if y.ndim == 1 else int(y.shape[1])

    def encode(self, y: np.ndarray) -> np.ndarray:
        y = np.asarray(y, dtype=np.float64)
        return y.reshape(-1, 1) if y.ndim == 1 else y.reshape(y.shape[0], -1)

    def __call__(self, y: np.ndarray, yhat: np.ndarray) -> float:
        r = yhat - self.encode(y)
        return float(0.5 * np.mean(np.sum(r * r, axis=1)))

    def gradient(self, y: np.ndarray, yhat: np.ndarray) -> np.ndarray:
        return (yhat - self.encode(y)) / yhat.shape[0]

    def score(self, y: np.ndarray, yhat: np.ndarray) -> float:
        r = yhat - self.encode(y)
        return float(np.mean(r * r))


class ClassificationObjective(TaskObjective):
    """Softmax cross-entropy over integer labels.

    Parameters
    ----------
    n_classes : int, optional
        Number of classes; inferred from the largest label when omitted.
    """

    def output_dim(self, y: np.ndarray) -> int:
        n = self._params.get("n_classes")
        if n is not None:
            return int(n)
        return int(np.max(np.asarray(y))) + 1

    def encode(self, y: np.ndarray) -> np.ndarray:
        labels = np.asarray(y).astype(np.int64).ravel()
        n = max(self.output_dim(y), int(labels.max(initial=0)) + 1)
        onehot = np.zeros((labels.shape[0], n), dtype=np.float64)
        onehot[np.arange(labels.shape[0]), labels] = 1.0
        return onehot

    def _targets(self, y: np.ndarray, yhat: np.ndarray) -> np.ndarray:
        t = self.encode(y)
        if t.shape[1] < yhat.shape[1]:
            t = np.pad(t, ((0, 0), (0, yhat.shape[1] - t.shape[1])))
        return t[:, : yhat.shape[1]]

    def __call__(self, y: np.ndarray, yhat: np.ndarray) -> float:
        t = self._targets(y, yhat)
        return float(-np.mean(np.sum(t * log_softmax(yhat, axis=1), axis=1)))

    def gradient(self, y: np.ndarray, yhat: np.ndarray) -> np.ndarray:
        t = self._targets(y, yhat)
        return (softmax(yhat, axis=1) - t) / yhat.shape[0]

    def score(self, y: np.ndarray, yhat: np.ndarray) -> float:
        labels = np.asarray(y).astype(np.int64).ravel()
        return float(np.mean(np.argmax(yhat, axis=1) != labels))


OBJECTIVE_REGISTRY: Dict[str, Type[TaskObjective]] = {
    TaskKind.regression.value: RegressionObjective,
    TaskKind.classification.value: ClassificationObjective,
}


def get_objective(task_kind: str, params: Optional[Dict[str, Any]] = None) -> TaskObjective:
    """Look up an objective by task kind and instantiate it.

    Raises KeyError if the task kind is not registered.
    """
    key = task_kind.value if isinstance(task_kind, TaskKind) else str(task_kind)
    if key not in OBJECTIVE_REGISTRY:
        raise KeyError(
            f"Unknown task_kind '{key}'. "
            f"Available: {sorted(OBJECTIVE_REGISTRY.keys())}"
        )
    return OBJECTIVE_REGISTRY[key](**(params or {}))
