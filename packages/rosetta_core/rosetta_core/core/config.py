"""rosetta_core.core.config
==========================

SearchConfig: schedule, optimisation and decoding knobs for a search run.

Configs are plain dataclasses with defaults; ``from_dict`` / ``from_yaml``
build one from a mapping (unknown keys are rejected).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

_SCHEDULES = ("exponential", "linear")
_TIE_BREAKS = ("cost", "catalog_order")


@dataclass
class SearchConfig:
    """Configuration for the relaxation search and the decoder."""

    # Optimisation loop
    steps: int = 60
    weight_lr: float = 0.05          # operator params + readout heads
    arch_lr: float = 0.1             # mixture / route logits
    batch_size: Optional[int] = None  # None = full batch
    head_init_scale: float = 0.01
    logit_init_scale: float = 0.0    # 0 = uniform initial mixture

    # Annealing
    schedule: str = "exponential"
    initial_temperature: float = 1.0
    final_temperature: float = 0.05

    # Pruning
    prune_threshold: float = 0.05
    prune_every: int = 10
    warmup_steps: int = 10

    # Budget
    budget_penalty: float = 1.0
    mask_over_budget: bool = True     # drop candidates that alone exceed a limit

    # Supergraph
    max_fan_in: int = 2

    # Workers / cancellation
    max_workers: int = 1
    max_seconds: Optional[float] = None

    # Decoding
    ridge: float = 1e-3
    insert_non_differentiable: bool = True
    tie_break: Tuple[str, ...] = ("cost", "catalog_order")

    metric_kinds: Dict[str, str] = field(default_factory=dict)
    objective_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.tie_break = tuple(self.tie_break)
        if self.schedule not in _SCHEDULES:
            raise ValueError(f"schedule must be one of {_SCHEDULES}, got {self.schedule!r}")
        if not 0 < self.final_temperature <= self.initial_temperature:
            raise ValueError(
                "temperatures must satisfy 0 < final_temperature <= initial_temperature"
            )
        if self.steps < 0:
            raise ValueError("steps must be >= 0")
        if not 0 <= self.prune_threshold < 1:
            raise ValueError("prune_threshold must be in [0, 1)")
        if self.prune_every < 1:
            raise ValueError("prune_every must be >= 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.max_fan_in < 1:
            raise ValueError("max_fan_in must be >= 1")
        for rule in self.tie_break:
            if rule not in _TIE_BREAKS:
                raise ValueError(f"Unknown tie_break rule {rule!r}; expected {_TIE_BREAKS}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown SearchConfig keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SearchConfig":
        """Load a config from a YAML file (optionally under a ``search:`` key)."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "search" in data and isinstance(data["search"], dict):
            data = data["search"]
        return cls.from_dict(data)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tie_break"] = list(self.tie_break)
        return data
