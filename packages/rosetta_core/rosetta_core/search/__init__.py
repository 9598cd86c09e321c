"""rosetta_core.search -- budget-constrained architecture search.

Modules
-------
supergraph     Masked supergraph of type-compatible candidates per position
schedule       Temperature schedule and stop signal
relaxation     Continuous relaxation and the optimisation loop
controller     Discrete decoding, budget swaps, non-differentiable insertion
engine         search() / run_search() entry points
"""

from rosetta_core.search.supergraph import (
    Supergraph,
    SupergraphBuilder,
    SupergraphNode,
    build_supergraph,
)
from rosetta_core.search.schedule import StopSignal, TemperatureSchedule
from rosetta_core.search.relaxation import RelaxationSearch, StepRecord, expected_cost
from rosetta_core.search.controller import (
    DecodeResult,
    DiscreteController,
    Selection,
    ValidationScorer,
    decode,
)
from rosetta_core.search.engine import SearchResult, run_search, search

__all__ = [
    "Supergraph",
    "SupergraphBuilder",
    "SupergraphNode",
    "build_supergraph",
    "StopSignal",
    "TemperatureSchedule",
    "RelaxationSearch",
    "StepRecord",
    "expected_cost",
    "DecodeResult",
    "DiscreteController",
    "Selection",
    "ValidationScorer",
    "decode",
    "SearchResult",
    "run_search",
    "search",
]
