"""test_search.py

End-to-end tests for run_search() / search().

Tests
-----
* The path -> feature scenario decodes to a well-typed graph within budget.
* The same seed and data give a bit-identical decoded graph.
* Infeasible requests raise NoCandidatesError / SearchInfeasibleError.
* Stop signals and step callbacks reach the relaxation loop.
"""

from __future__ import annotations

import numpy as np
import pytest

from rosetta_core.api.errors import NoCandidatesError, SearchInfeasibleError
from rosetta_core.core.config import SearchConfig
from rosetta_core.core.enums import TaskKind
from rosetta_core.graph.graph_model import Graph
from rosetta_core.graph.ir_types import TypeSpec
from rosetta_core.search.engine import run_search, search
from rosetta_core.search.schedule import StopSignal

PATH = TypeSpec(kind="path", shape=("T", "C"))
FEATURE = TypeSpec(kind="feature", shape=("D",))

SCENARIO_ROUTES = (["Scattering1D"], ["FFT", "SpecPool"])


def _run(catalog, data, **kwargs):
    kwargs.setdefault("budget", {"cost": 20.0})
    kwargs.setdefault("config", SearchConfig(steps=20))
    return run_search(catalog, PATH, FEATURE, "regression", data["train"], data["val"], **kwargs)


class TestScenario:
    def test_decodes_within_budget(self, scenario_catalog, regression_data) -> None:
        result = _run(scenario_catalog, regression_data)
        names = [n.name for n in result.graph.operator_nodes()]
        assert names in SCENARIO_ROUTES
        assert result.costs["cost"] <= 20.0
        assert result.graph.validate() == []
        assert len(result.history) == 20
        assert result.steps == 20
        assert not result.stopped_early

    def test_metadata(self, scenario_catalog, regression_data) -> None:
        graph = _run(scenario_catalog, regression_data, seed=3).graph
        assert graph.graph_id == "rosetta-3"
        assert graph.metadata["seed"] == 3
        assert graph.metadata["task_kind"] == "regression"
        assert graph.metadata["steps"] == 20
        assert graph.metadata["costs"]["cost"] <= 20.0
        assert "val_score" in graph.metadata
        assert graph.export()["metadata"]["seed"] == 3

    def test_same_seed_same_graph(self, scenario_catalog, regression_data) -> None:
        first = _run(scenario_catalog, regression_data, seed=1)
        second = _run(scenario_catalog, regression_data, seed=1)
        assert first.graph.serialize()["graph_sha256"] == second.graph.serialize()["graph_sha256"]
        assert [r.val_loss for r in first.history] == [r.val_loss for r in second.history]

    def test_search_returns_graph(self, scenario_catalog, regression_data) -> None:
        graph = search(
            scenario_catalog,
            {"kind": "path", "shape": "T×C"},
            {"kind": "feature", "shape": ["D"]},
            TaskKind.regression,
            regression_data["train"],
            regression_data["val"],
            budget={"cost": 20.0},
            config=SearchConfig(steps=5),
        )
        assert isinstance(graph, Graph)
        out = graph.execute([regression_data["val"][0]])
        assert out.shape[0] == 24
        assert np.all(np.isfinite(out))

    def test_classification(self, scenario_catalog, classification_data) -> None:
        result = run_search(
            scenario_catalog, PATH, FEATURE, "classification",
            classification_data["train"], classification_data["val"],
            budget={"cost": 20.0}, config=SearchConfig(steps=10),
        )
        assert [n.name for n in result.graph.operator_nodes()] in SCENARIO_ROUTES
        assert 0.0 <= result.val_score <= 1.0
        assert result.graph.metadata["task_kind"] == "classification"


class TestInfeasible:
    def test_no_route_to_output(self, pointcloud_catalog, regression_data) -> None:
        cloud = TypeSpec(kind="pointcloud", shape=("N", 3))
        X = np.zeros((4, 5, 3))
        with pytest.raises(NoCandidatesError):
            run_search(pointcloud_catalog, cloud, FEATURE, "regression",
                       (X, np.zeros(4)), (X, np.zeros(4)), depth_bound=1)

    def test_budget_masks_every_candidate(self, scenario_catalog, regression_data) -> None:
        with pytest.raises(NoCandidatesError):
            _run(scenario_catalog, regression_data, budget={"cost": 4.0})

    def test_budget_cannot_be_met(self, scenario_catalog, regression_data) -> None:
        config = SearchConfig(steps=5, mask_over_budget=False)
        with pytest.raises(SearchInfeasibleError) as info:
            _run(scenario_catalog, regression_data, budget={"cost": 4.0}, config=config)
        assert info.value.graph is not None
        assert info.value.costs["cost"] == 5.0

    def test_unknown_task_kind(self, scenario_catalog, regression_data) -> None:
        with pytest.raises(KeyError):
            run_search(scenario_catalog, PATH, FEATURE, "ranking",
                       regression_data["train"], regression_data["val"])


class TestControl:
    def test_stop_signal(self, scenario_catalog, regression_data) -> None:
        result = _run(scenario_catalog, regression_data, stop=StopSignal(max_steps=3))
        assert result.stopped_early
        assert result.steps == 3
        assert result.graph.metadata["stopped_early"] is True
        assert [n.name for n in result.graph.operator_nodes()] in SCENARIO_ROUTES

    def test_on_step_callback(self, scenario_catalog, regression_data) -> None:
        seen = []
        _run(scenario_catalog, regression_data, config=SearchConfig(steps=4),
             on_step=lambda s: seen.append((s.step, s.temperature)))
        assert [step for step, _ in seen] == [1, 2, 3, 4]
        assert all(t > 0 for _, t in seen)
