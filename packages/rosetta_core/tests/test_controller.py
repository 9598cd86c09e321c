"""test_controller.py

Tests for the discrete controller that decodes a supergraph.

Tests
-----
* Exits are ranked by route weight, then route cost.
* Decoded graphs respect the budget; greedy swaps repair over-budget picks.
* SearchInfeasibleError carries the best-effort graph and its costs.
* A supergraph with no well-typed route re-raises the route's TypeCheckError.
* Non-differentiable candidates replace the argmax only when they lower the
  validation metric and keep the budget.
* The validation scorer fits a ridge readout and caches per selection.
"""

from __future__ import annotations

import numpy as np
import pytest

from rosetta_core.api.errors import SearchInfeasibleError, TypeCheckError
from rosetta_core.core.config import SearchConfig
from rosetta_core.core.enums import NodeState
from rosetta_core.graph.cost import Budget
from rosetta_core.graph.graph_model import Graph
from rosetta_core.graph.ir_types import TypeSpec
from rosetta_core.objectives import RegressionObjective
from rosetta_core.search.controller import DiscreteController, Selection, ValidationScorer, decode
from rosetta_core.search.engine import over_budget
from rosetta_core.search.supergraph import build_supergraph

PATH = TypeSpec(kind="path", shape=("T", "C"))
FEATURE = TypeSpec(kind="feature", shape=("D",))


def _scorer(data) -> ValidationScorer:
    return ValidationScorer(RegressionObjective(), data["train"], data["val"])


def _names(graph: Graph):
    return [n.name for n in graph.operator_nodes()]


# ---------------------------------------------------------------------------
# Ranking / materialization
# ---------------------------------------------------------------------------


class TestSelections:
    def test_uniform_weights_prefer_cheaper_route(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        ranked = DiscreteController(sg, _scorer(regression_data)).ranked_selections()
        assert ranked == [
            Selection(0, ((0, "Scattering1D"),)),
            Selection(2, ((1, "FFT"), (2, "SpecPool"))),
        ]

    def test_route_weight_dominates(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        sg.route_logits = np.array([-1.0, 1.0])
        ranked = DiscreteController(sg, _scorer(regression_data)).ranked_selections()
        assert ranked[0].exit_id == 2

    def test_argmax_per_node(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        sg.node(0).logits = np.array([0.0, 2.0])
        ranked = DiscreteController(sg, _scorer(regression_data)).ranked_selections()
        assert Selection(0, ((0, "ExpensiveSig"),)) in ranked

    def test_materialize(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        controller = DiscreteController(sg, _scorer(regression_data), graph_id="g")
        graph = controller.materialize(Selection(2, ((1, "FFT"), (2, "SpecPool"))))
        assert graph.graph_id == "g"
        assert _names(graph) == ["FFT", "SpecPool"]
        assert graph.input_nodes[0].name == "x"
        assert graph.metadata["exit"] == 2
        assert graph.validate() == []

    def test_selection_helpers(self) -> None:
        sel = Selection(2, ((1, "FFT"), (2, "SpecPool")))
        assert sel.get(1) == "FFT"
        assert sel.replace(1, "Other").ops == ((1, "Other"), (2, "SpecPool"))
        assert hash(sel) == hash(Selection(2, ((1, "FFT"), (2, "SpecPool"))))


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class TestBudget:
    def test_decoded_graph_respects_budget(self, scenario_catalog, regression_data) -> None:
        budget = Budget.of({"cost": 20.0})
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2, exclude=over_budget(budget))
        result = DiscreteController(sg, _scorer(regression_data), budget).decode()
        assert result.costs["cost"] <= 20.0
        assert "ExpensiveSig" not in _names(result.graph)
        assert result.swaps == 0

    def test_greedy_swap(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        sg.node(0).logits = np.array([0.0, 5.0])
        sg.route_logits = np.array([1.0, 0.0])
        result = DiscreteController(sg, _scorer(regression_data), {"cost": 12.0}).decode()
        assert _names(result.graph) == ["Scattering1D"]
        assert result.costs == {"cost": 5.0}
        assert result.swaps == 1

    def test_infeasible_carries_best_effort(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        controller = DiscreteController(sg, _scorer(regression_data), {"cost": 4.0})
        with pytest.raises(SearchInfeasibleError) as info:
            controller.decode()
        assert info.value.graph is not None
        assert _names(info.value.graph) == ["Scattering1D"]
        assert info.value.costs == {"cost": 5.0}

    def test_tie_values(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        controller = DiscreteController(sg, _scorer(regression_data))
        graph = controller.materialize(Selection(2, ((1, "FFT"), (2, "SpecPool"))))
        assert controller._tie_values(graph, "FFT") == (13.0, 2.0)

        controller = DiscreteController(
            sg, _scorer(regression_data), config=SearchConfig(tie_break=("catalog_order",))
        )
        assert controller._tie_values(graph, "SpecPool") == (0.0,)


# ---------------------------------------------------------------------------
# Non-differentiable insertion
# ---------------------------------------------------------------------------


class TestInsertion:
    def test_better_non_differentiable_is_inserted(self, insertion_catalog, mean_abs_data) -> None:
        sg = build_supergraph(insertion_catalog, PATH, FEATURE, 1)
        assert [op.name for op in sg.node(0).deferred()] == ["MeanAbs"]
        result = DiscreteController(sg, _scorer(mean_abs_data)).decode()
        assert _names(result.graph) == ["MeanAbs"]
        assert result.insertions == 1
        assert sg.node(0).chosen == "MeanAbs"

    def test_insertion_can_be_disabled(self, insertion_catalog, mean_abs_data) -> None:
        sg = build_supergraph(insertion_catalog, PATH, FEATURE, 1)
        config = SearchConfig(insert_non_differentiable=False)
        result = DiscreteController(sg, _scorer(mean_abs_data), config=config).decode()
        assert _names(result.graph) == ["Scattering1D"]
        assert result.insertions == 0

    def test_insertion_keeps_budget(self, insertion_catalog, mean_abs_data) -> None:
        sg = build_supergraph(insertion_catalog, PATH, FEATURE, 1)
        result = DiscreteController(sg, _scorer(mean_abs_data), {"cost": 5.5}).decode()
        assert _names(result.graph) == ["Scattering1D"]


# ---------------------------------------------------------------------------
# Decode / scorer
# ---------------------------------------------------------------------------


class TestDecode:
    def test_decode_marks_nodes(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        graph = decode(sg, _scorer(regression_data))
        assert isinstance(graph, Graph)
        assert {n.state for n in sg.nodes.values()} == {NodeState.decoded}
        assert np.isfinite(graph.metadata["val_score"])
        assert graph.execute([regression_data["val"][0]]).shape[0] == 24

    def test_trained_params_are_applied(self, graph_catalog, regression_data) -> None:
        sg = build_supergraph(graph_catalog, PATH, FEATURE, 2, max_fan_in=1)
        gain = next(n for n in sg.nodes.values() if [op.name for op in n.candidates] == ["Gain"])
        sg.route_logits = np.where(np.array(sg.exits) == gain.node_id, 5.0, 0.0)

        def params(node_id, name):
            return {"scale": np.array([4.0])} if name == "Gain" else {}

        controller = DiscreteController(
            sg, _scorer(regression_data), params=params,
            config=SearchConfig(insert_non_differentiable=False),
        )
        graph = controller.decode().graph
        assert graph.output_node.name == "Gain"
        assert graph.output_node.params["scale"][0] == 4.0

    def test_no_well_typed_route(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        sg.remove_exits([2])
        node = sg.node(0)
        node.transition(NodeState.decoded)
        node.chosen = "SpecPool"
        with pytest.raises(TypeCheckError) as info:
            DiscreteController(sg, _scorer(regression_data)).decode()
        assert info.value.expected.kind == "spectrum"
        assert any("well-typed" in note for note in info.value.__notes__)


class TestValidationScorer:
    def test_perfect_features(self, scenario_catalog, regression_data) -> None:
        g = Graph(scenario_catalog)
        g.set_output(g.add_node("Scattering1D", [g.add_input("x", PATH)]))
        scorer = _scorer(regression_data)
        assert scorer(g) < 1e-4
        assert scorer.n_evaluations == 1

    def test_non_finite_features(self, regression_data, make_op, build_catalog) -> None:
        catalog = build_catalog([
            make_op("NaNs", [PATH], FEATURE, lambda inputs, params: np.full((len(inputs[0]), 2), np.nan)),
        ])
        g = Graph(catalog)
        g.set_output(g.add_node("NaNs", [g.add_input("x", PATH)]))
        assert _scorer(regression_data)(g) == float("inf")

    def test_scores_are_cached(self, scenario_catalog, regression_data) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        scorer = _scorer(regression_data)
        controller = DiscreteController(sg, scorer)
        sel = Selection(0, ((0, "Scattering1D"),))
        graph = controller.materialize(sel)
        first = controller.score(sel, graph)
        assert controller.score(sel, graph) == first
        assert scorer.n_evaluations == 1
