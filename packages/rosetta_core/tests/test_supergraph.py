"""test_supergraph.py

Tests for supergraph construction.

Tests
-----
* Candidates are grouped by source and output signature, in catalog order.
* Exits are the nodes whose output unifies with the requested type; nodes
  that cannot reach an exit are dropped.
* exclude() masks candidates up front.
* Infeasible requests raise NoCandidatesError.
* Fan-in nodes read at least one source from the previous stage.
* Node state transitions follow masked -> mixing -> annealed -> pruned -> decoded.
* Candidate and route weights are a softmax of the logits at the temperature.
"""

from __future__ import annotations

import numpy as np
import pytest

from rosetta_core.api.errors import NoCandidatesError
from rosetta_core.core.enums import NodeState
from rosetta_core.graph.cost import Budget
from rosetta_core.graph.ir_types import TypeSpec
from rosetta_core.search.engine import over_budget
from rosetta_core.search.supergraph import InvalidTransitionError, build_supergraph

PATH = TypeSpec(kind="path", shape=("T", "C"))
FEATURE = TypeSpec(kind="feature", shape=("D",))


def _names(node):
    return [op.name for op in node.candidates]


class TestBuild:
    def test_scenario_layout(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, depth_bound=2)
        assert sg.order() == [0, 1, 2]
        assert _names(sg.node(0)) == ["Scattering1D", "ExpensiveSig"]
        assert _names(sg.node(1)) == ["FFT"]
        assert _names(sg.node(2)) == ["SpecPool"]
        assert sg.node(0).inputs == (None,)
        assert sg.node(2).inputs == (1,)
        assert [sg.node(n).stage for n in sg.order()] == [1, 1, 2]
        assert sg.exits == [0, 2]
        assert sg.route_logits.shape == (2,)

    def test_frozen_and_mixing(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, depth_bound=2)
        assert not sg.node(0).frozen
        assert sg.node(0).logits.shape == (2,)
        assert sg.node(1).frozen
        assert sg.node(1).logits.size == 0
        assert [op.name for op in sg.node(1).deferred()] == ["FFT"]

    def test_initial_state_is_masked(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, depth_bound=2)
        assert {n.state for n in sg.nodes.values()} == {NodeState.masked}

    def test_concrete_output_widths_split_groups(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, TypeSpec(kind="path", shape=(16, 3)), FEATURE, 1)
        assert [_names(sg.node(n)) for n in sg.order()] == [["Scattering1D"], ["ExpensiveSig"]]
        assert sg.exits == [0, 2]

    def test_dead_nodes_are_dropped(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, depth_bound=1)
        assert sg.exits == [0]
        assert list(sg.nodes) == [0]

    def test_exclude_masks_candidates(self, scenario_catalog) -> None:
        exclude = over_budget(Budget.of({"cost": 20.0}))
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2, exclude=exclude)
        assert _names(sg.node(0)) == ["Scattering1D"]
        assert "ExpensiveSig" not in sg.summary()

    def test_depth_bound_must_be_positive(self, scenario_catalog) -> None:
        with pytest.raises(ValueError):
            build_supergraph(scenario_catalog, PATH, FEATURE, depth_bound=0)


class TestInfeasible:
    def test_nothing_consumes_input(self, scenario_catalog) -> None:
        cloud = TypeSpec(kind="pointcloud", shape=("N", 3))
        with pytest.raises(NoCandidatesError) as info:
            build_supergraph(scenario_catalog, cloud, FEATURE, depth_bound=2)
        assert info.value.stage == 1
        assert info.value.in_type == cloud

    def test_no_exit(self, pointcloud_catalog) -> None:
        cloud = TypeSpec(kind="pointcloud", shape=("N", 3))
        with pytest.raises(NoCandidatesError, match="depth <= 1") as info:
            build_supergraph(pointcloud_catalog, cloud, FEATURE, depth_bound=1)
        assert info.value.in_type == cloud

    def test_everything_masked(self, scenario_catalog) -> None:
        with pytest.raises(NoCandidatesError):
            build_supergraph(
                scenario_catalog, PATH, FEATURE, 2, exclude=over_budget(Budget.of({"cost": 4.0}))
            )


class TestFanIn:
    def test_combinators_join_stages(self, graph_catalog) -> None:
        sg = build_supergraph(graph_catalog, PATH, FEATURE, depth_bound=3)
        fan_in = [sg.node(n) for n in sg.order() if sg.node(n).is_fan_in]
        assert fan_in
        assert {name for node in fan_in for name in _names(node)} == {"Concat", "Pair"}
        for node in fan_in:
            stages = [sg.node(s).stage for s in node.inputs if s is not None]
            assert node.stage - 1 in stages
            assert all(s < node.node_id for s in node.inputs if s is not None)

    def test_concat_output_is_a_sum(self, graph_catalog) -> None:
        sg = build_supergraph(graph_catalog, PATH, FEATURE, depth_bound=3)
        concat = [sg.node(n) for n in sg.order() if _names(sg.node(n)) == ["Concat"]]
        assert all(node.out_type.shape == ("C+C",) for node in concat)
        assert all(node.node_id in sg.exits for node in concat)

    def test_max_fan_in(self, graph_catalog) -> None:
        sg = build_supergraph(graph_catalog, PATH, FEATURE, depth_bound=3, max_fan_in=1)
        assert not any(node.is_fan_in for node in sg.nodes.values())


class TestStates:
    def test_valid_chain(self, scenario_catalog) -> None:
        node = build_supergraph(scenario_catalog, PATH, FEATURE, 2).node(0)
        for state in (NodeState.mixing, NodeState.annealed, NodeState.pruned, NodeState.decoded):
            node.transition(state)
        assert node.state == NodeState.decoded

    def test_invalid_transition(self, scenario_catalog) -> None:
        node = build_supergraph(scenario_catalog, PATH, FEATURE, 2).node(0)
        with pytest.raises(InvalidTransitionError):
            node.transition(NodeState.pruned)
        node.transition(NodeState.decoded)
        with pytest.raises(InvalidTransitionError):
            node.transition(NodeState.mixing)

    def test_remove_keeps_logits_aligned(self, scenario_catalog) -> None:
        node = build_supergraph(scenario_catalog, PATH, FEATURE, 2).node(0)
        node.logits = node.logits + [1.0, 2.0]
        node.remove(["Scattering1D"])
        assert _names(node) == ["ExpensiveSig"]
        assert node.logits.tolist() == [2.0]

    def test_weights_follow_temperature(self, scenario_catalog) -> None:
        sg = build_supergraph(scenario_catalog, PATH, FEATURE, 2)
        node = sg.node(0)
        node.logits = np.array([0.0, np.log(3.0)])
        np.testing.assert_allclose(node.weights(1.0), [0.25, 0.75])
        np.testing.assert_allclose(node.weights(0.5), [0.1, 0.9])
        assert sg.node(1).weights(1.0).size == 0
        sg.route_logits = np.zeros(len(sg.exits))
        np.testing.assert_allclose(sg.route_weights(0.1), [0.5, 0.5])
