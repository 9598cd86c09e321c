"""rosetta_core.graph.introspection
===================================

Deterministic text explanation of a typed graph.

Functions
---------
explain_graph   Produce a multi-line text summary of a Graph.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from rosetta_core.graph.cost import aggregate

if TYPE_CHECKING:
    from rosetta_core.graph.graph_model import Graph


def explain_graph(graph: "Graph", metrics: Optional[Iterable[str]] = None) -> str:
    """Return a deterministic text explanation of the graph structure.

    Includes:
    * Graph ID and node/edge counts.
    * Per-node detail in execution order: operator, inputs, resolved type,
      differentiability and whether it was inserted as an adapter.
    * Aggregated metrics (``cost`` and ``lipschitz`` unless given).

    Parameters
    ----------
    graph : Graph
        A graph with an output node.
    metrics : iterable of str, optional
        Metrics to aggregate.

    Returns
    -------
    str
        Multi-line human-readable explanation.
    """
    lines: list[str] = []
    lines.append(f"RosettaNetwork: {graph.graph_id}")
    lines.append("=" * (len(lines[0])))
    lines.append("")

    live = graph.live_node_ids()
    lines.append("Summary")
    lines.append("-------")
    lines.append(f"  Nodes:       {len(graph)} ({len(live)} live)")
    lines.append(f"  Edges:       {len(graph.edges)}")
    lines.append(f"  Inputs:      {', '.join(n.name for n in graph.input_nodes)}")
    lines.append(f"  Output:      {graph.output_node.node_id} : {graph.output_node.resolved_type}")
    lines.append("")

    lines.append("Execution plan (topological order)")
    lines.append("----------------------------------")
    for i, nid in enumerate(graph.topological_order(live)):
        node = graph.node(nid)
        if node.is_input:
            lines.append(f"  {i + 1}. [{nid}] input '{node.name}' : {node.resolved_type}")
            continue
        tags = ["diff" if node.operator.differentiable else "non-diff"]
        if node.inserted_adapter:
            tags.append("adapter")
        srcs = ", ".join(str(s) for s in node.inputs)
        lines.append(
            f"  {i + 1}. [{nid}] {node.name}({srcs}) -> {node.resolved_type} "
            f"({', '.join(tags)})"
        )
    lines.append("")

    lines.append("Aggregates")
    lines.append("----------")
    for metric in metrics if metrics is not None else ("cost", "lipschitz"):
        lines.append(f"  {metric + ':':<12} {aggregate(graph, metric)!r}")
    lines.append("")

    return "\n".join(lines)
