"""rosetta_core.graph.graph_spec
================================

Pydantic v2 models for exporting a typed Rosetta network.

Classes
-------
GraphNodeSpec   One node (graph input or operator instance) with its resolved type
GraphEdgeSpec   Directed edge into a specific input slot
GraphSpec       Complete graph export (serializable, re-loadable)

The export is self-contained: every node carries its resolved type, so an
external component can serialize, visualize or re-execute the graph without
re-querying the catalog.  ``Graph.from_spec`` re-checks an export against a
catalog before use.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from rosetta_core.graph.ir_types import StrictBaseModel, TypeSpec


class GraphNodeSpec(StrictBaseModel):
    """One node in the exported DAG.

    Attributes
    ----------
    node_id : int
        Unique, ascending in creation order.
    name : str
        Input name for graph inputs, operator name otherwise.
    operator : str, optional
        Catalog operator name; ``None`` for graph inputs.
    inputs : list[int]
        Ordered source node ids, one per operator input slot.
    resolved_type : TypeSpec
        Output type after symbol resolution.
    params : dict
        Parameter overrides (trained values) for this instance.
    inserted_adapter : bool
        True when the node was inserted automatically to bridge a slot.
    """

    node_id: int
    name: str
    operator: Optional[str] = None
    inputs: List[int] = Field(default_factory=list)
    resolved_type: TypeSpec
    params: Dict[str, Any] = Field(default_factory=dict)
    inserted_adapter: bool = False


class GraphEdgeSpec(StrictBaseModel):
    """Directed edge ``source -> target`` feeding input ``slot`` of the target."""

    source: int
    target: int
    slot: int = 0


class GraphSpec(StrictBaseModel):
    """Complete exported graph.

    Attributes
    ----------
    graph_id : str
        Identifier of the graph.
    nodes : list[GraphNodeSpec]
        Nodes in ascending id order.
    edges : list[GraphEdgeSpec]
        Explicit edges (redundant with ``nodes[*].inputs``; kept for consumers).
    input_ids : list[int]
        Designated graph input nodes.
    output_id : int
        The single output node.
    bindings : dict
        Resolved value of every shape symbol.
    metadata : dict
        Arbitrary metadata (search seed, costs, ...).
    """

    graph_id: str = "graph"
    nodes: List[GraphNodeSpec]
    edges: List[GraphEdgeSpec] = Field(default_factory=list)
    input_ids: List[int] = Field(default_factory=list)
    output_id: int
    bindings: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_unique_node_ids(self) -> "GraphSpec":
        """Validate that all node_ids are unique."""
        seen: set[int] = set()
        for node in self.nodes:
            if node.node_id in seen:
                raise ValueError(f"Duplicate node_id: {node.node_id}")
            seen.add(node.node_id)
        return self

    @model_validator(mode="after")
    def _check_references(self) -> "GraphSpec":
        """Validate that inputs, edges and the output reference existing nodes."""
        node_ids = {n.node_id for n in self.nodes}
        for node in self.nodes:
            for src in node.inputs:
                if src not in node_ids:
                    raise ValueError(
                        f"Node {node.node_id} input {src} not found in nodes. "
                        f"Available: {sorted(node_ids)}"
                    )
        for edge in self.edges:
            if edge.source not in node_ids or edge.target not in node_ids:
                raise ValueError(
                    f"Edge {edge.source}->{edge.target} references a missing node"
                )
        if self.output_id not in node_ids:
            raise ValueError(f"Output node {self.output_id} not found in nodes")
        for nid in self.input_ids:
            if nid not in node_ids:
                raise ValueError(f"Input node {nid} not found in nodes")
        return self
