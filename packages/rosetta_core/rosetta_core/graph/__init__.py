"""rosetta_core.graph -- typed graph IR.

Every operator is declared with typed inputs and output; graphs are built by
unifying those types, so a well-formed graph is dimensionally and
semantically valid by construction.

Modules
-------
ir_types         TypeSpec, dimension terms, StrictBaseModel
unify            Bindings (union-find), unify, compatible
operators        Operator records, OperatorDecl, executor protocol
catalog          Catalog: frozen snapshot with a reverse kind index
graph_model      Graph / Node: add_node, validate, execute, export
graph_spec       GraphSpec pydantic export models
cost             Budget, cost and stability aggregation
introspection    Deterministic graph explanation
"""

from rosetta_core.graph.ir_types import (
    DEFAULT_KINDS,
    DimExpr,
    StrictBaseModel,
    TypeSpec,
    as_type,
)
from rosetta_core.graph.unify import Bindings, Compatibility, compatible, unify
from rosetta_core.graph.operators import (
    BaseExecutor,
    FunctionExecutor,
    Operator,
    OperatorDecl,
    OperatorExecutor,
)
from rosetta_core.graph.catalog import Catalog, LoadReport
from rosetta_core.graph.graph_model import Graph, Node
from rosetta_core.graph.graph_spec import GraphEdgeSpec, GraphNodeSpec, GraphSpec
from rosetta_core.graph.cost import UNKNOWN, Budget, aggregate, aggregate_all
from rosetta_core.graph.introspection import explain_graph

__all__ = [
    "DEFAULT_KINDS",
    "DimExpr",
    "StrictBaseModel",
    "TypeSpec",
    "as_type",
    "Bindings",
    "Compatibility",
    "compatible",
    "unify",
    "BaseExecutor",
    "FunctionExecutor",
    "Operator",
    "OperatorDecl",
    "OperatorExecutor",
    "Catalog",
    "LoadReport",
    "Graph",
    "Node",
    "GraphEdgeSpec",
    "GraphNodeSpec",
    "GraphSpec",
    "UNKNOWN",
    "Budget",
    "aggregate",
    "aggregate_all",
    "explain_graph",
]
