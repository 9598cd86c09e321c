"""
rosetta_core.api.errors

Typed exceptions for catalog loading, graph construction and search.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from rosetta_core.graph.graph_model import Graph
    from rosetta_core.graph.ir_types import TypeSpec


class RosettaError(Exception):
    """Base Rosetta error."""


class MalformedSignatureError(RosettaError):
    """A catalog entry declares an unusable signature.

    Fatal to that entry only; catalog loading continues with the rest.
    """

    def __init__(self, name: str, reason: str):
        super().__init__(f"Operator '{name}' has a malformed signature: {reason}")
        self.name = name
        self.reason = reason


class MalformedTypeAliasError(MalformedSignatureError):
    """A named type in a catalog registry cannot be defined."""

    def __init__(self, alias: str, reason: str):
        RosettaError.__init__(self, f"Type alias '{alias}' is malformed: {reason}")
        self.name = alias
        self.reason = reason


class DuplicateNameError(RosettaError):
    def __init__(self, name: str):
        super().__init__(f"Operator '{name}' is already registered")
        self.name = name


class CatalogFrozenError(RosettaError):
    pass


class TypeCheckError(RosettaError):
    """An input slot of an operator does not accept the value wired into it.

    Attributes
    ----------
    slot_index : int
        Position in the operator's ``in_types``.
    expected : TypeSpec, optional
        Declared slot type (after symbol freshening); None for structural
        errors such as arity mismatches or cycles.
    actual : TypeSpec, optional
        Resolved type of the node feeding the slot.
    node_id : int, optional
        Node being checked, when known (``validate`` reports it).
    """

    def __init__(
        self,
        slot_index: int,
        expected: Optional["TypeSpec"],
        actual: Optional["TypeSpec"],
        node_id: Optional[int] = None,
        reason: str = "",
    ):
        where = f"node {node_id}, " if node_id is not None else ""
        msg = f"Type check failed at {where}slot {slot_index}: expected {expected}, got {actual}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.slot_index = slot_index
        self.expected = expected
        self.actual = actual
        self.node_id = node_id
        self.reason = reason


class NoCandidatesError(RosettaError):
    """A supergraph position has no type-compatible operator.

    Attributes
    ----------
    stage : int, optional
        Stage at which the search request became infeasible.
    in_type : TypeSpec, optional
        Type the search was asked to start from.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[int] = None,
        in_type: Optional["TypeSpec"] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.in_type = in_type


class SearchInfeasibleError(RosettaError):
    """Decoding could not bring the graph within budget.

    Carries the best-effort graph and its actual costs so the caller can decide.
    """

    def __init__(
        self,
        message: str,
        graph: Optional["Graph"] = None,
        costs: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.graph = graph
        self.costs = costs or {}
