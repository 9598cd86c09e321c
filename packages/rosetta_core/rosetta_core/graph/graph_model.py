"""rosetta_core.graph.graph_model
=================================

Graph: the typed DAG of operator instances (a Rosetta network).

Construction
------------
``add_node(op, inputs)`` unifies each declared input slot of ``op`` with the
resolved type of the node wired into it, threading one binding environment
(union-find over shape symbols) through the whole graph.

* An INCOMPATIBLE slot raises :class:`TypeCheckError`; the graph is left
  untouched (construction is atomic).
* An ADAPTABLE slot gets an adapter node inserted in between.  This is the
  only automatic rewrite the graph performs.

Operator-local shape symbols are freshened per instance, so two instances of
the same operator never share symbols by accident.

Execution
---------
``execute(inputs)`` evaluates the nodes the output depends on in topological
order, ties broken by ascending node id.  Executor failures are re-raised
unchanged with a note naming the failing node.
"""

from __future__ import annotations

import hashlib
import heapq
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from rosetta_core.api.errors import TypeCheckError
from rosetta_core.graph.catalog import Catalog
from rosetta_core.graph.graph_spec import GraphEdgeSpec, GraphNodeSpec, GraphSpec
from rosetta_core.graph.ir_types import TypeSpec, fresh_symbols
from rosetta_core.graph.operators import Operator
from rosetta_core.graph.unify import Bindings, unify_explain, unify_slots

logger = logging.getLogger(__name__)

NodeRef = Union["Node", int]


@dataclass
class Node:
    """One node of a :class:`Graph`.

    Attributes
    ----------
    node_id : int
        Ascending in creation order.
    name : str
        Input name (graph inputs) or operator name.
    operator : Operator, optional
        ``None`` for graph inputs.
    inputs : tuple[int, ...]
        Source node ids, one per input slot.
    resolved_type : TypeSpec
        Output type with the graph's current symbol bindings applied.
    params : dict
        Per-instance parameter overrides.
    inserted_adapter : bool
        True for adapter nodes inserted by ``add_node``.
    """

    node_id: int
    name: str
    operator: Optional[Operator]
    inputs: Tuple[int, ...]
    resolved_type: TypeSpec
    params: Dict[str, Any] = field(default_factory=dict)
    inserted_adapter: bool = False
    # Output type in graph-level symbol names, before resolution.
    template: Optional[TypeSpec] = field(default=None, repr=False)

    @property
    def is_input(self) -> bool:
        return self.operator is None


@dataclass
class _CheckResult:
    errors: List[TypeCheckError]
    bindings: Bindings
    templates: Dict[int, TypeSpec]


class Graph:
    """Typed DAG with designated inputs and exactly one output.

    Usage
    -----
    >>> g = Graph(catalog)
    >>> x = g.add_input("x", TypeSpec(kind="path", shape=("T", 3)))
    >>> spec = g.add_node("FFT", [x])
    >>> feat = g.add_node("SpecPool", [spec])
    >>> g.set_output(feat)
    >>> y = g.execute({"x": batch})
    """

    def __init__(self, catalog: Catalog, graph_id: str = "graph") -> None:
        self.catalog = catalog
        self.graph_id = graph_id
        self.metadata: Dict[str, Any] = {}
        self._nodes: Dict[int, Node] = {}
        self._bindings = Bindings()
        self._next_id = 0
        self._fresh_counter = 0
        self._input_ids: List[int] = []
        self._output_id: Optional[int] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[Node]:
        return [self._nodes[nid] for nid in sorted(self._nodes)]

    def node(self, node_id: int) -> Node:
        return self._nodes[node_id]

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def input_nodes(self) -> List[Node]:
        return [self._nodes[nid] for nid in self._input_ids]

    @property
    def output_node(self) -> Node:
        if self._output_id is None:
            raise ValueError(f"Graph '{self.graph_id}' has no output node")
        return self._nodes[self._output_id]

    @property
    def bindings(self) -> Bindings:
        return self._bindings.copy()

    @property
    def edges(self) -> List[Tuple[int, int, int]]:
        """(source, target, slot) triples in node order."""
        return [
            (src, node.node_id, slot)
            for node in self.nodes
            for slot, src in enumerate(node.inputs)
        ]

    def operator_nodes(self) -> List[Node]:
        return [n for n in self.nodes if not n.is_input]

    def adapter_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.inserted_adapter]

    def _node_id(self, ref: NodeRef) -> int:
        nid = ref.node_id if isinstance(ref, Node) else int(ref)
        if nid not in self._nodes:
            raise KeyError(f"Node {nid} is not part of graph '{self.graph_id}'")
        return nid

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _refresh_types(self) -> None:
        for node in self._nodes.values():
            node.resolved_type = self._bindings.resolve_type(node.template)

    def add_input(self, name: str, type_: TypeSpec) -> Node:
        """Add a designated graph input.  Its symbols are graph-level."""
        if any(self._nodes[i].name == name for i in self._input_ids):
            raise ValueError(f"Duplicate graph input '{name}'")
        nid = self._next_id
        node = Node(
            node_id=nid,
            name=name,
            operator=None,
            inputs=(),
            resolved_type=self._bindings.resolve_type(type_),
            template=type_,
        )
        self._nodes[nid] = node
        self._input_ids.append(nid)
        self._next_id += 1
        return node

    def add_node(
        self,
        op: Union[Operator, str],
        inputs: Sequence[NodeRef],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Node:
        """Instantiate ``op`` on ``inputs``.

        Returns
        -------
        Node
            The new operator node (adapter nodes, if any, precede it).

        Raises
        ------
        TypeCheckError
            If a slot is incompatible and no adapter bridges it.  The graph
            is not modified.
        """
        if isinstance(op, str):
            op = self.catalog.get(op)
        src_ids = [self._node_id(ref) for ref in inputs]
        if len(src_ids) != op.arity:
            raise TypeCheckError(
                slot_index=min(len(src_ids), op.arity),
                expected=None,
                actual=None,
                reason=f"operator '{op.name}' takes {op.arity} inputs, got {len(src_ids)}",
            )

        counter = self._fresh_counter
        b = self._bindings.copy()
        mapping = fresh_symbols([*op.in_types, op.out_type], str(counter))
        counter += 1

        # slot -> (source id or None for a staged adapter, staged adapter)
        wiring: List[Tuple[Optional[int], Optional[Tuple[Operator, int, TypeSpec]]]] = []
        for slot, (slot_type, src_id) in enumerate(zip(op.in_types, src_ids)):
            expected = slot_type.rename(mapping)
            actual = self._nodes[src_id].template
            nb, reason = unify_explain(expected, actual, b)
            if nb is not None:
                b = nb
                wiring.append((src_id, None))
                continue

            bridged = False
            for adapter in self.catalog.adapters():
                amap = fresh_symbols([*adapter.in_types, adapter.out_type], str(counter))
                a_in = adapter.in_types[0].rename(amap)
                a_out = adapter.out_type.rename(amap)
                nb = unify_slots([(a_in, actual), (expected, a_out)], b)
                if nb is not None:
                    counter += 1
                    b = nb
                    wiring.append((None, (adapter, src_id, a_out)))
                    bridged = True
                    break
            if not bridged:
                raise TypeCheckError(
                    slot_index=slot,
                    expected=b.resolve_type(expected),
                    actual=b.resolve_type(actual),
                    reason=reason,
                )

        # Commit
        input_ids: List[int] = []
        for src_id, staged in wiring:
            if staged is None:
                input_ids.append(src_id)
                continue
            adapter, adapter_src, a_out = staged
            aid = self._next_id
            self._nodes[aid] = Node(
                node_id=aid,
                name=adapter.name,
                operator=adapter,
                inputs=(adapter_src,),
                resolved_type=a_out,
                inserted_adapter=True,
                template=a_out,
            )
            self._next_id += 1
            input_ids.append(aid)
            logger.debug(
                f"Inserted adapter '{adapter.name}' as node {aid} "
                f"for '{op.name}' in graph '{self.graph_id}'"
            )

        nid = self._next_id
        out_template = op.out_type.rename(mapping)
        self._nodes[nid] = Node(
            node_id=nid,
            name=op.name,
            operator=op,
            inputs=tuple(input_ids),
            resolved_type=out_template,
            params=dict(params or {}),
            template=out_template,
        )
        self._next_id += 1
        self._fresh_counter = counter
        self._bindings = b
        self._refresh_types()
        return self._nodes[nid]

    def set_output(self, ref: NodeRef) -> Node:
        self._output_id = self._node_id(ref)
        return self._nodes[self._output_id]

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def topological_order(self, node_ids: Optional[Set[int]] = None) -> List[int]:
        """Kahn's algorithm; among ready nodes the smallest id goes first."""
        ids = set(self._nodes) if node_ids is None else set(node_ids)
        in_degree = {nid: 0 for nid in ids}
        users: Dict[int, List[int]] = {nid: [] for nid in ids}
        for nid in ids:
            for src in self._nodes[nid].inputs:
                if src in ids:
                    in_degree[nid] += 1
                    users[src].append(nid)

        ready = [nid for nid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            nid = heapq.heappop(ready)
            order.append(nid)
            for user in users[nid]:
                in_degree[user] -= 1
                if in_degree[user] == 0:
                    heapq.heappush(ready, user)

        if len(order) != len(ids):
            raise TypeCheckError(
                slot_index=-1,
                expected=None,
                actual=None,
                reason=(
                    f"graph '{self.graph_id}' contains a cycle; "
                    f"sorted {len(order)}/{len(ids)} nodes"
                ),
            )
        return order

    def live_node_ids(self) -> Set[int]:
        """Nodes the output depends on (dead branches excluded)."""
        live: Set[int] = set()
        stack = [self.output_node.node_id]
        while stack:
            nid = stack.pop()
            if nid in live:
                continue
            live.add(nid)
            stack.extend(self._nodes[nid].inputs)
        return live

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check(self) -> _CheckResult:
        """Re-derive every binding from scratch and collect all slot errors."""
        errors: List[TypeCheckError] = []
        b = Bindings()
        templates: Dict[int, TypeSpec] = {}

        try:
            order = self.topological_order()
        except TypeCheckError as exc:
            return _CheckResult([exc], b, templates)

        if self._output_id is None:
            errors.append(
                TypeCheckError(-1, None, None, reason="graph has no output node")
            )

        for counter, nid in enumerate(order):
            node = self._nodes[nid]
            if node.is_input:
                templates[nid] = node.template
                continue
            op = node.operator
            mapping = fresh_symbols([*op.in_types, op.out_type], f"v{counter}")
            templates[nid] = op.out_type.rename(mapping)
            if len(node.inputs) != op.arity:
                errors.append(
                    TypeCheckError(
                        min(len(node.inputs), op.arity), None, None, node_id=nid,
                        reason=f"operator '{op.name}' takes {op.arity} inputs, "
                        f"got {len(node.inputs)}",
                    )
                )
                continue
            for slot, (slot_type, src) in enumerate(zip(op.in_types, node.inputs)):
                if src not in templates:
                    errors.append(
                        TypeCheckError(slot, None, None, node_id=nid,
                                       reason=f"input {src} is not an earlier node")
                    )
                    continue
                expected = slot_type.rename(mapping)
                nb, reason = unify_explain(expected, templates[src], b)
                if nb is None:
                    errors.append(
                        TypeCheckError(
                            slot,
                            b.resolve_type(expected),
                            b.resolve_type(templates[src]),
                            node_id=nid,
                            reason=reason,
                        )
                    )
                    continue
                b = nb
        return _CheckResult(errors, b, templates)

    def validate(self) -> List[TypeCheckError]:
        """Re-check every node; an empty list means the graph is well typed."""
        return self._check().errors

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, inputs: Union[Mapping[str, Any], Sequence[Any]]) -> Any:
        """Evaluate the graph on ``inputs``.

        Parameters
        ----------
        inputs : mapping or sequence
            Values keyed by input name, or ordered like ``input_nodes``.

        Returns
        -------
        Any
            Value of the output node.
        """
        values = self.evaluate_nodes(inputs)
        return values[self.output_node.node_id]

    def evaluate_nodes(self, inputs: Union[Mapping[str, Any], Sequence[Any]]) -> Dict[int, Any]:
        live = self.live_node_ids()
        if not isinstance(inputs, Mapping):
            inputs = {self._nodes[nid].name: v for nid, v in zip(self._input_ids, inputs)}

        values: Dict[int, Any] = {}
        for nid in self.topological_order(live):
            node = self._nodes[nid]
            if node.is_input:
                if node.name not in inputs:
                    raise KeyError(f"Missing value for graph input '{node.name}'")
                values[nid] = inputs[node.name]
                continue
            args = [values[src] for src in node.inputs]
            try:
                values[nid] = node.operator.evaluate(args, node.params)
            except Exception as exc:
                exc.add_note(
                    f"while executing node {nid} (operator '{node.name}') "
                    f"in graph '{self.graph_id}'"
                )
                if not hasattr(exc, "node_id"):
                    exc.node_id = nid
                raise
        return values

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def to_spec(self) -> GraphSpec:
        nodes = [
            GraphNodeSpec(
                node_id=n.node_id,
                name=n.name,
                operator=None if n.is_input else n.operator.name,
                inputs=list(n.inputs),
                resolved_type=n.resolved_type,
                params=_jsonable(n.params),
                inserted_adapter=n.inserted_adapter,
            )
            for n in self.nodes
        ]
        edges = [GraphEdgeSpec(source=s, target=t, slot=k) for s, t, k in self.edges]
        return GraphSpec(
            graph_id=self.graph_id,
            nodes=nodes,
            edges=edges,
            input_ids=list(self._input_ids),
            output_id=self.output_node.node_id,
            bindings=self._bindings.as_dict(),
            metadata=_jsonable(self.metadata),
        )

    def export(self) -> Dict[str, Any]:
        """Ordered node list with explicit edges and resolved types."""
        return self.to_spec().model_dump(mode="json")

    def serialize(self) -> Dict[str, Any]:
        """Export plus a SHA-256 digest of the canonical JSON of the nodes."""
        data = self.export()
        graph_json = json.dumps(data["nodes"], sort_keys=True, default=str)
        data["graph_sha256"] = hashlib.sha256(graph_json.encode()).hexdigest()
        data["n_nodes"] = len(data["nodes"])
        data["n_edges"] = len(data["edges"])
        return data

    @classmethod
    def from_spec(cls, spec: Union[GraphSpec, Dict[str, Any]], catalog: Catalog) -> "Graph":
        """Rebuild a graph from an export and re-check it against ``catalog``.

        Raises
        ------
        TypeCheckError
            The first error reported by :meth:`validate`.
        KeyError
            If a node names an operator the catalog does not know.
        """
        if not isinstance(spec, GraphSpec):
            spec = GraphSpec.model_validate(spec)
        graph = cls(catalog, graph_id=spec.graph_id)
        graph.metadata = dict(spec.metadata)
        for ns in sorted(spec.nodes, key=lambda n: n.node_id):
            op = None if ns.operator is None else catalog.get(ns.operator)
            params = _restore_params(op, ns.params) if op is not None else {}
            template = ns.resolved_type
            graph._nodes[ns.node_id] = Node(
                node_id=ns.node_id,
                name=ns.name,
                operator=op,
                inputs=tuple(ns.inputs),
                resolved_type=template,
                params=params,
                inserted_adapter=ns.inserted_adapter,
                template=template,
            )
        graph._input_ids = list(spec.input_ids)
        graph._output_id = spec.output_id
        graph._next_id = max(graph._nodes, default=-1) + 1

        result = graph._check()
        if result.errors:
            raise result.errors[0]
        graph._bindings = result.bindings
        for nid, template in result.templates.items():
            graph._nodes[nid].template = template
        graph._fresh_counter = len(result.templates)
        graph._refresh_types()
        return graph


def _jsonable(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.integer, np.floating)):
        return value.item()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _restore_params(op: Operator, params: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn exported lists back into arrays where the operator default is one."""
    restored: Dict[str, Any] = {}
    for k, v in params.items():
        default = op.params.get(k)
        if isinstance(default, np.ndarray):
            restored[k] = np.asarray(v, dtype=default.dtype)
        else:
            restored[k] = v
    return restored
