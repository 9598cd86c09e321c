"""rosetta_core.search.relaxation
================================

Continuous relaxation of a :class:`Supergraph` and the optimisation loop
that drives it.

Relaxation
----------
Every non-frozen node outputs the softmax(logits / T) weighted sum of its
differentiable candidates' outputs.  Candidate outputs of different sizes are
zero-padded to a common shape before mixing.  A node without differentiable
candidates is *frozen*: it evaluates its first candidate as a fixed operator
and blocks gradient flow upstream.  Exit nodes feed one linear readout head
each; the heads are mixed by route weights.

Loop
----
Each step alternates

(a) operator parameters and readout heads on the training batch;
(b) node and route logits on the validation data, with the budget penalty
    ``lambda * sum_m max(0, E[cost_m] - B_m) / B_m``.

Gradients are chained backwards through the supergraph with each executor's
``vjp``.  Candidate evaluations of one node are dispatched over a thread pool
and gathered in candidate order before anything is updated.

The step counter and current temperature are plain attributes
(``search.step``, ``search.temperature``) so callers can observe and cancel
the loop between steps; the supergraph is decodable after any step.
"""

from __future__ import annotations

import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import torch

from rosetta_core.core.config import SearchConfig
from rosetta_core.core.enums import MetricKind, NodeState
from rosetta_core.graph.cost import UNKNOWN, Budget, CostValue, metric_kind
from rosetta_core.graph.operators import Operator
from rosetta_core.objectives.base import TaskObjective
from rosetta_core.search.schedule import StopSignal, TemperatureSchedule
from rosetta_core.search.supergraph import Supergraph

logger = logging.getLogger(__name__)

Dataset = Tuple[np.ndarray, np.ndarray]
ParamKey = Tuple[int, str]


# ---------------------------------------------------------------------------
# Expected cost under the current weights
# ---------------------------------------------------------------------------


def _node_costs(
    sg: Supergraph, metric: str, temperature: float
) -> Tuple[Dict[int, float], Dict[int, np.ndarray]]:
    expected: Dict[int, float] = {}
    per_candidate: Dict[int, np.ndarray] = {}
    for nid in sg.order():
        node = sg.node(nid)
        if node.frozen:
            expected[nid] = node.deferred()[0].cost_of(metric)
            continue
        costs = np.array([op.cost_of(metric) for op in node.mixing()], dtype=np.float64)
        per_candidate[nid] = costs
        expected[nid] = float(node.weights(temperature) @ costs)
    return expected, per_candidate


def _critical_chain(sg: Supergraph, exit_id: int, node_cost: Mapping[int, float]) -> List[int]:
    dist: Dict[int, float] = {}
    back: Dict[int, Optional[int]] = {}
    for nid in sg.order():
        node = sg.node(nid)
        best, best_src = 0.0, None
        for src in node.inputs:
            if src is not None and dist[src] > best:
                best, best_src = dist[src], src
        dist[nid] = best + node_cost[nid]
        back[nid] = best_src
    chain: List[int] = []
    cur: Optional[int] = exit_id
    while cur is not None:
        chain.append(cur)
        cur = back[cur]
    return chain


def expected_cost_gradient(
    sg: Supergraph,
    metric: str,
    temperature: float,
    kinds: Optional[Mapping[str, MetricKind]] = None,
) -> Tuple[float, Dict[int, np.ndarray], np.ndarray]:
    """Relaxed cost and its gradient w.r.t. the candidate and route weights.

    A node is used with the total route weight of the exits depending on it;
    its cost is the weight-averaged cost of its candidates.

    Returns
    -------
    (value, d_value / d_node_weights, d_value / d_route_weights)
    """
    kind = metric_kind(metric, kinds)
    if kind == MetricKind.lipschitz:
        raise ValueError(f"Metric '{metric}' aggregates multiplicatively; no relaxed gradient")

    node_cost, per_candidate = _node_costs(sg, metric, temperature)
    route = sg.route_weights(temperature)

    members: Dict[int, Iterable[int]] = {}
    for e in sg.exits:
        if kind == MetricKind.critical_path:
            members[e] = _critical_chain(sg, e, node_cost)
        else:
            members[e] = sg.ancestors(e)

    totals = np.array([sum(node_cost[n] for n in members[e]) for e in sg.exits])
    usage: Dict[int, float] = {}
    for r, e in zip(route, sg.exits):
        for n in members[e]:
            usage[n] = usage.get(n, 0.0) + float(r)

    grad_w = {nid: usage.get(nid, 0.0) * costs for nid, costs in per_candidate.items()}
    return float(route @ totals), grad_w, totals


def expected_cost(
    sg: Supergraph,
    metric: str,
    temperature: float,
    kinds: Optional[Mapping[str, MetricKind]] = None,
) -> CostValue:
    """Expected aggregate of ``metric`` under the current mixture weights.

    Lipschitz-kind metrics multiply the weight-averaged candidate bounds along
    each route (maximum across fan-in) and report UNKNOWN when any mixed
    candidate has no bound.
    """
    if metric_kind(metric, kinds) != MetricKind.lipschitz:
        return expected_cost_gradient(sg, metric, temperature, kinds)[0]

    bounds: Dict[Optional[int], CostValue] = {None: 1.0}
    for nid in sg.order():
        node = sg.node(nid)
        if node.frozen:
            own = node.deferred()[0].lipschitz()
        else:
            values = [op.lipschitz() for op in node.mixing()]
            own = None if any(v is None for v in values) else float(
                node.weights(temperature) @ np.array(values)
            )
        upstream = [bounds[s] for s in node.inputs]
        if own is None or any(u is UNKNOWN for u in upstream):
            bounds[nid] = UNKNOWN
        else:
            bounds[nid] = own * max(upstream)
    per_exit = [bounds[e] for e in sg.exits]
    if any(b is UNKNOWN for b in per_exit):
        return UNKNOWN
    return float(sg.route_weights(temperature) @ np.array(per_exit))


def _softmax_backward(w: np.ndarray, grad_w: np.ndarray, temperature: float) -> np.ndarray:
    return w * (grad_w - float(w @ grad_w)) / temperature


# ---------------------------------------------------------------------------
# Optimiser
# ---------------------------------------------------------------------------


class KeyedAdam:
    """``torch.optim.Adam`` over numpy arrays owned by the search loop.

    Each key (a head, an operator parameter, a logit vector) holds a float64
    ``torch.nn.Parameter`` and its own optimizer; ``forget(key)`` drops one
    slot.  Gradients come from the executors' vjps and are written into
    ``.grad`` before ``step()``.  The moment state resets when a key changes
    shape.
    """

    def __init__(self, lr: float) -> None:
        self.lr = lr
        self._slots: Dict[Any, Tuple[torch.nn.Parameter, torch.optim.Adam]] = {}

    def update(self, key: Any, value: np.ndarray, grad: np.ndarray) -> np.ndarray:
        value = np.array(value, dtype=np.float64)
        grad = np.nan_to_num(np.broadcast_to(np.asarray(grad, dtype=np.float64), value.shape))
        slot = self._slots.get(key)
        if slot is None or tuple(slot[0].shape) != value.shape:
            param = torch.nn.Parameter(torch.from_numpy(value.copy()))
            slot = (param, torch.optim.Adam([param], lr=self.lr))
            self._slots[key] = slot
        param, opt = slot
        with torch.no_grad():
            param.copy_(torch.from_numpy(value))
        param.grad = torch.from_numpy(np.ascontiguousarray(grad))
        opt.step()
        return param.detach().numpy().copy()

    def forget(self, key: Any) -> None:
        self._slots.pop(key, None)

    def __contains__(self, key: Any) -> bool:
        return key in self._slots


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


@dataclass
class StepRecord:
    """One entry of :attr:`RelaxationSearch.history`."""

    step: int
    temperature: float
    train_loss: float
    val_loss: float
    penalty: float
    expected_cost: Dict[str, CostValue] = field(default_factory=dict)
    n_candidates: int = 0
    pruned: List[str] = field(default_factory=list)


@dataclass
class _Cache:
    values: Dict[Optional[int], Any]
    args: Dict[int, List[Any]] = field(default_factory=dict)
    outs: Dict[int, List[np.ndarray]] = field(default_factory=dict)
    padded: Dict[int, List[np.ndarray]] = field(default_factory=dict)
    weights: Dict[int, np.ndarray] = field(default_factory=dict)
    feats: Dict[int, np.ndarray] = field(default_factory=dict)
    preds: List[np.ndarray] = field(default_factory=list)
    route: np.ndarray = field(default_factory=lambda: np.zeros(0))
    pred: Optional[np.ndarray] = None


def _add(acc: Dict[Any, np.ndarray], key: Any, grad: np.ndarray) -> None:
    if key in acc:
        acc[key] = acc[key] + grad
    else:
        acc[key] = grad


def _unpad(grad: np.ndarray, out: np.ndarray) -> np.ndarray:
    """Cut a padded gradient back to the candidate's own output shape."""
    if grad.ndim == out.ndim:
        return grad[tuple(slice(0, s) for s in out.shape)]
    flat = grad.reshape(grad.shape[0], -1)
    return flat[:, : out[0].size].reshape(out.shape)


class RelaxationSearch:
    """Optimisation loop over a supergraph.

    Parameters
    ----------
    supergraph : Supergraph
        Output of the supergraph builder; its logits are owned by this loop.
    objective : TaskObjective
        Training loss and validation metric.
    train_data, val_data : (X, y)
        Arrays with a leading batch axis; fixed order.
    budget : Budget, optional
        Limits felt through the relaxed penalty.
    config : SearchConfig, optional
    seed : int
        Seed of the loop's ``numpy.random.Generator``.
    stop : StopSignal, optional
        External stop signal; ``config.steps`` always bounds the loop.
    on_step : callable, optional
        ``on_step(search)`` after every completed step.
    """

    def __init__(
        self,
        supergraph: Supergraph,
        objective: TaskObjective,
        train_data: Dataset,
        val_data: Dataset,
        budget: Optional[Budget] = None,
        config: Optional[SearchConfig] = None,
        seed: int = 0,
        stop: Optional[StopSignal] = None,
        on_step: Optional[Callable[["RelaxationSearch"], None]] = None,
    ) -> None:
        self.sg = supergraph
        self.objective = objective
        self.config = config or SearchConfig()
        self.budget = Budget.of(budget)
        self.rng = np.random.default_rng(seed)
        self.stop = stop or StopSignal(max_seconds=self.config.max_seconds)
        self.on_step = on_step

        self.X_train, self.y_train = np.asarray(train_data[0]), np.asarray(train_data[1])
        self.X_val, self.y_val = np.asarray(val_data[0]), np.asarray(val_data[1])
        self.out_dim = max(
            objective.output_dim(self.y_train), objective.output_dim(self.y_val)
        )

        self.schedule = TemperatureSchedule(
            initial=self.config.initial_temperature,
            final=self.config.final_temperature,
            steps=self.config.steps,
            kind=self.config.schedule,
        )
        self.step = 0
        self.temperature = self.schedule(0)
        self.history: List[StepRecord] = []
        self.stopped_early = False

        self.params: Dict[ParamKey, Dict[str, np.ndarray]] = {}
        for node in self.sg.nodes.values():
            for op in node.candidates:
                trainable = op.trainable_params()
                if trainable:
                    self.params[(node.node_id, op.name)] = trainable
            if self.config.logit_init_scale > 0 and node.logits.size:
                node.logits = self.rng.normal(0.0, self.config.logit_init_scale, node.logits.size)
        if self.config.logit_init_scale > 0 and self.sg.route_logits.size:
            self.sg.route_logits = self.rng.normal(
                0.0, self.config.logit_init_scale, self.sg.route_logits.size
            )

        self.heads: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        self._widths: Dict[int, Tuple[int, ...]] = {}
        self._weight_opt = KeyedAdam(self.config.weight_lr)
        self._arch_opt = KeyedAdam(self.config.arch_lr)
        self._pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Evaluation helpers
    # ------------------------------------------------------------------

    def node_params(self, node_id: int, op_name: str) -> Dict[str, np.ndarray]:
        """Trained parameter overrides of one candidate (copies)."""
        return {k: v.copy() for k, v in self.params.get((node_id, op_name), {}).items()}

    def _map(self, fn: Callable[[Any], Any], items: Sequence[Any]) -> List[Any]:
        # Barrier: every result is gathered, in order, before returning.
        if self._pool is None or len(items) < 2:
            return [fn(item) for item in items]
        return list(self._pool.map(fn, items))

    def _evaluate(self, node_id: int, args: List[Any], op: Operator) -> Any:
        try:
            return op.evaluate(args, self.params.get((node_id, op.name)))
        except Exception as exc:
            exc.add_note(
                f"while evaluating candidate '{op.name}' at supergraph node {node_id}"
            )
            if not hasattr(exc, "node_id"):
                exc.node_id = node_id
            raise

    def _vjp(self, node_id: int, args: List[Any], job: Tuple[Operator, np.ndarray, np.ndarray]):
        op, out, grad = job
        try:
            return op.vjp(args, self.params.get((node_id, op.name), {}), out, grad)
        except Exception as exc:
            exc.add_note(f"while differentiating '{op.name}' at supergraph node {node_id}")
            if not hasattr(exc, "node_id"):
                exc.node_id = node_id
            raise

    def _align(self, node_id: int, outs: List[Any]) -> List[np.ndarray]:
        arrays = [np.asarray(o, dtype=np.float64) for o in outs]
        if len({a.ndim for a in arrays}) > 1:
            arrays = [a.reshape(a.shape[0], -1) for a in arrays]
        target = tuple(max(dims) for dims in zip(*(a.shape[1:] for a in arrays)))
        known = self._widths.get(node_id)
        if known is not None and len(known) == len(target):
            target = tuple(max(a, b) for a, b in zip(known, target))
        self._widths[node_id] = target
        return [
            np.pad(a, [(0, 0)] + [(0, t - s) for s, t in zip(a.shape[1:], target)])
            for a in arrays
        ]

    def _head(self, exit_id: int, width: int) -> Tuple[np.ndarray, np.ndarray]:
        if exit_id not in self.heads:
            W = self.rng.normal(0.0, self.config.head_init_scale, (width, self.out_dim))
            self.heads[exit_id] = (W, np.zeros(self.out_dim))
        W, b = self.heads[exit_id]
        if W.shape[0] != width:
            raise ValueError(
                f"Exit {exit_id} feature width changed from {W.shape[0]} to {width}"
            )
        return W, b

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def forward(self, X: np.ndarray) -> _Cache:
        T = self.temperature
        c = _Cache(values={None: X})
        for nid in self.sg.order():
            node = self.sg.node(nid)
            args = [c.values[s] for s in node.inputs]
            c.args[nid] = args
            if node.frozen:
                c.values[nid] = self._evaluate(nid, args, node.deferred()[0])
                continue
            outs = self._map(partial(self._evaluate, nid, args), node.mixing())
            padded = self._align(nid, outs)
            w = node.weights(T)
            c.outs[nid] = [np.asarray(o, dtype=np.float64) for o in outs]
            c.padded[nid] = padded
            c.weights[nid] = w
            c.values[nid] = np.tensordot(w, np.stack(padded), axes=1)

        c.route = self.sg.route_weights(T)
        for e in self.sg.exits:
            value = np.asarray(c.values[e], dtype=np.float64)
            feat = value.reshape(value.shape[0], -1)
            W, b = self._head(e, feat.shape[1])
            c.feats[e] = feat
            c.preds.append(feat @ W + b)
        c.pred = np.tensordot(c.route, np.stack(c.preds), axes=1)
        return c

    def backward(self, y: np.ndarray, c: _Cache, train: bool) -> Tuple[float, Dict[str, Any]]:
        """Loss and gradients for the current cache.

        ``train=True`` collects operator-parameter and head gradients;
        otherwise node and route logit gradients.
        """
        T = self.temperature
        loss = self.objective(y, c.pred)
        g_pred = self.objective.gradient(y, c.pred)

        node_grads: Dict[int, np.ndarray] = {}
        head_grads: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        route_grad_w = np.array([float(np.sum(g_pred * p)) for p in c.preds])
        for r, e in zip(c.route, self.sg.exits):
            W, _ = self.heads[e]
            gp = r * g_pred
            if train:
                head_grads[e] = (c.feats[e].T @ gp, gp.sum(axis=0))
            gf = gp @ W.T
            _add(node_grads, e, gf.reshape(np.shape(c.values[e])))

        logit_grads: Dict[int, np.ndarray] = {}
        param_grads: Dict[ParamKey, Dict[str, np.ndarray]] = {}
        for nid in reversed(self.sg.order()):
            g = node_grads.pop(nid, None)
            node = self.sg.node(nid)
            if g is None or node.frozen:
                continue
            w = c.weights[nid]
            if not train:
                gw = np.array([float(np.sum(g * p)) for p in c.padded[nid]])
                logit_grads[nid] = _softmax_backward(w, gw, T)
            has_upstream = any(s is not None for s in node.inputs)
            if not (train or has_upstream):
                continue
            jobs = [
                (op, out, wi * _unpad(g, out))
                for op, out, wi in zip(node.mixing(), c.outs[nid], w)
            ]
            results = self._map(partial(self._vjp, nid, c.args[nid]), jobs)
            for (op, _, _), (in_grads, p_grads) in zip(jobs, results):
                if train and p_grads:
                    bucket = param_grads.setdefault((nid, op.name), {})
                    for name, pg in p_grads.items():
                        _add(bucket, name, np.asarray(pg, dtype=np.float64))
                for src, gi in zip(node.inputs, in_grads):
                    if src is not None and gi is not None:
                        _add(node_grads, src, np.asarray(gi, dtype=np.float64))

        grads: Dict[str, Any] = {}
        if train:
            grads["heads"] = head_grads
            grads["params"] = param_grads
        else:
            grads["logits"] = logit_grads
            grads["route"] = _softmax_backward(c.route, route_grad_w, T)
        return loss, grads

    def budget_penalty(self) -> Tuple[float, Dict[int, np.ndarray], np.ndarray, Dict[str, CostValue]]:
        """Relaxed penalty, its logit gradients and the expected costs."""
        T = self.temperature
        lam = self.config.budget_penalty
        kinds = self.config.metric_kinds
        total = 0.0
        grad_w: Dict[int, np.ndarray] = {}
        grad_r = np.zeros(len(self.sg.exits))
        costs: Dict[str, CostValue] = {}
        for metric in self.budget.metrics:
            if metric_kind(metric, kinds) == MetricKind.lipschitz:
                costs[metric] = expected_cost(self.sg, metric, T, kinds)
                continue
            value, dw, dr = expected_cost_gradient(self.sg, metric, T, kinds)
            costs[metric] = value
            limit = self.budget[metric]
            if value <= limit:
                continue
            coef = lam / limit
            total += lam * (value - limit) / limit
            for nid, g in dw.items():
                _add(grad_w, nid, coef * g)
            grad_r = grad_r + coef * dr

        logit_grads = {
            nid: _softmax_backward(self.sg.node(nid).weights(T), g, T)
            for nid, g in grad_w.items()
        }
        route_grads = _softmax_backward(self.sg.route_weights(T), grad_r, T)
        return total, logit_grads, route_grads, costs

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def _batch(self) -> Dataset:
        n = self.X_train.shape[0]
        bs = self.config.batch_size
        if bs is None or bs >= n:
            return self.X_train, self.y_train
        idx = self.rng.choice(n, size=bs, replace=False)
        return self.X_train[idx], self.y_train[idx]

    def _update_weights(self, grads: Dict[str, Any]) -> None:
        for e, (gW, gb) in grads["heads"].items():
            W, b = self.heads[e]
            self.heads[e] = (
                self._weight_opt.update(("head", e, "W"), W, gW),
                self._weight_opt.update(("head", e, "b"), b, gb),
            )
        for key, pgrads in grads["params"].items():
            params = self.params.get(key)
            if params is None:
                continue
            for name, g in pgrads.items():
                if name in params:
                    params[name] = self._weight_opt.update(("param", key, name), params[name], g)

    def _update_architecture(
        self,
        grads: Dict[str, Any],
        penalty_logits: Mapping[int, np.ndarray],
        penalty_route: np.ndarray,
    ) -> None:
        for nid in self.sg.order():
            node = self.sg.node(nid)
            if node.frozen or node.logits.size < 2:
                continue
            g = grads["logits"].get(nid, np.zeros_like(node.logits))
            if nid in penalty_logits:
                g = g + penalty_logits[nid]
            node.logits = self._arch_opt.update(("logit", nid), node.logits, g)
        if self.sg.route_logits.size > 1:
            self.sg.route_logits = self._arch_opt.update(
                ("route",), self.sg.route_logits, grads["route"] + penalty_route
            )

    def prune(self) -> List[str]:
        """Drop candidates and exits whose weight fell below the threshold."""
        T = self.temperature
        threshold = self.config.prune_threshold
        removed: List[str] = []

        for nid in self.sg.order():
            node = self.sg.node(nid)
            if node.frozen or node.state == NodeState.decoded:
                continue
            w = node.weights(T)
            mixing = node.mixing()
            drop = [op.name for op, wi in zip(mixing, w) if wi < threshold]
            if len(drop) == len(mixing):
                keep = mixing[int(np.argmax(w))].name
                drop = [n for n in drop if n != keep]
            if not drop:
                continue
            node.remove(drop)
            self._arch_opt.forget(("logit", nid))
            for name in drop:
                self.params.pop((nid, name), None)
            removed.extend(f"{nid}:{name}" for name in drop)
            node.transition(NodeState.pruned)
            if len(node.candidates) == 1:
                node.chosen = node.candidates[0].name
                node.transition(NodeState.decoded)

        if len(self.sg.exits) > 1:
            r = self.sg.route_weights(T)
            drop_exits = [e for e, ri in zip(self.sg.exits, r) if ri < threshold]
            if len(drop_exits) == len(self.sg.exits):
                best = self.sg.exits[int(np.argmax(r))]
                drop_exits = [e for e in drop_exits if e != best]
            if drop_exits:
                self.sg.remove_exits(drop_exits)
                self._arch_opt.forget(("route",))
                removed.extend(f"exit:{e}" for e in drop_exits)
                live = set()
                for e in self.sg.exits:
                    live |= self.sg.ancestors(e)
                for nid in [n for n in self.sg.nodes if n not in live]:
                    del self.sg.nodes[nid]
                    for key in [k for k in self.params if k[0] == nid]:
                        del self.params[key]
                for e in drop_exits:
                    self.heads.pop(e, None)
        return removed

    def run_step(self) -> StepRecord:
        """One alternation: weights on train data, then logits on val data."""
        X, y = self._batch()
        cache = self.forward(X)
        train_loss, grads = self.backward(y, cache, train=True)
        self._update_weights(grads)

        cache = self.forward(self.X_val)
        val_loss, grads = self.backward(self.y_val, cache, train=False)
        penalty, p_logits, p_route, costs = self.budget_penalty()
        self._update_architecture(grads, p_logits, p_route)

        if self.step > 0:
            for node in self.sg.nodes.values():
                if node.state == NodeState.mixing:
                    node.transition(NodeState.annealed)

        pruned: List[str] = []
        done = self.step + 1
        if done > self.config.warmup_steps and done % self.config.prune_every == 0:
            pruned = self.prune()
            if pruned:
                logger.debug(f"Step {self.step}: pruned {pruned}")

        return StepRecord(
            step=self.step,
            temperature=self.temperature,
            train_loss=train_loss,
            val_loss=val_loss,
            penalty=penalty,
            expected_cost=costs,
            n_candidates=self.sg.n_candidates(),
            pruned=pruned,
        )

    def run(self) -> List[StepRecord]:
        """Run until ``config.steps`` or the stop signal fires."""
        self.stop.start()
        for node in self.sg.nodes.values():
            if node.state == NodeState.masked:
                node.transition(NodeState.mixing)

        workers = self.config.max_workers
        pool_ctx = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rosetta-eval")
            if workers > 1 else contextlib.nullcontext()
        )
        with pool_ctx as pool:
            self._pool = pool
            try:
                while self.step < self.config.steps:
                    if self.stop.should_stop(self.step):
                        self.stopped_early = True
                        logger.info(
                            f"Relaxation stopped at step {self.step} ({self.stop.reason})"
                        )
                        break
                    self.temperature = self.schedule(self.step)
                    record = self.run_step()
                    self.history.append(record)
                    logger.debug(
                        f"Step {record.step}: T={record.temperature:.4f} "
                        f"train={record.train_loss:.5g} val={record.val_loss:.5g} "
                        f"penalty={record.penalty:.4g}"
                    )
                    self.step += 1
                    if self.on_step is not None:
                        self.on_step(self)
            finally:
                self._pool = None

        logger.info(
            f"Relaxation finished after {self.step} steps "
            f"(T={self.temperature:.4f}, {self.sg.n_candidates()} candidates left)"
        )
        return self.history
