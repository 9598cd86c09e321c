"""Shared pytest fixtures for rosetta_core tests.

The toy executors below are small numpy functions with hand-written
vector-Jacobian products; values carry a leading batch axis.
"""

from __future__ import annotations

from typing import Dict, List

import numpy as np
import pytest

from rosetta_core.graph.catalog import Catalog
from rosetta_core.graph.ir_types import TypeSpec
from rosetta_core.graph.operators import FunctionExecutor, Operator

PATH = TypeSpec(kind="path", shape=("T", "C"))
SPECTRUM = TypeSpec(kind="spectrum", shape=("F", "C"))
FEATURE = TypeSpec(kind="feature", shape=("D",))


# ---------------------------------------------------------------------------
# Toy executors
# ---------------------------------------------------------------------------


def _fft(inputs, params):
    return np.abs(np.fft.rfft(np.asarray(inputs[0], dtype=np.float64), axis=1))


def _spec_pool(inputs, params):
    return np.asarray(inputs[0]).mean(axis=1)


def _scatter(inputs, params):
    x = np.asarray(inputs[0])
    return np.mean(x * x, axis=1)


def _scatter_vjp(inputs, params, output, grad):
    x = np.asarray(inputs[0])
    return [grad[:, None, :] * 2.0 * x / x.shape[1]], {}


def _expensive(inputs, params):
    x = np.asarray(inputs[0])
    return np.concatenate([x.mean(axis=1), (x * x).mean(axis=1)], axis=1)


def _expensive_vjp(inputs, params, output, grad):
    x = np.asarray(inputs[0])
    c = x.shape[2]
    g1, g2 = grad[:, None, :c], grad[:, None, c:]
    return [(g1 + g2 * 2.0 * x) / x.shape[1]], {}


def _mean_abs(inputs, params):
    return np.mean(np.abs(np.asarray(inputs[0])), axis=1)


def _gain(inputs, params):
    return np.asarray(inputs[0]) * params["scale"]


def _gain_vjp(inputs, params, output, grad):
    x = np.asarray(inputs[0])
    return [grad * params["scale"]], {"scale": np.array([np.sum(grad * x)])}


def _concat(inputs, params):
    return np.concatenate([np.asarray(v) for v in inputs], axis=1)


def _concat_vjp(inputs, params, output, grad):
    widths = [np.asarray(v).shape[1] for v in inputs]
    cuts = np.cumsum(widths)[:-1]
    return list(np.split(grad, cuts, axis=1)), {}


def _identity(inputs, params):
    return inputs[0]


def _identity_vjp(inputs, params, output, grad):
    return [grad], {}


def _make_op(name, in_types, out_type, fn, vjp=None, cost=None, **kwargs) -> Operator:
    return Operator(
        name=name,
        in_types=tuple(in_types),
        out_type=out_type,
        differentiable=vjp is not None,
        cost=cost or {},
        executor=FunctionExecutor(fn, vjp=vjp),
        **kwargs,
    )


def _scenario_operators() -> List[Operator]:
    """FFT / Scattering1D / ExpensiveSig / SpecPool."""
    return [
        _make_op("FFT", [PATH], SPECTRUM, _fft, cost={"cost": 10.0}, stability=1.0),
        _make_op("Scattering1D", [PATH], TypeSpec(kind="feature", shape=("C",)),
                _scatter, _scatter_vjp, cost={"cost": 5.0}),
        _make_op("ExpensiveSig", [PATH], TypeSpec(kind="feature", shape=("K",)),
                _expensive, _expensive_vjp, cost={"cost": 30.0}),
        _make_op("SpecPool", [SPECTRUM], TypeSpec(kind="feature", shape=("C",)),
                _spec_pool, cost={"cost": 3.0}, stability=0.5),
    ]


def _build_catalog(ops: List[Operator]) -> Catalog:
    catalog = Catalog()
    for op in ops:
        catalog.register(op)
    return catalog.freeze()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_op():
    """Factory for operators backed by a FunctionExecutor."""
    return _make_op


@pytest.fixture
def build_catalog():
    """Factory registering operators into a frozen catalog."""
    return _build_catalog


@pytest.fixture
def scenario_operators() -> List[Operator]:
    return _scenario_operators()


@pytest.fixture
def scenario_catalog() -> Catalog:
    return _build_catalog(_scenario_operators())


@pytest.fixture
def graph_catalog() -> Catalog:
    """Scenario operators plus an adapter, combinators and a trainable op."""
    seq = TypeSpec(kind="sequence", shape=("T", "C"))
    ops = _scenario_operators() + [
        _make_op("SeqToPath", [seq], PATH, _identity, _identity_vjp,
                cost={"cost": 1.0}, adapter=True, stability=1.0),
        _make_op("Concat",
                [TypeSpec(kind="feature", shape=("A",)), TypeSpec(kind="feature", shape=("B",))],
                TypeSpec(kind="feature", shape=("A+B",)),
                _concat, _concat_vjp, cost={"cost": 1.0, "latency": 1.0}, stability=1.0),
        _make_op("Pair",
                [TypeSpec(kind="feature", shape=("D",)), TypeSpec(kind="feature", shape=("D",))],
                TypeSpec(kind="feature", shape=("D",)),
                _concat, cost={"cost": 1.0}),
        _make_op("Gain", [FEATURE], FEATURE, _gain, _gain_vjp,
                cost={"cost": 1.0, "latency": 2.0}, params={"scale": np.ones(1)}),
    ]
    return _build_catalog(ops)


@pytest.fixture
def insertion_catalog() -> Catalog:
    """One position with a differentiable and a non-differentiable candidate."""
    return _build_catalog([
        _make_op("Scattering1D", [PATH], TypeSpec(kind="feature", shape=("C",)),
                _scatter, _scatter_vjp, cost={"cost": 5.0}),
        _make_op("MeanAbs", [PATH], TypeSpec(kind="feature", shape=("C",)),
                _mean_abs, cost={"cost": 6.0}),
    ])


@pytest.fixture
def pointcloud_catalog() -> Catalog:
    return _build_catalog([
        _make_op("VietorisRips", [TypeSpec(kind="pointcloud", shape=("N", 3))],
                TypeSpec(kind="barcode", shape=("M", 2)),
                lambda inputs, params: np.zeros((len(inputs[0]), 4, 2)),
                cost={"cost": 4.0}),
    ])


def _make_split(rng: np.random.Generator, n: int, target: str):
    X = rng.normal(size=(n, 16, 3))
    if target == "mean_abs":
        y = np.abs(X).mean(axis=(1, 2))
    else:
        y = (X * X).mean(axis=(1, 2))
    return X, y + 0.001 * rng.normal(size=n)


@pytest.fixture
def regression_data() -> Dict[str, tuple]:
    rng = np.random.default_rng(7)
    return {"train": _make_split(rng, 48, "energy"), "val": _make_split(rng, 24, "energy")}


@pytest.fixture
def mean_abs_data() -> Dict[str, tuple]:
    rng = np.random.default_rng(11)
    return {"train": _make_split(rng, 60, "mean_abs"), "val": _make_split(rng, 30, "mean_abs")}


@pytest.fixture
def classification_data() -> Dict[str, tuple]:
    rng = np.random.default_rng(3)
    X = rng.normal(size=(72, 16, 3)) * rng.uniform(0.5, 1.5, size=(72, 1, 1))
    energy = (X * X).mean(axis=(1, 2))
    y = (energy > np.median(energy)).astype(np.int64)
    return {"train": (X[:48], y[:48]), "val": (X[48:], y[48:])}
