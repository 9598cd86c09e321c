"""rosetta_core.graph.operators
===============================

Operator records, declarations and the executor call contract.

An :class:`Operator` is the immutable, catalog-registered description of an
atom, combinator or adapter.  The numerical work is delegated to an opaque
executor object; the core only relies on the contract below.

Executor contract
-----------------
* ``evaluate(inputs, params) -> value``  (required)
* ``vjp(inputs, params, output, grad_output) -> (input_grads, param_grads)``
  (required when the operator is declared differentiable and takes part in
  the relaxation search)
* ``lipschitz_bound(params) -> float | None``  (optional stability estimator)

Design rules
------------
* Executors accept ordered input lists and a params mapping; values are
  numpy arrays with a leading batch axis.
* ``params`` on the Operator are defaults.  Float ndarray entries are treated
  as trainable by the search; everything else is a fixed hyper-parameter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

import numpy as np
from pydantic import AliasChoices, Field, field_validator

from rosetta_core.graph.ir_types import StrictBaseModel, TypeSpec

InputGrads = List[Optional[np.ndarray]]
ParamGrads = Dict[str, np.ndarray]


# ---------------------------------------------------------------------------
# Executor protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class OperatorExecutor(Protocol):
    """Structural interface for every operator executor."""

    def evaluate(self, inputs: Sequence[Any], params: Mapping[str, Any]) -> Any:
        ...


class BaseExecutor:
    """Convenience base for executors with sensible defaults."""

    def evaluate(self, inputs: Sequence[Any], params: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def vjp(
        self,
        inputs: Sequence[Any],
        params: Mapping[str, Any],
        output: Any,
        grad_output: np.ndarray,
    ) -> Tuple[InputGrads, ParamGrads]:
        raise NotImplementedError(
            f"{type(self).__name__} does not provide a vector-Jacobian product"
        )

    @property
    def supports_vjp(self) -> bool:
        return type(self).vjp is not BaseExecutor.vjp

    def lipschitz_bound(self, params: Mapping[str, Any]) -> Optional[float]:
        return None


class FunctionExecutor(BaseExecutor):
    """Executor backed by plain callables.

    Parameters
    ----------
    fn : callable
        ``fn(inputs, params) -> value``.
    vjp : callable, optional
        ``vjp(inputs, params, output, grad_output) -> (input_grads, param_grads)``.
    lipschitz : float or callable, optional
        Constant bound, or ``lipschitz(params) -> float``.
    """

    def __init__(
        self,
        fn: Callable[[Sequence[Any], Mapping[str, Any]], Any],
        vjp: Optional[Callable[..., Tuple[InputGrads, ParamGrads]]] = None,
        lipschitz: Union[None, float, Callable[[Mapping[str, Any]], float]] = None,
    ) -> None:
        self._fn = fn
        self._vjp = vjp
        self._lipschitz = lipschitz

    def evaluate(self, inputs: Sequence[Any], params: Mapping[str, Any]) -> Any:
        return self._fn(inputs, params)

    def vjp(self, inputs, params, output, grad_output):
        if self._vjp is None:
            return super().vjp(inputs, params, output, grad_output)
        return self._vjp(inputs, params, output, grad_output)

    @property
    def supports_vjp(self) -> bool:
        return self._vjp is not None

    def lipschitz_bound(self, params: Mapping[str, Any]) -> Optional[float]:
        if self._lipschitz is None or isinstance(self._lipschitz, (int, float)):
            return self._lipschitz
        return float(self._lipschitz(params))


def executor_supports_vjp(executor: Any) -> bool:
    if executor is None:
        return False
    flag = getattr(executor, "supports_vjp", None)
    if flag is not None:
        return bool(flag)
    return callable(getattr(executor, "vjp", None))


# ---------------------------------------------------------------------------
# Operator record
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Operator:
    """Immutable operator record (atom, combinator or adapter).

    Attributes
    ----------
    name : str
        Unique catalog name.
    in_types : tuple[TypeSpec, ...]
        Ordered input slot types (arity >= 1).
    out_type : TypeSpec
        Output type.  Symbols shared with ``in_types`` are bound by the inputs;
        symbols that only appear here are existential (fresh per node).
    differentiable : bool
        Whether the executor can propagate a gradient signal.
    invariance : frozenset[str]
        Invariance tags the operator guarantees.
    stability : float, optional
        Declared Lipschitz bound; ``None`` defers to the executor estimator.
    cost : Mapping[str, float]
        Declared per-node cost model, metric name -> value.
    params : Mapping[str, Any]
        Parameter defaults.
    adapter : bool
        True for semantics-preserving casts between kinds.
    """

    name: str
    in_types: Tuple[TypeSpec, ...]
    out_type: TypeSpec
    differentiable: bool = False
    invariance: FrozenSet[str] = frozenset()
    stability: Optional[float] = None
    cost: Mapping[str, float] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    adapter: bool = False
    executor: Optional[Any] = field(default=None, repr=False)
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "in_types", tuple(self.in_types))
        object.__setattr__(self, "invariance", frozenset(self.invariance))
        object.__setattr__(
            self, "cost", MappingProxyType({k: float(v) for k, v in self.cost.items()})
        )
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def arity(self) -> int:
        return len(self.in_types)

    @property
    def is_combinator(self) -> bool:
        return self.arity > 1

    @property
    def supports_vjp(self) -> bool:
        return self.differentiable and executor_supports_vjp(self.executor)

    def cost_of(self, metric: str) -> float:
        return self.cost.get(metric, 0.0)

    def merged_params(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        merged = dict(self.params)
        if overrides:
            merged.update(overrides)
        return merged

    def lipschitz(self, params: Optional[Mapping[str, Any]] = None) -> Optional[float]:
        """Declared bound, else the executor's estimate, else ``None`` (unknown)."""
        if self.stability is not None:
            return self.stability
        estimator = getattr(self.executor, "lipschitz_bound", None)
        if estimator is None:
            return None
        bound = estimator(self.merged_params(params))
        return None if bound is None else float(bound)

    def evaluate(self, inputs: Sequence[Any], params: Optional[Mapping[str, Any]] = None) -> Any:
        if self.executor is None:
            raise RuntimeError(f"Operator '{self.name}' has no executor bound")
        return self.executor.evaluate(list(inputs), self.merged_params(params))

    def vjp(
        self,
        inputs: Sequence[Any],
        params: Mapping[str, Any],
        output: Any,
        grad_output: np.ndarray,
    ) -> Tuple[InputGrads, ParamGrads]:
        if not self.supports_vjp:
            raise RuntimeError(f"Operator '{self.name}' is not differentiable")
        return self.executor.vjp(list(inputs), self.merged_params(params), output, grad_output)

    def trainable_params(self) -> Dict[str, np.ndarray]:
        return {
            k: np.array(v, dtype=np.float64, copy=True)
            for k, v in self.params.items()
            if isinstance(v, np.ndarray) and np.issubdtype(v.dtype, np.floating)
        }

    def serialize(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for k, v in self.params.items():
            if isinstance(v, np.ndarray):
                params[k] = v.tolist()
            elif isinstance(v, (np.integer, np.floating)):
                params[k] = v.item()
            else:
                params[k] = v
        return {
            "name": self.name,
            "in_types": [t.model_dump(mode="json") for t in self.in_types],
            "out_type": self.out_type.model_dump(mode="json"),
            "differentiable": self.differentiable,
            "invariance": sorted(self.invariance),
            "stability": self.stability,
            "cost": dict(self.cost),
            "params": params,
            "adapter": self.adapter,
        }


# ---------------------------------------------------------------------------
# Declarations (already-parsed catalog entries)
# ---------------------------------------------------------------------------


TypeRef = Union[str, TypeSpec]


class OperatorDecl(StrictBaseModel):
    """Declaration of an operator as handed to ``Catalog.load``.

    ``in_types`` / ``out_type`` entries may name a type alias defined on the
    catalog.  The short keys ``in``, ``out`` and ``diff`` are accepted too.
    """

    name: str
    in_types: List[TypeRef] = Field(validation_alias=AliasChoices("in_types", "in"))
    out_type: TypeRef = Field(validation_alias=AliasChoices("out_type", "out"))
    differentiable: bool = Field(
        default=False, validation_alias=AliasChoices("differentiable", "diff")
    )
    invariance: List[str] = Field(default_factory=list)
    stability: Optional[float] = None
    cost: Dict[str, float] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    adapter: bool = False
    executor: Optional[str] = None
    description: str = ""

    @field_validator("in_types", mode="before")
    @classmethod
    def _single_input(cls, v: Any) -> Any:
        if isinstance(v, (str, dict, TypeSpec)):
            return [v]
        return v
