"""A small differentiable-graph engine.

Nodes declare their variables, the ``Executor`` owns every tensor and
gradient buffer, and runs nodes in order for forward and in reverse order
for backward. Node-private state that must outlive one call lives in
``Executor.objects`` under a node-owned ``Symbol``.
"""

from __future__ import annotations

import enum
import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import torch

from .accelerator import Handle
from .gradients import GradientBuffer

_ids = itertools.count()


class Symbol:
    def __init__(self, name: Optional[str] = None) -> None:
        self.id = next(_ids)
        self.name = name or f"sym{self.id}"

    def __repr__(self) -> str:
        return f"Symbol({self.name}#{self.id})"


class VariableKind(enum.Enum):
    INPUT = "input"
    PARAMETER = "parameter"
    OUTPUT = "output"
    AUXILIARY = "auxiliary"


class Variable:
    """A graph value with an optional partial shape; ``-1`` matches any extent."""

    def __init__(
        self,
        shape: Optional[Sequence[int]] = None,
        dtype: Optional[torch.dtype] = None,
        kind: VariableKind = VariableKind.INPUT,
        name: Optional[str] = None,
    ) -> None:
        self.shape = tuple(int(d) for d in shape) if shape is not None else None
        self.dtype = dtype
        self.kind = kind
        self.symbol = Symbol(name)

    @property
    def name(self) -> str:
        return self.symbol.name

    def check_shape(self, shape: Sequence[int]) -> None:
        if self.shape is None:
            return
        shape = tuple(shape)
        if len(shape) != len(self.shape) or any(e != -1 and e != d for e, d in zip(self.shape, shape)):
            raise ValueError(f"{self.name}: shape {shape} does not match {self.shape}")

    def __repr__(self) -> str:
        return f"Variable({self.name}, shape={self.shape}, kind={self.kind.value})"


class VariableData:
    def __init__(self) -> None:
        self.tensor: Optional[torch.Tensor] = None
        self.gradient: Optional[GradientBuffer] = None

    @property
    def gradient_aggregation_counter(self) -> int:
        return self.gradient.gradient_aggregation_counter if self.gradient is not None else 0


class Differentiable:
    def __init__(self) -> None:
        self.inputs: List[Variable] = []
        self.outputs: List[Variable] = []
        self.aux_vars: List[Variable] = []

    def add_input(self, var: Variable) -> None:
        self.inputs.append(var)

    def add_output(self, var: Variable) -> None:
        self.outputs.append(var)

    def add_aux_var(self, var: Variable) -> None:
        self.aux_vars.append(var)

    def initialize(self, executor: "Executor") -> None:
        pass

    def forward(self, executor: "Executor") -> None:
        raise NotImplementedError

    def backward(self, executor: "Executor") -> None:
        raise NotImplementedError


class Executor:
    def __init__(
        self,
        *nodes: Differentiable,
        device: Optional[Union[str, torch.device]] = None,
        dtype: torch.dtype = torch.float32,
        seed: Optional[int] = None,
        handle: Optional[Handle] = None,
    ) -> None:
        if not nodes:
            raise ValueError("executor needs at least one node")
        self.nodes = list(nodes)
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.dtype = dtype
        self.handle = handle if handle is not None else Handle()
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()
        self.objects: Dict[Symbol, Any] = {}
        self._data: Dict[Variable, VariableData] = {}

    def get_data(self, var: Variable) -> VariableData:
        data = self._data.get(var)
        if data is None:
            data = self._data[var] = VariableData()
        return data

    def _allocate(self, var: Variable, shape: Tuple[int, ...], zero: bool) -> torch.Tensor:
        var.check_shape(shape)
        dtype = var.dtype or self.dtype
        if zero:
            return torch.zeros(shape, dtype=dtype, device=self.device)
        return torch.empty(shape, dtype=dtype, device=self.device)

    def get_tensor(self, var: Variable, shape: Optional[Sequence[int]] = None) -> torch.Tensor:
        """Return the tensor of ``var``, (re)allocating it when ``shape`` is given and differs."""
        data = self.get_data(var)
        if shape is None:
            if data.tensor is None:
                raise RuntimeError(f"{var.name} has no tensor; assign or allocate it first")
            return data.tensor
        shape = tuple(shape)
        if data.tensor is None or tuple(data.tensor.shape) != shape:
            data.tensor = self._allocate(var, shape, zero=False)
        return data.tensor

    def assign_tensor(self, var: Variable, tensor: torch.Tensor) -> None:
        var.check_shape(tensor.shape)
        value = tensor.detach().to(device=self.device, dtype=var.dtype or self.dtype)
        self.get_data(var).tensor = value.clone(memory_format=torch.contiguous_format)

    def gradient_buffer(self, var: Variable, shape: Optional[Sequence[int]] = None) -> GradientBuffer:
        data = self.get_data(var)
        if shape is None:
            if data.gradient is not None:
                return data.gradient
            if data.tensor is None:
                raise RuntimeError(f"{var.name} has no gradient and no tensor to size one from")
            shape = data.tensor.shape
        shape = tuple(shape)
        if data.gradient is None or tuple(data.gradient.tensor.shape) != shape:
            data.gradient = GradientBuffer(self._allocate(var, shape, zero=True))
        return data.gradient

    def get_gradient(self, var: Variable, shape: Optional[Sequence[int]] = None) -> torch.Tensor:
        data = self.get_data(var)
        if shape is None and data.gradient is None:
            raise RuntimeError(f"{var.name} has no gradient")
        return self.gradient_buffer(var, shape).tensor

    def assign_gradient(self, var: Variable, value: torch.Tensor, replace: bool = False) -> None:
        value = value.to(device=self.device, dtype=var.dtype or self.dtype)
        self.gradient_buffer(var, value.shape).assign(value, replace=replace)

    def assign_gradient_directly(self, var: Variable, value: Union[torch.Tensor, float]) -> None:
        """Overwrite the gradient of ``var`` without counting it as a contribution."""
        if isinstance(value, torch.Tensor):
            self.gradient_buffer(var, value.shape).tensor.copy_(value)
        else:
            self.gradient_buffer(var).tensor.fill_(value)

    def initialize(self) -> None:
        for node in self.nodes:
            node.initialize(self)

    def forward(self) -> None:
        for data in self._data.values():
            if data.gradient is not None:
                data.gradient.reset()
        for node in self.nodes:
            node.forward(self)

    def backward(self) -> None:
        for node in reversed(self.nodes):
            node.backward(self)
