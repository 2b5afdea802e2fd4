"""Recurrent operators as graph nodes.

All variants share one contract: input [T, batch, input_size] to output
[T, batch, hidden_size], with auxiliary states hx / cx / hy / cy of shape
[num_layers, batch, hidden_size]. Initial states must be assigned (or
zeroed) before ``Executor.forward``; the terminal gradient of hy / cy is
assigned (or zeroed) before ``Executor.backward``.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import torch

from .batched import BatchedSequenceOperator
from .cell import SingleStepCell
from .graph import Differentiable, Executor, Symbol, Variable, VariableKind
from .rnn_type import RnnType, get_rnn_type
from .unrolled import UnrolledSequenceOperator


class _RecurrentNode(Differentiable):
    def __init__(
        self,
        rnn_type: Union[str, RnnType],
        x: Variable,
        num_layers: int,
        hidden_size: int,
        is_training: bool = True,
        dropout: float = 0.0,
        dropout_seed: int = 1337,
        w: Optional[Variable] = None,
    ) -> None:
        super().__init__()
        if x.shape is None or len(x.shape) != 3 or x.shape[2] <= 0:
            raise ValueError(f"x must be declared as [T, batch, input_size] with a known input_size, got {x.shape}")
        if num_layers <= 0 or hidden_size <= 0:
            raise ValueError(f"num_layers and hidden_size must be positive, got {num_layers}, {hidden_size}")
        self.rnn_type = get_rnn_type(rnn_type)
        self.x = x
        self.input_size = x.shape[2]
        self.batch_size = x.shape[1]
        self.num_layers = num_layers
        self.hidden_size = hidden_size
        self.is_training = is_training
        self.dropout = dropout if is_training else 0.0
        self.dropout_seed = dropout_seed

        self.w = w if w is not None else Variable(kind=VariableKind.PARAMETER, name="w")
        self.y = Variable((-1, self.batch_size, hidden_size), kind=VariableKind.OUTPUT, name="y")
        state_shape = (num_layers, self.batch_size, hidden_size)
        self.hx = Variable(state_shape, kind=VariableKind.AUXILIARY, name="hx")
        self.cx = Variable(state_shape, kind=VariableKind.AUXILIARY, name="cx")
        self.hy = Variable(state_shape, kind=VariableKind.AUXILIARY, name="hy")
        self.cy = Variable(state_shape, kind=VariableKind.AUXILIARY, name="cy")

        self.operator_symbol = Symbol("operator")
        self.record_symbol = Symbol("record")

        self.add_input(self.x)
        self.add_input(self.w)
        self.add_output(self.y)
        for var in (self.hx, self.cx, self.hy, self.cy):
            self.add_aux_var(var)

    def _build_operator(self, executor: Executor):
        raise NotImplementedError

    def operator(self, executor: Executor):
        try:
            return executor.objects[self.operator_symbol]
        except KeyError:
            raise RuntimeError(f"{type(self).__name__} was not initialized on this executor") from None

    def initialize(self, executor: Executor) -> None:
        op = self._build_operator(executor)
        executor.objects[self.operator_symbol] = op
        data = executor.get_data(self.w)
        if data.tensor is None:
            w = executor.get_tensor(self.w, (op.weight_numel,))
            op.initialize(w, executor.generator)
        elif data.tensor.numel() != op.weight_numel:
            raise ValueError(f"weight {self.w.name} holds {data.tensor.numel()} elements, expected {op.weight_numel}")
        if self.is_training:
            executor.gradient_buffer(self.w, executor.get_tensor(self.w).shape)

    def state_shape(self, executor: Executor) -> Tuple[int, int, int]:
        batch = self.batch_size
        if batch <= 0:
            batch = executor.get_tensor(self.x).shape[1]
        return (self.num_layers, batch, self.hidden_size)

    def assign_initial_states(self, executor: Executor, hx: torch.Tensor, cx: torch.Tensor) -> None:
        executor.assign_tensor(self.hx, hx)
        executor.assign_tensor(self.cx, cx)

    def zero_initial_states(self, executor: Executor) -> None:
        shape = self.state_shape(executor)
        executor.assign_tensor(self.hx, torch.zeros(shape, dtype=executor.dtype, device=executor.device))
        executor.assign_tensor(self.cx, torch.zeros(shape, dtype=executor.dtype, device=executor.device))

    def assign_terminal_gradient(self, executor: Executor, dhy: torch.Tensor, dcy: torch.Tensor) -> None:
        executor.assign_gradient_directly(self.hy, dhy)
        executor.assign_gradient_directly(self.cy, dcy)

    def zero_terminal_gradient(self, executor: Executor) -> None:
        shape = self.state_shape(executor)
        executor.assign_gradient_directly(self.hy, torch.zeros(shape, dtype=executor.dtype, device=executor.device))
        executor.assign_gradient_directly(self.cy, torch.zeros(shape, dtype=executor.dtype, device=executor.device))

    def _run_forward(self, executor: Executor, op, x, hx, cx, w, y, hy, cy):
        return op.forward(x, hx, cx, w, y, hy, cy)

    def forward(self, executor: Executor) -> None:
        op = self.operator(executor)
        stale = executor.objects.pop(self.record_symbol, None)
        if stale is not None:
            stale.release()
        x = executor.get_tensor(self.x)
        T, B = x.shape[0], x.shape[1]
        hx = executor.get_data(self.hx).tensor
        cx = executor.get_data(self.cx).tensor
        w = executor.get_tensor(self.w)
        y = executor.get_tensor(self.y, (T, B, self.hidden_size))
        hy = executor.get_tensor(self.hy, (self.num_layers, B, self.hidden_size))
        cy = executor.get_tensor(self.cy, (self.num_layers, B, self.hidden_size))
        _, _, _, record = self._run_forward(executor, op, x, hx, cx, w, y, hy, cy)
        if record is not None:
            executor.objects[self.record_symbol] = record

    def backward(self, executor: Executor) -> None:
        op = self.operator(executor)
        record = executor.objects.pop(self.record_symbol, None)
        if record is None:
            raise RuntimeError(f"{type(self).__name__}.backward requires a preceding training forward")
        x = executor.get_tensor(self.x)
        dy = executor.get_gradient(self.y)
        dhy_buffer = executor.get_data(self.hy).gradient
        dcy_buffer = executor.get_data(self.cy).gradient
        state_shape = (self.num_layers, x.shape[1], self.hidden_size)
        op.backward(
            record,
            dy,
            executor.get_tensor(self.w),
            executor.gradient_buffer(self.w),
            dhy=dhy_buffer.tensor if dhy_buffer is not None else None,
            dcy=dcy_buffer.tensor if dcy_buffer is not None else None,
            dx=executor.gradient_buffer(self.x, x.shape),
            dhx=executor.gradient_buffer(self.hx, state_shape),
            dcx=executor.gradient_buffer(self.cx, state_shape),
        )


class IteratedRnnNode(_RecurrentNode):
    """Unrolled node: one single-step cell applied T times."""

    def __init__(self, rnn_type, x: Variable, num_layers: int, hidden_size: int, is_training: bool = True,
                 dropout: float = 0.0, dropout_seed: int = 1337, w: Optional[Variable] = None) -> None:
        super().__init__(rnn_type, x, num_layers, hidden_size, is_training, dropout, dropout_seed, w)
        if self.batch_size <= 0:
            raise ValueError(f"{type(self).__name__} needs a fixed batch size, got x shape {x.shape}")

    def _build_operator(self, executor: Executor) -> UnrolledSequenceOperator:
        cell = SingleStepCell(
            executor.handle,
            self.rnn_type,
            self.input_size,
            self.batch_size,
            self.hidden_size,
            self.num_layers,
            self.is_training,
            dropout=self.dropout,
            dropout_seed=self.dropout_seed,
            dtype=executor.dtype,
            device=executor.device,
        )
        return UnrolledSequenceOperator(cell)


class RnnCellNode(IteratedRnnNode):
    """A single time step used on its own; x must hold exactly one step."""

    def _run_forward(self, executor, op, x, hx, cx, w, y, hy, cy):
        if x.shape[0] != 1:
            raise ValueError(f"{type(self).__name__} runs one time step, got x shape {tuple(x.shape)}")
        return op.forward(x, hx, cx, w, y, hy, cy)


class RnnDynamicNode(_RecurrentNode):
    """Whole-sequence node; T and batch are taken from x on every forward."""

    def _build_operator(self, executor: Executor) -> BatchedSequenceOperator:
        return BatchedSequenceOperator(
            executor.handle,
            self.rnn_type,
            self.input_size,
            self.hidden_size,
            self.num_layers,
            self.is_training,
            dropout=self.dropout,
            dropout_seed=self.dropout_seed,
            dtype=executor.dtype,
            device=executor.device,
        )


class RnnNode(RnnDynamicNode):
    """Whole-sequence node for a fixed (T, batch); descriptors are built once at initialize."""

    def __init__(self, rnn_type, x: Variable, num_layers: int, hidden_size: int, is_training: bool = True,
                 dropout: float = 0.0, dropout_seed: int = 1337, w: Optional[Variable] = None) -> None:
        super().__init__(rnn_type, x, num_layers, hidden_size, is_training, dropout, dropout_seed, w)
        if x.shape[0] <= 0 or self.batch_size <= 0:
            raise ValueError(f"{type(self).__name__} needs a fixed sequence length and batch size, got x shape {x.shape}")
        self.seq_length = x.shape[0]
        self.bundle_symbol = Symbol("bundle")

    def initialize(self, executor: Executor) -> None:
        super().initialize(executor)
        bundle = self.operator(executor).prepare(self.seq_length, self.batch_size)
        executor.objects[self.bundle_symbol] = bundle

    def _run_forward(self, executor, op, x, hx, cx, w, y, hy, cy):
        return op.forward(x, hx, cx, w, y, hy, cy, bundle=executor.objects[self.bundle_symbol])
