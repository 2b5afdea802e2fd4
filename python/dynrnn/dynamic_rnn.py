from __future__ import annotations

from typing import Dict, Optional, Tuple, Union

import torch
from torch import nn
from torch.autograd import Function

from .accelerator import Handle, RNNMode
from .batched import BatchedSequenceOperator
from .cell import SingleStepCell
from .gradients import GradientBuffer
from .rnn_type import RnnType, get_rnn_type
from .unrolled import UnrolledSequenceOperator

_STRATEGIES = ("batched", "unrolled")


def _ensure_state(
    tensor: Optional[torch.Tensor],
    shape: Tuple[int, ...],
    name: str,
    like: torch.Tensor,
) -> torch.Tensor:
    if tensor is None:
        return torch.zeros(shape, device=like.device, dtype=like.dtype)
    if tuple(tensor.shape) != shape:
        raise ValueError(f"{name} must have shape {shape}, got {tuple(tensor.shape)}.")
    if tensor.dtype != like.dtype:
        raise ValueError(f"{name} must use dtype {like.dtype}, got {tensor.dtype}.")
    if not tensor.is_contiguous():
        tensor = tensor.contiguous()
    return tensor


class _RecurrentFunction(Function):
    @staticmethod
    def forward(  # type: ignore[override]
        ctx,
        operator,
        x: torch.Tensor,
        hx: torch.Tensor,
        cx: torch.Tensor,
        weight: torch.Tensor,
    ):
        y, hy, cy, record = operator.forward(x, hx, cx, weight)
        ctx.operator = operator
        ctx.record = record
        ctx.save_for_backward(weight)
        return y, hy, cy

    @staticmethod
    def backward(  # type: ignore[override]
        ctx,
        grad_y: Optional[torch.Tensor],
        grad_hy: Optional[torch.Tensor],
        grad_cy: Optional[torch.Tensor],
    ):
        operator = ctx.operator
        record = ctx.record
        if not operator.is_training or record is None:
            raise RuntimeError("dynamic_rnn: backward requires the module to be in training mode")
        (weight,) = ctx.saved_tensors
        if grad_y is None:
            grad_y = torch.zeros_like(record.y)
        if grad_hy is None:
            grad_hy = torch.zeros_like(record.hx)
        if grad_cy is None:
            grad_cy = torch.zeros_like(record.cx)

        dw = GradientBuffer(torch.empty_like(weight))
        dx, dhx, dcx = operator.backward(
            record,
            grad_y.contiguous(),
            weight,
            dw,
            dhy=grad_hy.contiguous(),
            dcy=grad_cy.contiguous(),
        )
        ctx.record = None
        return None, dx.tensor, dhx.tensor, dcx.tensor, dw.tensor


def dynamic_rnn(
    operator: Union[BatchedSequenceOperator, UnrolledSequenceOperator],
    x: torch.Tensor,
    hx: torch.Tensor,
    cx: torch.Tensor,
    weight: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Functional wrapper over either sequence operator.
    Returns the output sequence and the final (hy, cy) states.
    """
    return _RecurrentFunction.apply(operator, x, hx, cx, weight)


class DynamicRNN(nn.Module):
    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        num_layers: int = 1,
        rnn_type: Union[str, RnnType] = "lstm",
        dropout: float = 0.0,
        strategy: str = "batched",
        batch_size: Optional[int] = None,
        dropout_seed: int = 1337,
        device: Optional[Union[str, torch.device]] = None,
        dtype: torch.dtype = torch.float32,
        handle: Optional[Handle] = None,
    ) -> None:
        super().__init__()
        if strategy not in _STRATEGIES:
            raise ValueError(f"strategy must be one of {_STRATEGIES}, got {strategy!r}")
        if strategy == "unrolled" and (batch_size is None or batch_size <= 0):
            raise ValueError("the unrolled strategy needs a fixed positive batch_size")
        self.input_size = int(input_size)
        self.hidden_size = int(hidden_size)
        self.num_layers = int(num_layers)
        self.rnn_type = get_rnn_type(rnn_type)
        self.dropout = float(dropout)
        self.strategy = strategy
        self.batch_size = batch_size
        self.dropout_seed = dropout_seed
        self.handle = handle if handle is not None else Handle()
        self._operators: Dict[Tuple[bool, torch.device, torch.dtype], object] = {}

        device = torch.device(device) if device is not None else torch.device("cpu")
        op = self._operator(True, device, dtype)
        self.weight = nn.Parameter(torch.empty(op.weight_numel, device=device, dtype=dtype))
        self.reset_parameters()

    def _operator(self, training: bool, device: torch.device, dtype: torch.dtype):
        key = (training, device, dtype)
        op = self._operators.get(key)
        if op is not None:
            return op
        if self.strategy == "batched":
            op = BatchedSequenceOperator(
                self.handle, self.rnn_type, self.input_size, self.hidden_size, self.num_layers, training,
                dropout=self.dropout, dropout_seed=self.dropout_seed, dtype=dtype, device=device,
            )
        else:
            cell = SingleStepCell(
                self.handle, self.rnn_type, self.input_size, self.batch_size, self.hidden_size, self.num_layers,
                training, dropout=self.dropout, dropout_seed=self.dropout_seed, dtype=dtype, device=device,
            )
            op = UnrolledSequenceOperator(cell)
        self._operators[key] = op
        return op

    @property
    def descriptors(self):
        op = self._operator(self.training, self.weight.device, self.weight.dtype)
        if isinstance(op, UnrolledSequenceOperator):
            return op.cell.descriptors
        return op.descriptors

    @torch.no_grad()
    def reset_parameters(self, generator: Optional[torch.Generator] = None) -> None:
        self.descriptors.initialize_weights(self.weight, generator)

    @torch.no_grad()
    def load_torch_weights(self, module: nn.RNNBase) -> None:
        """Copy the weights of a unidirectional ``torch.nn.LSTM`` / ``torch.nn.RNN`` into ``weight``."""
        expected_mode = {
            "LSTM": RNNMode.LSTM,
            "RNN_TANH": RNNMode.RNN_TANH,
            "RNN_RELU": RNNMode.RNN_RELU,
        }.get(module.mode)
        if expected_mode != self.rnn_type.mode:
            raise ValueError(f"cannot load {module.mode} weights into a {self.rnn_type.mode.name} network")
        if module.bidirectional or getattr(module, "proj_size", 0):
            raise ValueError("only unidirectional modules without projections are supported")
        if (module.input_size, module.hidden_size, module.num_layers) != (
            self.input_size, self.hidden_size, self.num_layers
        ):
            raise ValueError(
                f"module sizes (input={module.input_size}, hidden={module.hidden_size}, layers={module.num_layers}) "
                f"do not match (input={self.input_size}, hidden={self.hidden_size}, layers={self.num_layers})"
            )
        d = self.descriptors
        H = self.hidden_size
        G = self.rnn_type.gate_count
        for layer in range(self.num_layers):
            weight_ih = getattr(module, f"weight_ih_l{layer}")
            weight_hh = getattr(module, f"weight_hh_l{layer}")
            for k in range(G):
                rows = slice(k * H, (k + 1) * H)
                d.lin_layer_matrix(self.weight, layer, k).copy_(weight_ih[rows])
                d.lin_layer_matrix(self.weight, layer, G + k).copy_(weight_hh[rows])
                if module.bias:
                    d.lin_layer_bias(self.weight, layer, k).copy_(getattr(module, f"bias_ih_l{layer}")[rows])
                    d.lin_layer_bias(self.weight, layer, G + k).copy_(getattr(module, f"bias_hh_l{layer}")[rows])
                else:
                    d.lin_layer_bias(self.weight, layer, k).zero_()
                    d.lin_layer_bias(self.weight, layer, G + k).zero_()

    def forward(
        self,
        x: torch.Tensor,
        state: Optional[Tuple[torch.Tensor, torch.Tensor]] = None,
    ) -> Tuple[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        if x.dim() != 3 or x.size(2) != self.input_size:
            raise ValueError(f"x must be [seq_length, batch, {self.input_size}], got {tuple(x.shape)}.")
        if x.dtype != self.weight.dtype:
            raise ValueError(f"x must use dtype {self.weight.dtype}, got {x.dtype}.")
        shape = (self.num_layers, x.size(1), self.hidden_size)
        hx, cx = state if state is not None else (None, None)
        hx = _ensure_state(hx, shape, "hx", x)
        cx = _ensure_state(cx, shape, "cx", x)
        op = self._operator(self.training, self.weight.device, self.weight.dtype)
        y, hy, cy = dynamic_rnn(op, x, hx, cx, self.weight)
        return y, (hy, cy)

    def extra_repr(self) -> str:
        return (
            f"{self.input_size}, {self.hidden_size}, num_layers={self.num_layers}, "
            f"rnn_type={self.rnn_type!r}, dropout={self.dropout}, strategy={self.strategy!r}"
        )
