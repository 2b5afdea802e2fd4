"""Reference accelerator binding for multi-layer recurrent networks.

Exposes the descriptor / size-query / primitive surface of a vendor DNN
library. Numerics run on plain torch ops, one GEMM plus one fused pointwise
per step, on whatever device the buffers live on.

Scratch buffers (workspace, reserve space, dropout state) are opaque
``torch.uint8`` tensors; callers size them only through the queries below.
"""

from __future__ import annotations

import enum
import logging
from collections import Counter
from typing import List, NamedTuple, Optional, Sequence, Tuple

import torch

logger = logging.getLogger(__name__)

_ITEMSIZE = {
    torch.float32: 4,
    torch.float64: 8,
}


class Status(enum.IntEnum):
    SUCCESS = 0
    BAD_PARAM = 3
    EXECUTION_FAILED = 8
    NOT_SUPPORTED = 9


class AcceleratorError(RuntimeError):
    def __init__(self, status: Status, message: str) -> None:
        super().__init__(f"{status.name}: {message}")
        self.status = status


class RNNMode(enum.IntEnum):
    RNN_RELU = 0
    RNN_TANH = 1
    LSTM = 2
    GRU = 3


class RNNInputMode(enum.IntEnum):
    LINEAR_INPUT = 0
    SKIP_INPUT = 1


class DirectionMode(enum.IntEnum):
    UNIDIRECTIONAL = 0
    BIDIRECTIONAL = 1


_GATE_COUNT = {
    RNNMode.RNN_RELU: 1,
    RNNMode.RNN_TANH: 1,
    RNNMode.LSTM: 4,
}


def _itemsize(dtype: torch.dtype) -> int:
    try:
        return _ITEMSIZE[dtype]
    except KeyError:
        raise AcceleratorError(Status.NOT_SUPPORTED, f"unsupported data type {dtype}") from None


class TensorDescriptor:
    def __init__(self) -> None:
        self.dtype: Optional[torch.dtype] = None
        self.dims: Tuple[int, ...] = ()
        self.strides: Tuple[int, ...] = ()

    def set_nd(self, dtype: torch.dtype, dims: Sequence[int], strides: Sequence[int]) -> None:
        _itemsize(dtype)
        dims = tuple(int(d) for d in dims)
        strides = tuple(int(s) for s in strides)
        if len(dims) < 3 or len(dims) != len(strides):
            raise AcceleratorError(Status.BAD_PARAM, f"descriptor needs >= 3 dims with matching strides, got {dims} / {strides}")
        if any(d <= 0 for d in dims):
            raise AcceleratorError(Status.BAD_PARAM, f"descriptor dims must be positive, got {dims}")
        expected = 1
        for dim, stride in zip(reversed(dims), reversed(strides)):
            if stride != expected:
                raise AcceleratorError(Status.NOT_SUPPORTED, f"only packed layouts are supported, got strides {strides} for dims {dims}")
            expected *= dim
        self.dtype = dtype
        self.dims = dims
        self.strides = strides

    @property
    def numel(self) -> int:
        n = 1
        for d in self.dims:
            n *= d
        return n


class FilterDescriptor:
    def __init__(self) -> None:
        self.dtype: Optional[torch.dtype] = None
        self.dims: Tuple[int, ...] = ()

    def set_nd(self, dtype: torch.dtype, dims: Sequence[int]) -> None:
        _itemsize(dtype)
        self.dtype = dtype
        self.dims = tuple(int(d) for d in dims)

    def get_nd(self) -> Tuple[torch.dtype, Tuple[int, ...]]:
        return self.dtype, self.dims

    @property
    def numel(self) -> int:
        n = 1
        for d in self.dims:
            n *= d
        return n


class DropoutDescriptor:
    def __init__(self) -> None:
        self.dropout = 0.0
        self.states: Optional[torch.Tensor] = None
        self.seed = 0

    def set(self, handle: "Handle", dropout: float, states: torch.Tensor, seed: int) -> None:
        if not 0.0 <= dropout < 1.0:
            raise AcceleratorError(Status.BAD_PARAM, f"dropout must be in [0, 1), got {dropout}")
        required = handle.dropout_get_states_size()
        if states.dtype != torch.uint8 or states.numel() < required:
            raise AcceleratorError(Status.BAD_PARAM, f"dropout states need {required} bytes, got {states.numel()}")
        generator = torch.Generator()
        generator.manual_seed(int(seed))
        states.view(-1)[:required].copy_(generator.get_state())
        self.dropout = float(dropout)
        self.states = states
        self.seed = int(seed)

    def draw_masks(self, count: int, shape: Tuple[int, ...], dtype: torch.dtype, device: torch.device) -> List[torch.Tensor]:
        """Draw ``count`` scaled keep-masks and advance the generator state held in the states arena."""
        size = torch.Generator().get_state().numel()
        generator = torch.Generator()
        generator.set_state(self.states.view(-1)[:size].cpu().clone())
        keep = 1.0 - self.dropout
        masks = []
        for _ in range(count):
            mask = torch.bernoulli(torch.full(shape, keep, dtype=torch.float64), generator=generator) / keep
            masks.append(mask.to(device=device, dtype=dtype))
        self.states.view(-1)[:size].copy_(generator.get_state())
        return masks


class RNNDescriptor:
    def __init__(self) -> None:
        self.hidden_size = 0
        self.num_layers = 0
        self.dropout_desc: Optional[DropoutDescriptor] = None
        self.mode: Optional[RNNMode] = None
        self.dtype: Optional[torch.dtype] = None

    def set(
        self,
        hidden_size: int,
        num_layers: int,
        dropout_desc: DropoutDescriptor,
        input_mode: RNNInputMode,
        direction: DirectionMode,
        mode: RNNMode,
        dtype: torch.dtype,
    ) -> None:
        if hidden_size <= 0 or num_layers <= 0:
            raise AcceleratorError(Status.BAD_PARAM, f"hidden_size and num_layers must be positive, got {hidden_size}, {num_layers}")
        if input_mode != RNNInputMode.LINEAR_INPUT:
            raise AcceleratorError(Status.NOT_SUPPORTED, f"input mode {RNNInputMode(input_mode).name} is not supported")
        if direction != DirectionMode.UNIDIRECTIONAL:
            raise AcceleratorError(Status.NOT_SUPPORTED, f"direction {DirectionMode(direction).name} is not supported")
        if mode not in _GATE_COUNT:
            raise AcceleratorError(Status.NOT_SUPPORTED, f"RNN mode {RNNMode(mode).name} is not supported")
        _itemsize(dtype)
        self.hidden_size = int(hidden_size)
        self.num_layers = int(num_layers)
        self.dropout_desc = dropout_desc
        self.mode = RNNMode(mode)
        self.dtype = dtype

    @property
    def gate_count(self) -> int:
        return _GATE_COUNT[self.mode]

    @property
    def num_lin_layers(self) -> int:
        return 2 * self.gate_count

    @property
    def dropout(self) -> float:
        return self.dropout_desc.dropout if self.dropout_desc is not None else 0.0


# ----------------------------------------------------------------------------
# Opaque layouts
# ----------------------------------------------------------------------------

class _WeightLayout:
    """All matrices of all layers ([W_0..W_G-1][R_0..R_G-1] per layer), then all biases."""

    def __init__(self, rnn_desc: RNNDescriptor, input_size: int) -> None:
        H, G, L = rnn_desc.hidden_size, rnn_desc.gate_count, rnn_desc.num_layers
        self.hidden_size = H
        self.gate_count = G
        self.input_sizes = [input_size if layer == 0 else H for layer in range(L)]
        self.matrix_offsets = []
        offset = 0
        for in_size in self.input_sizes:
            self.matrix_offsets.append(offset)
            offset += G * H * (in_size + H)
        self.bias_offsets = []
        for _ in range(L):
            self.bias_offsets.append(offset)
            offset += 2 * G * H
        self.numel = offset

    def matrix(self, layer: int, lin_layer_id: int) -> Tuple[int, Tuple[int, int, int]]:
        H, G = self.hidden_size, self.gate_count
        in_size = self.input_sizes[layer]
        if lin_layer_id < G:
            return self.matrix_offsets[layer] + lin_layer_id * H * in_size, (1, H, in_size)
        base = self.matrix_offsets[layer] + G * H * in_size
        return base + (lin_layer_id - G) * H * H, (1, H, H)

    def bias(self, layer: int, lin_layer_id: int) -> Tuple[int, Tuple[int, int, int]]:
        return self.bias_offsets[layer] + lin_layer_id * self.hidden_size, (1, self.hidden_size, 1)

    def stacked(self, w: torch.Tensor, layer: int) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        H, G = self.hidden_size, self.gate_count
        in_size = self.input_sizes[layer]
        start = self.matrix_offsets[layer]
        W = w[start:start + G * H * in_size].view(G * H, in_size)
        start += G * H * in_size
        R = w[start:start + G * H * H].view(G * H, H)
        start = self.bias_offsets[layer]
        b_w = w[start:start + G * H]
        b_r = w[start + G * H:start + 2 * G * H]
        return W, R, b_w, b_r


class _ReserveViews(NamedTuple):
    act: torch.Tensor
    dact: torch.Tensor
    c: Optional[torch.Tensor]
    h: torch.Tensor
    mask: Optional[torch.Tensor]


class _ReserveLayout:
    def __init__(self, rnn_desc: RNNDescriptor, seq_length: int, batch: int) -> None:
        T, B, H, G = seq_length, batch, rnn_desc.hidden_size, rnn_desc.gate_count
        self.shape_gates = (T, B, G * H)
        self.shape_state = (T, B, H)
        self.has_cell = rnn_desc.mode == RNNMode.LSTM
        self.layers = []
        offset = 0
        for layer in range(rnn_desc.num_layers):
            has_mask = rnn_desc.dropout > 0.0 and layer < rnn_desc.num_layers - 1
            sizes = (
                2 * T * B * G * H,
                T * B * H if self.has_cell else 0,
                T * B * H,
                T * B * H if has_mask else 0,
            )
            self.layers.append((offset, has_mask))
            offset += sum(sizes)
        self.numel = offset

    def views(self, flat: torch.Tensor) -> List[_ReserveViews]:
        views = []
        gates = self.shape_gates[0] * self.shape_gates[1] * self.shape_gates[2]
        state = self.shape_state[0] * self.shape_state[1] * self.shape_state[2]
        for offset, has_mask in self.layers:
            act = flat[offset:offset + gates].view(self.shape_gates)
            offset += gates
            dact = flat[offset:offset + gates].view(self.shape_gates)
            offset += gates
            c = None
            if self.has_cell:
                c = flat[offset:offset + state].view(self.shape_state)
                offset += state
            h = flat[offset:offset + state].view(self.shape_state)
            offset += state
            mask = flat[offset:offset + state].view(self.shape_state) if has_mask else None
            views.append(_ReserveViews(act, dact, c, h, mask))
        return views


class _WorkspaceLayout:
    """Gate projections for one layer plus two ping-pong [T, B, H] sequences."""

    def __init__(self, rnn_desc: RNNDescriptor, seq_length: int, batch: int) -> None:
        T, B, H, G = seq_length, batch, rnn_desc.hidden_size, rnn_desc.gate_count
        self.shape_gates = (T, B, G * H)
        self.shape_state = (T, B, H)
        self.numel = T * B * (G * H + 2 * H)

    def gates(self, flat: torch.Tensor) -> torch.Tensor:
        n = self.shape_gates[0] * self.shape_gates[1] * self.shape_gates[2]
        return flat[:n].view(self.shape_gates)

    def sequence(self, flat: torch.Tensor, layer: int) -> torch.Tensor:
        base = self.shape_gates[0] * self.shape_gates[1] * self.shape_gates[2]
        n = self.shape_state[0] * self.shape_state[1] * self.shape_state[2]
        start = base + (layer % 2) * n
        return flat[start:start + n].view(self.shape_state)


def _elements(buffer: torch.Tensor, dtype: torch.dtype, count: int, name: str) -> torch.Tensor:
    if buffer.dtype != torch.uint8:
        raise AcceleratorError(Status.BAD_PARAM, f"{name} must be a byte buffer, got {buffer.dtype}")
    if not buffer.is_contiguous():
        raise AcceleratorError(Status.BAD_PARAM, f"{name} must be contiguous")
    nbytes = count * _itemsize(dtype)
    if buffer.numel() < nbytes:
        raise AcceleratorError(Status.BAD_PARAM, f"{name} needs {nbytes} bytes, got {buffer.numel()}")
    return buffer.reshape(-1)[:nbytes].view(dtype)


def _packed(tensor: torch.Tensor, shape: Tuple[int, ...], dtype: torch.dtype, name: str) -> torch.Tensor:
    expected = 1
    for d in shape:
        expected *= d
    if tensor.numel() != expected:
        raise AcceleratorError(Status.BAD_PARAM, f"{name} must hold {expected} elements for {shape}, got {tensor.numel()}")
    if tensor.dtype != dtype:
        raise AcceleratorError(Status.BAD_PARAM, f"{name} must use dtype {dtype}, got {tensor.dtype}")
    if not tensor.is_contiguous():
        raise AcceleratorError(Status.BAD_PARAM, f"{name} must be packed")
    return tensor.view(shape)


def _check_state_desc(desc: TensorDescriptor, shape: Tuple[int, int, int], name: str) -> None:
    if desc.dims != shape:
        raise AcceleratorError(Status.BAD_PARAM, f"{name} descriptor dims {desc.dims} do not match {shape}")


# ----------------------------------------------------------------------------
# Pointwise kernels, gate order [i, f, g, o]
# ----------------------------------------------------------------------------

def _pointwise_forward(mode: RNNMode, pre: torch.Tensor, c_prev: Optional[torch.Tensor]):
    if mode == RNNMode.LSTM:
        H = pre.shape[1] // 4
        i = torch.sigmoid(pre[:, 0:H])
        f = torch.sigmoid(pre[:, H:2 * H])
        g = torch.tanh(pre[:, 2 * H:3 * H])
        o = torch.sigmoid(pre[:, 3 * H:4 * H])
        c = f * c_prev + i * g
        h = o * torch.tanh(c)
        return h, c, torch.cat([i, f, g, o], dim=1)
    if mode == RNNMode.RNN_TANH:
        h = torch.tanh(pre)
    else:
        h = torch.relu(pre)
    return h, None, h


def _pointwise_backward(
    mode: RNNMode,
    dh: torch.Tensor,
    dc_next: Optional[torch.Tensor],
    act: torch.Tensor,
    c_t: Optional[torch.Tensor],
    c_prev: Optional[torch.Tensor],
):
    if mode == RNNMode.LSTM:
        H = dh.shape[1]
        i = act[:, 0:H]
        f = act[:, H:2 * H]
        g = act[:, 2 * H:3 * H]
        o = act[:, 3 * H:4 * H]
        tanh_c = torch.tanh(c_t)
        do = dh * tanh_c
        dc = dc_next + dh * o * (1.0 - tanh_c * tanh_c)
        di = dc * g
        df = dc * c_prev
        dg = dc * i
        d_pre = torch.cat(
            [di * i * (1.0 - i), df * f * (1.0 - f), dg * (1.0 - g * g), do * o * (1.0 - o)],
            dim=1,
        )
        return d_pre, dc * f
    if mode == RNNMode.RNN_TANH:
        return dh * (1.0 - act * act), None
    return dh * (act > 0).to(dh.dtype), None


# ----------------------------------------------------------------------------
# Handle
# ----------------------------------------------------------------------------

class Handle:
    """Library context. Every primitive is synchronous from the caller's view."""

    def __init__(self) -> None:
        self.call_counts: Counter = Counter()

    # -- size queries -------------------------------------------------------

    def dropout_get_states_size(self) -> int:
        return torch.Generator().get_state().numel()

    def get_rnn_params_size(self, rnn_desc: RNNDescriptor, x_desc: TensorDescriptor, dtype: torch.dtype) -> int:
        if dtype != rnn_desc.dtype or x_desc.dtype != dtype:
            raise AcceleratorError(Status.BAD_PARAM, f"data type mismatch: rnn {rnn_desc.dtype}, x {x_desc.dtype}, requested {dtype}")
        layout = _WeightLayout(rnn_desc, x_desc.dims[1])
        return layout.numel * _itemsize(dtype)

    def get_rnn_workspace_size(self, rnn_desc: RNNDescriptor, seq_length: int, x_descs: Sequence[TensorDescriptor]) -> int:
        batch, _ = self._sequence_shape(rnn_desc, seq_length, x_descs)
        size = _WorkspaceLayout(rnn_desc, seq_length, batch).numel * _itemsize(rnn_desc.dtype)
        logger.debug("workspace query: seq_length=%d batch=%d -> %d bytes", seq_length, batch, size)
        return size

    def get_rnn_training_reserve_size(self, rnn_desc: RNNDescriptor, seq_length: int, x_descs: Sequence[TensorDescriptor]) -> int:
        batch, _ = self._sequence_shape(rnn_desc, seq_length, x_descs)
        size = _ReserveLayout(rnn_desc, seq_length, batch).numel * _itemsize(rnn_desc.dtype)
        logger.debug("reserve query: seq_length=%d batch=%d -> %d bytes", seq_length, batch, size)
        return size

    def get_rnn_lin_layer_matrix_params(
        self,
        rnn_desc: RNNDescriptor,
        layer: int,
        x_desc: TensorDescriptor,
        w_desc: FilterDescriptor,
        w: torch.Tensor,
        lin_layer_id: int,
    ) -> Tuple[FilterDescriptor, torch.Tensor]:
        layout = self._weight_layout(rnn_desc, layer, x_desc, w_desc, w, lin_layer_id)
        offset, dims = layout.matrix(layer, lin_layer_id)
        return self._region(w, offset, dims, rnn_desc.dtype)

    def get_rnn_lin_layer_bias_params(
        self,
        rnn_desc: RNNDescriptor,
        layer: int,
        x_desc: TensorDescriptor,
        w_desc: FilterDescriptor,
        w: torch.Tensor,
        lin_layer_id: int,
    ) -> Tuple[FilterDescriptor, torch.Tensor]:
        layout = self._weight_layout(rnn_desc, layer, x_desc, w_desc, w, lin_layer_id)
        offset, dims = layout.bias(layer, lin_layer_id)
        return self._region(w, offset, dims, rnn_desc.dtype)

    # -- primitives ---------------------------------------------------------

    def rnn_forward_inference(
        self,
        rnn_desc: RNNDescriptor,
        seq_length: int,
        x_descs: Sequence[TensorDescriptor],
        x: torch.Tensor,
        hx_desc: TensorDescriptor,
        hx: Optional[torch.Tensor],
        cx_desc: TensorDescriptor,
        cx: Optional[torch.Tensor],
        w_desc: FilterDescriptor,
        w: torch.Tensor,
        y_descs: Sequence[TensorDescriptor],
        y: torch.Tensor,
        hy_desc: TensorDescriptor,
        hy: Optional[torch.Tensor],
        cy_desc: TensorDescriptor,
        cy: Optional[torch.Tensor],
        workspace: torch.Tensor,
    ) -> None:
        self.call_counts["forward_inference"] += 1
        self._forward(rnn_desc, seq_length, x_descs, x, hx_desc, hx, cx_desc, cx, w_desc, w,
                      y_descs, y, hy_desc, hy, cy_desc, cy, workspace, None)

    def rnn_forward_training(
        self,
        rnn_desc: RNNDescriptor,
        seq_length: int,
        x_descs: Sequence[TensorDescriptor],
        x: torch.Tensor,
        hx_desc: TensorDescriptor,
        hx: Optional[torch.Tensor],
        cx_desc: TensorDescriptor,
        cx: Optional[torch.Tensor],
        w_desc: FilterDescriptor,
        w: torch.Tensor,
        y_descs: Sequence[TensorDescriptor],
        y: torch.Tensor,
        hy_desc: TensorDescriptor,
        hy: Optional[torch.Tensor],
        cy_desc: TensorDescriptor,
        cy: Optional[torch.Tensor],
        workspace: torch.Tensor,
        reserve_space: torch.Tensor,
    ) -> None:
        self.call_counts["forward_training"] += 1
        self._forward(rnn_desc, seq_length, x_descs, x, hx_desc, hx, cx_desc, cx, w_desc, w,
                      y_descs, y, hy_desc, hy, cy_desc, cy, workspace, reserve_space)

    @torch.no_grad()
    def rnn_backward_data(
        self,
        rnn_desc: RNNDescriptor,
        seq_length: int,
        y_descs: Sequence[TensorDescriptor],
        y: torch.Tensor,
        dy_descs: Sequence[TensorDescriptor],
        dy: torch.Tensor,
        dhy_desc: TensorDescriptor,
        dhy: Optional[torch.Tensor],
        dcy_desc: TensorDescriptor,
        dcy: Optional[torch.Tensor],
        w_desc: FilterDescriptor,
        w: torch.Tensor,
        hx_desc: TensorDescriptor,
        hx: Optional[torch.Tensor],
        cx_desc: TensorDescriptor,
        cx: Optional[torch.Tensor],
        dx_descs: Sequence[TensorDescriptor],
        dx: torch.Tensor,
        dhx_desc: TensorDescriptor,
        dhx: Optional[torch.Tensor],
        dcx_desc: TensorDescriptor,
        dcx: Optional[torch.Tensor],
        workspace: torch.Tensor,
        reserve_space: torch.Tensor,
    ) -> None:
        self.call_counts["backward_data"] += 1
        batch, input_size = self._sequence_shape(rnn_desc, seq_length, dx_descs)
        T, B, H, L = seq_length, batch, rnn_desc.hidden_size, rnn_desc.num_layers
        dtype, mode = rnn_desc.dtype, rnn_desc.mode
        state_shape = (L, B, H)
        for desc, name in ((dhy_desc, "dhy"), (dcy_desc, "dcy"), (hx_desc, "hx"), (cx_desc, "cx"),
                           (dhx_desc, "dhx"), (dcx_desc, "dcx")):
            _check_state_desc(desc, state_shape, name)

        weights = _WeightLayout(rnn_desc, input_size)
        w_flat = _packed(w, (weights.numel,), dtype, "w")
        if w_desc.numel != weights.numel:
            raise AcceleratorError(Status.BAD_PARAM, f"w descriptor holds {w_desc.numel} elements, expected {weights.numel}")
        work_layout = _WorkspaceLayout(rnn_desc, T, B)
        work = _elements(workspace, dtype, work_layout.numel, "workspace")
        reserve_layout = _ReserveLayout(rnn_desc, T, B)
        reserve = reserve_layout.views(_elements(reserve_space, dtype, reserve_layout.numel, "reserve_space"))

        _packed(y, (T, B, H), dtype, "y")
        d_out = _packed(dy, (T, B, H), dtype, "dy")
        dx_v = _packed(dx, (T, B, input_size), dtype, "dx")
        hx_v = _packed(hx, state_shape, dtype, "hx") if hx is not None else None
        cx_v = _packed(cx, state_shape, dtype, "cx") if cx is not None else None
        dhy_v = _packed(dhy, state_shape, dtype, "dhy") if dhy is not None else None
        dcy_v = _packed(dcy, state_shape, dtype, "dcy") if dcy is not None else None
        dhx_v = _packed(dhx, state_shape, dtype, "dhx") if dhx is not None else None
        dcx_v = _packed(dcx, state_shape, dtype, "dcx") if dcx is not None else None

        zeros = torch.zeros((B, H), dtype=dtype, device=dy.device)
        is_lstm = mode == RNNMode.LSTM
        for layer in reversed(range(L)):
            W, R, _, _ = weights.stacked(w_flat, layer)
            views = reserve[layer]
            d_in = dx_v if layer == 0 else work_layout.sequence(work, layer - 1)
            dh = dhy_v[layer] if dhy_v is not None else zeros
            dc = None
            c_first = None
            if is_lstm:
                dc = dcy_v[layer] if dcy_v is not None else zeros
                c_first = cx_v[layer] if cx_v is not None else zeros
            for t in reversed(range(T)):
                dh_t = d_out[t] + dh
                c_t = views.c[t] if is_lstm else None
                c_prev = (views.c[t - 1] if t > 0 else c_first) if is_lstm else None
                d_pre, dc = _pointwise_backward(mode, dh_t, dc, views.act[t], c_t, c_prev)
                views.dact[t] = d_pre
                d_in[t] = d_pre @ W
                dh = d_pre @ R
            if dhx_v is not None:
                dhx_v[layer] = dh
            if dcx_v is not None:
                dcx_v[layer] = dc if is_lstm else 0.0
            if layer > 0 and reserve[layer - 1].mask is not None:
                d_in.mul_(reserve[layer - 1].mask)
            d_out = d_in

    @torch.no_grad()
    def rnn_backward_weights(
        self,
        rnn_desc: RNNDescriptor,
        seq_length: int,
        x_descs: Sequence[TensorDescriptor],
        x: torch.Tensor,
        hx_desc: TensorDescriptor,
        hx: Optional[torch.Tensor],
        y_descs: Sequence[TensorDescriptor],
        y: torch.Tensor,
        workspace: torch.Tensor,
        dw_desc: FilterDescriptor,
        dw: torch.Tensor,
        reserve_space: torch.Tensor,
    ) -> None:
        """Adds this sequence's weight gradient into ``dw``; it never overwrites."""
        self.call_counts["backward_weights"] += 1
        batch, input_size = self._sequence_shape(rnn_desc, seq_length, x_descs)
        T, B, H, L = seq_length, batch, rnn_desc.hidden_size, rnn_desc.num_layers
        dtype = rnn_desc.dtype
        _check_state_desc(hx_desc, (L, B, H), "hx")

        weights = _WeightLayout(rnn_desc, input_size)
        dw_flat = _packed(dw, (weights.numel,), dtype, "dw")
        if dw_desc.numel != weights.numel:
            raise AcceleratorError(Status.BAD_PARAM, f"dw descriptor holds {dw_desc.numel} elements, expected {weights.numel}")
        _elements(workspace, dtype, _WorkspaceLayout(rnn_desc, T, B).numel, "workspace")
        reserve_layout = _ReserveLayout(rnn_desc, T, B)
        reserve = reserve_layout.views(_elements(reserve_space, dtype, reserve_layout.numel, "reserve_space"))

        x_v = _packed(x, (T, B, input_size), dtype, "x")
        _packed(y, (T, B, H), dtype, "y")
        hx_v = _packed(hx, (L, B, H), dtype, "hx") if hx is not None else None
        G = rnn_desc.gate_count

        for layer in range(L):
            dW, dR, db_w, db_r = weights.stacked(dw_flat, layer)
            views = reserve[layer]
            if layer == 0:
                layer_input = x_v
            else:
                below = reserve[layer - 1]
                layer_input = below.h if below.mask is None else below.h * below.mask
            h_first = hx_v[layer] if hx_v is not None else torch.zeros((B, H), dtype=dtype, device=dw.device)
            h_prev = torch.cat([h_first.unsqueeze(0), views.h[:T - 1]], dim=0)
            d_pre = views.dact.reshape(T * B, G * H)
            dW.add_(d_pre.t() @ layer_input.reshape(T * B, -1))
            dR.add_(d_pre.t() @ h_prev.reshape(T * B, H))
            db = d_pre.sum(dim=0)
            db_w.add_(db)
            db_r.add_(db)

    # -- internals ----------------------------------------------------------

    @torch.no_grad()
    def _forward(self, rnn_desc, seq_length, x_descs, x, hx_desc, hx, cx_desc, cx, w_desc, w,
                 y_descs, y, hy_desc, hy, cy_desc, cy, workspace, reserve_space) -> None:
        batch, input_size = self._sequence_shape(rnn_desc, seq_length, x_descs)
        y_batch, y_size = self._sequence_shape(rnn_desc, seq_length, y_descs)
        T, B, H, L = seq_length, batch, rnn_desc.hidden_size, rnn_desc.num_layers
        if (y_batch, y_size) != (B, H):
            raise AcceleratorError(Status.BAD_PARAM, f"y descriptors ({y_batch}, {y_size}) do not match ({B}, {H})")
        dtype, mode = rnn_desc.dtype, rnn_desc.mode
        state_shape = (L, B, H)
        for desc, name in ((hx_desc, "hx"), (cx_desc, "cx"), (hy_desc, "hy"), (cy_desc, "cy")):
            _check_state_desc(desc, state_shape, name)

        weights = _WeightLayout(rnn_desc, input_size)
        w_flat = _packed(w, (weights.numel,), dtype, "w")
        if w_desc.numel != weights.numel:
            raise AcceleratorError(Status.BAD_PARAM, f"w descriptor holds {w_desc.numel} elements, expected {weights.numel}")
        work_layout = _WorkspaceLayout(rnn_desc, T, B)
        work = _elements(workspace, dtype, work_layout.numel, "workspace")
        training = reserve_space is not None
        reserve = None
        if training:
            reserve_layout = _ReserveLayout(rnn_desc, T, B)
            reserve = reserve_layout.views(_elements(reserve_space, dtype, reserve_layout.numel, "reserve_space"))

        layer_input = _packed(x, (T, B, input_size), dtype, "x")
        y_v = _packed(y, (T, B, H), dtype, "y")
        hx_v = _packed(hx, state_shape, dtype, "hx") if hx is not None else None
        cx_v = _packed(cx, state_shape, dtype, "cx") if cx is not None else None
        hy_v = _packed(hy, state_shape, dtype, "hy") if hy is not None else None
        cy_v = _packed(cy, state_shape, dtype, "cy") if cy is not None else None

        masks: List[torch.Tensor] = []
        if training and rnn_desc.dropout > 0.0 and L > 1:
            masks = rnn_desc.dropout_desc.draw_masks(L - 1, (T, B, H), dtype, y.device)

        zeros = torch.zeros((B, H), dtype=dtype, device=y.device)
        is_lstm = mode == RNNMode.LSTM
        G = rnn_desc.gate_count
        for layer in range(L):
            W, R, b_w, b_r = weights.stacked(w_flat, layer)
            gates = work_layout.gates(work)
            gates.view(T * B, G * H).copy_(layer_input.reshape(T * B, -1) @ W.t())
            gates.add_(b_w + b_r)

            h = hx_v[layer] if hx_v is not None else zeros
            c = (cx_v[layer] if cx_v is not None else zeros) if is_lstm else None
            if training:
                out = reserve[layer].h
            else:
                out = y_v if layer == L - 1 else work_layout.sequence(work, layer)
            for t in range(T):
                pre = gates[t] + h @ R.t()
                h, c, act = _pointwise_forward(mode, pre, c)
                out[t] = h
                if training:
                    reserve[layer].act[t] = act
                    if is_lstm:
                        reserve[layer].c[t] = c
            if hy_v is not None:
                hy_v[layer] = h
            if cy_v is not None:
                cy_v[layer] = c if is_lstm else 0.0
            layer_input = out
            if masks and layer < L - 1:
                reserve[layer].mask.copy_(masks[layer])
                layer_input = out * reserve[layer].mask
        if training:
            y_v.copy_(reserve[L - 1].h)

    def _sequence_shape(self, rnn_desc: RNNDescriptor, seq_length: int, descs: Sequence[TensorDescriptor]) -> Tuple[int, int]:
        if rnn_desc.mode is None:
            raise AcceleratorError(Status.BAD_PARAM, "RNN descriptor was not set")
        if seq_length <= 0 or len(descs) < seq_length:
            raise AcceleratorError(Status.BAD_PARAM, f"need {seq_length} step descriptors, got {len(descs)}")
        first = descs[0]
        if first.dtype != rnn_desc.dtype:
            raise AcceleratorError(Status.BAD_PARAM, f"step descriptor type {first.dtype} does not match {rnn_desc.dtype}")
        for desc in descs[1:seq_length]:
            if desc.dims != first.dims:
                raise AcceleratorError(Status.NOT_SUPPORTED, "varying per-step batch sizes are not supported")
        return first.dims[0], first.dims[1]

    def _weight_layout(self, rnn_desc, layer, x_desc, w_desc, w, lin_layer_id) -> _WeightLayout:
        if not 0 <= layer < rnn_desc.num_layers:
            raise AcceleratorError(Status.BAD_PARAM, f"layer {layer} out of range for {rnn_desc.num_layers} layers")
        if not 0 <= lin_layer_id < rnn_desc.num_lin_layers:
            raise AcceleratorError(Status.BAD_PARAM, f"linear layer id {lin_layer_id} out of range for {rnn_desc.mode.name}")
        layout = _WeightLayout(rnn_desc, x_desc.dims[1])
        if w_desc.numel != layout.numel or w.numel() != layout.numel:
            raise AcceleratorError(Status.BAD_PARAM, f"weight buffer must hold {layout.numel} elements, got {w.numel()}")
        return layout

    @staticmethod
    def _region(w: torch.Tensor, offset: int, dims: Tuple[int, int, int], dtype: torch.dtype):
        desc = FilterDescriptor()
        desc.set_nd(dtype, dims)
        length = dims[0] * dims[1] * dims[2]
        return desc, w.view(-1)[offset:offset + length]
