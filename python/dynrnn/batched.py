"""Whole-sequence recurrent operator: one accelerator call per forward / backward."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import torch

from .accelerator import Handle, TensorDescriptor
from .descriptors import RnnDescriptorSet
from .gradients import GradientBuffer, fresh_gradient
from .rnn_type import RnnType

logger = logging.getLogger(__name__)


@dataclass
class DescriptorBundle:
    """Descriptors and scratch sized for one (seq_length, batch).

    A training forward fills ``reserve_space`` and the tensor references;
    the paired backward consumes them and releases the bundle.
    """

    seq_length: int
    batch_size: int
    state_desc: TensorDescriptor
    x_descs: List[TensorDescriptor]
    y_descs: List[TensorDescriptor]
    workspace: torch.Tensor
    reserve_size: int
    reserve_space: Optional[torch.Tensor] = None
    x: Optional[torch.Tensor] = field(default=None, repr=False)
    hx: Optional[torch.Tensor] = field(default=None, repr=False)
    cx: Optional[torch.Tensor] = field(default=None, repr=False)
    y: Optional[torch.Tensor] = field(default=None, repr=False)

    @property
    def pending(self) -> bool:
        return self.reserve_space is not None

    def release(self) -> None:
        if self.reserve_space is not None:
            logger.debug(
                "batched: releasing reserve for seq_length=%d batch=%d", self.seq_length, self.batch_size
            )
        self.reserve_space = None
        self.x = self.hx = self.cx = self.y = None


class BatchedSequenceOperator:
    def __init__(
        self,
        handle: Handle,
        rnn_type: RnnType,
        input_size: int,
        hidden_size: int,
        num_layers: int,
        is_training: bool,
        dropout: float = 0.0,
        dropout_seed: int = 1337,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> None:
        self.handle = handle
        self.rnn_type = rnn_type
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.is_training = is_training
        self.descriptors = RnnDescriptorSet(
            handle,
            rnn_type,
            input_size,
            hidden_size,
            num_layers,
            dropout=dropout if is_training else 0.0,
            dropout_seed=dropout_seed,
            dtype=dtype,
            device=device,
        )

    @property
    def weight_numel(self) -> int:
        return self.descriptors.weight_numel

    def state_shape(self, batch: int) -> Tuple[int, int, int]:
        return (self.num_layers, batch, self.hidden_size)

    def initialize(self, w: torch.Tensor, generator: Optional[torch.Generator] = None) -> None:
        self.descriptors.initialize_weights(w, generator)

    def prepare(self, seq_length: int, batch: int) -> DescriptorBundle:
        """Build descriptors and query scratch sizes for one (seq_length, batch)."""
        if seq_length <= 0 or batch <= 0:
            raise ValueError(f"seq_length and batch must be positive, got {seq_length}, {batch}")
        d = self.descriptors
        x_descs = d.step_descriptors(batch, self.input_size, seq_length)
        y_descs = d.step_descriptors(batch, self.hidden_size, seq_length)
        workspace_size = self.handle.get_rnn_workspace_size(d.rnn_desc, seq_length, x_descs)
        reserve_size = 0
        if self.is_training:
            reserve_size = self.handle.get_rnn_training_reserve_size(d.rnn_desc, seq_length, x_descs)
        logger.debug(
            "batched: descriptors for seq_length=%d batch=%d workspace=%d reserve=%d bytes",
            seq_length, batch, workspace_size, reserve_size,
        )
        return DescriptorBundle(
            seq_length=seq_length,
            batch_size=batch,
            state_desc=d.state_descriptor(batch),
            x_descs=x_descs,
            y_descs=y_descs,
            workspace=torch.empty(workspace_size, dtype=torch.uint8, device=d.device),
            reserve_size=reserve_size,
        )

    def _check_sequence(self, x, hx, cx) -> Tuple[int, int]:
        if hx is None or cx is None:
            raise RuntimeError("initial states must be assigned before forward")
        if x.dim() != 3:
            raise ValueError(f"x must be [seq_length, batch, input_size], got shape {tuple(x.shape)}")
        T, B, input_size = x.shape
        if T == 0 or B == 0:
            raise ValueError(f"x must hold at least one step and one sequence, got shape {tuple(x.shape)}")
        if input_size != self.input_size:
            raise ValueError(f"x feature size must be {self.input_size}, got {input_size}")
        expected = self.state_shape(B)
        for name, state in (("hx", hx), ("cx", cx)):
            if tuple(state.shape) != expected:
                raise ValueError(f"{name} must have shape {expected}, got {tuple(state.shape)}")
        return T, B

    def forward(
        self,
        x: torch.Tensor,
        hx: Optional[torch.Tensor],
        cx: Optional[torch.Tensor],
        w: torch.Tensor,
        y: Optional[torch.Tensor] = None,
        hy: Optional[torch.Tensor] = None,
        cy: Optional[torch.Tensor] = None,
        bundle: Optional[DescriptorBundle] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Optional[DescriptorBundle]]:
        T, B = self._check_sequence(x, hx, cx)
        if bundle is None:
            bundle = self.prepare(T, B)
        elif (bundle.seq_length, bundle.batch_size) != (T, B):
            raise ValueError(
                f"descriptor bundle was prepared for (seq_length={bundle.seq_length}, batch={bundle.batch_size}), "
                f"got input of shape {tuple(x.shape)}"
            )
        x = x.contiguous()
        if y is None:
            y = x.new_empty((T, B, self.hidden_size))
        if hy is None:
            hy = torch.empty_like(hx)
        if cy is None:
            cy = torch.empty_like(cx)
        d = self.descriptors
        s = bundle.state_desc

        if not self.is_training:
            self.handle.rnn_forward_inference(
                d.rnn_desc, T,
                bundle.x_descs, x,
                s, hx, s, cx,
                d.w_desc, w,
                bundle.y_descs, y,
                s, hy, s, cy,
                bundle.workspace,
            )
            return y, hy, cy, None

        bundle.reserve_space = torch.empty(bundle.reserve_size, dtype=torch.uint8, device=x.device)
        self.handle.rnn_forward_training(
            d.rnn_desc, T,
            bundle.x_descs, x,
            s, hx, s, cx,
            d.w_desc, w,
            bundle.y_descs, y,
            s, hy, s, cy,
            bundle.workspace, bundle.reserve_space,
        )
        bundle.x, bundle.hx, bundle.cx, bundle.y = x, hx, cx, y
        return y, hy, cy, bundle

    def backward(
        self,
        bundle: Optional[DescriptorBundle],
        dy: torch.Tensor,
        w: torch.Tensor,
        dw: GradientBuffer,
        dhy: Optional[torch.Tensor] = None,
        dcy: Optional[torch.Tensor] = None,
        dx: Optional[GradientBuffer] = None,
        dhx: Optional[GradientBuffer] = None,
        dcx: Optional[GradientBuffer] = None,
    ) -> Tuple[GradientBuffer, GradientBuffer, GradientBuffer]:
        if not self.is_training:
            raise RuntimeError("backward requires an operator built with is_training=True")
        if bundle is None or not bundle.pending:
            raise RuntimeError("backward requires a pending training forward")
        if tuple(dy.shape) != tuple(bundle.y.shape):
            raise ValueError(f"dy must have shape {tuple(bundle.y.shape)}, got {tuple(dy.shape)}")
        if dw.tensor.numel() != self.weight_numel:
            raise ValueError(f"weight gradient must hold {self.weight_numel} elements, got {dw.tensor.numel()}")
        dx = fresh_gradient(dx, bundle.x, "x")
        dhx = fresh_gradient(dhx, bundle.hx, "hx")
        dcx = fresh_gradient(dcx, bundle.cx, "cx")

        d = self.descriptors
        s = bundle.state_desc
        T = bundle.seq_length
        self.handle.rnn_backward_data(
            d.rnn_desc, T,
            bundle.y_descs, bundle.y,
            bundle.y_descs, dy.contiguous(),
            s, dhy, s, dcy,
            d.w_desc, w,
            s, bundle.hx, s, bundle.cx,
            bundle.x_descs, dx.tensor,
            s, dhx.tensor, s, dcx.tensor,
            bundle.workspace, bundle.reserve_space,
        )
        if dw.gradient_aggregation_counter == 0:
            dw.zero_()
        self.handle.rnn_backward_weights(
            d.rnn_desc, T,
            bundle.x_descs, bundle.x,
            s, bundle.hx,
            bundle.y_descs, bundle.y,
            bundle.workspace,
            d.w_desc, dw.tensor,
            bundle.reserve_space,
        )
        dw.mark_written()
        for grad in (dx, dhx, dcx):
            grad.mark_written()
        bundle.release()
        return dx, dhx, dcx
