"""Variable-length sequences by repeating a single-step cell T times."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from .cell import SingleStepCell
from .gradients import GradientBuffer, fresh_gradient

logger = logging.getLogger(__name__)


@dataclass
class UnrolledRecord:
    """State produced by one training forward and consumed by its backward.

    ``h`` / ``c`` hold the T-1 inner states, [T-1, layers, batch, hidden];
    both are ``None`` when T == 1.
    """

    seq_length: int
    h: Optional[torch.Tensor]
    c: Optional[torch.Tensor]
    reserve: Optional[torch.Tensor]
    x: torch.Tensor
    hx: torch.Tensor
    cx: torch.Tensor
    y: torch.Tensor

    @property
    def released(self) -> bool:
        return self.reserve is None

    def release(self) -> None:
        if self.reserve is not None:
            logger.debug("unrolled: releasing reserve for seq_length=%d", self.seq_length)
        self.reserve = None
        self.h = None
        self.c = None


def _boundary(t: int, seq_length: int, first, last, inner: Optional[torch.Tensor]):
    """Slots read and written by step ``t``: ``first`` feeds step 0, step T-1 writes ``last``."""
    before = first if t == 0 else inner[t - 1]
    after = last if t == seq_length - 1 else inner[t]
    return before, after


class UnrolledSequenceOperator:
    def __init__(self, cell: SingleStepCell) -> None:
        self.cell = cell

    @property
    def is_training(self) -> bool:
        return self.cell.is_training

    @property
    def weight_numel(self) -> int:
        return self.cell.weight_numel

    def initialize(self, w: torch.Tensor, generator: Optional[torch.Generator] = None) -> None:
        self.cell.initialize(w, generator)

    def _check_sequence(self, x: torch.Tensor, hx: Optional[torch.Tensor], cx: Optional[torch.Tensor]) -> int:
        if hx is None or cx is None:
            raise RuntimeError("initial states must be assigned before forward")
        cell = self.cell
        if x.dim() != 3:
            raise ValueError(f"x must be [seq_length, batch, input_size], got shape {tuple(x.shape)}")
        if x.shape[0] == 0:
            raise ValueError("x must hold at least one time step")
        if tuple(x.shape[1:]) != (cell.batch_size, cell.input_size):
            raise ValueError(
                f"x must be [*, {cell.batch_size}, {cell.input_size}] for this cell, got {tuple(x.shape)}"
            )
        for name, state in (("hx", hx), ("cx", cx)):
            if tuple(state.shape) != cell.state_shape:
                raise ValueError(f"{name} must have shape {cell.state_shape}, got {tuple(state.shape)}")
        return x.shape[0]

    def forward(
        self,
        x: torch.Tensor,
        hx: Optional[torch.Tensor],
        cx: Optional[torch.Tensor],
        w: torch.Tensor,
        y: Optional[torch.Tensor] = None,
        hy: Optional[torch.Tensor] = None,
        cy: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Optional[UnrolledRecord]]:
        T = self._check_sequence(x, hx, cx)
        cell = self.cell
        x = x.contiguous()
        if y is None:
            y = x.new_empty((T, cell.batch_size, cell.hidden_size))
        if hy is None:
            hy = torch.empty_like(hx)
        if cy is None:
            cy = torch.empty_like(cx)

        h = c = None
        if T > 1:
            h = hx.new_empty((T - 1,) + cell.state_shape)
            c = cx.new_empty((T - 1,) + cell.state_shape)
        reserve = None
        if cell.is_training:
            reserve = torch.empty((T, cell.reserve_size), dtype=torch.uint8, device=x.device)

        for t in range(T):
            cell.input = x[t]
            cell.output = y[t]
            cell.hx, cell.hy = _boundary(t, T, hx, hy, h)
            cell.cx, cell.cy = _boundary(t, T, cx, cy, c)
            if reserve is not None:
                cell.reserve_space = reserve[t]
            cell.forward(w)

        record = None
        if cell.is_training:
            record = UnrolledRecord(T, h, c, reserve, x, hx, cx, y)
        return y, hy, cy, record

    def backward(
        self,
        record: Optional[UnrolledRecord],
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
        if record is None or record.released:
            raise RuntimeError("backward requires a pending training forward")
        if dhy is None or dcy is None:
            raise RuntimeError("terminal state gradients must be assigned before backward")
        T = record.seq_length
        cell = self.cell
        if tuple(dy.shape) != tuple(record.y.shape):
            raise ValueError(f"dy must have shape {tuple(record.y.shape)}, got {tuple(dy.shape)}")
        for name, grad in (("dhy", dhy), ("dcy", dcy)):
            if tuple(grad.shape) != cell.state_shape:
                raise ValueError(f"{name} must have shape {cell.state_shape}, got {tuple(grad.shape)}")
        if dw.tensor.numel() != cell.weight_numel:
            raise ValueError(f"weight gradient must hold {cell.weight_numel} elements, got {dw.tensor.numel()}")

        dy = dy.contiguous()
        dx = fresh_gradient(dx, record.x, "x")
        dhx = fresh_gradient(dhx, record.hx, "hx")
        dcx = fresh_gradient(dcx, record.cx, "cx")

        dh = dc = None
        if T > 1:
            dh = torch.empty_like(record.h)
            dc = torch.empty_like(record.c)

        for t in reversed(range(T)):
            cell.input = record.x[t]
            cell.output = record.y[t]
            cell.hx, _ = _boundary(t, T, record.hx, None, record.h)
            cell.cx, _ = _boundary(t, T, record.cx, None, record.c)
            cell.d_input = dx.tensor[t]
            cell.d_output = dy[t]
            cell.dhx, cell.dhy = _boundary(t, T, dhx.tensor, dhy, dh)
            cell.dcx, cell.dcy = _boundary(t, T, dcx.tensor, dcy, dc)
            cell.reserve_space = record.reserve[t]
            cell.backward(w, dw)

        for grad in (dx, dhx, dcx):
            grad.mark_written()
        record.release()
        return dx, dhx, dcx
