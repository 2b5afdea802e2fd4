"""Recurrent cell bound to a fixed batch size and a single time step."""

from __future__ import annotations

import logging
from typing import Optional

import torch

from .accelerator import Handle
from .descriptors import RnnDescriptorSet
from .gradients import GradientBuffer
from .rnn_type import RnnType

logger = logging.getLogger(__name__)

_FORWARD_SLOTS = ("input", "output", "hx", "cx", "hy", "cy")
_BACKWARD_SLOTS = ("output", "d_output", "dhy", "dcy", "hx", "cx", "input", "d_input", "dhx", "dcx")


class SingleStepCell:
    """Descriptors and workspace for one step of shape (batch, input_size).

    Callers bind the tensor slots (``input``, ``hx``, ...) before each
    ``forward`` / ``backward``. In training mode ``reserve_space`` must be
    bound to a byte buffer of ``reserve_size`` bytes, and the same buffer
    must be bound again for the paired ``backward``.
    """

    def __init__(
        self,
        handle: Handle,
        rnn_type: RnnType,
        input_size: int,
        batch_size: int,
        hidden_size: int,
        num_layers: int,
        is_training: bool,
        dropout: float = 0.0,
        dropout_seed: int = 1337,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.handle = handle
        self.rnn_type = rnn_type
        self.input_size = input_size
        self.batch_size = batch_size
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
        d = self.descriptors
        self.x_descs = d.step_descriptors(batch_size, input_size, 1)
        self.y_descs = d.step_descriptors(batch_size, hidden_size, 1)
        self.state_desc = d.state_descriptor(batch_size)

        workspace_size = handle.get_rnn_workspace_size(d.rnn_desc, 1, self.x_descs)
        self.workspace = torch.empty(workspace_size, dtype=torch.uint8, device=d.device)
        self.reserve_size = 0
        if is_training:
            self.reserve_size = handle.get_rnn_training_reserve_size(d.rnn_desc, 1, self.x_descs)
        logger.debug(
            "cell: batch=%d workspace=%d bytes reserve=%d bytes/step", batch_size, workspace_size, self.reserve_size
        )

        self.input: Optional[torch.Tensor] = None
        self.d_input: Optional[torch.Tensor] = None
        self.output: Optional[torch.Tensor] = None
        self.d_output: Optional[torch.Tensor] = None
        self.hx: Optional[torch.Tensor] = None
        self.dhx: Optional[torch.Tensor] = None
        self.cx: Optional[torch.Tensor] = None
        self.dcx: Optional[torch.Tensor] = None
        self.hy: Optional[torch.Tensor] = None
        self.dhy: Optional[torch.Tensor] = None
        self.cy: Optional[torch.Tensor] = None
        self.dcy: Optional[torch.Tensor] = None
        self.reserve_space: Optional[torch.Tensor] = None

    @property
    def weight_numel(self) -> int:
        return self.descriptors.weight_numel

    @property
    def state_shape(self):
        return (self.num_layers, self.batch_size, self.hidden_size)

    def initialize(self, w: torch.Tensor, generator: Optional[torch.Generator] = None) -> None:
        self.descriptors.initialize_weights(w, generator)

    def _require(self, slots) -> None:
        missing = [name for name in slots if getattr(self, name) is None]
        if missing:
            raise RuntimeError(f"cell slots not bound: {', '.join(missing)}")

    def forward(self, w: torch.Tensor) -> None:
        self._require(_FORWARD_SLOTS)
        expected = (self.batch_size, self.input_size)
        if tuple(self.input.shape) != expected:
            raise ValueError(f"cell input must have shape {expected}, got {tuple(self.input.shape)}")
        d = self.descriptors
        if self.is_training:
            self._require(("reserve_space",))
            self.handle.rnn_forward_training(
                d.rnn_desc, 1,
                self.x_descs, self.input,
                self.state_desc, self.hx,
                self.state_desc, self.cx,
                d.w_desc, w,
                self.y_descs, self.output,
                self.state_desc, self.hy,
                self.state_desc, self.cy,
                self.workspace, self.reserve_space,
            )
        else:
            self.handle.rnn_forward_inference(
                d.rnn_desc, 1,
                self.x_descs, self.input,
                self.state_desc, self.hx,
                self.state_desc, self.cx,
                d.w_desc, w,
                self.y_descs, self.output,
                self.state_desc, self.hy,
                self.state_desc, self.cy,
                self.workspace,
            )

    def backward(self, w: torch.Tensor, dw: GradientBuffer) -> None:
        if not self.is_training:
            raise RuntimeError("backward requires a cell built with is_training=True")
        self._require(_BACKWARD_SLOTS + ("reserve_space",))
        d = self.descriptors
        self.handle.rnn_backward_data(
            d.rnn_desc, 1,
            self.y_descs, self.output,
            self.y_descs, self.d_output,
            self.state_desc, self.dhy,
            self.state_desc, self.dcy,
            d.w_desc, w,
            self.state_desc, self.hx,
            self.state_desc, self.cx,
            self.x_descs, self.d_input,
            self.state_desc, self.dhx,
            self.state_desc, self.dcx,
            self.workspace, self.reserve_space,
        )
        if dw.gradient_aggregation_counter == 0:
            dw.zero_()
        self.handle.rnn_backward_weights(
            d.rnn_desc, 1,
            self.x_descs, self.input,
            self.state_desc, self.hx,
            self.y_descs, self.output,
            self.workspace,
            d.w_desc, dw.tensor,
            self.reserve_space,
        )
        dw.mark_written()
