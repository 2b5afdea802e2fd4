from __future__ import annotations

import logging
import math
from typing import List, Optional

import torch

from .accelerator import (
    _ITEMSIZE,
    DirectionMode,
    DropoutDescriptor,
    FilterDescriptor,
    Handle,
    RNNDescriptor,
    RNNInputMode,
    TensorDescriptor,
)
from .rnn_type import RnnType

logger = logging.getLogger(__name__)


class RnnDescriptorSet:
    """Shape-independent descriptors of one recurrent operator.

    Holds the dropout state arena, the RNN descriptor and the weight filter
    descriptor. Per-step and state descriptors depend on the batch size and
    are built on demand.
    """

    def __init__(
        self,
        handle: Handle,
        rnn_type: RnnType,
        input_size: int,
        hidden_size: int,
        num_layers: int,
        dropout: float = 0.0,
        dropout_seed: int = 1337,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> None:
        if input_size <= 0 or hidden_size <= 0 or num_layers <= 0:
            raise ValueError(
                f"input_size, hidden_size and num_layers must be positive, got {input_size}, {hidden_size}, {num_layers}"
            )
        if dtype not in _ITEMSIZE:
            raise ValueError(f"dtype must be one of {list(_ITEMSIZE)}, got {dtype}")
        self.handle = handle
        self.rnn_type = rnn_type
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.dtype = dtype
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.itemsize = _ITEMSIZE[dtype]

        states_size = handle.dropout_get_states_size()
        self.dropout_states = torch.empty(states_size, dtype=torch.uint8, device=self.device)
        self.dropout_desc = DropoutDescriptor()
        self.dropout_desc.set(handle, dropout, self.dropout_states, dropout_seed)

        self.rnn_desc = RNNDescriptor()
        self.rnn_desc.set(
            hidden_size,
            num_layers,
            self.dropout_desc,
            RNNInputMode.LINEAR_INPUT,
            DirectionMode.UNIDIRECTIONAL,
            rnn_type.mode,
            dtype,
        )

        # params size does not depend on batch
        self.x_desc = self.step_descriptors(1, input_size, 1)[0]
        params_bytes = handle.get_rnn_params_size(self.rnn_desc, self.x_desc, dtype)
        if params_bytes % self.itemsize != 0:
            raise RuntimeError(f"weight buffer of {params_bytes} bytes is not a whole number of {dtype} elements")
        self.weight_numel = params_bytes // self.itemsize
        self.w_desc = FilterDescriptor()
        self.w_desc.set_nd(dtype, (self.weight_numel, 1, 1))
        logger.debug(
            "descriptor set: %s input=%d hidden=%d layers=%d dropout=%.3f weights=%d",
            rnn_type, input_size, hidden_size, num_layers, dropout, self.weight_numel,
        )

    def state_descriptor(self, batch: int) -> TensorDescriptor:
        desc = TensorDescriptor()
        desc.set_nd(
            self.dtype,
            (self.num_layers, batch, self.hidden_size),
            (batch * self.hidden_size, self.hidden_size, 1),
        )
        return desc

    def step_descriptors(self, batch: int, size: int, count: int) -> List[TensorDescriptor]:
        descs = []
        for _ in range(count):
            desc = TensorDescriptor()
            desc.set_nd(self.dtype, (batch, size, 1), (size, 1, 1))
            descs.append(desc)
        return descs

    def lin_layer_matrix(self, w: torch.Tensor, layer: int, lin_layer_id: int) -> torch.Tensor:
        desc, region = self.handle.get_rnn_lin_layer_matrix_params(
            self.rnn_desc, layer, self.x_desc, self.w_desc, w, lin_layer_id
        )
        _, dims = desc.get_nd()
        return region.view(dims[1], dims[2])

    def lin_layer_bias(self, w: torch.Tensor, layer: int, lin_layer_id: int) -> torch.Tensor:
        desc, region = self.handle.get_rnn_lin_layer_bias_params(
            self.rnn_desc, layer, self.x_desc, self.w_desc, w, lin_layer_id
        )
        return region

    def new_weight(self) -> torch.Tensor:
        return torch.empty(self.weight_numel, dtype=self.dtype, device=self.device)

    @torch.no_grad()
    def initialize_weights(self, w: torch.Tensor, generator: Optional[torch.Generator] = None) -> None:
        if w.numel() != self.weight_numel:
            raise ValueError(f"weight must hold {self.weight_numel} elements, got {w.numel()}")
        scale = 1.0 / math.sqrt(self.hidden_size + self.input_size)
        for layer in range(self.num_layers):
            for lin_layer_id in range(self.rnn_type.num_lin_layers):
                matrix = self.lin_layer_matrix(w, layer, lin_layer_id)
                values = torch.randn(matrix.shape, generator=generator, dtype=torch.float64)
                matrix.copy_(values * scale)
                bias = self.lin_layer_bias(w, layer, lin_layer_id)
                self.rnn_type.init_bias(layer, lin_layer_id, bias)
