"""Recurrent cell variants: accelerator mode, linear-layer count and bias initialization."""

from __future__ import annotations

from typing import Union

import torch

from .accelerator import RNNMode


class RnnType:
    mode: RNNMode
    gate_count: int = 1

    @property
    def num_lin_layers(self) -> int:
        """Input-side and recurrent-side matrices, one pair per gate."""
        return 2 * self.gate_count

    def init_bias(self, layer: int, lin_layer_id: int, bias: torch.Tensor) -> None:
        bias.zero_()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RnnReluType(RnnType):
    mode = RNNMode.RNN_RELU


class RnnTanhType(RnnType):
    mode = RNNMode.RNN_TANH


class LstmRnnType(RnnType):
    """LSTM with gate order [input, forget, cell, output].

    The forget gate's input-side bias (linear layer 1) starts at
    ``forget_bias``; every other bias starts at zero.
    """

    mode = RNNMode.LSTM
    gate_count = 4

    def __init__(self, forget_bias: float = 1.0) -> None:
        self.forget_bias = float(forget_bias)

    def init_bias(self, layer: int, lin_layer_id: int, bias: torch.Tensor) -> None:
        if lin_layer_id == 1:
            bias.fill_(self.forget_bias)
        else:
            bias.zero_()

    def __repr__(self) -> str:
        return f"LstmRnnType(forget_bias={self.forget_bias})"


_BY_NAME = {
    "lstm": LstmRnnType,
    "rnn_tanh": RnnTanhType,
    "tanh": RnnTanhType,
    "rnn_relu": RnnReluType,
    "relu": RnnReluType,
}


def get_rnn_type(rnn_type: Union[str, RnnType]) -> RnnType:
    if isinstance(rnn_type, RnnType):
        return rnn_type
    try:
        return _BY_NAME[rnn_type.lower()]()
    except (KeyError, AttributeError):
        raise ValueError(f"unknown rnn_type {rnn_type!r}; expected one of {sorted(_BY_NAME)}") from None
