"""Gradient buffers with the zero-on-first-write accumulation protocol.

A buffer starts each backward pass UNWRITTEN. The first producer zeroes it
before adding; later producers add on top. ``gradient_aggregation_counter``
counts completed writes since the last reset.
"""

from __future__ import annotations

import enum
from typing import Optional

import torch


class GradientState(enum.Enum):
    UNWRITTEN = 0
    ACCUMULATING = 1


class GradientBuffer:
    def __init__(self, tensor: torch.Tensor) -> None:
        self.tensor = tensor
        self.gradient_aggregation_counter = 0

    @property
    def state(self) -> GradientState:
        if self.gradient_aggregation_counter == 0:
            return GradientState.UNWRITTEN
        return GradientState.ACCUMULATING

    def zero_(self) -> None:
        self.tensor.zero_()

    def mark_written(self) -> None:
        self.gradient_aggregation_counter += 1

    def assign(self, value: torch.Tensor, replace: bool = False) -> None:
        """Write ``value`` as a gradient contribution.

        With ``replace`` (or on the first write) the buffer is overwritten,
        otherwise ``value`` is added.
        """
        if value.shape != self.tensor.shape:
            raise ValueError(f"gradient shape {tuple(value.shape)} does not match buffer {tuple(self.tensor.shape)}")
        if replace or self.gradient_aggregation_counter == 0:
            self.tensor.copy_(value)
        else:
            self.tensor.add_(value)
        self.mark_written()

    def reset(self) -> None:
        self.gradient_aggregation_counter = 0

    def __repr__(self) -> str:
        return f"GradientBuffer(shape={tuple(self.tensor.shape)}, counter={self.gradient_aggregation_counter})"


def fresh_gradient(buffer: Optional[GradientBuffer], like: torch.Tensor, name: str) -> GradientBuffer:
    """Return a buffer the caller may overwrite.

    Input and state gradients are written directly by the accelerator, so a
    buffer somebody already accumulated into cannot be reused.
    """
    if buffer is None:
        return GradientBuffer(torch.empty_like(like))
    if buffer.gradient_aggregation_counter != 0:
        raise RuntimeError(
            f"gradient of {name} was already written {buffer.gradient_aggregation_counter} time(s); "
            "accumulating into it is not supported"
        )
    if buffer.tensor.shape != like.shape:
        raise ValueError(f"gradient of {name} has shape {tuple(buffer.tensor.shape)}, expected {tuple(like.shape)}")
    return buffer
