from __future__ import annotations

from typing import Sequence, Tuple

import torch

from .graph import Executor, Variable


@torch.no_grad()
def finite_difference_gradient(
    executor: Executor,
    variable: Variable,
    outputs: Sequence[Tuple[Variable, torch.Tensor]],
    eps: float = 1e-6,
) -> torch.Tensor:
    """Central-difference gradient of ``sum_i <output_i, weight_i>`` w.r.t. ``variable``.

    Perturbs the executor's tensor of ``variable`` element by element and
    re-runs ``executor.forward()`` twice per element, so it is only suitable
    for small graphs. Nodes with dropout must be built with ``dropout=0``.
    """
    if not outputs:
        raise ValueError("need at least one (output, weight) pair")
    tensor = executor.get_tensor(variable)
    flat = tensor.view(-1)
    grad = torch.empty_like(tensor)
    grad_flat = grad.view(-1)

    def objective() -> torch.Tensor:
        executor.forward()
        total = torch.zeros((), dtype=torch.float64, device=tensor.device)
        for var, weight in outputs:
            total += (executor.get_tensor(var).to(torch.float64) * weight.to(torch.float64)).sum()
        return total

    for i in range(flat.numel()):
        original = flat[i].item()
        flat[i] = original + eps
        plus = objective()
        flat[i] = original - eps
        minus = objective()
        flat[i] = original
        grad_flat[i] = (plus - minus) / (2.0 * eps)
    executor.forward()
    return grad
