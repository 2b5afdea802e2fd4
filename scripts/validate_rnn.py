#!/usr/bin/env python3
"""
Validate both recurrent composition strategies against PyTorch's nn.LSTM.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch

from dynrnn import DynamicRNN


@dataclass(frozen=True)
class RnnCase:
    seq_length: int
    batch_size: int
    input_size: int
    hidden_size: int
    num_layers: int

    def describe(self) -> str:
        return (
            f"T={self.seq_length}, B={self.batch_size}, "
            f"I={self.input_size}, H={self.hidden_size}, L={self.num_layers}"
        )


def _to_numpy(tensor: torch.Tensor) -> np.ndarray:
    return tensor.detach().cpu().numpy().reshape(-1).astype(np.float64)


def _max_abs_diff(a: torch.Tensor, b: torch.Tensor) -> float:
    return float(np.max(np.abs(_to_numpy(a) - _to_numpy(b)))) if a.numel() else 0.0


def _flat_reference_grad(module: DynamicRNN, reference: torch.nn.LSTM) -> torch.Tensor:
    d = module.descriptors
    H = module.hidden_size
    grad = torch.zeros_like(module.weight)
    for layer in range(module.num_layers):
        for k in range(4):
            rows = slice(k * H, (k + 1) * H)
            d.lin_layer_matrix(grad, layer, k).copy_(getattr(reference, f"weight_ih_l{layer}").grad[rows])
            d.lin_layer_matrix(grad, layer, 4 + k).copy_(getattr(reference, f"weight_hh_l{layer}").grad[rows])
            d.lin_layer_bias(grad, layer, k).copy_(getattr(reference, f"bias_ih_l{layer}").grad[rows])
            d.lin_layer_bias(grad, layer, 4 + k).copy_(getattr(reference, f"bias_hh_l{layer}").grad[rows])
    return grad


def _run(module, x, h0, c0, dy):
    x = x.clone().requires_grad_(True)
    h0 = h0.clone().requires_grad_(True)
    c0 = c0.clone().requires_grad_(True)
    module.zero_grad(set_to_none=True)
    y, (hy, cy) = module(x, (h0, c0))
    loss = (y * dy).sum() + hy.pow(2).sum() + cy.pow(2).sum()
    loss.backward()
    dw = module.weight.grad if isinstance(module, DynamicRNN) else None
    return {"y": y, "hy": hy, "cy": cy, "dx": x.grad, "dh0": h0.grad, "dc0": c0.grad}, dw


def run_case(
    case: RnnCase,
    seed: int,
    device: torch.device,
    dtype: torch.dtype,
    atol: float,
    rtol: float,
) -> Dict[str, float]:
    torch.manual_seed(seed)
    reference = torch.nn.LSTM(
        case.input_size, case.hidden_size, case.num_layers, device=device, dtype=dtype
    )
    modules = {}
    for strategy in ("batched", "unrolled"):
        module = DynamicRNN(
            case.input_size,
            case.hidden_size,
            case.num_layers,
            strategy=strategy,
            batch_size=case.batch_size,
            device=device,
            dtype=dtype,
        )
        module.load_torch_weights(reference)
        modules[strategy] = module

    shape_state = (case.num_layers, case.batch_size, case.hidden_size)
    x = torch.randn(case.seq_length, case.batch_size, case.input_size, device=device, dtype=dtype)
    h0 = torch.randn(shape_state, device=device, dtype=dtype)
    c0 = torch.randn(shape_state, device=device, dtype=dtype)
    dy = torch.randn(case.seq_length, case.batch_size, case.hidden_size, device=device, dtype=dtype)

    expected, _ = _run(reference, x, h0, c0, dy)
    expected_dw = _flat_reference_grad(modules["batched"], reference)

    diffs: Dict[str, float] = {}
    for strategy, module in modules.items():
        actual, dw = _run(module, x, h0, c0, dy)
        actual["dw"] = dw
        for name, value in actual.items():
            ref = expected_dw if name == "dw" else expected[name]
            np.testing.assert_allclose(
                _to_numpy(value), _to_numpy(ref), rtol=rtol, atol=atol,
                err_msg=f"{strategy}: {name} mismatch for {case.describe()}",
            )
            key = f"{strategy}:{name}"
            diffs[key] = _max_abs_diff(value, ref)
    return diffs


def build_test_plan(
        mode: str, random_cases: int, max_dims: Tuple[int, int, int, int, int], seed: int
) -> List[Tuple[RnnCase, int]]:
    rng = np.random.default_rng(seed)
    if mode == "quick":
        deterministic: Sequence[RnnCase] = [
            RnnCase(1, 1, 4, 4, 1),
            RnnCase(2, 2, 8, 8, 2),
            RnnCase(5, 3, 2, 4, 2),
        ]
    elif mode == "standard":
        deterministic = [
            RnnCase(1, 1, 4, 4, 1),
            RnnCase(3, 2, 8, 8, 1),
            RnnCase(5, 3, 2, 4, 2),
            RnnCase(7, 2, 32, 24, 2),
            RnnCase(10, 3, 24, 32, 3),
        ]
    elif mode == "stress":
        deterministic = [
            RnnCase(1, 1, 4, 4, 1),
            RnnCase(4, 4, 32, 32, 2),
            RnnCase(8, 8, 48, 64, 3),
            RnnCase(16, 4, 96, 128, 2),
            RnnCase(32, 2, 128, 96, 4),
        ]
    else:
        raise ValueError(f"Unknown mode: {mode}")

    plan: List[Tuple[RnnCase, int]] = []
    for idx, case in enumerate(deterministic):
        plan.append((case, seed + idx))

    max_seq, max_batch, max_input, max_hidden, max_layers = max_dims
    for i in range(random_cases):
        case = RnnCase(
            int(rng.integers(1, max_seq + 1)),
            int(rng.integers(1, max_batch + 1)),
            int(rng.integers(1, max_input + 1)),
            int(rng.integers(1, max_hidden + 1)),
            int(rng.integers(1, max_layers + 1)),
        )
        plan.append((case, seed + len(plan) + i))
    return plan


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate batched and unrolled RNN operators against PyTorch.")
    parser.add_argument(
        "--mode",
        choices=["quick", "standard", "stress"],
        default="standard",
        help="Select preset for deterministic test coverage.",
    )
    parser.add_argument("--random-cases", type=int, default=4, help="Number of additional random configurations.")
    parser.add_argument("--max-seq", type=int, default=16, help="Maximum sequence length for random cases.")
    parser.add_argument("--max-batch", type=int, default=6, help="Maximum batch size for random cases.")
    parser.add_argument("--max-input", type=int, default=32, help="Maximum input size for random cases.")
    parser.add_argument("--max-hidden", type=int, default=32, help="Maximum hidden size for random cases.")
    parser.add_argument("--max-layers", type=int, default=3, help="Maximum layer count for random cases.")
    parser.add_argument("--seed", type=int, default=1234, help="Base seed used for deterministic and random tests.")
    parser.add_argument("--device", type=str, default="cpu", help="Device to run on (cpu or cuda).")
    parser.add_argument("--float32", action="store_true", help="Validate in float32 instead of float64.")
    parser.add_argument("--atol", type=float, default=1e-8, help="Absolute tolerance for parity checks.")
    parser.add_argument("--rtol", type=float, default=1e-6, help="Relative tolerance for parity checks.")
    args = parser.parse_args(list(argv) if argv is not None else None)

    device = torch.device(args.device)
    if device.type == "cuda" and not torch.cuda.is_available():
        raise RuntimeError("CUDA device not available; cannot run validation")
    dtype = torch.float32 if args.float32 else torch.float64

    plan = build_test_plan(
        args.mode,
        args.random_cases,
        (args.max_seq, args.max_batch, args.max_input, args.max_hidden, args.max_layers),
        args.seed,
    )

    for idx, (case, seed) in enumerate(plan, start=1):
        diffs = run_case(case, seed, device, dtype, args.atol, args.rtol)
        worst = max(diffs, key=diffs.get)
        print(f"[{idx}/{len(plan)}] [PASS] {case.describe()} seed={seed} :: worst {worst}={diffs[worst]:.3e}")

    print(f"All {len(plan)} configurations (forward + backward, both strategies) validated successfully.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:  # pragma: no cover
        print(f"Validation failed: {exc}", file=sys.stderr)
        sys.exit(1)
