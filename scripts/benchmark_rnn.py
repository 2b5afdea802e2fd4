#!/usr/bin/env python3
"""
Benchmark the batched and unrolled recurrent operators against each other.
"""

import argparse
import sys
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import torch

from dynrnn import DynamicRNN, Handle


@dataclass
class BenchmarkResult:
    implementation: str
    avg_ms: float
    std_ms: float
    accelerator_calls: int

    @property
    def iters_per_second(self) -> float:
        return 1000.0 / self.avg_ms if self.avg_ms > 0 else float("inf")


def _synchronize(device: torch.device) -> None:
    if device.type == "cuda":
        torch.cuda.synchronize(device)


def benchmark_strategy(strategy: str,
                       seq_len: int,
                       batch: int,
                       input_size: int,
                       hidden_size: int,
                       num_layers: int,
                       device: torch.device,
                       warmup: int,
                       repeats: int) -> BenchmarkResult:
    handle = Handle()
    module = DynamicRNN(input_size, hidden_size, num_layers, strategy=strategy, batch_size=batch,
                        device=device, handle=handle)
    x = torch.randn(seq_len, batch, input_size, device=device, requires_grad=True)

    def step() -> None:
        module.zero_grad(set_to_none=True)
        y, (hy, cy) = module(x)
        (y.sum() + hy.sum() + cy.sum()).backward()

    for _ in range(max(warmup, 0)):
        step()
    _synchronize(device)

    handle.call_counts.clear()
    timings: List[float] = []
    for _ in range(repeats):
        _synchronize(device)
        start = time.perf_counter()
        step()
        _synchronize(device)
        end = time.perf_counter()
        timings.append((end - start) * 1000.0)

    avg_ms = float(np.mean(timings))
    std_ms = float(np.std(timings, ddof=1)) if len(timings) > 1 else 0.0
    calls = sum(handle.call_counts.values()) // max(repeats, 1)
    return BenchmarkResult(f"{strategy}", avg_ms, std_ms, calls)


def format_result(result: BenchmarkResult) -> str:
    return (f"{result.implementation:>10}: "
            f"{result.avg_ms:8.3f} ms ± {result.std_ms:6.3f} ms "
            f"({result.iters_per_second:6.2f} it/s, {result.accelerator_calls} accelerator calls/iter)")


def determine_sequence_lengths(seq_lens_arg: Optional[Sequence[int]],
                               seq_len_min: int,
                               seq_len_max: int,
                               seq_len_step: int) -> List[int]:
    if seq_lens_arg:
        return sorted(set(int(v) for v in seq_lens_arg if int(v) > 0))
    if seq_len_step <= 0:
        raise ValueError("--seq-len-step must be positive.")
    if seq_len_min <= 0 or seq_len_max <= 0:
        raise ValueError("Sequence lengths must be positive.")
    if seq_len_min > seq_len_max:
        raise ValueError("--seq-len-min must be <= --seq-len-max.")
    return list(range(seq_len_min, seq_len_max + 1, seq_len_step))


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Benchmark batched vs. unrolled recurrent operators.")
    parser.add_argument("--seq-lens", type=int, nargs="+", default=None,
                        help="Explicit sequence lengths to benchmark.")
    parser.add_argument("--seq-len-min", type=int, default=8, help="Smallest sequence length.")
    parser.add_argument("--seq-len-max", type=int, default=64, help="Largest sequence length.")
    parser.add_argument("--seq-len-step", type=int, default=8, help="Sequence length increment.")
    parser.add_argument("--batch", type=int, default=16, help="Batch size.")
    parser.add_argument("--input-size", type=int, default=64, help="Input feature size.")
    parser.add_argument("--hidden-size", type=int, default=64, help="Hidden feature size.")
    parser.add_argument("--num-layers", type=int, default=2, help="Number of stacked layers.")
    parser.add_argument("--device", type=str, default="cpu", help="Device to run on (cpu or cuda).")
    parser.add_argument("--warmup", type=int, default=2, help="Number of warmup iterations.")
    parser.add_argument("--repeats", type=int, default=10, help="Number of timed iterations.")
    parser.add_argument("--seed", type=int, default=2025, help="RNG seed.")
    return parser


def main() -> int:
    args = build_argument_parser().parse_args()
    torch.manual_seed(args.seed)
    device = torch.device(args.device)
    if device.type == "cuda" and not torch.cuda.is_available():
        raise RuntimeError("CUDA device requested but not available.")
    seq_lens = determine_sequence_lengths(args.seq_lens, args.seq_len_min, args.seq_len_max, args.seq_len_step)

    print("Benchmark configuration:")
    print(f"  batch={args.batch}, input_size={args.input_size}, hidden_size={args.hidden_size}, "
          f"num_layers={args.num_layers}")
    print(f"  device={device}, warmup={args.warmup}, repeats={args.repeats}")
    print(f"  sequence lengths: {seq_lens}")

    for idx, seq_len in enumerate(seq_lens, start=1):
        results = [
            benchmark_strategy(strategy, seq_len, args.batch, args.input_size, args.hidden_size,
                               args.num_layers, device, args.warmup, args.repeats)
            for strategy in ("batched", "unrolled")
        ]
        batched, unrolled = results
        speedup = unrolled.avg_ms / batched.avg_ms if batched.avg_ms > 0 else float("inf")
        print(f"\n[{idx}/{len(seq_lens)}] seq_len={seq_len}")
        for result in results:
            print(f"  {format_result(result)}")
        print(f"  Speedup (unrolled / batched): {speedup:6.3f}x")
    return 0


if __name__ == "__main__":
    sys.exit(main())
