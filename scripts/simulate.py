"""CLI entry point to run the implicit MPM simulation."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add parent directory to path to find the mpm_engine package
sys.path.insert(0, str(Path(__file__).parent.parent))

import taichi as ti
from tqdm import tqdm

from mpm_engine import WorldContainer


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the implicit elastoplastic MPM simulation")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config/scene_config.yaml"),
        help="Path to the scene configuration YAML file.",
    )
    parser.add_argument("--steps", type=int, default=None, help="Optional override for number of steps")
    parser.add_argument(
        "--gpu",
        action="store_true",
        help="Run Taichi kernels on the GPU backend instead of the CPU",
    )
    parser.add_argument(
        "--f32",
        action="store_true",
        help="Use single precision fields (default is double precision)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    os.environ.setdefault("TI_LOG_LEVEL", "error")
    default_fp = ti.f32 if args.f32 else ti.f64
    if args.gpu:
        ti.init(arch=ti.gpu, default_fp=default_fp)
        print("Using MPM solver (GPU backend)")
    else:
        ti.init(arch=ti.cpu, default_fp=default_fp)
        print("Using MPM solver (CPU backend)")

    container = WorldContainer.from_config_file(args.config)

    steps = args.steps if args.steps is not None else container.config.simulation.total_steps
    snapshot = None
    progress = tqdm(range(steps), desc="Simulating")
    for _ in progress:
        snapshot = container.step()
        if snapshot.report is not None:
            solve = snapshot.report.solve
            progress.set_postfix(cg=solve.iterations, residual=f"{solve.residual_norm:.2e}")

    if snapshot is not None:
        positions = snapshot.particles.positions
        if len(positions):
            print(f"[simulate] Finished {steps} steps, t={snapshot.time:.4f}s, "
                  f"particles={len(positions)}, mean height={positions[:, 1].mean():.4f}m")


if __name__ == "__main__":
    main()
