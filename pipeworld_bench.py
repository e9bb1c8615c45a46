#!/usr/bin/env python3
"""
Profiling and replay harness for the pipes screensaver.

Runs the simulation headlessly against a synthetic clock (no curses, no
sleeping), then prints where time went and a digest of every StepDelta and
SpawnEvent emitted. Same seed and same tick length give the same digest on
every machine, which makes it a quick determinism check.

Usage:
  python3 pipeworld_bench.py                     # 2000 ticks, cProfile summary
  python3 pipeworld_bench.py -n 10000 --seed 7   # longer run, fixed seed
  python3 pipeworld_bench.py --line-timing       # per-tick timing percentiles
  python3 pipeworld_bench.py --dump prof.out     # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import cProfile
import dataclasses
import hashlib
import logging
import pstats
import sys
import time
from io import StringIO
from typing import Sequence

import numpy as np

from pipeworld import Configuration, ConfigurationError, TickResult
from pipeworld_log import parse_level, setup_logging
from pipeworld_view import PipeSession

logger = logging.getLogger("pipeworld.bench")


class SyntheticClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventDigest:
    """Running sha256 over the renderer-facing event stream."""

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.deltas = 0
        self.spawns = 0
        self.turns = 0

    def update(self, result: TickResult) -> None:
        for d in result.deltas:
            self._hash.update(
                f"d{d.index}:{d.previous_node.as_tuple()}>{d.node.as_tuple()}"
                f":{d.previous_direction.name}>{d.direction.name}:{d.ended};".encode()
            )
            self.deltas += 1
            if d.turned:
                self.turns += 1
        if result.spawn is not None:
            s = result.spawn
            self._hash.update(
                f"s{s.index}:{s.node.as_tuple()}:{s.direction.name}:{s.color};".encode()
            )
            self.spawns += 1

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def run_session(
    config: Configuration, n_ticks: int, tick_seconds: float
) -> tuple[PipeSession, EventDigest, list[float]]:
    """Run ``n_ticks`` frames; returns the session, digest and per-tick seconds."""
    clock = SyntheticClock()
    session = PipeSession(config, clock=clock)
    digest = EventDigest()
    tick_times: list[float] = []

    for _ in range(n_ticks):
        clock.advance(tick_seconds)
        t0 = time.perf_counter()
        session.update()
        tick_times.append(time.perf_counter() - t0)
        digest.update(session.last_result)

    return session, digest, tick_times


def run_benchmark(
    config: Configuration,
    n_ticks: int,
    tick_seconds: float = 1.0 / 30.0,
    line_timing: bool = False,
    dump_path: str | None = None,
) -> str:
    """Run the benchmark, print a report and return the event digest."""
    sx, sy, sz = config.world.extent
    print(f"World: {sx}x{sy}x{sz}  Max pipes: {config.world.max_pipes}  "
          f"Ticks: {n_ticks}  Tick: {tick_seconds * 1000:.1f}ms")
    print()

    if line_timing:
        session, digest, tick_times = run_session(config, n_ticks, tick_seconds)

        print("=== Per-Tick Timing (ms) ===")
        print(f"{'Component':<25} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
        print("-" * 73)
        arr = np.array(tick_times) * 1000  # to ms
        print(f"{'update()':<25} {arr.mean():8.3f} {np.median(arr):8.3f} "
              f"{np.percentile(arr, 95):8.3f} {np.percentile(arr, 99):8.3f} "
              f"{arr.max():8.3f}")

        budget_ms = 1000.0 / 30.0
        over_budget = int((arr > budget_ms).sum())
        print(f"\n30fps budget: {budget_ms:.1f}ms/tick")
        print(f"Ticks over budget: {over_budget}/{n_ticks} "
              f"({100 * over_budget / max(n_ticks, 1):.1f}%)")
    else:
        profiler = cProfile.Profile()
        wall_t0 = time.perf_counter()
        profiler.enable()
        session, digest, _ = run_session(config, n_ticks, tick_seconds)
        profiler.disable()
        wall_dt = time.perf_counter() - wall_t0

        print(f"Wall time: {wall_dt:.2f}s  ({wall_dt / max(n_ticks, 1) * 1000:.3f}ms/tick)")
        print()

        if dump_path:
            profiler.dump_stats(dump_path)
            print(f"Profile data saved to: {dump_path}")
            print(f"  View with: python3 -m pstats {dump_path}")
            print()

        buf = StringIO()
        ps = pstats.Stats(profiler, stream=buf)
        ps.sort_stats("cumulative")
        ps.print_stats(25)
        print(buf.getvalue())

    print("=== Event Stream ===")
    print(f"seed        : {session.rng.seed}")
    print(f"generations : {session.generation}")
    print(f"spawns      : {digest.spawns}")
    print(f"deltas      : {digest.deltas}  (turns {digest.turns})")
    print(f"digest      : {digest.hexdigest()}")
    return digest.hexdigest()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Profile the pipes simulation")
    parser.add_argument("-n", "--ticks", type=int, default=2000,
                        help="Number of ticks to simulate (default: 2000)")
    parser.add_argument("--seed", type=int, default=1,
                        help="Random seed (default: 1)")
    parser.add_argument("--extent", type=int, nargs=3, metavar=("X", "Y", "Z"),
                        default=None, help="Grid size in cells")
    parser.add_argument("--max-pipes", type=int, default=None,
                        help="Maximum pipes growing at once")
    parser.add_argument("--tick-seconds", type=float, default=1.0 / 30.0,
                        help="Synthetic clock step per tick (default: 1/30)")
    parser.add_argument("--line-timing", action="store_true",
                        help="Per-tick timing instead of cProfile")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    parser.add_argument("--log-level", type=str, default="warning",
                        help="debug, info, warning, ... (default: warning)")
    args = parser.parse_args(argv)

    try:
        level = parse_level(args.log_level)
    except ValueError as exc:
        parser.error(str(exc))
    setup_logging(level)

    config = Configuration(seed=args.seed)
    world_overrides = {}
    if args.extent is not None:
        world_overrides["extent"] = tuple(args.extent)
    if args.max_pipes is not None:
        world_overrides["max_pipes"] = args.max_pipes
    if world_overrides:
        config = dataclasses.replace(
            config, world=dataclasses.replace(config.world, **world_overrides)
        )
    try:
        config.validate()
    except ConfigurationError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    run_benchmark(
        config,
        n_ticks=args.ticks,
        tick_seconds=args.tick_seconds,
        line_timing=args.line_timing,
        dump_path=args.dump,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
