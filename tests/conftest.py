"""Shared fixtures and a scripted random source for the pipeworld tests."""

from __future__ import annotations

from collections import deque
from typing import Iterable

import pytest

from pipeworld import Configuration, TimingConfig, WorldConfig


class ScriptedRng:
    """Replays queued draws, then falls back to fixed answers.

    Booleans fall back to ``probability >= 1.0`` (certain events happen,
    everything else does not); choices fall back to 0. Every call is counted
    so tests can assert how much randomness a step consumed.
    """

    def __init__(
        self, booleans: Iterable[bool] = (), choices: Iterable[int] = ()
    ) -> None:
        self.booleans: deque[bool] = deque(booleans)
        self.choices: deque[int] = deque(choices)
        self.boolean_calls = 0
        self.choice_calls = 0

    def boolean(self, probability: float) -> bool:
        self.boolean_calls += 1
        if self.booleans:
            return self.booleans.popleft()
        return probability >= 1.0

    def choose_uniform(self, n: int) -> int:
        self.choice_calls += 1
        value = self.choices.popleft() if self.choices else 0
        assert 0 <= value < n, f"scripted choice {value} out of range for n={n}"
        return value


@pytest.fixture
def short_timing() -> TimingConfig:
    """grow=1s, freeze=1s, cycle=3s."""
    return TimingConfig(max_gen_time=1.0, max_freeze_time=1.0, max_cycle_time=3.0)


@pytest.fixture
def busy_config(short_timing: TimingConfig) -> Configuration:
    """Small world that spawns every tick; fast to run, easy to fill."""
    return Configuration(
        world=WorldConfig(
            extent=(8, 8, 8), max_pipes=4, new_pipe_chance=1.0, turn_chance=0.3
        ),
        timing=short_timing,
        seed=1234,
    )
