"""
  ╔═╗  P I P E W O R L D
  A world of pipes growing through a 3D grid, one joint at a time.

  Pipes spawn at random free cells, run straight for a while, turn when the
  mood takes them, and die when boxed in. After a while the world freezes,
  holds still so you can admire it, and then starts over.

  This module is the simulation only. It never draws anything: each tick
  returns plain StepDelta / SpawnEvent records that a renderer turns into
  geometry (see pipeworld_view.py for a terminal one).

  Lifecycle of a generation, driven by injected elapsed seconds:

    growing  ──max_gen_time──▶  freezing  ──+max_freeze_time──▶  idle
       ▲                                                          │
       └──────────── new World ◀── reset requested ◀─max_cycle_time┘
"""

from __future__ import annotations

import enum
import logging
import random
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Protocol

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

Color = tuple[int, int, int]

# ── Palette ─────────────────────────────────────────────────────────────
# Named after the classic screensaver's teapot materials
PALETTE: dict[str, Color] = {
    "emerald":       (20, 160, 90),
    "jade":          (120, 200, 150),
    "ruby":          (190, 20, 40),
    "turquoise":     (60, 200, 190),
    "brass":         (200, 170, 60),
    "bronze":        (170, 110, 50),
    "chrome":        (200, 200, 210),
    "copper":        (200, 100, 60),
    "gold":          (240, 190, 40),
    "silver":        (170, 170, 180),
    "cyan_plastic":  (0, 170, 200),
    "red_plastic":   (220, 40, 30),
}
DEFAULT_PALETTE: tuple[Color, ...] = tuple(PALETTE.values())

# Cell draws per spawn attempt before giving up for the tick (dense worlds)
SPAWN_ATTEMPTS: int = 32


class ConfigurationError(ValueError):
    """Raised when a Configuration cannot drive a consistent world."""


class InvariantViolation(RuntimeError):
    """Raised when the simulation breaks one of its own rules (a bug)."""


# ═══════════════════════════════════════════════════════════════════════
#  Random source
# ═══════════════════════════════════════════════════════════════════════

class EngineRng(Protocol):
    """The two draws the simulation needs. Swap in a fake for tests."""

    def boolean(self, probability: float) -> bool: ...

    def choose_uniform(self, n: int) -> int: ...


class StdRng:
    """Seedable Mersenne Twister source.

    Draws are reproducible for a given seed on every platform. Without a
    seed one is taken from the OS and kept in ``seed`` so the run can be
    replayed.

    Out-of-contract arguments raise ValueError rather than being clamped.
    """

    def __init__(self, seed: int | None = None) -> None:
        if seed is None:
            seed = random.SystemRandom().randrange(2**63)
        self.seed: int = seed
        self._random = random.Random(seed)

    def boolean(self, probability: float) -> bool:
        if not 0.0 <= probability <= 1.0:
            raise ValueError(f"probability must be in [0, 1], got {probability!r}")
        # random() is in [0, 1): p=0 never fires, p=1 always does
        return self._random.random() < probability

    def choose_uniform(self, n: int) -> int:
        if n < 1:
            raise ValueError(f"cannot choose among {n} alternatives")
        return self._random.randrange(n)


# ═══════════════════════════════════════════════════════════════════════
#  Space
# ═══════════════════════════════════════════════════════════════════════

class Direction(enum.Enum):
    """Six axis-aligned unit steps. Declaration order is the tie-break order."""

    X_PLUS = (1, 0, 0)
    X_MINUS = (-1, 0, 0)
    Y_PLUS = (0, 1, 0)
    Y_MINUS = (0, -1, 0)
    Z_PLUS = (0, 0, 1)
    Z_MINUS = (0, 0, -1)

    @property
    def axis(self) -> int:
        """0, 1 or 2 for x, y, z."""
        return next(i for i, c in enumerate(self.value) if c != 0)

    @property
    def opposite(self) -> Direction:
        dx, dy, dz = self.value
        return Direction((-dx, -dy, -dz))

    def others(self) -> list[Direction]:
        """The five directions that are not this one, in declaration order."""
        return [d for d in DIRECTIONS if d is not self]


DIRECTIONS: tuple[Direction, ...] = tuple(Direction)


@dataclass(frozen=True)
class Node:
    """A single grid cell."""
    x: int
    y: int
    z: int

    def step(self, direction: Direction) -> Node:
        dx, dy, dz = direction.value
        return Node(self.x + dx, self.y + dy, self.z + dz)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.x, self.y, self.z)


class Grid:
    """Bounded 3D occupancy map.

    Occupancy lives in a numpy bool array indexed ``[x, y, z]``. A cell is
    only ever occupied once per generation; there is no way to free one.
    """

    def __init__(self, extent: tuple[int, int, int]) -> None:
        if len(extent) != 3 or any(int(s) < 1 for s in extent):
            raise ConfigurationError(
                f"grid extent must be three positive sizes, got {extent!r}"
            )
        self.extent: tuple[int, int, int] = (
            int(extent[0]), int(extent[1]), int(extent[2])
        )
        self._occupied: NDArray[np.bool_] = np.zeros(self.extent, dtype=np.bool_)
        self._occupied_count: int = 0

    @property
    def capacity(self) -> int:
        return self._occupied.size

    @property
    def occupied_count(self) -> int:
        return self._occupied_count

    @property
    def free_count(self) -> int:
        return self.capacity - self._occupied_count

    def in_bounds(self, node: Node) -> bool:
        sx, sy, sz = self.extent
        return 0 <= node.x < sx and 0 <= node.y < sy and 0 <= node.z < sz

    def is_free(self, node: Node) -> bool:
        return self.in_bounds(node) and not self._occupied[node.x, node.y, node.z]

    def occupy(self, node: Node) -> None:
        if not self.in_bounds(node):
            raise InvariantViolation(f"{node} lies outside grid {self.extent}")
        if self._occupied[node.x, node.y, node.z]:
            raise InvariantViolation(f"{node} is already occupied")
        self._occupied[node.x, node.y, node.z] = True
        self._occupied_count += 1

    def neighbors_free(self, node: Node) -> list[tuple[Direction, Node]]:
        out: list[tuple[Direction, Node]] = []
        for d in DIRECTIONS:
            n = node.step(d)
            if self.is_free(n):
                out.append((d, n))
        return out

    def node_at(self, flat_index: int) -> Node:
        """Map a C-order flat index in [0, capacity) to its Node."""
        x, y, z = np.unravel_index(flat_index, self.extent)
        return Node(int(x), int(y), int(z))

    def occupancy(self) -> NDArray[np.bool_]:
        """Read-only view of the occupancy array."""
        view = self._occupied.view()
        view.flags.writeable = False
        return view


# ═══════════════════════════════════════════════════════════════════════
#  Renderer-facing records
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepDelta:
    """What one pipe did this tick.

    ``previous_node == node`` means nothing moved and nothing should be
    drawn. ``ended`` marks the tick the pipe got boxed in (end cap).
    """
    index: int
    previous_node: Node
    node: Node
    previous_direction: Direction
    direction: Direction
    color: Color
    ended: bool = False

    @property
    def moved(self) -> bool:
        return self.previous_node != self.node

    @property
    def turned(self) -> bool:
        """True when a joint belongs at ``previous_node``."""
        return self.moved and self.previous_direction != self.direction


@dataclass(frozen=True)
class SpawnEvent:
    """A new pipe appeared; renderers seed a start ball at ``node``."""
    index: int
    node: Node
    direction: Direction
    color: Color


@dataclass(frozen=True)
class TickResult:
    deltas: tuple[StepDelta, ...] = ()
    spawn: SpawnEvent | None = None


# ═══════════════════════════════════════════════════════════════════════
#  Pipe
# ═══════════════════════════════════════════════════════════════════════

def _shuffled(options: list[Direction], rng: EngineRng) -> list[Direction]:
    # Draw without replacement from a fixed-order list: uniform permutation,
    # reproducible for a given draw sequence.
    remaining = list(options)
    order: list[Direction] = []
    while remaining:
        order.append(remaining.pop(rng.choose_uniform(len(remaining))))
    return order


class Pipe:
    """A single growing path.

    The pipe occupies its start node on creation and one more node per
    successful step. Once dead it stays dead.
    """

    def __init__(
        self, index: int, start: Node, direction: Direction, color: Color, grid: Grid
    ) -> None:
        grid.occupy(start)
        self.index: int = index
        self.node: Node = start
        self.previous_node: Node = start
        self.direction: Direction = direction
        self.previous_direction: Direction = direction
        self.color: Color = color
        self.alive: bool = True
        self.steps: int = 0
        self._grid = grid

    def __repr__(self) -> str:
        state = "alive" if self.alive else "dead"
        return f"Pipe({self.index}, {self.node.as_tuple()}, {self.direction.name}, {state})"

    def kill(self) -> bool:
        """Mark the pipe dead. Returns True if it was alive."""
        was_alive = self.alive
        self.alive = False
        return was_alive

    def candidates(self, rng: EngineRng, turn_chance: float) -> Iterator[Direction]:
        """Directions to try this step, best first.

        Turning pipes try the five other directions in random order and
        fall back to straight; the rest try straight first. The permutation
        is only drawn if it is actually needed.
        """
        straight = self.direction
        if rng.boolean(turn_chance):
            yield from _shuffled(straight.others(), rng)
            yield straight
        else:
            yield straight
            yield from _shuffled(straight.others(), rng)

    def step(self, rng: EngineRng, turn_chance: float) -> StepDelta:
        if not self.alive:
            return self._stationary_delta()
        if not self._grid.in_bounds(self.node):
            raise InvariantViolation(f"pipe {self.index} is out of bounds at {self.node}")

        for direction in self.candidates(rng, turn_chance):
            target = self.node.step(direction)
            if self._grid.is_free(target):
                self._grid.occupy(target)
                self.previous_node = self.node
                self.node = target
                self.previous_direction = self.direction
                self.direction = direction
                self.steps += 1
                return StepDelta(
                    self.index, self.previous_node, self.node,
                    self.previous_direction, self.direction, self.color,
                )

        # Boxed in on all six sides
        self.alive = False
        logger.debug("pipe %d boxed in at %s after %d steps",
                     self.index, self.node.as_tuple(), self.steps)
        return self._stationary_delta(ended=True)

    def _stationary_delta(self, ended: bool = False) -> StepDelta:
        return StepDelta(
            self.index, self.node, self.node,
            self.direction, self.direction, self.color, ended,
        )


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WorldConfig:
    extent: tuple[int, int, int] = (24, 16, 16)
    max_pipes: int = 6
    new_pipe_chance: float = 0.1  # per tick
    turn_chance: float = 0.2      # per pipe per tick


@dataclass(frozen=True)
class TimingConfig:
    """Generation clock thresholds, in seconds since the generation began."""
    max_gen_time: float = 30.0
    max_freeze_time: float = 5.0   # duration, counted from max_gen_time
    max_cycle_time: float = 40.0
    single_run: bool = False

    @property
    def freeze_end(self) -> float:
        return self.max_gen_time + self.max_freeze_time


@dataclass(frozen=True)
class Configuration:
    world: WorldConfig = field(default_factory=WorldConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    palette: tuple[Color, ...] = DEFAULT_PALETTE
    seed: int | None = None

    def validate(self) -> None:
        """Raise ConfigurationError describing the first problem found."""
        w, t = self.world, self.timing

        if (
            not isinstance(w.extent, tuple)
            or len(w.extent) != 3
            or not all(_is_int(s) and s >= 1 for s in w.extent)
        ):
            raise ConfigurationError(
                f"world extent must be three positive integers, got {w.extent!r}"
            )
        if not _is_int(w.max_pipes) or w.max_pipes < 1:
            raise ConfigurationError(
                f"max_pipes must be an integer of at least 1, got {w.max_pipes!r}"
            )
        for name in ("new_pipe_chance", "turn_chance"):
            p = getattr(w, name)
            if not _is_number(p) or not 0.0 <= p <= 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1], got {p!r}")

        for name in ("max_gen_time", "max_freeze_time", "max_cycle_time"):
            if not _is_number(getattr(t, name)):
                raise ConfigurationError(
                    f"{name} must be a number of seconds, got {getattr(t, name)!r}"
                )
        if not isinstance(t.single_run, bool):
            raise ConfigurationError(
                f"single_run must be true or false, got {t.single_run!r}"
            )
        if t.max_gen_time <= 0:
            raise ConfigurationError(
                f"max_gen_time must be positive, got {t.max_gen_time}"
            )
        if t.max_freeze_time <= 0:
            raise ConfigurationError(
                f"max_freeze_time must be positive, got {t.max_freeze_time}"
            )
        if not t.freeze_end < t.max_cycle_time:
            raise ConfigurationError(
                "max_cycle_time must exceed max_gen_time + max_freeze_time "
                f"({t.max_cycle_time} <= {t.freeze_end})"
            )

        if not self.palette:
            raise ConfigurationError("palette must hold at least one color")
        for color in self.palette:
            if (
                not isinstance(color, tuple)
                or len(color) != 3
                or not all(_is_int(c) and 0 <= c <= 255 for c in color)
            ):
                raise ConfigurationError(f"palette color out of range: {color!r}")

    # ── Plain-dict round trip (JSON config files) ──────────────────

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["world"]["extent"] = list(self.world.extent)
        data["palette"] = [list(c) for c in self.palette]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Build from a dict shaped like ``to_dict()``. Missing keys keep defaults."""
        unknown = set(data) - {"world", "timing", "palette", "seed"}
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {sorted(unknown)}")

        world_data = dict(data.get("world", {}))
        timing_data = dict(data.get("timing", {}))
        _reject_unknown("world", world_data, WorldConfig)
        _reject_unknown("timing", timing_data, TimingConfig)
        # Values are kept as given; validate() rejects anything mistyped
        if "extent" in world_data:
            world_data["extent"] = _as_triple("world extent", world_data["extent"])

        kwargs: dict[str, Any] = {
            "world": WorldConfig(**world_data),
            "timing": TimingConfig(**timing_data),
        }
        if "palette" in data:
            if not isinstance(data["palette"], (list, tuple)):
                raise ConfigurationError(
                    f"palette must be a list of colors, got {data['palette']!r}"
                )
            kwargs["palette"] = tuple(
                _as_triple("palette color", c) for c in data["palette"]
            )
        if data.get("seed") is not None:
            if not _is_int(data["seed"]):
                raise ConfigurationError(f"seed must be an integer, got {data['seed']!r}")
            kwargs["seed"] = data["seed"]
        return cls(**kwargs)


def _reject_unknown(section: str, data: dict[str, Any], cls: type) -> None:
    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"unknown {section} keys: {sorted(unknown)}")


def _as_triple(what: str, value: Any) -> tuple[Any, ...]:
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise ConfigurationError(f"{what} must have three components, got {value!r}")
    return tuple(value)


def _is_int(value: Any) -> bool:
    # bool is an int subclass; JSON true/false are not sizes or counts
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(
        value, bool
    )


def new_rng(config: Configuration) -> StdRng:
    return StdRng(config.seed)


# ═══════════════════════════════════════════════════════════════════════
#  Lifecycle
# ═══════════════════════════════════════════════════════════════════════

class Phase(enum.Enum):
    GROWING = "continue"
    FREEZING = "freeze-now"
    IDLE = "idle"
    RESET_REQUESTED = "reset-requested"


def phase_for(elapsed: float, timing: TimingConfig) -> Phase:
    """Which part of the generation ``elapsed`` seconds falls in."""
    if elapsed < 0:
        raise ValueError(f"elapsed time cannot be negative, got {elapsed}")
    if elapsed < timing.max_gen_time:
        return Phase.GROWING
    if elapsed < timing.freeze_end:
        return Phase.FREEZING
    if elapsed < timing.max_cycle_time or timing.single_run:
        return Phase.IDLE
    return Phase.RESET_REQUESTED


# ═══════════════════════════════════════════════════════════════════════
#  The world
# ═══════════════════════════════════════════════════════════════════════

class World:
    """
    One generation of pipes.

    Owns the grid and every pipe spawned into it. Pipe indices are spawn
    order and never change. The driver calls ``tick`` once per frame and
    ``check_phase`` with the generation's elapsed time; on RESET_REQUESTED
    it throws this World away and builds a fresh one.
    """

    def __init__(self, config: Configuration | None = None) -> None:
        self.config: Configuration = config if config is not None else Configuration()
        self.config.validate()

        self.grid: Grid = Grid(self.config.world.extent)
        self.pipes: list[Pipe] = []
        self.generation_complete: bool = False
        self.tick_count: int = 0
        self._alive: int = 0

    # ── Queries ─────────────────────────────────────────────────────

    def is_generation_complete(self) -> bool:
        return self.generation_complete

    def active_pipe_count(self) -> int:
        """Pipes still alive."""
        return self._alive

    def pipe_count(self) -> int:
        """Pipes ever spawned this generation, dead or alive."""
        return len(self.pipes)

    def is_pipe_alive(self, index: int) -> bool:
        return self.pipes[index].alive

    def pipe(self, index: int) -> Pipe:
        return self.pipes[index]

    def max_active_count_reached(self) -> bool:
        return self._alive >= self.config.world.max_pipes

    # ── Mutation ────────────────────────────────────────────────────

    def kill_pipe(self, index: int) -> None:
        if self.pipes[index].kill():
            self._alive -= 1

    def set_generation_complete(self) -> None:
        self.generation_complete = True

    def tick(self, rng: EngineRng) -> TickResult:
        """Advance every living pipe, then maybe spawn one."""
        deltas = self.advance(rng)
        spawn = self.maybe_spawn(rng)
        self.tick_count += 1
        return TickResult(deltas, spawn)

    def advance(self, rng: EngineRng) -> tuple[StepDelta, ...]:
        """One step for each living pipe, in index order.

        Dead pipes are skipped; a pipe that dies this tick reports one last
        stationary delta with ``ended`` set.
        """
        if self.generation_complete:
            return ()
        turn_chance = self.config.world.turn_chance
        deltas: list[StepDelta] = []
        for p in self.pipes:
            if not p.alive:
                continue
            delta = p.step(rng, turn_chance)
            if delta.ended:
                self._alive -= 1
            deltas.append(delta)
        return tuple(deltas)

    def maybe_spawn(self, rng: EngineRng) -> SpawnEvent | None:
        if self.generation_complete or self.max_active_count_reached():
            return None
        if not rng.boolean(self.config.world.new_pipe_chance):
            return None

        start = self._find_free_node(rng)
        if start is None:
            logger.debug("no free cell after %d draws, skipping spawn", SPAWN_ATTEMPTS)
            return None

        palette = self.config.palette
        color = palette[rng.choose_uniform(len(palette))]
        direction = DIRECTIONS[rng.choose_uniform(len(DIRECTIONS))]

        index = len(self.pipes)
        self.pipes.append(Pipe(index, start, direction, color, self.grid))
        self._alive += 1
        logger.debug("pipe %d spawned at %s heading %s",
                     index, start.as_tuple(), direction.name)
        return SpawnEvent(index, start, direction, color)

    def _find_free_node(self, rng: EngineRng) -> Node | None:
        capacity = self.grid.capacity
        for _ in range(SPAWN_ATTEMPTS):
            node = self.grid.node_at(rng.choose_uniform(capacity))
            if self.grid.is_free(node):
                return node
        return None

    # ── Lifecycle ───────────────────────────────────────────────────

    def check_phase(self, elapsed: float) -> Phase:
        """Map elapsed seconds to a Phase, freezing the world on first exit
        from GROWING.

        The freeze fires once per generation: it stops stepping and spawning
        and kills every pipe still alive in the same call.
        """
        phase = phase_for(elapsed, self.config.timing)
        if phase is not Phase.GROWING and not self.generation_complete:
            self._freeze()
        return phase

    def _freeze(self) -> None:
        self.set_generation_complete()
        killed = self._alive
        for i in range(len(self.pipes)):
            self.kill_pipe(i)
        logger.info("generation frozen after %d ticks: %d pipes, %d killed, %d/%d cells",
                    self.tick_count, len(self.pipes), killed,
                    self.grid.occupied_count, self.grid.capacity)
