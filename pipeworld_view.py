#!/usr/bin/env python3
"""
  ╔═╗  P I P E W O R L D
  The 3D pipes screensaver, in your terminal.

  Pipes grow through a box seen at an oblique angle: x runs across, y runs
  up, z recedes up and to the right. Joints are drawn where a pipe turns,
  a start ball where it was born and an end cap where it got boxed in.
  When a generation has grown, frozen and idled long enough the box is
  cleared and it all starts again.

  Controls:
    q         quit               SPACE     pause / resume
    r         new generation     +/-       speed
    s         toggle stats overlay

  Usage:
    python3 pipeworld_view.py                         # defaults
    python3 pipeworld_view.py --seed 7 --extent 30 18 18
    python3 pipeworld_view.py --config pipes.json --single-run
    python3 pipeworld_view.py --stats pipe_stats.csv --log-file pipes.log
"""

from __future__ import annotations

import argparse
import curses
import dataclasses
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, ClassVar, Sequence

from pipeworld import (
    Color,
    Configuration,
    ConfigurationError,
    Node,
    Phase,
    SpawnEvent,
    StepDelta,
    TickResult,
    World,
    new_rng,
)
from pipeworld_log import parse_level, setup_logging

logger = logging.getLogger("pipeworld.view")

# ── Glyphs ──────────────────────────────────────────────────────────────
AXIS_GLYPHS: dict[int, str] = {0: "━", 1: "┃", 2: "╱"}
JOINT = "●"
START_BALL = "◉"
END_CAP = "■"

# xterm-256 colour cube levels
_CUBE_LEVELS: tuple[int, ...] = (0, 95, 135, 175, 215, 255)

# The eight basic curses colours, for terminals without 256-colour support
_BASIC_COLORS: list[tuple[Color, int]] = [
    ((0, 0, 0), curses.COLOR_BLACK),
    ((205, 0, 0), curses.COLOR_RED),
    ((0, 205, 0), curses.COLOR_GREEN),
    ((205, 205, 0), curses.COLOR_YELLOW),
    ((0, 0, 238), curses.COLOR_BLUE),
    ((205, 0, 205), curses.COLOR_MAGENTA),
    ((0, 205, 205), curses.COLOR_CYAN),
    ((229, 229, 229), curses.COLOR_WHITE),
]

MIN_DELAY_MS = 10.0
MAX_DELAY_MS = 500.0


def rgb_to_xterm(color: Color) -> int:
    """Nearest xterm-256 colour-cube index for an RGB colour."""
    def level(c: int) -> int:
        return min(range(len(_CUBE_LEVELS)), key=lambda i: abs(_CUBE_LEVELS[i] - c))

    r, g, b = color
    return 16 + 36 * level(r) + 6 * level(g) + level(b)


def rgb_to_basic(color: Color) -> int:
    """Nearest of the eight basic curses colours."""
    def dist(other: Color) -> int:
        return sum((a - b) ** 2 for a, b in zip(color, other))

    return min(_BASIC_COLORS, key=lambda entry: dist(entry[0]))[1]


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes per-tick telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = "generation,tick,time_s,alive,pipes,occupied,phase,event\n"

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    @property
    def enabled(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        """Start a fresh CSV. With no path, or an unwritable one, log() is a no-op."""
        if self._path is None:
            return
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError as exc:
            logger.warning("stats logging disabled, cannot open %s: %s", self._path, exc)
            self._fh = None

    def log(
        self,
        generation: int,
        tick: int,
        alive: int,
        pipes: int,
        occupied: int,
        phase: str,
        event: str = "",
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        self._fh.write(
            f"{generation},{tick},{t:.1f},{alive},{pipes},{occupied},{phase},{event}\n"
        )
        # Flush on events or periodically
        if event or tick % 50 == 0:
            try:
                self._fh.flush()
            except OSError:
                pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Projection
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Cell:
    glyph: str
    color: Color
    depth: int


class PipeCanvas:
    """
    Turns StepDeltas and SpawnEvents into terminal glyphs.

    Uses an oblique projection: one grid step along x is two columns, one
    step along y is one row up, one step along z is one column right and
    half a row up. Cells nearer the viewer (smaller z) win when two nodes
    land on the same character.
    """

    def __init__(self, extent: tuple[int, int, int]) -> None:
        self.extent = extent
        sx, sy, sz = extent
        self.height: int = (sy - 1) + (sz - 1) // 2 + 1
        self.width: int = 2 * (sx - 1) + (sz - 1) + 1
        self.cells: dict[tuple[int, int], Cell] = {}

    def project(self, node: Node) -> tuple[int, int]:
        """(row, col) of a node, row 0 at the top."""
        _, sy, sz = self.extent
        row = (sy - 1 - node.y) + (sz - 1 - node.z) // 2
        col = 2 * node.x + node.z
        return row, col

    def plot(self, row: int, col: int, glyph: str, color: Color, depth: int) -> None:
        current = self.cells.get((row, col))
        if current is not None and current.depth < depth:
            return
        self.cells[(row, col)] = Cell(glyph, color, depth)

    def plot_node(self, node: Node, glyph: str, color: Color) -> None:
        row, col = self.project(node)
        self.plot(row, col, glyph, color, node.z)

    def apply(self, result: TickResult) -> None:
        for delta in result.deltas:
            self.apply_delta(delta)
        if result.spawn is not None:
            self.apply_spawn(result.spawn)

    def apply_spawn(self, event: SpawnEvent) -> None:
        self.plot_node(event.node, START_BALL, event.color)

    def apply_delta(self, delta: StepDelta) -> None:
        if not delta.moved:
            if delta.ended:
                self.plot_node(delta.node, END_CAP, delta.color)
            return

        glyph = AXIS_GLYPHS[delta.direction.axis]
        if delta.turned:
            self.plot_node(delta.previous_node, JOINT, delta.color)
        elif not self._is_start_ball(delta.previous_node):
            self.plot_node(delta.previous_node, glyph, delta.color)

        if delta.direction.axis == 0:
            # x steps span two columns; fill the gap between the nodes
            row, col = self.project(delta.node)
            prev_col = self.project(delta.previous_node)[1]
            self.plot(row, (col + prev_col) // 2, glyph, delta.color, delta.node.z)
        self.plot_node(delta.node, glyph, delta.color)

    def _is_start_ball(self, node: Node) -> bool:
        cell = self.cells.get(self.project(node))
        return cell is not None and cell.glyph == START_BALL


# ═══════════════════════════════════════════════════════════════════════
#  Session: world + clock + canvas across generations
# ═══════════════════════════════════════════════════════════════════════

class PipeSession:
    """
    Drives consecutive generations: tick, check the clock, reset.

    The clock is injectable so the same session runs under curses with
    ``time.monotonic`` and headless under a synthetic clock. One random
    source spans every generation; resets continue it rather than reseed.
    """

    def __init__(
        self, config: Configuration, clock: Callable[[], float] = time.monotonic
    ) -> None:
        config.validate()
        self.config = config
        self.rng = new_rng(config)
        self._clock = clock

        self.generation: int = 0
        self.paused: bool = False
        self._paused_at: float | None = None
        self.delay: float = 50.0  # ms between frames

        self.total_spawns: int = 0
        self.total_deaths: int = 0
        self.last_event: str = ""
        self.last_result: TickResult = TickResult()

        self.new_generation()
        logger.info("session started with seed %d", self.rng.seed)

    def new_generation(self) -> None:
        self.generation += 1
        self.world = World(self.config)
        self.canvas = PipeCanvas(self.config.world.extent)
        self.phase = Phase.GROWING
        self.start_time = self._clock()
        if self.paused:
            self._paused_at = self.start_time
        logger.debug("generation %d begins", self.generation)

    def elapsed(self) -> float:
        now = self._paused_at if self._paused_at is not None else self._clock()
        return now - self.start_time

    def toggle_pause(self) -> None:
        if self._paused_at is not None:
            # Shift the generation start so paused time does not count
            self.start_time += self._clock() - self._paused_at
            self._paused_at = None
            self.paused = False
        else:
            self._paused_at = self._clock()
            self.paused = True

    def update(self) -> str:
        """Advance one frame. Returns an event string (empty if none)."""
        if self.paused:
            return ""

        result = self.world.tick(self.rng)
        self.last_result = result
        self.canvas.apply(result)
        self.total_deaths += sum(1 for d in result.deltas if d.ended)

        event = ""
        if result.spawn is not None:
            self.total_spawns += 1
            event = f"spawn:{result.spawn.index}"

        phase = self.world.check_phase(self.elapsed())
        if phase is not self.phase:
            event = phase.value
            logger.info("generation %d: %s at %.1fs",
                        self.generation, phase.value, self.elapsed())
        self.phase = phase

        if phase is Phase.RESET_REQUESTED:
            self.new_generation()

        if event:
            self.last_event = event
        return event

    def faster(self) -> None:
        self.delay = max(MIN_DELAY_MS, self.delay - 10)

    def slower(self) -> None:
        self.delay = min(MAX_DELAY_MS, self.delay + 10)


# ═══════════════════════════════════════════════════════════════════════
#  Color management
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ColorMap:
    """One curses colour pair per palette colour."""

    _pairs: dict[Color, int] = dataclasses.field(default_factory=dict)

    def setup(self, palette: Sequence[Color]) -> None:
        curses.start_color()
        curses.use_default_colors()

        use_256 = curses.COLORS >= 256
        max_pairs = curses.COLOR_PAIRS - 1
        pair_id = 1
        for color in palette:
            if color in self._pairs:
                continue
            if pair_id > max_pairs:
                break
            fg = rgb_to_xterm(color) if use_256 else rgb_to_basic(color)
            curses.init_pair(pair_id, fg, -1)
            self._pairs[color] = pair_id
            pair_id += 1

    def pair(self, color: Color) -> int:
        return self._pairs.get(color, 0)


# ═══════════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════════

def render(
    stdscr: curses.window,
    session: PipeSession,
    cmap: ColorMap,
    show_stats: bool = False,
) -> None:
    """Draw the canvas centred in the terminal, then the status bar."""
    max_y, max_x = stdscr.getmaxyx()
    canvas = session.canvas
    y0 = max(0, (max_y - 1 - canvas.height) // 2)
    x0 = max(0, (max_x - canvas.width) // 2)

    _addstr = stdscr.addstr
    _color_pair = curses.color_pair
    _BOLD = curses.A_BOLD
    _pair = cmap.pair

    for (row, col), cell in canvas.cells.items():
        y, x = y0 + row, x0 + col
        if y >= max_y - 1 or x >= max_x:
            continue
        try:
            _addstr(y, x, cell.glyph, _color_pair(_pair(cell.color)) | _BOLD)
        except curses.error:
            pass

    if show_stats:
        _draw_stats_overlay(stdscr, session, max_y, max_x)

    world = session.world
    paused = " [paused]" if session.paused else ""
    left = (
        f"  generation {session.generation}  t {session.elapsed():5.1f}s  "
        f"pipes {world.active_pipe_count()}/{world.pipe_count()}  "
        f"{session.phase.value}{paused}"
    )
    right = "q r spc +/- s  "
    status = left + " " * max(1, max_x - len(left) - len(right) - 1) + right
    try:
        stdscr.addstr(max_y - 1, 0, status[: max_x - 1], curses.A_DIM)
    except curses.error:
        pass


def _draw_stats_overlay(
    stdscr: curses.window, session: PipeSession, max_y: int, max_x: int
) -> None:
    """Draw the engine telemetry panel in the bottom-right."""
    panel_w = 36
    world = session.world
    grid = world.grid
    timing = session.config.timing
    sx, sy, sz = grid.extent

    lines = [
        f"{'':─<{panel_w - 2}}",
        " pipe engine",
        f" seed        : {session.rng.seed}",
        f" world       : {sx}x{sy}x{sz}",
        f" cells       : {grid.occupied_count:,}/{grid.capacity:,}",
        f" ticks       : {world.tick_count:,}",
        f" spawns/ends : {session.total_spawns}/{session.total_deaths}",
        f" cycle       : {timing.max_gen_time:g}/{timing.freeze_end:g}/{timing.max_cycle_time:g}s",
        f" last event  : {session.last_event or 'none'}",
    ]
    panel_h = len(lines)
    x0 = max_x - panel_w - 2
    y0 = max_y - panel_h - 2
    if x0 < 0 or y0 < 0:
        return

    style = curses.A_DIM
    for i, line in enumerate(lines):
        row = y0 + i
        if 0 <= row < max_y - 1:
            padded = f" {line:<{panel_w - 1}}"[:panel_w]
            try:
                stdscr.addstr(row, x0, padded, style)
            except curses.error:
                pass


# ═══════════════════════════════════════════════════════════════════════
#  Command line
# ═══════════════════════════════════════════════════════════════════════

def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="3D pipes screensaver for the terminal")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON configuration file (flags override it)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed (default: random)")
    parser.add_argument("--extent", type=int, nargs=3, metavar=("X", "Y", "Z"),
                        default=None, help="Grid size in cells")
    parser.add_argument("--max-pipes", type=int, default=None,
                        help="Maximum pipes growing at once")
    parser.add_argument("--new-pipe-chance", type=float, default=None,
                        help="Chance per tick of spawning a pipe (0-1)")
    parser.add_argument("--turn-chance", type=float, default=None,
                        help="Chance per pipe per tick of trying to turn (0-1)")
    parser.add_argument("--gen-time", type=float, default=None,
                        help="Seconds of growth per generation")
    parser.add_argument("--freeze-time", type=float, default=None,
                        help="Seconds the frozen world is shown before idling")
    parser.add_argument("--cycle-time", type=float, default=None,
                        help="Seconds from generation start to reset")
    parser.add_argument("--single-run", action="store_true",
                        help="Grow one generation and never reset")
    parser.add_argument("--delay", type=float, default=50.0,
                        help="Milliseconds between frames (default: 50)")
    parser.add_argument("--stats", type=Path, default=None,
                        help="Write per-tick telemetry CSV to this path")
    parser.add_argument("--log-level", type=str, default="info",
                        help="debug, info, warning, ... (default: info)")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Write log records to this file")
    return parser


def build_config(args: argparse.Namespace) -> Configuration:
    """Defaults, then the --config file, then individual flags."""
    if args.config is not None:
        try:
            data = json.loads(Path(args.config).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"cannot read config {args.config}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {args.config} must hold a JSON object")
        config = Configuration.from_dict(data)
    else:
        config = Configuration()

    world_overrides = {
        "extent": tuple(args.extent) if args.extent is not None else None,
        "max_pipes": args.max_pipes,
        "new_pipe_chance": args.new_pipe_chance,
        "turn_chance": args.turn_chance,
    }
    timing_overrides = {
        "max_gen_time": args.gen_time,
        "max_freeze_time": args.freeze_time,
        "max_cycle_time": args.cycle_time,
        "single_run": True if args.single_run else None,
    }
    world = dataclasses.replace(
        config.world, **{k: v for k, v in world_overrides.items() if v is not None}
    )
    timing = dataclasses.replace(
        config.timing, **{k: v for k, v in timing_overrides.items() if v is not None}
    )
    seed = args.seed if args.seed is not None else config.seed
    config = dataclasses.replace(config, world=world, timing=timing, seed=seed)
    config.validate()
    return config


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def run(stdscr: curses.window, session: PipeSession, stats: StatsLogger) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)

    cmap = ColorMap()
    cmap.setup(session.config.palette)
    show_stats = False

    while True:
        # ── Input ──────────────────────────────────────────────
        try:
            key = stdscr.getch()
        except curses.error:
            key = -1

        if key in (ord("q"), ord("Q")):
            break
        elif key in (ord("r"), ord("R")):
            session.new_generation()
            session.last_event = "manual reset"
        elif key == ord(" "):
            session.toggle_pause()
        elif key in (ord("+"), ord("=")):
            session.faster()
        elif key in (ord("-"), ord("_")):
            session.slower()
        elif key in (ord("s"), ord("S")):
            show_stats = not show_stats

        # ── Simulate ───────────────────────────────────────────
        event = session.update()

        # ── Log ────────────────────────────────────────────────
        world = session.world
        if not session.paused:
            stats.log(
                generation=session.generation,
                tick=world.tick_count,
                alive=world.active_pipe_count(),
                pipes=world.pipe_count(),
                occupied=world.grid.occupied_count,
                phase=session.phase.value,
                event=event,
            )

        # ── Render ─────────────────────────────────────────────
        stdscr.erase()
        render(stdscr, session, cmap, show_stats=show_stats)
        stdscr.refresh()

        time.sleep(session.delay / 1000.0)


def main(argv: Sequence[str] | None = None) -> int:
    args = make_parser().parse_args(argv)
    try:
        level = parse_level(args.log_level)
        config = build_config(args)
    except (ConfigurationError, ValueError, TypeError) as exc:
        print(f"pipeworld: {exc}", file=sys.stderr)
        return 2

    # No console handler: stderr would scribble over the curses screen
    setup_logging(level, args.log_file, console=False)

    session = PipeSession(config)
    session.delay = min(MAX_DELAY_MS, max(MIN_DELAY_MS, args.delay))
    stats = StatsLogger(args.stats)
    stats.open()

    try:
        curses.wrapper(run, session, stats)
    except KeyboardInterrupt:
        pass
    finally:
        stats.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
