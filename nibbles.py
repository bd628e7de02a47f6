#!/usr/bin/env python3
"""
Nibbles -- Terminal snake game drawn with VT100 escape sequences.
Features:
- Half-row pixel grid: two field rows per terminal row using block glyphs
- Differential redraw: only the cells touched by a tick are repainted
- Dedicated input thread handing keys to the game one at a time
- Score multiplier per food level, 5 lives, -1000 points per death
- Pause and quit confirmation dialogs
- Speed levels 1-10

Controls:
  Arrow keys / WASD  -- Steer the snake
  P                  -- Pause
  Q                  -- Quit (asks for confirmation)
"""

import argparse
import enum
import logging
import os
import queue
import random
import shutil
import sys
import threading
import time

try:
    import msvcrt  # Windows-only, used for raw key reads.
except ImportError:
    msvcrt = None

try:
    import select
    import termios
    import tty
except ImportError:
    select = None
    termios = None
    tty = None

logger = logging.getLogger("nibbles")
logger.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_WIDTH = 50
MIN_HEIGHT = 16
FALLBACK_WIDTH = 80
FALLBACK_HEIGHT = 25

MIN_SPEED = 1
MAX_SPEED = 10
BASE_TICK_MS = 180
SPEED_EXPONENT = 0.3

START_LIVES = 5
DEATH_PENALTY = 1000
FOOD_POINTS = 100
START_LENGTH = 2

# The top terminal row holds the title; the field starts below it.
FIELD_Y_OFFSET = 1
FIELD_HEIGHT_OFFSET = 2

# Reference area (classic 80x25 console) for scaling snake growth.
REFERENCE_AREA = 80 * 25
REFERENCE_GROWTH = 6

INPUT_QUEUE_SIZE = 4
INPUT_JOIN_TIMEOUT = 0.5
ESCAPE_SEQUENCE_TIMEOUT = 0.05

WINDOW_TITLE = "Nibbles!"
TITLE_PREFIX = " Nibbles!   Player: "

MSG_PAUSED = "Game Paused... Press Space to continue"
MSG_CONFIRM_QUIT = "Do you really want to quit?  (Y/N)"
MSG_SNAKE_DIES = "Snake dies! Press Space to continue."
MSG_GAME_OVER = "Game over! Press Space to exit."

# Directions: (dy, dx)
UP = (-1, 0)
DOWN = (1, 0)
LEFT = (0, -1)
RIGHT = (0, 1)

OPPOSITE = {UP: DOWN, DOWN: UP, LEFT: RIGHT, RIGHT: LEFT}

# Session states
STATE_PLAYING = "playing"
STATE_PAUSED = "paused"
STATE_CONFIRMING_QUIT = "confirming-quit"
STATE_DEAD = "dead"
STATE_GAME_OVER = "game-over"
STATE_QUIT = "quit"

# Field cell contents
CELL_NONE = 0
CELL_SNAKE = 1
CELL_OBSTACLE = 2
CELL_FOOD = 3
CELL_TYPES = (CELL_NONE, CELL_SNAKE, CELL_OBSTACLE, CELL_FOOD)

GLYPH_NONE = " "
GLYPH_FULL = "█"   # full block
GLYPH_UPPER = "▀"  # upper half block
GLYPH_LOWER = "▄"  # lower half block

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

KEY_UP = "up"
KEY_DOWN = "down"
KEY_LEFT = "left"
KEY_RIGHT = "right"
KEY_SPACE = "space"
KEY_PAUSE = "p"
KEY_QUIT = "q"
KEY_YES = "y"
KEY_NO = "n"

KEY_SEQUENCES = {
    "\x1b[A": KEY_UP,
    "\x1b[B": KEY_DOWN,
    "\x1b[C": KEY_RIGHT,
    "\x1b[D": KEY_LEFT,
    "\x1bOA": KEY_UP,
    "\x1bOB": KEY_DOWN,
    "\x1bOC": KEY_RIGHT,
    "\x1bOD": KEY_LEFT,
    " ": KEY_SPACE,
}

# Scan codes following a 0x00/0xE0 prefix from msvcrt.getwch()
WINDOWS_SCAN_CODES = {
    "H": KEY_UP,
    "P": KEY_DOWN,
    "K": KEY_LEFT,
    "M": KEY_RIGHT,
}

KEY_DIRECTIONS = {
    KEY_UP: UP, "w": UP,
    KEY_DOWN: DOWN, "s": DOWN,
    KEY_LEFT: LEFT, "a": LEFT,
    KEY_RIGHT: RIGHT, "d": RIGHT,
}


class NibblesError(Exception):
    """Fatal error that prevents or aborts a game session."""


# ---------------------------------------------------------------------------
# Terminal formatting
# ---------------------------------------------------------------------------

class TerminalFormatting(enum.IntEnum):
    """SGR parameter codes."""

    NONE = 0
    BOLD_BRIGHT = 1
    UNDERLINE = 4
    NEGATIVE = 7
    NO_UNDERLINE = 24
    NO_NEGATIVE = 27
    FOREGROUND_BLACK = 30
    FOREGROUND_RED = 31
    FOREGROUND_GREEN = 32
    FOREGROUND_YELLOW = 33
    FOREGROUND_BLUE = 34
    FOREGROUND_MAGENTA = 35
    FOREGROUND_CYAN = 36
    FOREGROUND_WHITE = 37
    FOREGROUND_DEFAULT = 39
    BACKGROUND_BLACK = 40
    BACKGROUND_RED = 41
    BACKGROUND_GREEN = 42
    BACKGROUND_YELLOW = 43
    BACKGROUND_BLUE = 44
    BACKGROUND_MAGENTA = 45
    BACKGROUND_CYAN = 46
    BACKGROUND_WHITE = 47
    BACKGROUND_DEFAULT = 49
    BRIGHT_FOREGROUND_BLACK = 90
    BRIGHT_FOREGROUND_RED = 91
    BRIGHT_FOREGROUND_GREEN = 92
    BRIGHT_FOREGROUND_YELLOW = 93
    BRIGHT_FOREGROUND_BLUE = 94
    BRIGHT_FOREGROUND_MAGENTA = 95
    BRIGHT_FOREGROUND_CYAN = 96
    BRIGHT_FOREGROUND_WHITE = 97
    BRIGHT_BACKGROUND_BLACK = 100
    BRIGHT_BACKGROUND_RED = 101
    BRIGHT_BACKGROUND_GREEN = 102
    BRIGHT_BACKGROUND_YELLOW = 103
    BRIGHT_BACKGROUND_BLUE = 104
    BRIGHT_BACKGROUND_MAGENTA = 105
    BRIGHT_BACKGROUND_CYAN = 106
    BRIGHT_BACKGROUND_WHITE = 107


BACKGROUND_COLOR_OFFSET = 10
BRIGHT_COLOR_OFFSET = 60

ELEMENT_COLORS = {
    CELL_SNAKE: TerminalFormatting.FOREGROUND_YELLOW,
    CELL_OBSTACLE: TerminalFormatting.FOREGROUND_RED,
    CELL_FOOD: TerminalFormatting.FOREGROUND_WHITE,
}
FIELD_BACKGROUND = TerminalFormatting.FOREGROUND_BLUE
FIELD_FOREGROUND = TerminalFormatting.FOREGROUND_RED


class TerminalFormatter:
    """Builds VT100 escape sequences.

    Terminals without bright colors (90-107) fall back to the last code in
    an SGR sequence they understand, so callers can list a dark color
    followed by its bright variant in one call to format().

    When disabled every method returns an empty string, which leaves plain
    text output for terminals that do not understand escape sequences.
    """

    def __init__(self, enabled=True):
        self.enabled = enabled

    def format(self, *formatting):
        """Return the SGR sequence that enables the given formats."""
        if not self.enabled or not formatting:
            return ""
        return "\x1b[" + ";".join(str(int(f)) for f in formatting) + "m"

    def set_cursor_visibility(self, show):
        if not self.enabled:
            return ""
        return "\x1b[?25h" if show else "\x1b[?25l"

    def switch_alternate_screen_buffer(self, alternate):
        if not self.enabled:
            return ""
        return "\x1b[?1049" + ("h" if alternate else "l")

    def set_cursor_position(self, x, y):
        """Move the cursor to zero-based column x, row y."""
        if not self.enabled:
            return ""
        return f"\x1b[{y + 1};{x + 1}H"

    def set_window_title(self, title):
        if not self.enabled:
            return ""
        return f"\x1b]0;{title}\x07"


def fix_display_characters(text):
    """Replace characters that terminals commonly cannot display."""
    replacements = {
        "–": "-",     # en dash
        "…": "...",   # ellipsis
        "‘": "'",
        "’": "'",
        "®": "",      # registered sign
    }
    result = []
    for ch in text:
        code = ord(ch)
        if code < 0x20 or code == 0x7F or 0x80 <= code < 0xA0:
            result.append(" ")
        else:
            result.append(replacements.get(ch, ch))
    return "".join(result)


# ---------------------------------------------------------------------------
# Game rules
# ---------------------------------------------------------------------------

def tick_interval_ms(speed):
    """Milliseconds per tick for a speed level (1 = slowest)."""
    return round(BASE_TICK_MS * 2 ** (-(speed - 1) * SPEED_EXPONENT))


def length_increase_per_food(width, height):
    """Segments gained per food level, scaled by field area."""
    area = width * height
    return round(REFERENCE_GROWTH / REFERENCE_AREA *
                 ((area - REFERENCE_AREA) * 0.7 + REFERENCE_AREA))


def build_border(width, height):
    """Return the coordinates of a one-cell border around the field."""
    border = list(range(width))
    for y in range(1, height - 1):
        border.append(y * width)
        border.append((y + 1) * width - 1)
    border.extend((height - 1) * width + x for x in range(width))
    return border


class Field:
    """The playing field and its fixed obstacles.

    Cells are addressed by a single integer ``y * width + x``, which sorts
    in row-major order.
    """

    def __init__(self, width, height):
        self.width = width
        self.height = height
        self.obstacles = build_border(width, height)
        self._obstacle_set = frozenset(self.obstacles)

    @property
    def size(self):
        return self.width * self.height

    def coordinate(self, x, y):
        return y * self.width + x

    def position(self, coordinate):
        """Return (x, y) for a coordinate."""
        return coordinate % self.width, coordinate // self.width

    def contains(self, x, y):
        return 0 <= x < self.width and 0 <= y < self.height

    def is_obstacle(self, coordinate):
        return coordinate in self._obstacle_set


class SnakeModel:
    """Snake, food and score for one field.

    Only the game thread touches this object.
    """

    def __init__(self, field, rng=None, length_increase=None):
        self.field = field
        self.rng = rng or random.Random()
        if length_increase is None:
            length_increase = length_increase_per_food(field.width, field.height)
        self.length_increase = length_increase
        self.snake = []
        self.food = None
        self.food_level = 0
        self.score = 0
        self.direction = UP
        self.last_direction = UP

    @property
    def expected_length(self):
        return self.food_level * self.length_increase + START_LENGTH

    def reset_snake_and_food(self):
        """Place a two-segment snake in the middle heading up, then new food."""
        field = self.field
        self.food_level = 0
        self.snake = [
            field.coordinate(field.width // 2, field.height // 2),
            field.coordinate(field.width // 2, field.height // 2 + 1),
        ]
        self.direction = UP
        self.last_direction = UP
        self.set_next_food()

    def try_apply_direction(self, new_direction):
        """Change direction unless it would reverse the snake."""
        if new_direction == OPPOSITE[self.direction]:
            return False
        self.direction = new_direction
        return True

    def set_next_food(self):
        """Place food on a uniformly random free cell.

        A random rank among the free cells is drawn and then shifted past
        every occupied cell at or below it, walking the occupied cells in
        ascending order.
        """
        occupied = sorted(set(self.snake).union(self.field.obstacles))
        free_cells = self.field.size - len(occupied)
        if free_cells <= 0:
            raise NibblesError("There is no free cell left for the food.")

        number = self.rng.randrange(free_cells)
        for coordinate in occupied:
            if coordinate > number:
                break
            number += 1
        self.food = number

    def move_snake(self):
        """Advance the snake by one cell.

        Returns ``(alive, changed)`` where ``changed`` lists the coordinates
        that need to be redrawn: the old tail, the new head and, when food
        was eaten, the new food.
        """
        snake = self.snake
        field = self.field
        tail = snake[-1]
        changed = [tail]

        for i in range(len(snake) - 1, 0, -1):
            snake[i] = snake[i - 1]

        grew = False
        if len(snake) < self.expected_length:
            snake.append(tail)
            grew = True

        x, y = field.position(snake[0])
        dy, dx = self.direction
        x += dx
        y += dy
        self.last_direction = self.direction

        head = field.coordinate(x, y)
        snake[0] = head
        changed.append(head)

        # Unreachable while the border is intact.
        if not field.contains(x, y):
            return False, changed
        if head in snake[1:]:
            return False, changed
        if field.is_obstacle(head):
            return False, changed

        if head == self.food:
            self.food_level += 1
            self.score += self.food_level * FOOD_POINTS
            if not grew:
                snake.append(tail)
            logger.debug("Food eaten, level %d, score %d", self.food_level, self.score)
            self.set_next_food()
            changed.append(self.food)

        return True, changed


# ---------------------------------------------------------------------------
# Field rendering
# ---------------------------------------------------------------------------

def _cell_glyph(upper, lower):
    """Glyph and (foreground, background, bright background) for two rows."""
    if upper == CELL_NONE and lower == CELL_NONE:
        return GLYPH_NONE, (FIELD_FOREGROUND, FIELD_BACKGROUND, False)
    if upper == lower:
        # Some terminals draw the full block shorter than the line, so the
        # background gets the same color.
        color = ELEMENT_COLORS[upper]
        return GLYPH_FULL, (color, color, True)
    if lower == CELL_NONE:
        return GLYPH_UPPER, (ELEMENT_COLORS[upper], FIELD_BACKGROUND, False)
    if upper == CELL_NONE:
        return GLYPH_LOWER, (ELEMENT_COLORS[lower], FIELD_BACKGROUND, False)
    return GLYPH_UPPER, (ELEMENT_COLORS[upper], ELEMENT_COLORS[lower], True)


CELL_GLYPHS = {(upper, lower): _cell_glyph(upper, lower)
               for upper in CELL_TYPES for lower in CELL_TYPES}


class FieldRenderer:
    """Draws the field at half vertical resolution.

    Two field rows share one terminal row: the upper row is painted with
    the foreground color of a half block, the lower row with the
    background color.
    """

    def __init__(self, formatter, width, height, y_offset=FIELD_Y_OFFSET):
        self.formatter = formatter
        self.width = width
        self.height = height
        self.y_offset = y_offset

    def build_grid(self, snake, obstacles, food):
        grid = [[CELL_NONE] * self.width for _ in range(self.height)]
        for coordinate in snake:
            grid[coordinate // self.width][coordinate % self.width] = CELL_SNAKE
        for coordinate in obstacles:
            grid[coordinate // self.width][coordinate % self.width] = CELL_OBSTACLE
        if food is not None:
            grid[food // self.width][food % self.width] = CELL_FOOD
        return grid

    def style_sequence(self, style):
        """SGR sequence for a (foreground, background, bright background) triple.

        Bold plus the dark foreground comes first as a fallback for terminals
        without bright colors, then the bright foreground.
        """
        foreground, background, bright_background = style
        codes = [
            TerminalFormatting.BOLD_BRIGHT,
            foreground,
            foreground + BRIGHT_COLOR_OFFSET,
            background + BACKGROUND_COLOR_OFFSET,
        ]
        if bright_background:
            codes.append(background + BACKGROUND_COLOR_OFFSET + BRIGHT_COLOR_OFFSET)
        return self.formatter.format(*codes)

    def render(self, snake, obstacles, food, coordinates=None):
        """Return the escape sequences that draw the field.

        With ``coordinates`` only the terminal cells holding those field
        cells are drawn. Duplicates are not filtered.
        """
        grid = self.build_grid(snake, obstacles, food)
        parts = []
        current_style = None

        def draw_cell(x, row):
            nonlocal current_style
            glyph, style = CELL_GLYPHS[grid[row * 2][x], grid[row * 2 + 1][x]]
            if style != current_style:
                parts.append(self.style_sequence(style))
                current_style = style
            parts.append(glyph)

        if coordinates is None:
            for row in range(self.height // 2):
                parts.append(self.formatter.set_cursor_position(0, row + self.y_offset))
                for x in range(self.width):
                    draw_cell(x, row)
        else:
            for coordinate in coordinates:
                row = coordinate // self.width // 2
                x = coordinate % self.width
                parts.append(self.formatter.set_cursor_position(x, row + self.y_offset))
                draw_cell(x, row)

        parts.append(self.formatter.format(TerminalFormatting.NONE))
        return "".join(parts)


# ---------------------------------------------------------------------------
# Input thread
# ---------------------------------------------------------------------------

class InputReader:
    """Reads keys on a worker thread and hands them over one at a time.

    The worker reads a key only after the game released a permit through
    allow_next(), so at most one key is read ahead. Each key read is
    announced on the ready semaphore that wait_key() waits on.
    """

    def __init__(self, read_key):
        self._read_key = read_key
        self._queue = queue.Queue(maxsize=INPUT_QUEUE_SIZE)
        self._permits = threading.Semaphore(0)
        self._ready = threading.Semaphore(0)
        self._exit_requested = threading.Event()
        self._thread = threading.Thread(target=self._run, name="nibbles-input", daemon=True)

    def start(self):
        self._thread.start()

    def allow_next(self):
        """Let the worker read one more key."""
        self._permits.release()

    def wait_key(self, timeout=None):
        """Return the next key, or None if none arrived within timeout seconds."""
        if not self._ready.acquire(timeout=timeout):
            return None
        return self._queue.get_nowait()

    def stop(self):
        self._exit_requested.set()
        self._permits.release()
        if self._thread.ident is None:
            return
        self._thread.join(INPUT_JOIN_TIMEOUT)
        if self._thread.is_alive():
            logger.debug("Input thread still blocked in a key read")

    def _run(self):
        try:
            while True:
                self._permits.acquire()
                if self._exit_requested.is_set():
                    break
                key = self._read_key()
                if key is None:
                    logger.debug("Input stream closed, no further keys")
                    break
                self._queue.put(key)
                self._ready.release()
        except (OSError, EOFError, ValueError) as exc:
            # No console or redirected input: the game keeps running without keys.
            logger.debug("Input thread stopped: %s", exc)


# ---------------------------------------------------------------------------
# Game session
# ---------------------------------------------------------------------------

class NibblesGame:
    """One game session: tick loop, dialogs, lives and screen output."""

    def __init__(self, player_name, speed, formatter, write_console,
                 key_source=None, console_size=None, rng=None,
                 lives=START_LIVES, length_increase=None):
        if (isinstance(speed, bool) or not isinstance(speed, int) or
                not MIN_SPEED <= speed <= MAX_SPEED):
            raise NibblesError(f"Invalid speed: {speed}")

        self.player_name = player_name
        self.speed = speed
        self.tick_ms = tick_interval_ms(speed)
        self.formatter = formatter
        self._write_console = write_console
        self._get_console_size = console_size or get_console_size

        width, height = self._get_console_size()
        if width < MIN_WIDTH or height < MIN_HEIGHT:
            raise NibblesError(
                f"The console must have a size of at least {MIN_WIDTH}x{MIN_HEIGHT}.")
        self.console_width = width
        self.console_height = height

        self.field = Field(width, height * 2 - FIELD_HEIGHT_OFFSET)
        self.model = SnakeModel(self.field, rng, length_increase)
        self.renderer = FieldRenderer(formatter, self.field.width, self.field.height)
        self.lives = lives
        self.state = STATE_PLAYING
        self._buffer = []
        self._input = InputReader(key_source or read_key)

    def run(self):
        """Play until game over or a confirmed quit and return the final state."""
        logger.info("Session start: console %dx%d, speed %d, tick %d ms",
                    self.console_width, self.console_height, self.speed, self.tick_ms)
        self._buffer.append(self.formatter.switch_alternate_screen_buffer(True))
        self._buffer.append(self.formatter.set_cursor_visibility(False))
        self._input.start()
        try:
            self._play()
        except NibblesError:
            logger.exception("Session aborted")
            raise
        finally:
            self._buffer.append(self.formatter.switch_alternate_screen_buffer(False))
            self._buffer.append(self.formatter.set_cursor_visibility(True))
            self._buffer.append(self.formatter.format(TerminalFormatting.NONE))
            self._flush()
            self._input.stop()
        logger.info("Session end: %s, score %d", self.state, self.model.score)
        return self.state

    def _play(self):
        self.model.reset_snake_and_food()
        self._input.allow_next()
        self._draw_screen()

        # A second direction key within one tick is kept for the next tick.
        buffered_direction = None

        while True:
            direction_applied = False
            if buffered_direction is not None:
                direction_applied = self.model.try_apply_direction(buffered_direction)
                buffered_direction = None

            remaining_ms = None
            while True:
                wait_ms = self.tick_ms if remaining_ms is None else remaining_ms
                started = time.monotonic()
                key = self._input.wait_key(wait_ms / 1000)
                if key is None:
                    break
                elapsed_ms = (time.monotonic() - started) * 1000
                remaining_ms = max(0, int(wait_ms - elapsed_ms))

                if key == KEY_PAUSE:
                    self._handle_pause_key()
                    remaining_ms = None
                elif key == KEY_QUIT:
                    if self._handle_quit_key():
                        self.state = STATE_QUIT
                        return
                    remaining_ms = None

                self._input.allow_next()

                new_direction = KEY_DIRECTIONS.get(key)
                if new_direction is not None:
                    if direction_applied:
                        buffered_direction = new_direction
                    else:
                        direction_applied = self.model.try_apply_direction(new_direction)

                if not remaining_ms:
                    break

            points = self.model.score
            alive, changed = self.model.move_snake()
            if alive:
                if self.model.score != points:
                    self._draw_title()
                self._draw_field(changed)
                self._flush()
            elif not self._handle_death():
                return

    def _wait_for_key(self, *accepted):
        """Block until one of the accepted keys arrives, discarding others."""
        while True:
            key = self._input.wait_key()
            if key in accepted:
                return key
            self._input.allow_next()

    def _handle_pause_key(self):
        self.state = STATE_PAUSED
        logger.debug("Paused")
        self.display_message(MSG_PAUSED)
        self._input.allow_next()
        self._wait_for_key(KEY_SPACE)
        self.state = STATE_PLAYING
        self._draw_screen()

    def _handle_quit_key(self):
        """Ask for confirmation; True means the player wants to quit."""
        self.state = STATE_CONFIRMING_QUIT
        self.display_message(MSG_CONFIRM_QUIT)
        self._input.allow_next()
        try:
            confirmed = self._wait_for_key(KEY_YES, KEY_NO) == KEY_YES
        finally:
            self._draw_screen()
        logger.debug("Quit %s", "confirmed" if confirmed else "cancelled")
        self.state = STATE_PLAYING
        return confirmed

    def _handle_death(self):
        """Apply the death penalty; False means the session is over."""
        self.state = STATE_DEAD
        self.lives -= 1
        self.model.score -= DEATH_PENALTY
        logger.info("Snake died, %d lives left, score %d", self.lives, self.model.score)
        self._draw_title()
        self.display_message(MSG_SNAKE_DIES if self.lives > 0 else MSG_GAME_OVER)

        # The permit for this key was released before the snake moved.
        self._wait_for_key(KEY_SPACE)
        if self.lives <= 0:
            self.state = STATE_GAME_OVER
            return False

        self.model.reset_snake_and_food()
        self._input.allow_next()
        self.state = STATE_PLAYING
        self._draw_field()
        self._flush()
        return True

    # -- drawing ------------------------------------------------------------

    def _flush(self):
        self._write_console("".join(self._buffer), False)
        self._buffer.clear()

    def _draw_screen(self):
        self._draw_title()
        self._draw_field()
        self._flush()

    def _draw_title(self):
        name = fix_display_characters(self.player_name)
        suffix = f"   Lives: {self.lives}   Points: {self.model.score} "
        padding = self.console_width - (len(TITLE_PREFIX) + len(name) + len(suffix))
        if padding < 0:
            keep = max(0, self.console_width - len(TITLE_PREFIX) - len(suffix) - 3)
            name = name[:keep] + "..."
        else:
            name += " " * padding
        self._buffer.append(self.formatter.set_cursor_position(0, 0) +
                            TITLE_PREFIX + name + suffix)

    def _draw_field(self, coordinates=None):
        if tuple(self._get_console_size()) != (self.console_width, self.console_height):
            raise NibblesError("Console size has changed during runtime.")
        self._buffer.append(self.renderer.render(
            self.model.snake, self.field.obstacles, self.model.food, coordinates))

    def display_message(self, text):
        """Draw a centered message box and flush it."""
        fmt = self.formatter
        lines = text.replace("\r", "").split("\n")
        box_width = max(len(line) for line in lines) + 4

        body = fmt.format(TerminalFormatting.FOREGROUND_WHITE,
                          TerminalFormatting.BACKGROUND_BLACK)
        edge = (fmt.format(TerminalFormatting.FOREGROUND_WHITE,
                           TerminalFormatting.BACKGROUND_WHITE) +
                GLYPH_FULL + fmt.format(TerminalFormatting.NONE))
        reset = fmt.format(TerminalFormatting.NONE)

        box = [edge + body + GLYPH_UPPER * (box_width - 2) + edge]
        for line in lines:
            fill_left = (box_width - 2 - len(line)) // 2
            fill_right = box_width - 2 - len(line) - fill_left
            box.append(edge + body + " " * fill_left +
                       fmt.format(TerminalFormatting.BOLD_BRIGHT) + line + reset +
                       body + " " * fill_right + edge)
        box.append(edge + body + GLYPH_LOWER * (box_width - 2) + edge)

        top = self.console_height // 2 - len(box) // 2
        left = self.console_width // 2 - box_width // 2
        for i, line in enumerate(box):
            self._buffer.append(fmt.set_cursor_position(left, top + i) + line)
        self._flush()


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------

def get_console_size():
    """Return (columns, rows), falling back to 80x25 without a console."""
    size = shutil.get_terminal_size(fallback=(FALLBACK_WIDTH, FALLBACK_HEIGHT))
    return size.columns, size.lines


def write_console(text="", new_line=True):
    sys.stdout.write(text + "\n" if new_line else text)
    sys.stdout.flush()


def translate_key(sequence):
    """Map a raw key sequence to a key name; letters are lowercased."""
    if sequence in KEY_SEQUENCES:
        return KEY_SEQUENCES[sequence]
    if len(sequence) == 1:
        return sequence.lower()
    return sequence


def _read_key_posix(fd):
    data = os.read(fd, 1)
    if not data:
        return None
    if data == b"\x1b":
        while len(data) < 3 and select.select([fd], [], [], ESCAPE_SEQUENCE_TIMEOUT)[0]:
            data += os.read(fd, 1)
    return translate_key(data.decode("utf-8", errors="replace"))


def _read_key_windows():
    ch = msvcrt.getwch()
    if ch in ("\x00", "\xe0"):
        return WINDOWS_SCAN_CODES.get(msvcrt.getwch(), "")
    return translate_key(ch)


def read_key():
    """Block until a key is pressed and return its name (None at end of input)."""
    if msvcrt is not None:
        return _read_key_windows()
    return _read_key_posix(sys.stdin.fileno())


class RawTerminal:
    """Context manager that switches a POSIX tty to cbreak mode (no echo, no line buffering)."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdin
        self.fd = None
        self._saved = None

    def __enter__(self):
        if termios is not None and self.stream.isatty():
            self.fd = self.stream.fileno()
            self._saved = termios.tcgetattr(self.fd)
            tty.setcbreak(self.fd)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._saved is not None:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)


def initialize_console():
    """One-time console setup: VT processing on Windows, UTF-8 output."""
    if os.name == "nt":
        # Enables ANSI escape sequences in newer Windows consoles.
        os.system("")
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(encoding="utf-8")
        except (AttributeError, ValueError, OSError):
            pass


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

CONTROLS_TEXT = """\
           Game Controls:

    General              Player
                           (Up)
   P - Pause                 ↑
   Q - Quit         (Left) ←   → (Right)
                             ↓
                          (Down)
"""


def parse_speed(text):
    try:
        return int(text.strip())
    except ValueError:
        raise NibblesError(f"Invalid speed: {text.strip()}") from None


def run_console(formatter, write_console=write_console, name=None, speed=None,
                read_line=input):
    """Prompt for missing settings, run a session and report errors.

    Returns the process exit code.
    """
    heading = "N I B B L E S !"
    width, _ = get_console_size()
    # The \r lets terminals that ignore the title sequence overwrite it.
    intro = (formatter.set_window_title(WINDOW_TITLE) + "\r" +
             " " * max(0, width // 2 - len(heading) // 2) + heading + "\n\n" +
             CONTROLS_TEXT + "\n")

    try:
        if name is None:
            write_console(intro + "Please enter your name: ", False)
            name = read_line()
            write_console()
        if speed is None:
            write_console("Please enter the speed (1-10): ", False)
            speed = parse_speed(read_line())

        game = NibblesGame(name, speed, formatter, write_console)
        with RawTerminal():
            game.run()
    except NibblesError as exc:
        write_console()
        write_console(formatter.format(TerminalFormatting.FOREGROUND_RED,
                                       TerminalFormatting.BOLD_BRIGHT) +
                      "ERROR:" + formatter.format(TerminalFormatting.NONE) + " " +
                      fix_display_characters(str(exc)))
        return 1
    except (EOFError, KeyboardInterrupt):
        write_console()
        return 130
    return 0


def configure_logging(log_file, level="INFO"):
    if not log_file:
        return
    logging.basicConfig(
        filename=log_file,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(message)s",
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Nibbles -- terminal snake game.",
    )
    parser.add_argument("--name", help="player name (prompted if omitted)")
    parser.add_argument("--speed", type=int,
                        help=f"speed {MIN_SPEED}-{MAX_SPEED} (prompted if omitted)")
    parser.add_argument("--no-color", action="store_true",
                        help="do not emit escape sequences")
    parser.add_argument("--log-file", help="write a debug log to this file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="log level for --log-file (default: INFO)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_file, args.log_level)
    initialize_console()
    formatter = TerminalFormatter(enabled=not args.no_color)
    return run_console(formatter, name=args.name, speed=args.speed)


if __name__ == "__main__":
    sys.exit(main())
