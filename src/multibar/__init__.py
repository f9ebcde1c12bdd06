# -*- coding: utf-8 -*-
"""
Multibar – An in-place multi-progress-bar dashboard for terminals.
Copyright (c) 2025 The Multibar Authors
Licensed under the MIT License.
"""

import os
import sys
import signal
import time
import threading
import select
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Queue, Empty, Full
from typing import (
        Protocol,
        Optional,
        Tuple,
        List,
        Mapping,
        Callable,
        Iterable,
        NamedTuple,
        Sequence,
        Union,
        TextIO,
)
from enum import Enum
import logging

__all__ = [
    'MAX_LEFT_LENGTH',
    'DEFAULT_WIDTH',
    'MIN_WIDTH',
    'Colors',
    'Theme',
    'Status',
    'UIMode',
    'RenderConfig',
    'ProgressSnapshot',
    'ProgressSource',
    'ProgressBar',
    'SynchronizedWriter',
    'Console',
    'LayoutResult',
    'compute_max_left',
    'render_multiple_bars',
    'print_bar',
    'Wakeup',
    'ResizeWatcher',
    'TerminalGeometry',
    'LoopState',
    'RefreshLoop',
    'show_progress',
    'query_terminal_size',
    'poll_terminal_size',
]

logger = logging.getLogger('multibar')


# Max length of the left-side label before it is trimmed
MAX_LEFT_LENGTH = 30
DEFAULT_WIDTH = 40
MIN_WIDTH = 8
DEFAULT_TERMINAL_WIDTH = 80
DEFAULT_TERMINAL_HEIGHT = 24

ERASE_TO_EOL = '\x1b[K'

# ============================================================================
# Terminal utilities
# ============================================================================

class TerminalCapability(Enum):
    """Terminal capability levels"""
    MINIMAL = 1  # No ANSI support
    BASIC = 2    # Basic ANSI colors
    ADVANCED = 3 # Full Unicode and colors


class Colors:
    """ANSI color codes"""
    # Reset
    RESET = '\033[0m'

    # Basic colors (3/4 bit)
    BLACK = '\033[30m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    # Bright colors
    BRIGHT_BLACK = '\033[90m'
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'
    BRIGHT_WHITE = '\033[97m'

    # Styles
    BOLD = '\033[1m'
    DIM = '\033[2m'

    @staticmethod
    def paint(text: str, color: str) -> str:
        """Wrap text in a color code, leaving empty text and colors alone"""
        if not text or not color:
            return text
        return f'{color}{text}{Colors.RESET}'


class Theme:
    """Color theme for progress bars and their status glyphs"""

    def __init__(self,
                 bar_complete_color: str = Colors.GREEN,
                 bar_incomplete_color: str = Colors.BRIGHT_BLACK,
                 waiting_color: str = Colors.DIM,
                 stopping_color: str = Colors.YELLOW,
                 interrupted_color: str = Colors.RED,
                 done_color: str = Colors.GREEN):
        self.bar_complete_color = bar_complete_color
        self.bar_incomplete_color = bar_incomplete_color
        self.waiting_color = waiting_color
        self.stopping_color = stopping_color
        self.interrupted_color = interrupted_color
        self.done_color = done_color

    @staticmethod
    def default():
        """Default color theme"""
        return Theme()

    @staticmethod
    def minimal():
        """Theme for minimal terminals (no colors)"""
        return Theme(
            bar_complete_color='',
            bar_incomplete_color='',
            waiting_color='',
            stopping_color='',
            interrupted_color='',
            done_color='',
        )

    def status_color(self, status: 'Status') -> str:
        return {
            Status.WAITING: self.waiting_color,
            Status.STOPPING: self.stopping_color,
            Status.INTERRUPTED: self.interrupted_color,
            Status.DONE: self.done_color,
        }.get(status, '')


def _trim(text: str, width: int) -> str:
    """Trim text to fit within the specified width"""
    if width <= 0:
        return ''

    if len(text) <= width:
        return text

    text = text[:max(0, width-3)]
    return text + '.' * (width - len(text))


def _isatty(stream) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError):
        return False


def _detect_terminal_capability(environ: Optional[Mapping[str, str]] = None,
                                stream: Optional[TextIO] = None) -> TerminalCapability:
    """Detect terminal capabilities"""
    if environ is None:
        environ = os.environ
    if stream is None:
        stream = sys.stdout

    term = environ.get('TERM', '')
    colorterm = environ.get('COLORTERM', '')

    # Advanced terminals (kitty, alacritty, etc.)
    if any(x in term.lower() for x in ['kitty', 'alacritty', 'iterm', 'wezterm']):
        return TerminalCapability.ADVANCED
    if 'truecolor' in colorterm or '24bit' in colorterm:
        return TerminalCapability.ADVANCED

    # Basic ANSI support
    if term and term != 'dumb' and _isatty(stream):
        return TerminalCapability.BASIC

    return TerminalCapability.MINIMAL


def query_terminal_size(fd: Optional[int]) -> Tuple[int, int]:
    """Query the terminal attached to fd directly, raising OSError on failure"""
    if fd is None:
        raise OSError('output has no file descriptor')
    size = os.get_terminal_size(fd)
    return size.columns, size.lines


def poll_terminal_size(fd: Optional[int], fallback: Tuple[int, int]) -> Tuple[int, int]:
    """Return the size of the terminal attached to fd, or fallback if there is none."""
    if fd is None:
        return fallback
    try:
        size = os.get_terminal_size(fd)
    except OSError:
        # Redirected output (files, pipes, CI) keeps the last known size
        return fallback
    return size.columns, size.lines


# ============================================================================
# Configuration
# ============================================================================

class UIMode(Enum):
    """How progress bar widths follow the terminal"""
    RESPONSIVE = 'responsive'
    COMPACT = 'compact'
    FULL = 'full'

    @classmethod
    def decode(cls, value: Union[str, 'UIMode']) -> 'UIMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ', '.join(mode.value for mode in cls)
            raise ValueError(f"'{value}' is not a valid UI mode (expected one of: {choices})") from None


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, '').strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class RenderConfig:
    """Values resolved by the surrounding CLI that drive the refresh loop"""
    quiet: bool = False
    no_color: bool = False
    ui_mode: UIMode = UIMode.RESPONSIVE
    # Any non-empty value means verbose debug output would interleave with the bars
    debug_output: str = ''
    grace_period: float = 0.05
    fast_interval: float = 0.1
    slow_interval: float = 1.0
    resize_poll_interval: float = 1.0
    watch_signals: bool = True

    def __post_init__(self):
        self.ui_mode = UIMode.decode(self.ui_mode)

        if self.grace_period < 0:
            raise ValueError("grace_period must be non-negative")
        if self.fast_interval <= 0:
            raise ValueError("fast_interval must be positive")
        if self.slow_interval <= 0:
            raise ValueError("slow_interval must be positive")
        if self.resize_poll_interval <= 0:
            raise ValueError("resize_poll_interval must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'RenderConfig':
        """
        Build a config from MULTIBAR_* environment variables.

        Colors are disabled by MULTIBAR_NO_COLOR, by the NO_COLOR convention,
        or when the terminal does not look ANSI capable. Keyword overrides win
        over the environment.
        """
        if environ is None:
            environ = os.environ

        values = {
            'quiet': _env_flag(environ, 'MULTIBAR_QUIET'),
            'no_color': (_env_flag(environ, 'MULTIBAR_NO_COLOR')
                         or 'NO_COLOR' in environ
                         or _detect_terminal_capability(environ) == TerminalCapability.MINIMAL),
            'debug_output': environ.get('MULTIBAR_DEBUG_OUTPUT', ''),
        }
        if environ.get('MULTIBAR_UI_MODE'):
            values['ui_mode'] = environ['MULTIBAR_UI_MODE']
        if environ.get('MULTIBAR_GRACE_PERIOD'):
            values['grace_period'] = float(environ['MULTIBAR_GRACE_PERIOD'])

        values.update(overrides)
        return cls(**values)


# ============================================================================
# Progress sources
# ============================================================================

class Status(Enum):
    """Progress source states, each drawn as a single glyph"""
    RUNNING = ' '
    WAITING = '•'
    STOPPING = '↓'
    INTERRUPTED = '✗'
    DONE = '✓'


_ASCII_BAR = ('[', ']', '=', '-')
_UNICODE_BAR = ('▕', '▏', '█', ' ')
_BLOCK_FRACTIONS = ['', '▏', '▎', '▍', '▌', '▋', '▊', '▉', '█']


@dataclass(frozen=True)
class ProgressSnapshot:
    """One frame of a progress source, discarded after layout"""
    left: str = ''
    status: Status = Status.RUNNING
    progress: float = 0.0
    width: int = DEFAULT_WIDTH
    right: Tuple[str, ...] = ()
    # Replaces the whole line verbatim when non-empty
    hijack: str = ''
    theme: Theme = field(default_factory=Theme.default, compare=False)
    use_unicode: bool = False

    def status_text(self, color: bool = False) -> str:
        glyph = self.status.value
        if color:
            return Colors.paint(glyph, self.theme.status_color(self.status))
        return glyph

    def progress_text(self, color: bool = False) -> str:
        if self.use_unicode:
            fill, padding = self._unicode_parts()
            start, end = _UNICODE_BAR[0], _UNICODE_BAR[1]
        else:
            fill, padding = self._ascii_parts()
            start, end = _ASCII_BAR[0], _ASCII_BAR[1]

        if color:
            fill = Colors.paint(fill, self.theme.bar_complete_color)
            padding = Colors.paint(padding, self.theme.bar_incomplete_color)
        return start + fill + padding + end

    def _ascii_parts(self) -> Tuple[str, str]:
        space = max(0, self.width - 2)
        filled = int(space * self.progress)
        complete, incomplete = _ASCII_BAR[2], _ASCII_BAR[3]

        fill = ''
        if filled > 0:
            if filled < space:
                fill = complete * (filled - 1) + '>'
            else:
                fill = complete * filled
        return fill, incomplete * (space - filled)

    def _unicode_parts(self) -> Tuple[str, str]:
        inner_width = max(0, self.width - 2)
        filled_blocks = self.progress * inner_width
        full_blocks = int(filled_blocks)
        partial_block_index = int((filled_blocks - full_blocks) * (len(_BLOCK_FRACTIONS) - 1))

        # Only add partial block if there's actual progress beyond full blocks
        has_partial = full_blocks < inner_width and partial_block_index > 0
        partial_char = _BLOCK_FRACTIONS[partial_block_index] if has_partial else ''
        incomplete_count = inner_width - full_blocks - (1 if has_partial else 0)

        fill = _UNICODE_BAR[2] * full_blocks + partial_char
        return fill, _UNICODE_BAR[3] * incomplete_count


class ProgressSource(Protocol):
    """What the renderer needs from anything that reports progress"""

    def left(self) -> str:
        ...

    def render(self, max_left: int, width_delta: int) -> ProgressSnapshot:
        ...


TextOrCallable = Union[str, Callable[[], str], None]
ProgressFn = Callable[[], Tuple[float, Sequence[str]]]


class ProgressBar:
    """Thread-safe progress source backed by user supplied callables"""

    _OPTIONS = ('left', 'progress', 'hijack', 'status', 'theme')

    def __init__(self,
                 left: TextOrCallable = None,
                 progress: Optional[ProgressFn] = None,
                 hijack: TextOrCallable = None,
                 status: Status = Status.RUNNING,
                 width: int = DEFAULT_WIDTH,
                 theme: Optional[Theme] = None,
                 use_unicode: Optional[bool] = None):
        """
        Create a progress bar.

        Args:
            left: Label string or callable returning the label
            progress: Callable returning (fraction, right-side columns)
            hijack: String or callable; a non-empty value replaces the line
            status: Initial status
            width: Maximum bar width, including brackets
            theme: Color theme
            use_unicode: Whether to draw block characters instead of ASCII
        """
        if width < MIN_WIDTH:
            raise ValueError(f"width must be at least {MIN_WIDTH}")

        # Auto-detect unicode support if not specified
        if use_unicode is None:
            capability = _detect_terminal_capability()
            use_unicode = capability in [TerminalCapability.BASIC, TerminalCapability.ADVANCED]

        self._lock = threading.Lock()
        self._left = left
        self._progress = progress
        self._hijack = hijack
        self._status = status
        self._max_width = width
        self._width = width
        self._theme = theme or Theme.default()
        self._use_unicode = use_unicode

    @property
    def status(self) -> Status:
        with self._lock:
            return self._status

    @status.setter
    def status(self, value: Status):
        with self._lock:
            self._status = value

    def modify(self, **options):
        """Change any of left, progress, hijack, status or theme at once"""
        unknown = set(options) - set(self._OPTIONS)
        if unknown:
            raise ValueError(f"Unknown progress bar options: {', '.join(sorted(unknown))}")

        with self._lock:
            for name, value in options.items():
                setattr(self, '_' + name, value)

    def left(self) -> str:
        with self._lock:
            return self._left_text()

    def _left_text(self) -> str:
        if self._left is None:
            return ''
        return self._left() if callable(self._left) else str(self._left)

    def render(self, max_left: int, width_delta: int) -> ProgressSnapshot:
        """
        Take a snapshot for one frame.

        The bar width carries over between frames: each call adds width_delta
        to the previous width, clamped between MIN_WIDTH and the width the bar
        was created with.
        """
        with self._lock:
            left = self._left_text()
            if max_left > 0:
                left = _trim(left, max_left)

            hijack = self._hijack() if callable(self._hijack) else (self._hijack or '')
            if hijack:
                return ProgressSnapshot(left=left, status=self._status, hijack=hijack, theme=self._theme)

            fraction, right = 0.0, ()
            if self._progress is not None:
                fraction, right = self._progress()
                clamped = min(1.0, max(0.0, fraction))
                if clamped != fraction:
                    logger.warning('Progress %r of %r is out of range, clamped to %r', fraction, left, clamped)
                    fraction = clamped

            self._width = min(self._max_width, max(MIN_WIDTH, self._width + width_delta))

            return ProgressSnapshot(
                left=left,
                status=self._status,
                progress=fraction,
                width=self._width,
                right=tuple(right),
                theme=self._theme,
                use_unicode=self._use_unicode,
            )


# ============================================================================
# Synchronized output
# ============================================================================

class SynchronizedWriter:
    """
    Serializes writes to a stream under one lock.

    On a TTY every newline also erases to the end of the line, so a shorter
    write cannot leave characters from the previous frame behind.
    persistent_text, when set, runs after each write while the lock is
    still held; it is how the progress block stays below interleaved logs.
    """

    def __init__(self,
                 stream: TextIO,
                 is_tty: Optional[bool] = None,
                 lock=None):
        self.stream = stream
        self.is_tty = _isatty(stream) if is_tty is None else bool(is_tty)
        self._lock = lock if lock is not None else threading.RLock()
        self.persistent_text: Optional[Callable[[], None]] = None

    @contextmanager
    def lock(self):
        """Context manager holding the shared output lock"""
        with self._lock:
            yield self._lock

    def write(self, text: str) -> int:
        """Write text, returning the length of the text as given"""
        original_length = len(text)
        if self.is_tty:
            text = text.replace('\n', '\x1b[0K\n')

        with self._lock:
            self.stream.write(text)
            if self.persistent_text is not None:
                self.persistent_text()

        return original_length

    def write_raw(self, text: str) -> int:
        """Write text unchanged under the lock, without the repaint hook"""
        with self._lock:
            self.stream.write(text)
        return len(text)

    def flush(self):
        with self._lock:
            self.stream.flush()

    def isatty(self) -> bool:
        return self.is_tty

    def __getattr__(self, name):
        return getattr(self.stream, name)


class Console:
    """A stdout/stderr writer pair sharing one output lock"""

    def __init__(self,
                 stdout: TextIO,
                 stderr: Optional[TextIO] = None,
                 stdout_tty: Optional[bool] = None,
                 stderr_tty: Optional[bool] = None):
        self._lock = threading.RLock()
        self.stdout = SynchronizedWriter(stdout, is_tty=stdout_tty, lock=self._lock)
        self.stderr = SynchronizedWriter(stdout if stderr is None else stderr, is_tty=stderr_tty, lock=self._lock)

    @classmethod
    def from_std(cls) -> 'Console':
        return cls(sys.stdout, sys.stderr)

    def writers(self) -> Tuple[SynchronizedWriter, SynchronizedWriter]:
        return (self.stdout, self.stderr)

    @contextmanager
    def lock(self):
        with self._lock:
            yield self._lock

    def log_handler(self, level: int = logging.NOTSET, fmt: Optional[str] = None) -> logging.Handler:
        """Logging handler writing through the stderr writer"""
        handler = logging.StreamHandler(self.stderr)
        handler.setLevel(level)
        if fmt is not None:
            handler.setFormatter(logging.Formatter(fmt))
        return handler


# ============================================================================
# Layout
# ============================================================================

class LayoutResult(NamedTuple):
    text: str
    # Widest plain line, in code points, escape codes excluded
    longest_line: int


def compute_max_left(sources: Iterable[ProgressSource], limit: int = MAX_LEFT_LENGTH) -> int:
    """Width of the label column: the longest label, capped at limit"""
    left_len = max((len(source.left()) for source in sources), default=0)
    return min(left_len, limit)


def render_multiple_bars(is_tty: bool,
                         go_back: bool,
                         max_left: int,
                         width_delta: int,
                         sources: Sequence[ProgressSource],
                         color: bool = True) -> LayoutResult:
    """
    Render all progress sources into one block of aligned lines.

    Args:
        is_tty: Whether the block goes to a terminal (adds erase sequences)
        go_back: Move the cursor back to the top of the block afterwards
        max_left: Width of the label column
        width_delta: Bar width adjustment passed to each source
        sources: Progress sources, one line each
        color: Write the colorized variant of each line
    """
    line_end = '\n'
    if is_tty:
        line_end = ERASE_TO_EOL + '\n'

    # First pass to snapshot all sources and get the maximum lengths
    # of the right-side columns.
    snapshots = [source.render(max_left, width_delta) for source in sources]
    max_right: List[int] = []
    for snapshot in snapshots:
        # Skip last column, since there's nothing to align after it
        for i, column in enumerate(snapshot.right[:-1]):
            if i == len(max_right):
                max_right.append(0)
            max_right[i] = max(max_right[i], len(column))

    # Start with an empty line
    result = [line_end]
    longest_line = 0

    # Second pass to render final output, applying padding where needed
    for snapshot in snapshots:
        if snapshot.hijack:
            result.append(snapshot.hijack + line_end)
            continue

        left_text = snapshot.left.ljust(max_left)
        right_text = ''.join(
            ' ' + column.ljust((max_right[i] if i < len(max_right) else 0) + 1)
            for i, column in enumerate(snapshot.right)
        )

        line = f'{left_text} {snapshot.status_text()} {snapshot.progress_text()}{right_text}'
        longest_line = max(longest_line, len(line))
        if color:
            line = f'{left_text} {snapshot.status_text(color=True)} {snapshot.progress_text(color=True)}{right_text}'
        result.append(line + line_end)

    if is_tty and go_back:
        # Go back to the beginning
        result.append(f'\r\x1b[{len(snapshots) + 1}A')
    else:
        result.append('\n')

    return LayoutResult(''.join(result), longest_line)


def print_bar(writer: SynchronizedWriter, source: ProgressSource, right_text: str = ''):
    """Print a single bar on one line that the next call overwrites on a TTY"""
    end = '\n'
    if writer.is_tty:
        # Erase till the end of the line and return to its start
        end = '\x1b[0K\r'
    snapshot = source.render(0, 0)
    writer.write(f'{snapshot.left} {snapshot.progress_text()} {right_text}{end}')


# ============================================================================
# Terminal resize watching
# ============================================================================

class Wakeup(Enum):
    """Reasons the refresh loop wakes up"""
    TICK = 'tick'
    RESIZE_SIGNAL = 'resize-signal'
    RESIZE_POLL = 'resize-poll'
    CANCEL = 'cancel'


class ResizeWatcher:
    """
    Posts wake-ups to a queue whenever the terminal may have been resized.

    Two producers feed the same queue: a SIGWINCH handler (through a
    self-pipe drained by a watcher thread) and a fixed-interval poller. The
    events carry no size; consumers re-query the terminal. Posting never
    blocks, so a wake-up is dropped when the queue is full.
    """

    def __init__(self, sink: 'Queue[Wakeup]', poll_interval: float = 1.0, use_signal: bool = True):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._sink = sink
        self._poll_interval = poll_interval
        self._use_signal = use_signal
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []
        self._read_fd: Optional[int] = None
        self._write_fd: Optional[int] = None
        self._prev_handler = None
        self._signal_active = False

    @property
    def signal_active(self) -> bool:
        """Whether SIGWINCH notifications are being delivered"""
        return self._signal_active

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def start(self) -> 'ResizeWatcher':
        """Start both producers; call from the main thread to get SIGWINCH"""
        self._stopped.clear()

        if self._use_signal:
            self._install_signal_handler()

        targets = [self._poll]
        if self._signal_active:
            targets.append(self._watch_signal)

        for target in targets:
            thread = threading.Thread(target=target, daemon=True)
            thread.start()
            self._threads.append(thread)

        return self

    def stop(self):
        self._stopped.set()

        if self._signal_active:
            self._restore_signal_handler()
            self._wake_pipe()

        for thread in self._threads:
            thread.join()
        self._threads = []

        for fd in (self._read_fd, self._write_fd):
            if fd is not None:
                os.close(fd)
        self._read_fd = self._write_fd = None

    def _post(self, event: Wakeup):
        try:
            self._sink.put_nowait(event)
        except Full:
            # A later wake-up re-queries the size anyway
            pass

    def _install_signal_handler(self):
        sigwinch = getattr(signal, 'SIGWINCH', None)
        if sigwinch is None:
            logger.debug('SIGWINCH is not available, watching terminal size by polling only')
            return

        # Create a pipe for signal wakeup, non-blocking on both ends
        read_fd, write_fd = os.pipe()
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)
        self._read_fd, self._write_fd = read_fd, write_fd

        try:
            self._prev_handler = signal.signal(sigwinch, self._handle_signal)
        except (ValueError, OSError) as e:
            # Handlers can only be installed from the main thread
            logger.debug('Cannot watch SIGWINCH (%s), watching terminal size by polling only', e)
            os.close(read_fd)
            os.close(write_fd)
            self._read_fd = self._write_fd = None
            return

        self._signal_active = True
        logger.debug('Watching SIGWINCH for terminal resizes')

    def _restore_signal_handler(self):
        prev = self._prev_handler if self._prev_handler is not None else signal.SIG_DFL
        try:
            signal.signal(signal.SIGWINCH, prev)
        except (ValueError, OSError) as e:
            logger.debug('Cannot restore the previous SIGWINCH handler: %s', e)
        self._signal_active = False
        self._prev_handler = None

    def _wake_pipe(self):
        try:
            if self._write_fd is not None:
                os.write(self._write_fd, b'\x00')
        except OSError:
            # Pipe might be full, that's ok - a wake-up is already pending
            pass

    def _handle_signal(self, signum, frame):
        self._wake_pipe()

        # Chain the previous SIGWINCH handler (if any)
        try:
            prev = self._prev_handler
            if prev and prev not in (signal.SIG_DFL, signal.SIG_IGN) and callable(prev):
                prev(signum, frame)
        except Exception:
            logger.exception('Chained SIGWINCH handler failed')

    def _watch_signal(self):
        error_count = 0
        max_errors = 10

        while not self._stopped.is_set():
            try:
                # Block until data is available on the pipe
                readable, _, _ = select.select([self._read_fd], [], [], self._poll_interval)
                if not readable:
                    continue

                # Drain the pipe
                try:
                    while os.read(self._read_fd, 1024):
                        pass
                except OSError:
                    pass  # Pipe is empty now

                if self._stopped.is_set():
                    break

                self._post(Wakeup.RESIZE_SIGNAL)
                error_count = 0  # Reset on success
            except Exception:
                error_count += 1
                if error_count <= max_errors:
                    logger.exception('Terminal resize watcher failed (error %d/%d)', error_count, max_errors)
                elif error_count == max_errors + 1:
                    logger.error('Terminal resize watcher: suppressing further errors')
                # Continue despite errors, but stop spamming logs
                self._stopped.wait(1)  # Back off on errors

    def _poll(self):
        while not self._stopped.wait(self._poll_interval):
            self._post(Wakeup.RESIZE_POLL)


# ============================================================================
# Refresh loop
# ============================================================================

@dataclass
class TerminalGeometry:
    width: int
    height: int


class LoopState(Enum):
    RUNNING = 'running'
    # Cancelled, producing the one final frame
    DRAINING = 'draining'
    STOPPED = 'stopped'


class RefreshLoop:
    """
    Redraws a set of progress sources in place until cancelled.

    The loop wakes on its refresh interval, on resize notifications and on
    cancellation. Each wake-up re-queries the terminal size, renders every
    source and writes the block under the output lock with the cursor moved
    back to its top. Cancellation waits config.grace_period so that sources
    can settle their final status, then renders one last block that leaves
    the cursor below it.
    """

    def __init__(self,
                 sources: Iterable[ProgressSource],
                 output: Union[Console, SynchronizedWriter, TextIO, None] = None,
                 config: Optional[RenderConfig] = None):
        """
        Create a refresh loop.

        Args:
            sources: Progress sources, rendered top to bottom
            output: Console (bars go to its stdout), writer or plain stream
            config: Render configuration, RenderConfig() if omitted
        """
        self.config = config if config is not None else RenderConfig()

        if output is None:
            output = Console.from_std()
        if isinstance(output, Console):
            self.writer = output.stdout
            self._hooked_writers: Tuple[SynchronizedWriter, ...] = output.writers()
        else:
            if not isinstance(output, SynchronizedWriter):
                output = SynchronizedWriter(output)
            self.writer = output
            self._hooked_writers = (output,)

        self.sources = list(sources)
        # Fixed for the session so that columns never jump around
        self.max_left = compute_max_left(self.sources)

        self.width_delta = 0
        if self.config.ui_mode == UIMode.COMPACT:
            self.width_delta = -DEFAULT_WIDTH

        self._render = {
            UIMode.RESPONSIVE: self._render_responsive,
            UIMode.COMPACT: self._render_fixed,
            UIMode.FULL: self._render_fixed,
        }[self.config.ui_mode]

        self.state: Optional[LoopState] = None
        self.geometry: Optional[TerminalGeometry] = None
        self.render_count = 0

        self._events: 'Queue[Wakeup]' = Queue(maxsize=16)
        self._done = threading.Event()
        self._last_render = ''
        self._thread: Optional[threading.Thread] = None
        self._watcher: Optional[ResizeWatcher] = None

    @property
    def suppressed(self) -> bool:
        """Whether the loop is a no-op for this configuration"""
        return self.config.quiet or bool(self.config.debug_output)

    @property
    def refresh_interval(self) -> float:
        if self.writer.is_tty and not self.config.no_color:
            return self.config.fast_interval
        return self.config.slow_interval

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def start(self) -> 'RefreshLoop':
        """Run the loop on a daemon thread; resize signals are hooked here"""
        if self.suppressed:
            self.state = LoopState.STOPPED
            return self

        self._watcher = self._create_watcher().start()
        self._thread = threading.Thread(target=self._run_loop, name='multibar-refresh', daemon=True)
        self._thread.start()
        return self

    def cancel(self):
        """Ask the loop to draw its final frame and exit"""
        self._done.set()
        try:
            self._events.put_nowait(Wakeup.CANCEL)
        except Full:
            # The loop is awake anyway and checks the done flag
            pass

    def stop(self, timeout: Optional[float] = None):
        """Cancel and wait for the final frame to be written"""
        self.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    def run(self, done: Optional[threading.Event] = None):
        """Run the loop in the calling thread until done is set or cancel() is called"""
        if self.suppressed:
            self.state = LoopState.STOPPED
            return

        if done is not None:
            self._done = done

        watcher = self._create_watcher().start()
        try:
            self._run_loop()
        finally:
            watcher.stop()

    def _create_watcher(self) -> ResizeWatcher:
        return ResizeWatcher(self._events,
                             poll_interval=self.config.resize_poll_interval,
                             use_signal=self.config.watch_signals)

    def _fd(self) -> Optional[int]:
        try:
            return self.writer.fileno()
        except (AttributeError, OSError, ValueError):
            return None

    def _init_geometry(self):
        try:
            width, height = query_terminal_size(self._fd())
        except OSError as e:
            logger.warning('error getting terminal size: %s', e)
            width, height = DEFAULT_TERMINAL_WIDTH, DEFAULT_TERMINAL_HEIGHT
        self.geometry = TerminalGeometry(width, height)

    def _update_geometry(self, event: Wakeup):
        if event == Wakeup.RESIZE_SIGNAL:
            try:
                width, height = query_terminal_size(self._fd())
            except OSError as e:
                logger.debug('error getting terminal size after resize: %s', e)
                return
        else:
            width, height = poll_terminal_size(self._fd(), (self.geometry.width, self.geometry.height))

        if (width, height) != (self.geometry.width, self.geometry.height):
            logger.debug('Terminal resized to %dx%d', width, height)
            self.geometry.width = width
            self.geometry.height = height

    def _render_responsive(self, go_back: bool) -> str:
        result = render_multiple_bars(self.writer.is_tty, go_back, self.max_left,
                                      self.width_delta, self.sources, color=not self.config.no_color)
        # -1 to allow some "breathing room" near the edge
        self.width_delta = self.geometry.width - result.longest_line - 1
        return result.text

    def _render_fixed(self, go_back: bool) -> str:
        result = render_multiple_bars(self.writer.is_tty, go_back, self.max_left,
                                      self.width_delta, self.sources, color=not self.config.no_color)
        return result.text

    def _repaint(self):
        if self._last_render:
            self.writer.write_raw(self._last_render)

    def _refresh(self, go_back: bool):
        try:
            text = self._render(go_back)
            self.render_count += 1
            self._last_render = text
            with self.writer.lock():
                self.writer.write_raw(text)
                self.writer.flush()
        except Exception:
            logger.exception('Display progress failed')

    def _run_loop(self):
        self.state = LoopState.RUNNING
        self._init_geometry()

        if self.writer.is_tty:
            for writer in self._hooked_writers:
                writer.persistent_text = self._repaint

        # Wakes the queue as soon as done is set, even if set from outside
        threading.Thread(target=self._forward_done, args=(self._done,), daemon=True).start()

        try:
            while not self._done.is_set():
                try:
                    event = self._events.get(timeout=self.refresh_interval)
                except Empty:
                    event = Wakeup.TICK

                if event == Wakeup.CANCEL or self._done.is_set():
                    break

                self._update_geometry(event)
                self._refresh(go_back=True)

            self.state = LoopState.DRAINING
            # Let sources observe the cancellation so the final frame
            # shows their terminal status.
            time.sleep(self.config.grace_period)

            # The final frame stays where it is; log lines written after it
            # must not repaint it.
            with self.writer.lock():
                self._unhook()
                self._refresh(go_back=False)
        finally:
            self._unhook()
            self.state = LoopState.STOPPED

    def _unhook(self):
        for writer in self._hooked_writers:
            writer.persistent_text = None

    def _forward_done(self, done: threading.Event):
        done.wait()
        self.cancel()


# ============================================================================
# Convenience functions
# ============================================================================

def show_progress(done: threading.Event,
                  sources: Iterable[ProgressSource],
                  output: Union[Console, SynchronizedWriter, TextIO, None] = None,
                  config: Optional[RenderConfig] = None):
    """
    Display progress bars until done is set, then draw the final frame.

    Example:
        done = threading.Event()
        worker = threading.Thread(target=do_work, args=(bars, done))
        worker.start()
        show_progress(done, bars)

    Args:
        done: Event marking the end of the measured work
        sources: Progress sources to display
        output: Console, writer or stream for the bars (process stdout by default)
        config: Render configuration
    """
    RefreshLoop(sources, output, config).run(done)
