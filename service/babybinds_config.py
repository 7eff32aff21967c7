#!/usr/bin/env python3
"""
Babybinds configuration - keybind records and the ~/.babybindsrc parser

File format, one keybind per line:

    # comment
    <keycode>[;<keycode>...]:<command> [<arg>...]

Commands are split into an argument vector and executed directly, no shell
is involved. Inside a command a backslash escapes a space or tab, '\\n' is a
newline and '\\\\' a backslash. Any other escape is kept literally.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from babybinds_paths import DEFAULT_COMBO_SIZE, MAX_KEYCODE_DIGITS, user_config_path

logger = logging.getLogger('babybinds')

# Byte values the parser reacts to
NUL       = 0x00
TAB       = 0x09
NEWLINE   = 0x0A
SPACE     = 0x20
HASH      = 0x23
COLON     = 0x3A
SEMICOLON = 0x3B
BACKSLASH = 0x5C
LETTER_N  = 0x6E

BLANKS = (SPACE, TAB)


class ConfigError(Exception):
    """Base class for configuration failures. All of them are fatal."""


class ConfigUnreadable(ConfigError):
    """HOME is unset or the config file cannot be opened"""


class MalformedConfig(ConfigError):
    """Grammar violation somewhere in the config file"""

    def __init__(self, message: str, line: int):
        super().__init__(f"Malformed configuration file (line {line}): {message}")
        self.line = line


@dataclass(frozen=True)
class Binding:
    """A key combo and the argument vector it launches"""
    keys: Tuple[int, ...]    # ascending, unique
    argv: Tuple[bytes, ...]  # argv[0] is the program

    def __post_init__(self):
        if not self.keys:
            raise ValueError("Binding needs at least one keycode")
        if list(self.keys) != sorted(set(self.keys)):
            raise ValueError(f"Binding keycodes must be ascending and unique: {self.keys}")
        if not self.argv or not all(self.argv):
            raise ValueError(f"Binding needs a non-empty argument vector: {self.argv}")


class BindingStore:
    """Ordered keybinds in config file order. Duplicates are allowed, first match wins."""

    def __init__(self):
        self._binds: List[Binding] = []

    def append(self, binding: Binding):
        self._binds.append(binding)

    def clear(self):
        self._binds.clear()

    def __len__(self) -> int:
        return len(self._binds)

    def __iter__(self) -> Iterator[Binding]:
        return iter(self._binds)

    def find_single(self, keycode: int) -> Optional[Binding]:
        """First single-key binding for keycode"""
        for bind in self._binds:
            if len(bind.keys) == 1 and bind.keys[0] == keycode:
                return bind
        return None

    def find_combo(self, keys: Sequence[int]) -> Optional[Binding]:
        """First binding whose keycodes equal keys (ascending) element-wise"""
        keys = tuple(keys)
        for bind in self._binds:
            if bind.keys == keys:
                return bind
        return None


def format_command(argv: Sequence[bytes]) -> str:
    """Render an argument vector for logging: "prog" "arg1" ..."""
    return ' '.join(f'"{arg.decode("utf-8", errors="backslashreplace")}"' for arg in argv)


class ParserMode(Enum):
    STARTING = 'starting'  # line start, decides between comment and keybind
    KEYCODE  = 'keycode'   # reading a keycode field
    COMMAND  = 'command'   # reading the command
    ESCAPE   = 'escape'    # character after a backslash inside the command
    COMMENT  = 'comment'   # skipping until newline
    ERROR    = 'error'


class ConfigParser:
    """Character-level state machine turning config text into Bindings.

    Bindings are appended to ``store`` as each record completes. On any
    error the store is cleared before the exception propagates, so a
    failed load never leaves a partial keybind set behind.
    """

    def __init__(self, store: BindingStore, combo_size: int = DEFAULT_COMBO_SIZE):
        if combo_size < 1:
            raise ValueError(f"combo_size must be at least 1, got {combo_size}")
        self.store = store
        self.combo_size = combo_size
        self.mode = ParserMode.STARTING
        self.line = 1
        self._reset_record()

    def _reset_record(self):
        self.field = bytearray()      # digits of the keycode being read
        self.keycodes: List[int] = []
        self.args: List[bytes] = []
        self.token = bytearray()      # argument being read

    def parse(self, data: bytes) -> int:
        """Parse a whole config file. Returns the number of bindings added."""
        self.mode = ParserMode.STARTING
        self.line = 1
        self._reset_record()
        before = len(self.store)
        try:
            for c in data:
                self._feed(c)
            # End of input completes the last record like a newline does
            self._end_record()
        except (ConfigError, MemoryError):
            self.mode = ParserMode.ERROR
            self.store.clear()
            raise
        return len(self.store) - before

    def _fail(self, message: str):
        self.mode = ParserMode.ERROR
        raise MalformedConfig(message, self.line)

    def _feed(self, c: int):
        # Blanks only matter inside a command
        if self.mode not in (ParserMode.COMMAND, ParserMode.ESCAPE) and c in BLANKS:
            return

        if c == NEWLINE:
            self._end_record()
            self.line += 1
            return

        if self.mode == ParserMode.STARTING:
            if c == HASH:
                self.mode = ParserMode.COMMENT
                return
            self.mode = ParserMode.KEYCODE

        if self.mode == ParserMode.COMMENT:
            return

        if self.mode == ParserMode.KEYCODE:
            if c == SEMICOLON or c == COLON:
                self._close_keycode()
                if c == COLON:
                    self.mode = ParserMode.COMMAND
            else:
                self.field.append(c)

        elif self.mode == ParserMode.COMMAND:
            if c == BACKSLASH:
                self.mode = ParserMode.ESCAPE
            elif c in BLANKS or c == NUL:
                self._close_argument()
            else:
                self.token.append(c)

        elif self.mode == ParserMode.ESCAPE:
            if c in BLANKS:
                self.token.append(c)
            elif c == LETTER_N:
                self.token.append(NEWLINE)
            elif c == BACKSLASH:
                self.token.append(BACKSLASH)
            elif c == NUL:
                # NUL still separates, the backslash stays literal
                self.token.append(BACKSLASH)
                self._close_argument()
            else:
                # Invalid escape: keep both characters
                self.token.append(BACKSLASH)
                self.token.append(c)
            self.mode = ParserMode.COMMAND

    def _close_keycode(self):
        field = bytes(self.field)
        if not field:
            self._fail("Empty field")
        if len(field) > MAX_KEYCODE_DIGITS:
            self._fail(f"Keycode is ridiculously big ({len(field)} digits, max is {MAX_KEYCODE_DIGITS})")
        if len(self.keycodes) == self.combo_size:
            self._fail(f"Key combo has too many keycodes (max is {self.combo_size})")
        if not field.isdigit():
            self._fail(f"Keycode is not a positive integer: {field.decode('ascii', errors='replace')!r}")
        self.keycodes.append(int(field))
        self.field.clear()

    def _close_argument(self):
        if self.token:
            self.args.append(bytes(self.token))
            self.token.clear()

    def _end_record(self):
        if self.mode == ParserMode.KEYCODE:
            self._fail("Incomplete keybind (missing command)")
        elif self.mode in (ParserMode.COMMAND, ParserMode.ESCAPE):
            if self.mode == ParserMode.ESCAPE:
                # Backslash right before the line end stays literal
                self.token.append(BACKSLASH)
            self._close_argument()
            if not self.args:
                self._fail("Incomplete keybind (missing command)")
            binding = Binding(keys=tuple(sorted(set(self.keycodes))), argv=tuple(self.args))
            self.store.append(binding)
            logger.debug(f"Keybind {list(binding.keys)} -> {format_command(binding.argv)}")

        self._reset_record()
        self.mode = ParserMode.STARTING


def load_bindings(path: Optional[Path] = None, combo_size: int = DEFAULT_COMBO_SIZE) -> BindingStore:
    """Load keybinds from path (default: $HOME/.babybindsrc).

    Raises ConfigUnreadable if the file cannot be read and MalformedConfig
    on the first grammar error. Nothing is returned for a partial load.
    """
    if path is None:
        try:
            path = user_config_path()
        except KeyError:
            raise ConfigUnreadable("Could not get home path (HOME is not set)")

    logger.info(f"Loading config: {path}")
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as ex:
        raise ConfigUnreadable(f"{path} could not be opened: {ex.strerror or ex}") from ex

    store = BindingStore()
    ConfigParser(store, combo_size).parse(data)
    logger.info(f"Loaded {len(store)} keybinds")
    return store
