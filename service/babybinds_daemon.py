#!/usr/bin/env python3
"""
Babybinds Daemon - launch commands from key combos
Reads key events from a /dev/input device and runs the command bound to the
combo in ~/.babybindsrc. Single-key binds fire when the key is released
alone, multi-key binds fire when the last key of the combo is pressed.
"""

import evdev
import sys
import signal
import select
import time
import bisect
import subprocess
import logging
import argparse
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
from evdev import ecodes as e

from babybinds_config import (
    Binding, BindingStore, ConfigError, format_command, load_bindings,
)
from babybinds_paths import DEFAULT_COMBO_SIZE, MAX_READ_FAILURES, READ_RETRY_PAUSE

# Logging will be configured in main() based on args
logger = logging.getLogger('babybinds')

KEY_RELEASED = 0
KEY_PRESSED = 1
KEY_REPEAT = 2


def _fatal_error(msg: str):
    """Log error and exit non-zero so systemd marks unit failed."""
    logger.error(msg)
    raise SystemExit(f"FATAL: {msg}")


class DeviceReadFailure(OSError):
    """Too many consecutive failed reads from the input device"""


class ComboBuffer:
    """Keys currently held down, ascending and unique, at most `capacity` of them"""

    def __init__(self, capacity: int = DEFAULT_COMBO_SIZE):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._keys: List[int] = []

    @property
    def keys(self) -> Tuple[int, ...]:
        return tuple(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, keycode: int) -> bool:
        return keycode in self._keys

    def insert(self, keycode: int) -> bool:
        """Insert keycode in order. Returns False if the buffer is full or already holds it."""
        if len(self._keys) == self.capacity:
            logger.info("Too many keys at the same time! Ignoring latest key...")
            return False
        i = bisect.bisect_left(self._keys, keycode)
        if i < len(self._keys) and self._keys[i] == keycode:
            logger.info("Ignoring key (already in combo buffer)...")
            return False
        self._keys.insert(i, keycode)
        return True

    def remove(self, keycode: int) -> bool:
        # Not finding it is fine, insert() may have dropped it
        try:
            self._keys.remove(keycode)
        except ValueError:
            return False
        return True

    def clear(self):
        self._keys.clear()


def launch_command(argv: Sequence[bytes]) -> Optional[subprocess.Popen]:
    """Start argv as a child process without waiting for it.

    Children are reaped by the kernel (SIGCHLD is ignored in main()). A
    command that cannot be started is logged and skipped."""
    try:
        return subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            close_fds=True,
        )
    except (OSError, ValueError) as ex:
        logger.warning(f"Could not exec command {format_command(argv)}: {getattr(ex, 'strerror', None) or ex}")
    return None


class Dispatcher:
    """Matches the held keys against the binding store and launches commands"""

    def __init__(self, store: BindingStore,
                 launcher: Callable[[Sequence[bytes]], object] = launch_command):
        self.store = store
        self.launcher = launcher

    def on_release(self, keycode: int, combo: ComboBuffer) -> Optional[Binding]:
        """Single-key binds only fire when the released key was the last one held"""
        if len(combo) != 0:
            return None
        bind = self.store.find_single(keycode)
        if bind is not None:
            logger.info(f"Single bind triggered: {format_command(bind.argv)}")
            self.launcher(bind.argv)
        return bind

    def on_press(self, combo: ComboBuffer) -> Optional[Binding]:
        """Re-checked on every press while more than one key is held"""
        if len(combo) <= 1:
            return None
        bind = self.store.find_combo(combo.keys)
        if bind is not None:
            logger.info(f"Multi-key bind triggered: {format_command(bind.argv)}")
            self.launcher(bind.argv)
        return bind


class BabybindsDaemon:
    """Owns the input device, the keybinds and the held key state"""

    def __init__(self, device_path: str, store: BindingStore,
                 combo_size: int = DEFAULT_COMBO_SIZE, show_keys: bool = False,
                 max_failures: int = MAX_READ_FAILURES,
                 retry_pause: float = READ_RETRY_PAUSE):
        self.device_path = device_path
        self.store = store
        self.combo = ComboBuffer(combo_size)
        self.dispatcher = Dispatcher(store)
        self.show_keys = show_keys
        self.max_failures = max_failures
        self.retry_pause = retry_pause

        self.running = False
        self.device: Optional[evdev.InputDevice] = None
        self.fail_count = 0
        self._cleaned_up = False

    def open_device(self):
        """Open the input device. Fatal if it cannot be opened."""
        try:
            self.device = evdev.InputDevice(self.device_path)
        except OSError as ex:
            _fatal_error(f"Could not open input device {self.device_path}: {ex.strerror or ex}")
        logger.info(f"Opened input device: {self.device.name} at {self.device_path}")

    def handle_event(self, event):
        """Process one input event"""
        if event.type != e.EV_KEY:
            return

        key_code = event.code
        value = event.value  # 1 = press, 0 = release, 2 = repeat

        if self.show_keys:
            if value in (KEY_PRESSED, KEY_RELEASED):
                state = 'pressed' if value == KEY_PRESSED else 'released'
                logger.info(f"Key {key_code} ({self._key_name(key_code)}) {state}")
            return

        if value == KEY_RELEASED:
            self.combo.remove(key_code)
            self.dispatcher.on_release(key_code, self.combo)
        elif value == KEY_PRESSED:
            self.combo.insert(key_code)
            self.dispatcher.on_press(self.combo)
        # Auto-repeats never reach the combo buffer

    @staticmethod
    def _key_name(key_code: int) -> str:
        name = e.KEY.get(key_code) or e.BTN.get(key_code)
        if isinstance(name, (list, tuple)):
            name = name[0]
        return name or 'unknown'

    def read_events(self) -> list:
        """Wait for and read a batch of events.

        A failed read is retried after a pause; the counter resets on the
        next successful read. Raises DeviceReadFailure once the limit of
        consecutive failures is reached."""
        try:
            select.select([self.device.fd], [], [])
            events = list(self.device.read())
        except (OSError, ValueError) as ex:
            if self.fail_count >= self.max_failures:
                raise DeviceReadFailure(f"Input device read failed! Aborting ({self.max_failures} fails)") from ex
            logger.warning(f"Input device read failed! Ignoring and waiting... ({ex})")
            time.sleep(self.retry_pause)
            self.fail_count += 1
            return []
        self.fail_count = 0
        return events

    def run(self) -> int:
        """Main event loop"""
        self.running = True

        logger.info("Babybinds daemon starting...")
        if self.device is None:
            self.open_device()

        if self.show_keys:
            logger.info("Showing keycodes. Press Ctrl+C to stop.")
        else:
            logger.info(f"Started with {len(self.store)} keybinds! Interrupt to exit.")

        try:
            while self.running:
                for event in self.read_events():
                    self.handle_event(event)
        except DeviceReadFailure as ex:
            logger.error(str(ex))
            return 1
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            self.cleanup()

        return 0

    def cleanup(self):
        """Release the device and keybinds. Spawned commands keep running."""
        self.running = False
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self.device is not None:
            try:
                self.device.close()
            except OSError as ex:
                logger.warning(f"Error closing {self.device_path}: {ex}")
            self.device = None

        self.store.clear()
        self.combo.clear()
        logger.info("Cleanup complete")


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


def check_config(config: Optional[Path], combo_size: int) -> int:
    """Parse the config and list its keybinds without touching any device"""
    try:
        store = load_bindings(config, combo_size)
    except ConfigError as ex:
        logger.error(str(ex))
        return 1
    for bind in store:
        logger.info(f"{';'.join(str(k) for k in bind.keys)} -> {format_command(bind.argv)}")
    logger.info(f"Configuration OK ({len(store)} keybinds)")
    return 0


def _combo_size(value: str) -> int:
    size = int(value)
    if size < 1:
        raise argparse.ArgumentTypeError(f"combo size must be at least 1, got {size}")
    return size


def main(argv: Optional[List[str]] = None):
    # Parse command line arguments
    parser = argparse.ArgumentParser(
        prog='babybinds',
        description='Babybinds Daemon - launch commands from key combos',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='Keybinds are read from ~/.babybindsrc, one per line:\n'
               '  <keycode>[;<keycode>...]:<command> [<arg>...]'
    )
    parser.add_argument('device',
                       nargs='?',
                       help='Input device path, e.g. /dev/input/event3')
    parser.add_argument('--config', '-c',
                       type=Path,
                       help='Config file (default: ~/.babybindsrc)')
    parser.add_argument('--combo-size',
                       type=_combo_size,
                       default=DEFAULT_COMBO_SIZE,
                       help=f'Max keys per combo (default: {DEFAULT_COMBO_SIZE})')
    parser.add_argument('--check-config',
                       action='store_true',
                       help='Parse the config, list keybinds and exit')
    parser.add_argument('--show-keys',
                       action='store_true',
                       help='Log keycodes of pressed keys instead of running keybinds')
    parser.add_argument('--debug', '-d',
                       action='store_true',
                       help='Enable debug logging')

    args = parser.parse_args(argv)
    if args.device is None and not args.check_config:
        parser.error('No input devices passed!')

    # Configure logging based on debug flag
    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.check_config:
        return check_config(args.config, args.combo_size)

    logger.info(f"Starting Babybinds daemon (debug={'ON' if args.debug else 'OFF'})")

    # Load keybinds before touching the device
    if args.show_keys:
        store = BindingStore()
    else:
        try:
            store = load_bindings(args.config, args.combo_size)
        except ConfigError as ex:
            _fatal_error(str(ex))
        except MemoryError:
            _fatal_error("No memory available while loading the configuration")

    daemon = BabybindsDaemon(args.device, store,
                             combo_size=args.combo_size,
                             show_keys=args.show_keys)
    try:
        daemon.open_device()
    except SystemExit:
        daemon.cleanup()
        raise

    # Setup signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    # Let the kernel reap finished commands
    signal.signal(signal.SIGCHLD, signal.SIG_IGN)

    return daemon.run()


if __name__ == '__main__':
    sys.exit(main())
