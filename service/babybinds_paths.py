#!/usr/bin/env python3
"""
Babybinds shared path constants and runtime defaults.
Import this in all babybinds scripts to avoid hardcoded duplication.
"""

from pathlib import Path
import os
import logging

logger = logging.getLogger('babybinds')

# ── Config file ───────────────────────────────────────────────────────────
CONFIG_NAME        = '.babybindsrc'

# ── Binding limits ────────────────────────────────────────────────────────
DEFAULT_COMBO_SIZE = 5          # keys held at once / keycodes per binding
MAX_KEYCODE_DIGITS = 7          # 9,999,999 is the largest keycode accepted

# ── Device read retry policy ──────────────────────────────────────────────
MAX_READ_FAILURES  = 10         # consecutive failed reads before giving up
READ_RETRY_PAUSE   = 3          # seconds between retries


def user_config_path() -> Path:
    """Return $HOME/.babybindsrc.

    Raises KeyError when HOME is not set; there is no fallback to the
    password database, the daemon refuses to guess where the config lives."""
    home = os.environ.get('HOME')
    if not home:
        raise KeyError('HOME')
    path = Path(home) / CONFIG_NAME
    logger.debug(f"Config path: {path}")
    return path
