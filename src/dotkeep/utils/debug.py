"""Debug utility for dotkeep.

Provides a single debug() function that can be toggled via the
DOTKEEP_DEBUG environment variable. The filesystem layer uses it for
developer traces; user-facing output goes through Rich and structured
events through structlog.

Usage:
    from dotkeep.utils.debug import debug

    debug(f"Moved {src} -> {dst}")

Environment:
    DOTKEEP_DEBUG: Set to '1', 'true', 'yes' (case-insensitive) to enable
                   debug output. Any other value or unset disables it.

Example:
    $ DOTKEEP_DEBUG=1 dotkeep files add ~/.zshrc   # Debug enabled
    $ dotkeep files add ~/.zshrc                   # Debug disabled (default)
"""

import os
import sys
from typing import Any

# Determine if debug mode is enabled at module import time
_DEBUG_ENABLED = os.environ.get("DOTKEEP_DEBUG", "").lower() in (
    "1",
    "true",
    "yes",
)


def debug(msg: Any) -> None:
    """Print debug message if DOTKEEP_DEBUG is enabled.

    Args:
        msg: Message to print. Will be converted to string.

    Note:
        The environment variable is read once at import time. Changing it
        afterwards has no effect unless the module is reloaded.
    """
    if _DEBUG_ENABLED:
        print(f"[DEBUG] {msg}", file=sys.stderr)
