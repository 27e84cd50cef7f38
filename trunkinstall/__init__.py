"""Idempotent, state-aware provisioner for Trunk Player."""

import logging
import sys

from .config import ConfigError, Configuration, load_configuration
from .errors import ProvisionError, format_error, format_suggestion
from .execution import (
    INSTALL_TIMEOUT,
    MIGRATION_TIMEOUT,
    QUICK_TIMEOUT,
    SETUP_TIMEOUT,
    CommandResult,
    run_command_async,
)

__version__ = "0.1.0"

_debug_enabled = False
_logging_configured = False


def set_debug(enabled: bool):
    """Enable or disable debug mode globally."""
    global _debug_enabled
    _debug_enabled = enabled


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return _debug_enabled


def setup_logging(debug: bool = False) -> None:
    """Configure root logging once per process; later calls only adjust the level."""
    global _logging_configured
    set_debug(debug)
    level = logging.DEBUG if debug else logging.WARNING
    root = logging.getLogger()
    if not _logging_configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(handler)
        _logging_configured = True
    root.setLevel(level)


__all__ = [
    "__version__",
    "set_debug",
    "is_debug",
    "setup_logging",
    "ConfigError",
    "Configuration",
    "load_configuration",
    "ProvisionError",
    "format_error",
    "format_suggestion",
    "QUICK_TIMEOUT",
    "SETUP_TIMEOUT",
    "MIGRATION_TIMEOUT",
    "INSTALL_TIMEOUT",
    "CommandResult",
    "run_command_async",
]
