"""Terminal interaction for the provisioner.

Plan builders never touch the terminal directly; they ask an injected
ConfirmationProvider:
- questionary for rich interactive prompts (when TTY available)
- click as fallback when stdin is not a TTY
- a non-interactive provider that answers from flags or fails loudly
"""

from .confirm import (
    Choices,
    ConfirmationProvider,
    InteractiveProvider,
    NonInteractiveProvider,
    PathValidator,
    make_provider,
)

__all__ = [
    "Choices",
    "ConfirmationProvider",
    "InteractiveProvider",
    "NonInteractiveProvider",
    "PathValidator",
    "make_provider",
]
