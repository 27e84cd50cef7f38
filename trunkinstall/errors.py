"""Error taxonomy and message formatting for the provisioner.

Provisioning errors are split by how the executor treats them:

- ProbeFailure: a capability check errored; callers downgrade it to "absent"
- ActionTimeout / ActionFailed: a Step's action did not complete
- ConfirmationDenied: the user declined a destructive Step
- ConfirmationRequired: a non-interactive run lacks an explicit answer
- PrerequisiteError: the host cannot be provisioned at all
- PlanInvariantViolation: the plan builder produced an invalid ordering

A Step whose precondition is false is not an error; it is recorded as skipped.

Error Style Guide:
- User-facing errors use 'Error: ' prefix
- Use present tense: 'must be', 'is required'
- Include actionable hints where helpful
"""


class ProvisionError(Exception):
    """Base class for provisioning errors."""

    def __init__(self, message: str, step_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.step_id = step_id


class ProbeFailure(ProvisionError):
    """A capability check raised instead of answering."""


class ActionTimeout(ProvisionError):
    """An external action exceeded its timeout."""

    def __init__(self, message: str, timeout: float, step_id: str | None = None):
        super().__init__(message, step_id)
        self.timeout = timeout


class ActionFailed(ProvisionError):
    """An action exited non-zero, or a required mutation had no effect."""

    def __init__(
        self,
        message: str,
        output: str = "",
        returncode: int | None = None,
        step_id: str | None = None,
    ):
        super().__init__(message, step_id)
        self.output = output
        self.returncode = returncode


class ConfirmationDenied(ProvisionError):
    """The user declined a destructive action."""


class ConfirmationRequired(ProvisionError):
    """A decision is needed but prompting is disabled."""

    def __init__(self, message: str, key: str, hint: str | None = None):
        super().__init__(message)
        self.key = key
        self.hint = hint


class PrerequisiteError(ProvisionError):
    """The host is missing something no plan can provide."""


class PlanInvariantViolation(ProvisionError):
    """A Step requires a resource no earlier Step provides.

    Always a programming error in the plan builder, never a user issue.
    """


def format_error(message: str) -> str:
    """Format an error message with consistent prefix.

    Examples:
        >>> format_error("manage.py not found")
        'Error: manage.py not found'
    """
    return f"Error: {message}"


def format_suggestion(message: str, suggestion: str) -> str:
    """Format an error message with a helpful suggestion.

    Examples:
        >>> format_suggestion("not a Trunk Player checkout", "run from the trunk-player directory")
        'Error: not a Trunk Player checkout. Hint: run from the trunk-player directory'
    """
    return f"{format_error(message)}. Hint: {suggestion}"


__all__ = [
    "ProvisionError",
    "ProbeFailure",
    "ActionTimeout",
    "ActionFailed",
    "ConfirmationDenied",
    "ConfirmationRequired",
    "PrerequisiteError",
    "PlanInvariantViolation",
    "format_error",
    "format_suggestion",
]
