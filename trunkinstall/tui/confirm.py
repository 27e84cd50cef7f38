"""Confirmation providers injected into the plan builders."""

import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping

import click
from prompt_toolkit.document import Document
from prompt_toolkit.validation import ValidationError, Validator

from ..errors import ConfirmationDenied, ConfirmationRequired

Choices = list[tuple[str, str]]


class ConfirmationProvider(ABC):
    """Answers the questions plan builders need to ask.

    Every question has a stable key so non-interactive runs can supply
    answers up front (from flags or the config file).
    """

    interactive: bool = False

    @abstractmethod
    def confirm(self, key: str, message: str, default: bool = False) -> bool: ...

    @abstractmethod
    def choose(
        self,
        key: str,
        message: str,
        choices: Choices,
        default: str | None = None,
        hint: str | None = None,
    ) -> str: ...

    @abstractmethod
    def confirm_typed(self, key: str, message: str, phrase: str = "yes") -> bool:
        """Stronger confirmation: the user must type phrase."""

    @abstractmethod
    def ask_path(self, key: str, message: str, default: Path) -> Path: ...


class NonInteractiveProvider(ConfirmationProvider):
    """Answers from a fixed mapping; defaults otherwise.

    A ``choose`` question with neither an answer nor a default raises
    ConfirmationRequired instead of guessing.
    """

    interactive = False

    def __init__(self, answers: Mapping[str, Any] | None = None):
        self.answers = dict(answers or {})

    def confirm(self, key: str, message: str, default: bool = False) -> bool:
        return bool(self.answers.get(key, default))

    def choose(
        self,
        key: str,
        message: str,
        choices: Choices,
        default: str | None = None,
        hint: str | None = None,
    ) -> str:
        value = self.answers.get(key, default)
        if value is None:
            raise ConfirmationRequired(f"{message}: a choice is required", key, hint)
        allowed = [v for v, _ in choices]
        if value not in allowed:
            raise ConfirmationRequired(
                f"{message}: '{value}' is not one of {', '.join(allowed)}", key, hint
            )
        return value

    def confirm_typed(self, key: str, message: str, phrase: str = "yes") -> bool:
        return bool(self.answers.get(key, False))

    def ask_path(self, key: str, message: str, default: Path) -> Path:
        return Path(self.answers.get(key) or default)


class PathValidator(Validator):
    """Accept absolute paths whose nearest existing parent is a directory."""

    def validate(self, document: Document) -> None:
        text = document.text.strip()
        if not text:
            return
        path = Path(text).expanduser()
        if not path.is_absolute():
            raise ValidationError(message="Enter an absolute path", cursor_position=len(document.text))
        probe = path
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        if not probe.is_dir():
            raise ValidationError(message=f"{probe} is not a directory", cursor_position=len(document.text))


class InteractiveProvider(ConfirmationProvider):
    """Prompts on the terminal with questionary; click when stdin is not a TTY.

    Pre-supplied answers still win, so flags never trigger a prompt.
    """

    interactive = True

    def __init__(self, answers: Mapping[str, Any] | None = None):
        self.answers = dict(answers or {})

    def confirm(self, key: str, message: str, default: bool = False) -> bool:
        if key in self.answers:
            return bool(self.answers[key])
        if not sys.stdin.isatty():
            return click.confirm(message, default=default)

        import questionary

        try:
            answer = questionary.confirm(message, default=default).ask()
        except KeyboardInterrupt:
            answer = None
        if answer is None:
            raise ConfirmationDenied(f"Cancelled at: {message}")
        return answer

    def choose(
        self,
        key: str,
        message: str,
        choices: Choices,
        default: str | None = None,
        hint: str | None = None,
    ) -> str:
        if self.answers.get(key) is not None:
            return self.answers[key]
        if not sys.stdin.isatty():
            values = [v for v, _ in choices]
            for index, (_, label) in enumerate(choices, 1):
                click.echo(f"  {index}. {label}")
            picked = click.prompt(
                message,
                type=click.IntRange(1, len(choices)),
                default=values.index(default) + 1 if default in values else None,
            )
            return values[picked - 1]

        import questionary

        try:
            answer = questionary.select(
                message,
                choices=[questionary.Choice(title=label, value=value) for value, label in choices],
                default=default,
            ).ask()
        except KeyboardInterrupt:
            answer = None
        if answer is None:
            raise ConfirmationDenied(f"Cancelled at: {message}")
        return answer

    def confirm_typed(self, key: str, message: str, phrase: str = "yes") -> bool:
        if key in self.answers:
            return bool(self.answers[key])
        prompt = f"{message} Type '{phrase}' to confirm:"
        if not sys.stdin.isatty():
            return click.prompt(prompt, default="", show_default=False).strip() == phrase

        import questionary

        try:
            answer = questionary.text(prompt).ask()
        except KeyboardInterrupt:
            answer = None
        return (answer or "").strip() == phrase

    def ask_path(self, key: str, message: str, default: Path) -> Path:
        if self.answers.get(key):
            return Path(self.answers[key])
        if not sys.stdin.isatty():
            return Path(click.prompt(message, default=str(default))).expanduser()

        import questionary

        try:
            answer = questionary.text(message, default=str(default), validate=PathValidator()).ask()
        except KeyboardInterrupt:
            answer = None
        if answer is None:
            raise ConfirmationDenied(f"Cancelled at: {message}")
        return Path(answer.strip() or default).expanduser()


def make_provider(non_interactive: bool, answers: Mapping[str, Any] | None = None) -> ConfirmationProvider:
    if non_interactive:
        return NonInteractiveProvider(answers)
    return InteractiveProvider(answers)


__all__ = [
    "Choices",
    "ConfirmationProvider",
    "NonInteractiveProvider",
    "InteractiveProvider",
    "PathValidator",
    "make_provider",
]
