"""Idempotent edits of text configuration files.

Each mutation knows how to detect that it has already been applied, so
re-running a mutation Step on an already-mutated file changes nothing.
A mutation whose target text is neither present nor already replaced is
an anomaly: it is reported as a warning, not a failure, unless the
mutation is marked required.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from ..errors import ActionFailed
from .actions import Action, ActionResult
from .models import ExecutionContext

_logging = logging.getLogger(__name__)

GENERATED_MARKER = "# trunkinstall: generated"

Replacement = str | Callable[[ExecutionContext], str]


class MutationStatus(Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already-applied"
    NO_MATCH = "no-match"


def _value(replacement: Replacement, ctx: ExecutionContext | None) -> str:
    if callable(replacement):
        return replacement(ctx)
    return replacement


@dataclass(frozen=True)
class Substitute:
    """Replace every match of pattern, unless applied already matches."""

    pattern: str
    replacement: Replacement
    applied: str | None = None
    label: str = ""
    required: bool = False
    literal: bool = False

    def _regex(self) -> re.Pattern:
        pattern = re.escape(self.pattern) if self.literal else self.pattern
        return re.compile(pattern, re.MULTILINE)

    def status(self, text: str) -> MutationStatus:
        if self.applied and re.search(self.applied, text, re.MULTILINE):
            return MutationStatus.ALREADY_APPLIED
        if self._regex().search(text):
            return MutationStatus.APPLIED
        return MutationStatus.NO_MATCH

    def apply(self, text: str, ctx: ExecutionContext | None = None) -> tuple[str, MutationStatus]:
        status = self.status(text)
        if status is not MutationStatus.APPLIED:
            return text, status
        value = _value(self.replacement, ctx)
        return self._regex().sub(lambda _m: value, text), status


@dataclass(frozen=True)
class InsertAfter:
    """Insert block after the first line matching anchor, once."""

    anchor: str
    block: Replacement
    marker: str
    label: str = ""
    required: bool = False

    def status(self, text: str) -> MutationStatus:
        if re.search(self.marker, text, re.MULTILINE):
            return MutationStatus.ALREADY_APPLIED
        if re.search(self.anchor, text, re.MULTILINE):
            return MutationStatus.APPLIED
        return MutationStatus.NO_MATCH

    def apply(self, text: str, ctx: ExecutionContext | None = None) -> tuple[str, MutationStatus]:
        status = self.status(text)
        if status is not MutationStatus.APPLIED:
            return text, status
        match = re.search(self.anchor, text, re.MULTILINE)
        end = text.find("\n", match.end())
        end = len(text) if end == -1 else end
        block = _value(self.block, ctx).rstrip("\n")
        return f"{text[:end]}\n{block}{text[end:]}", status


@dataclass(frozen=True)
class AppendBlock:
    """Append block at end of file, once."""

    block: Replacement
    marker: str
    label: str = ""
    required: bool = False

    def status(self, text: str) -> MutationStatus:
        if re.search(self.marker, text, re.MULTILINE):
            return MutationStatus.ALREADY_APPLIED
        return MutationStatus.APPLIED

    def apply(self, text: str, ctx: ExecutionContext | None = None) -> tuple[str, MutationStatus]:
        status = self.status(text)
        if status is not MutationStatus.APPLIED:
            return text, status
        if text and not text.endswith("\n"):
            text += "\n"
        return text + _value(self.block, ctx).rstrip("\n") + "\n", status


Mutation = Substitute | InsertAfter | AppendBlock


def has_marker(path: Path, marker: str) -> bool:
    try:
        return re.search(marker, path.read_text(encoding="utf-8"), re.MULTILINE) is not None
    except OSError:
        return False


def write_atomic(path: Path, text: str) -> None:
    """Replace path's content in one rename, keeping its permissions."""
    mode = path.stat().st_mode if path.exists() else None
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class FileMutationAction(Action):
    """Apply mutations to a file, copying it from template first if missing.

    With ``regenerate`` the file is always rendered fresh from template and
    only written when the rendering differs from what is on disk.
    """

    def __init__(
        self,
        path: Path,
        mutations: Sequence[Mutation],
        *,
        template: Path | None = None,
        regenerate: bool = False,
    ):
        self.path = Path(path)
        self.mutations = list(mutations)
        self.template = Path(template) if template else None
        self.regenerate = regenerate

    def _source_text(self) -> str:
        if self.regenerate or not self.path.exists():
            if self.template is None or not self.template.exists():
                raise ActionFailed(f"{self.template or self.path} not found")
            return self.template.read_text(encoding="utf-8")
        return self.path.read_text(encoding="utf-8")

    def pending(self, ctx: ExecutionContext) -> bool:
        """True if running this action would change the file."""
        if not self.path.exists():
            return True
        try:
            if self.regenerate:
                rendered, _ = self.render(ctx)
                return rendered != self.path.read_text(encoding="utf-8")
            text = self.path.read_text(encoding="utf-8")
        except (OSError, ActionFailed) as e:
            _logging.debug(f"Cannot inspect {self.path}: {e}")
            return True
        return any(m.status(text) is MutationStatus.APPLIED for m in self.mutations)

    def render(self, ctx: ExecutionContext | None) -> tuple[str, list[str]]:
        text = self._source_text()
        anomalies = []
        for mutation in self.mutations:
            text, status = mutation.apply(text, ctx)
            if status is MutationStatus.NO_MATCH:
                label = mutation.label or getattr(mutation, "pattern", "") or mutation.marker
                message = f"{self.path.name}: '{label}' matched nothing"
                if mutation.required:
                    raise ActionFailed(message)
                anomalies.append(message)
        return text, anomalies

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        created_from_template = not self.path.exists()
        text, anomalies = self.render(ctx)
        current = None if created_from_template else self.path.read_text(encoding="utf-8")

        if text == current:
            return ActionResult(output=f"{self.path.name} unchanged", warnings=anomalies)

        try:
            write_atomic(self.path, text)
        except OSError as e:
            raise ActionFailed(f"Cannot write {self.path}: {e}") from e

        for warning in anomalies:
            _logging.warning(warning)
        verb = "created" if created_from_template else "updated"
        return ActionResult(output=f"{verb} {self.path}", warnings=anomalies)

    def describe(self) -> str:
        names = ", ".join(m.label for m in self.mutations if m.label)
        return f"edit {self.path.name}" + (f" ({names})" if names else "")


__all__ = [
    "GENERATED_MARKER",
    "MutationStatus",
    "Substitute",
    "InsertAfter",
    "AppendBlock",
    "Mutation",
    "has_marker",
    "write_atomic",
    "FileMutationAction",
]
