"""Data models for the provisioning engine."""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from ..config import Configuration
from ..execution import QUICK_TIMEOUT, CommandResult, run_command_async, spawn_detached
from ..paths import ProjectLayout
from ..platforms import PlatformAdapter
from ..state import StateEntry, StateStore

if TYPE_CHECKING:
    from .actions import Action


class Outcome(Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not_run"


class Criticality(Enum):
    FATAL = "fatal"
    WARN = "warn"


class Goal(Enum):
    ENVIRONMENT = "environment ready"
    DATABASE = "database ready"
    PROXY = "proxy configured"
    SERVER = "server serving"


class CommandRunner(Protocol):
    def __call__(
        self, command: Any, timeout: float = ..., **kwargs: Any
    ) -> Awaitable[CommandResult]: ...


@dataclass
class ExecutionContext:
    """Everything a Step may read or touch while it runs."""

    config: Configuration
    layout: ProjectLayout
    adapter: PlatformAdapter
    state: StateStore
    runner: CommandRunner = run_command_async
    spawn: Callable[..., int] = spawn_detached
    # Values to redact from captured output; cleared after every Step
    secrets: set[str] = field(default_factory=set)
    outcomes: dict[str, Outcome] = field(default_factory=dict)

    async def run(self, command: Any, timeout: float = QUICK_TIMEOUT, **kwargs) -> CommandResult:
        return await self.runner(command, timeout, **kwargs)


Precondition = Callable[[ExecutionContext], "bool | Awaitable[bool]"]


async def evaluate(precondition: Precondition | None, ctx: ExecutionContext) -> bool:
    if precondition is None:
        return True
    result = precondition(ctx)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff: float = 2.0
    timeout: float = QUICK_TIMEOUT

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class Step:
    id: str
    description: str
    action: "Action"
    precondition: Precondition | None = None
    idempotency_key: str | None = None
    rollback: "Action | None" = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    criticality: Criticality = Criticality.FATAL
    goal: Goal | None = None
    requires: frozenset[str] = frozenset()
    produces: frozenset[str] = frozenset()

    @property
    def effective_attempts(self) -> int:
        """Destructive actions are never auto-retried."""
        return 1 if self.action.destructive else self.retry.max_attempts


@dataclass(frozen=True)
class Plan:
    title: str
    steps: tuple[Step, ...]
    warnings: tuple[str, ...] = ()
    kept: tuple[StateEntry, ...] = ()

    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def get(self, step_id: str) -> Step | None:
        return next((s for s in self.steps if s.id == step_id), None)


@dataclass
class ExecutionRecord:
    step_id: str
    description: str
    outcome: Outcome
    criticality: Criticality = Criticality.FATAL
    goal: Goal | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    output: str = ""
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    rolled_back: bool = False

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step_id,
            "description": self.description,
            "outcome": self.outcome.value,
            "criticality": self.criticality.value,
            "goal": self.goal.value if self.goal else None,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "rolled_back": self.rolled_back,
            "warnings": list(self.warnings),
        }


def project_layout(config: Configuration) -> ProjectLayout:
    return ProjectLayout(root=Path(config.project_dir), venv_dir=config.venv_dir)


__all__ = [
    "Outcome",
    "Criticality",
    "Goal",
    "CommandRunner",
    "ExecutionContext",
    "Precondition",
    "evaluate",
    "RetryPolicy",
    "Step",
    "Plan",
    "ExecutionRecord",
    "project_layout",
]
