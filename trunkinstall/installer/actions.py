"""Action kinds a Step can perform."""

import logging
import os
import shutil
import signal
import stat
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import httpx

from ..errors import ActionFailed, ActionTimeout
from ..execution import describe_command, process_command_line
from ..state import StateEntry
from .models import ExecutionContext

_logging = logging.getLogger(__name__)


@dataclass
class ActionResult:
    output: str = ""
    created: list[StateEntry] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "ActionResult") -> None:
        if other.output:
            self.output = f"{self.output}\n{other.output}".strip()
        self.created.extend(other.created)
        self.removed.extend(other.removed)
        self.warnings.extend(other.warnings)


class Action(ABC):
    destructive: bool = False

    @abstractmethod
    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult: ...

    @abstractmethod
    def describe(self) -> str: ...


EntryFactory = Callable[[ExecutionContext], "StateEntry | None"]


class CommandAction(Action):
    """Run an external command; non-zero exit is a failure unless check is off."""

    def __init__(
        self,
        command: str | Sequence[str] | Callable[[ExecutionContext], str | Sequence[str]],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        destructive: bool = False,
        interactive: bool = False,
        check: bool = True,
        creates: EntryFactory | None = None,
        removes: str | None = None,
        label: str | None = None,
    ):
        self.command = command
        self.cwd = cwd
        self.input_text = input_text
        self.destructive = destructive
        self.interactive = interactive
        self.check = check
        self.creates = creates
        self.removes = removes
        self.label = label

    def _resolve(self, ctx: ExecutionContext | None) -> str | Sequence[str]:
        if callable(self.command):
            if ctx is None:
                return "<computed>"
            return self.command(ctx)
        return self.command

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        command = self._resolve(ctx)
        result = await ctx.run(
            command,
            timeout,
            input_text=self.input_text,
            cwd=self.cwd,
            interactive=self.interactive,
        )
        if result.timed_out:
            raise ActionTimeout(
                f"'{describe_command(command)}' timed out after {timeout}s", timeout
            )

        outcome = ActionResult(output=result.output)
        if not result.ok:
            if self.check:
                raise ActionFailed(
                    f"'{describe_command(command)}' exited with {result.returncode}",
                    output=result.output,
                    returncode=result.returncode,
                )
            outcome.warnings.append(
                f"'{describe_command(command)}' exited with {result.returncode} (ignored)"
            )
            return outcome

        if self.creates:
            entry = self.creates(ctx)
            if entry is not None:
                outcome.created.append(entry)
        if self.removes:
            outcome.removed.append(self.removes)
        return outcome

    def describe(self) -> str:
        if self.label:
            return self.label
        return describe_command(self._resolve(None))


class CompositeAction(Action):
    """Run several actions in order as one unit."""

    def __init__(self, actions: Sequence[Action], removes: str | None = None):
        self.actions = list(actions)
        self.destructive = any(a.destructive for a in self.actions)
        self.removes = removes

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        combined = ActionResult()
        for action in self.actions:
            combined.merge(await action.run(ctx, timeout))
        if self.removes:
            combined.removed.append(self.removes)
        return combined

    def describe(self) -> str:
        return " && ".join(a.describe() for a in self.actions)


class HttpReadyAction(Action):
    """Single readiness check against an HTTP endpoint; the Step's retry policy polls."""

    def __init__(self, url: str, request_timeout: float = 5.0):
        self.url = url
        self.request_timeout = request_timeout

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        try:
            async with httpx.AsyncClient(
                timeout=min(self.request_timeout, timeout), follow_redirects=False
            ) as client:
                response = await client.get(self.url)
        except httpx.ConnectError:
            raise ActionFailed(f"{self.url}: connection refused")
        except httpx.TimeoutException:
            raise ActionFailed(f"{self.url}: request timeout")
        except httpx.HTTPError as e:
            raise ActionFailed(f"{self.url}: {e}")

        # Redirects to a login page still mean the server is serving
        if response.status_code >= 500:
            raise ActionFailed(f"{self.url}: HTTP {response.status_code}")
        return ActionResult(output=f"{self.url}: HTTP {response.status_code}")

    def describe(self) -> str:
        return f"GET {self.url}"


class EnsureDirectoriesAction(Action):
    def __init__(self, paths: Callable[[ExecutionContext], list[Path]]):
        self.paths = paths

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        created = []
        for path in self.paths(ctx):
            if not path.is_dir():
                try:
                    path.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise ActionFailed(f"Cannot create {path}: {e}") from e
                created.append(str(path))
        return ActionResult(output="\n".join(f"created {p}" for p in created))

    def describe(self) -> str:
        return "mkdir -p <project directories>"


class SymlinkAction(Action):
    """Point each link at source, creating parent directories as needed."""

    def __init__(
        self,
        source: Path,
        links: Sequence[Path],
        *,
        privileged: bool = False,
        creates: EntryFactory | None = None,
    ):
        self.source = source
        self.links = list(links)
        self.privileged = privileged
        self.creates = creates

    def pending(self, ctx: ExecutionContext) -> bool:
        return any(not _links_to(link, self.source) for link in self.links)

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        result = ActionResult()
        for link in self.links:
            if _links_to(link, self.source):
                continue
            if self.privileged:
                for command in (
                    ctx.adapter.privileged(["mkdir", "-p", str(link.parent)]),
                    ctx.adapter.privileged(["ln", "-sfn", str(self.source), str(link)]),
                ):
                    result.merge(await CommandAction(command).run(ctx, timeout))
            else:
                try:
                    link.parent.mkdir(parents=True, exist_ok=True)
                    if link.is_symlink() or link.exists():
                        link.unlink()
                    link.symlink_to(self.source)
                except OSError as e:
                    raise ActionFailed(f"Cannot link {link} -> {self.source}: {e}") from e
            result.output = f"{result.output}\nlinked {link} -> {self.source}".strip()

        if self.creates:
            entry = self.creates(ctx)
            if entry is not None:
                result.created.append(entry)
        return result

    def describe(self) -> str:
        return "; ".join(f"ln -sfn {self.source} {link}" for link in self.links)


def _links_to(link: Path, source: Path) -> bool:
    if not link.is_symlink():
        return False
    try:
        return Path(os.readlink(link)) == source
    except OSError:
        return False


class RemovePathsAction(Action):
    """Delete files, symlinks or directory trees. Missing paths are fine."""

    destructive = True

    def __init__(
        self,
        paths: Sequence[Path],
        *,
        privileged: bool = False,
        removes: str | None = None,
    ):
        self.paths = [Path(p) for p in paths]
        self.privileged = privileged
        self.removes = removes

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        result = ActionResult()
        for path in self.paths:
            if not (path.exists() or path.is_symlink()):
                continue
            if self.privileged:
                command = ctx.adapter.privileged(["rm", "-rf", str(path)])
                result.merge(await CommandAction(command).run(ctx, timeout))
            else:
                try:
                    if path.is_dir() and not path.is_symlink():
                        shutil.rmtree(path)
                    else:
                        path.unlink()
                except OSError as e:
                    raise ActionFailed(f"Cannot remove {path}: {e}") from e
            result.output = f"{result.output}\nremoved {path}".strip()
        if self.removes:
            result.removed.append(self.removes)
        return result

    def describe(self) -> str:
        return "rm -rf " + " ".join(str(p) for p in self.paths)


class StopProcessAction(Action):
    """Stop a detached process group, but only if pid still runs the recorded command."""

    destructive = True

    def __init__(self, pid: int, marker: str, removes: str | None = None):
        self.pid = pid
        self.marker = marker
        self.removes = removes

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        result = ActionResult()
        if self.pid <= 0:
            result.output = f"no usable pid recorded ({self.pid})"
        elif not is_process_alive(self.pid):
            result.output = f"process {self.pid} already stopped"
        elif not is_process_alive(self.pid, self.marker):
            result.output = f"process {self.pid} is not '{self.marker}' any more, left running"
            result.warnings.append(f"PID {self.pid} was reused by another process")
        else:
            try:
                os.killpg(self.pid, signal.SIGTERM)
                result.output = f"sent SIGTERM to process group {self.pid}"
            except ProcessLookupError:
                result.output = f"process {self.pid} already stopped"
            except PermissionError as e:
                raise ActionFailed(f"Cannot stop process {self.pid}: {e}") from e
        if self.removes:
            result.removed.append(self.removes)
        return result

    def describe(self) -> str:
        return f"kill -TERM -{self.pid}"


class StartDetachedAction(Action):
    def __init__(
        self,
        command: Callable[[ExecutionContext], list[str]],
        log_path: Callable[[ExecutionContext], Path],
        creates: Callable[[ExecutionContext, int], StateEntry],
        label: str,
    ):
        self.command = command
        self.log_path = log_path
        self.creates = creates
        self.label = label

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        command = self.command(ctx)
        log_path = self.log_path(ctx)
        try:
            pid = ctx.spawn(command, log_path, cwd=ctx.layout.root)
        except OSError as e:
            raise ActionFailed(f"Cannot start '{describe_command(command)}': {e}") from e
        return ActionResult(
            output=f"started pid {pid}, output in {log_path}",
            created=[self.creates(ctx, pid)],
        )

    def describe(self) -> str:
        return self.label


class CopyExecutableAction(Action):
    def __init__(self, source: Path, destination: Callable[[ExecutionContext], Path | None]):
        self.source = source
        self.destination = destination

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        target_dir = self.destination(ctx)
        if target_dir is None:
            raise ActionFailed("No trunk-recorder directory found")
        target = target_dir / self.source.name
        try:
            shutil.copy2(self.source, target)
            mode = target.stat().st_mode
            target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            raise ActionFailed(f"Cannot copy {self.source} to {target_dir}: {e}") from e
        return ActionResult(output=f"copied {self.source.name} to {target_dir}")

    def describe(self) -> str:
        return f"cp {self.source} <trunk-recorder dir>/"


class CallableAction(Action):
    """Wrap an async function of the context."""

    def __init__(
        self,
        func: Callable[[ExecutionContext, float], Awaitable[ActionResult]],
        label: str,
        destructive: bool = False,
    ):
        self.func = func
        self.label = label
        self.destructive = destructive

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        return await self.func(ctx, timeout)

    def describe(self) -> str:
        return self.label


def is_process_alive(pid: Any, marker: str | None = None) -> bool:
    """Whether pid is a live process whose command line contains marker, when given."""
    try:
        pid = int(pid)
    except (ValueError, TypeError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    if marker is None:
        return True
    command_line = process_command_line(pid)
    return command_line is not None and marker in command_line


def process_marker(entry: StateEntry) -> str:
    """What the command line of the process entry records must contain."""
    return entry.params.get("marker") or entry.identifier


__all__ = [
    "ActionResult",
    "Action",
    "CommandAction",
    "CompositeAction",
    "HttpReadyAction",
    "EnsureDirectoriesAction",
    "SymlinkAction",
    "RemovePathsAction",
    "StopProcessAction",
    "StartDetachedAction",
    "CopyExecutableAction",
    "CallableAction",
    "is_process_alive",
    "process_marker",
]
