"""Async command execution utilities."""

import asyncio
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

QUICK_TIMEOUT = 10
SETUP_TIMEOUT = 30
MIGRATION_TIMEOUT = 300
INSTALL_TIMEOUT = 600

REDACTED = "********"

_logging = logging.getLogger(__name__)


@dataclass
class CommandResult:
    output: str
    returncode: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def describe_command(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(str(part) for part in command)


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


async def run_command_async(
    command: str | Sequence[str],
    timeout: float = QUICK_TIMEOUT,
    *,
    input_text: str | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    interactive: bool = False,
    sensitive: bool = False,
) -> CommandResult:
    """Run a command asynchronously and return its combined output and exit code.

    A string is run through the shell, a sequence is executed directly.
    stderr is folded into the captured output. With ``interactive`` the
    child inherits the terminal and nothing is captured.
    """
    process = None
    display = describe_command(command)
    try:
        _logging.debug(f"Running command: {display}")
        if sensitive and input_text is not None:
            _logging.debug("  (stdin withheld from log)")

        if interactive:
            streams = {}
        else:
            streams = {
                "stdin": (
                    asyncio.subprocess.PIPE
                    if input_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                "stdout": asyncio.subprocess.PIPE,
                "stderr": asyncio.subprocess.STDOUT,
            }

        if isinstance(command, str):
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                **streams,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *[str(part) for part in command],
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                **streams,
            )

        payload = input_text.encode() if input_text is not None else None
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(payload), timeout=timeout
            )
            output = stdout.decode(errors="replace").strip() if stdout else ""
            return CommandResult(
                output, process.returncode if process.returncode is not None else 1
            )
        except asyncio.TimeoutError:
            process.kill()
            _ = await process.wait()
            _logging.error(f"Command timed out after {timeout} seconds: {display}")
            return CommandResult(
                f"Command timed out after {timeout} seconds", 1, timed_out=True
            )
    except (OSError, ValueError) as e:
        _logging.error(
            f"Command execution failed: {type(e).__name__}: {e} | Command: {display}"
        )
        return CommandResult(f"Error: {e}", 127)
    finally:
        if process:
            transport = getattr(process, "_transport", None)
            if transport:
                transport.close()


def spawn_detached(command: Sequence[str], log_path: Path, cwd: Path | None = None) -> int:
    """Start a long-running process in its own session and return its PID.

    Output goes to log_path. The provisioner does not wait for the child.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logging.debug(f"Spawning detached: {describe_command(command)} > {log_path}")
    with open(log_path, "ab") as log:
        process = subprocess.Popen(
            [str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    return process.pid


def process_command_line(pid: int) -> str | None:
    """Return the command line of a running process, or None if it cannot be read."""
    if Path("/proc/self").exists():
        try:
            raw = (Path("/proc") / str(pid) / "cmdline").read_bytes()
        except OSError:
            return None
        return raw.replace(b"\0", b" ").decode(errors="replace").strip() or None
    try:
        completed = subprocess.run(
            ["ps", "-o", "command=", "-p", str(pid)],
            capture_output=True,
            text=True,
            timeout=QUICK_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    return completed.stdout.strip() or None


__all__ = [
    "spawn_detached",
    "process_command_line",
    "QUICK_TIMEOUT",
    "SETUP_TIMEOUT",
    "MIGRATION_TIMEOUT",
    "INSTALL_TIMEOUT",
    "CommandResult",
    "describe_command",
    "redact",
    "run_command_async",
]
