"""Capability probing: what exists on this host and in what state.

Probing is read-only. A capability that cannot be detected, or whose
check errors, is reported as absent; ``probe`` never raises.
"""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

import httpx
from packaging import version as pkg_version

from ..config import Configuration
from ..errors import ProbeFailure
from ..execution import QUICK_TIMEOUT
from ..paths import ProjectLayout
from ..platforms import PlatformAdapter

_logging = logging.getLogger(__name__)

PYTHON = "python"
VENV = "venv"
VENV_PACKAGES = "venv_packages"
POSTGRESQL = "postgresql"
POSTGRES_DATABASE = "postgres_database"
POSTGRES_ROLE = "postgres_role"
NGINX = "nginx"
SUPERVISOR = "supervisor"
DISK_SPACE = "disk_space"
PYPI = "pypi"

ALL_CAPABILITIES = frozenset(
    {
        PYTHON,
        VENV,
        VENV_PACKAGES,
        POSTGRESQL,
        POSTGRES_DATABASE,
        POSTGRES_ROLE,
        NGINX,
        SUPERVISOR,
        DISK_SPACE,
        PYPI,
    }
)

MIN_PYTHON_VERSION = "3.8"
MIN_FREE_DISK_MB = 500
PYPI_URL = "https://pypi.org/simple/pip/"
IMPORT_CHECK = "import django, channels; print(django.get_version())"

# Some distributions keep service binaries outside a normal user PATH
_SBIN_PATH = "/usr/local/sbin:/usr/sbin:/sbin"


@dataclass(frozen=True)
class Capability:
    name: str
    installed: bool
    running: bool = False
    version: str | None = None
    method: str = "which"
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    error: str | None = None

    @property
    def status_icon(self) -> str:
        if not self.installed:
            return "❌"
        if not self.running:
            return "⚠️"
        return "✅"


def extract_version(output: str) -> str | None:
    for pattern in (r"(\d+\.\d+\.\d+)", r"(\d+\.\d+)"):
        match = re.search(pattern, output)
        if match:
            return match.group(1)
    return None


def is_version_at_least(found: str | None, minimum: str) -> bool:
    if not found:
        return False
    try:
        return pkg_version.parse(found) >= pkg_version.parse(minimum)
    except pkg_version.InvalidVersion:
        return False


def _run(command: list[str], timeout: float = QUICK_TIMEOUT) -> subprocess.CompletedProcess:
    _logging.debug(f"Probe: {' '.join(command)}")
    try:
        return subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ProbeFailure(f"'{command[0]}' timed out after {timeout}s") from e
    except OSError as e:
        raise ProbeFailure(f"'{command[0]}' could not run: {e}") from e


def _which(binary: str) -> str | None:
    found = shutil.which(binary)
    if found is None:
        found = shutil.which(binary, path=_SBIN_PATH)
    return found


def _probe_python(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    path = _which(config.python)
    if path is None:
        return Capability(PYTHON, installed=False)
    result = _run([path, "--version"])
    found = extract_version(result.stdout + result.stderr)
    satisfied = is_version_at_least(found, MIN_PYTHON_VERSION)
    return Capability(
        PYTHON,
        installed=True,
        running=satisfied,
        version=found,
        details=MappingProxyType({"path": path, "satisfied": satisfied}),
    )


def _probe_venv(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    if not layout.venv.is_dir():
        return Capability(VENV, installed=False, method="filesystem")
    if not layout.venv_python.exists():
        return Capability(VENV, installed=True, running=False, method="filesystem")
    result = _run([str(layout.venv_python), "-c", "import sys; print(sys.version.split()[0])"])
    return Capability(
        VENV,
        installed=True,
        running=result.returncode == 0,
        version=result.stdout.strip() or None,
        method="interpreter",
    )


def _probe_venv_packages(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    if not layout.venv_python.exists():
        return Capability(VENV_PACKAGES, installed=False, method="import")
    result = _run([str(layout.venv_python), "-c", IMPORT_CHECK])
    ok = result.returncode == 0
    return Capability(
        VENV_PACKAGES,
        installed=ok,
        running=ok,
        version=result.stdout.strip() if ok else None,
        method="import",
    )


def _probe_postgresql(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    if _which("psql") is None:
        return Capability(POSTGRESQL, installed=False)
    found = extract_version(_run(["psql", "--version"]).stdout)
    connected = _run(adapter.psql_command("-c", "\\q")).returncode == 0
    return Capability(
        POSTGRESQL,
        installed=True,
        running=connected,
        version=found,
        method="psql",
    )


def _pg_exists(name: str, query: str, adapter: PlatformAdapter) -> Capability:
    if _which("psql") is None:
        return Capability(name, installed=False, method="psql")
    result = _run(adapter.psql_command("-tAc", query))
    if result.returncode != 0:
        raise ProbeFailure(result.stderr.strip() or "psql query failed")
    return Capability(name, installed=result.stdout.strip() == "1", running=True, method="psql")


def _probe_postgres_database(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    return _pg_exists(
        POSTGRES_DATABASE,
        f"SELECT 1 FROM pg_database WHERE datname='{config.db_name}';",
        adapter,
    )


def _probe_postgres_role(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    return _pg_exists(
        POSTGRES_ROLE,
        f"SELECT 1 FROM pg_roles WHERE rolname='{config.db_user}';",
        adapter,
    )


def _service_probe(name: str, binary: str, version_args: list[str]) -> Callable:
    def _probe(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
        path = _which(binary)
        if path is None:
            return Capability(name, installed=False)
        result = _run([path, *version_args])
        return Capability(
            name,
            installed=True,
            running=adapter.is_service_running(name),
            version=extract_version(result.stdout + result.stderr),
            details=MappingProxyType({"path": path}),
        )

    return _probe


def _probe_disk_space(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    try:
        usage = shutil.disk_usage(layout.root)
    except OSError as e:
        raise ProbeFailure(f"disk usage unavailable: {e}") from e
    free_mb = usage.free // (1024 * 1024)
    return Capability(
        DISK_SPACE,
        installed=True,
        running=free_mb >= MIN_FREE_DISK_MB,
        method="statvfs",
        details=MappingProxyType({"free_mb": free_mb}),
    )


def _probe_pypi(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> Capability:
    try:
        with httpx.Client(timeout=QUICK_TIMEOUT) as client:
            response = client.head(PYPI_URL)
    except httpx.HTTPError as e:
        return Capability(PYPI, installed=True, running=False, method="http", error=str(e))
    return Capability(
        PYPI,
        installed=True,
        running=response.status_code < 400,
        method="http",
        details=MappingProxyType({"status": response.status_code}),
    )


_PROBES: dict[str, Callable[[Configuration, ProjectLayout, PlatformAdapter], Capability]] = {
    PYTHON: _probe_python,
    VENV: _probe_venv,
    VENV_PACKAGES: _probe_venv_packages,
    POSTGRESQL: _probe_postgresql,
    POSTGRES_DATABASE: _probe_postgres_database,
    POSTGRES_ROLE: _probe_postgres_role,
    NGINX: _service_probe(NGINX, "nginx", ["-v"]),
    SUPERVISOR: _service_probe(SUPERVISOR, "supervisord", ["--version"]),
    DISK_SPACE: _probe_disk_space,
    PYPI: _probe_pypi,
}


def probe(
    names: Iterable[str],
    config: Configuration,
    layout: ProjectLayout,
    adapter: PlatformAdapter,
) -> dict[str, Capability]:
    """Detect the requested capabilities.

    Database and role checks only run when PostgreSQL answers; otherwise
    they are reported absent without touching the server.
    """
    requested = set(names)
    unknown = requested - ALL_CAPABILITIES
    if unknown:
        raise ValueError(f"Unknown capabilities: {', '.join(sorted(unknown))}")

    results: dict[str, Capability] = {}
    ordered = sorted(requested, key=lambda n: n in (POSTGRES_DATABASE, POSTGRES_ROLE))
    for name in ordered:
        if name in (POSTGRES_DATABASE, POSTGRES_ROLE):
            server = results.get(POSTGRESQL) or _safe_probe(POSTGRESQL, config, layout, adapter)
            if not server.running:
                results[name] = Capability(name, installed=False, method="psql")
                continue
        results[name] = _safe_probe(name, config, layout, adapter)
    return results


def _safe_probe(
    name: str, config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter
) -> Capability:
    try:
        capability = _PROBES[name](config, layout, adapter)
    except ProbeFailure as e:
        _logging.debug(f"Probe '{name}' failed, treating as absent: {e.message}")
        return Capability(name, installed=False, method="error", error=e.message)
    _logging.debug(
        f"Probe '{name}': installed={capability.installed} running={capability.running} "
        f"version={capability.version}"
    )
    return capability


__all__ = [
    "PYTHON",
    "VENV",
    "VENV_PACKAGES",
    "POSTGRESQL",
    "POSTGRES_DATABASE",
    "POSTGRES_ROLE",
    "NGINX",
    "SUPERVISOR",
    "DISK_SPACE",
    "PYPI",
    "ALL_CAPABILITIES",
    "MIN_PYTHON_VERSION",
    "MIN_FREE_DISK_MB",
    "Capability",
    "extract_version",
    "is_version_at_least",
    "probe",
]
