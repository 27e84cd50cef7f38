"""Pytest fixtures and utilities for trunkinstall tests."""

import tempfile
from pathlib import Path
from types import MappingProxyType
from typing import Generator
from unittest.mock import patch

import pytest

from trunkinstall.config import Configuration, DatabaseEngine
from trunkinstall.execution import CommandResult, describe_command
from trunkinstall.installer.capabilities import (
    DISK_SPACE,
    NGINX,
    POSTGRES_DATABASE,
    POSTGRES_ROLE,
    POSTGRESQL,
    PYPI,
    PYTHON,
    SUPERVISOR,
    VENV,
    VENV_PACKAGES,
    Capability,
)
from trunkinstall.installer.models import ExecutionContext, project_layout
from trunkinstall.platforms import PlatformAdapter
from trunkinstall.state import StateStore
from trunkinstall.tui import NonInteractiveProvider

SETTINGS_SAMPLE = """\
import os

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

SECRET_KEY = 'replace-me-with-something-long'

ALLOWED_HOSTS = []

AUDIO_URL_BASE = '//s3.amazonaws.com/SET-TO-MY-BUCKET/'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql_psycopg2',
        'NAME': 'trunk_player',
        'USER': 'trunk_player_user',
        'PASSWORD': 'fake_password',
        'HOST': 'localhost',
    }
}
"""

NGINX_SAMPLE = """\
upstream trunk_player {
    server 127.0.0.1:7055;
}

server {
    listen 80;
    access_log /var/log/trunk-player/nginx-access.log;

    location /static/ {
        alias /home/radio/trunk-player/static/;
    }

    location /audio_files/ {
        alias /home/radio/trunk-player/audio_files;
    }
}
"""

SUPERVISOR_SAMPLE = """\
[program:daphne]
command=/home/radio/trunk-player/env/bin/daphne trunk_player.asgi:application --port 7055
directory=/home/radio/trunk-player
user=radio
stdout_logfile=/var/log/trunk-player/daphne.log

[group:trunkplayer]
programs=daphne
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def checkout(temp_dir: Path) -> Path:
    """A minimal Trunk Player checkout."""
    root = temp_dir / "trunk-player"
    app = root / "trunk_player"
    app.mkdir(parents=True)
    (root / "manage.py").write_text("#!/usr/bin/env python\n")
    (root / "requirements.txt").write_text("Django>=4.2\nchannels>=4.0\n")
    (app / "settings_local.py.sample").write_text(SETTINGS_SAMPLE)
    (app / "trunk_player.nginx.sample").write_text(NGINX_SAMPLE)
    (app / "supervisor.conf.sample").write_text(SUPERVISOR_SAMPLE)
    return root


class FakeAdapter(PlatformAdapter):
    """Platform adapter whose system paths live under a temp directory."""

    name = "fake"
    package_manager = "fake"

    def __init__(self, base: Path):
        super().__init__(is_root=False)
        self.base = base

    def install_package_command(self, capability: str):
        return ["pkg", "install", capability]

    def uninstall_package_command(self, capability: str):
        return ["pkg", "remove", capability]

    def start_service_command(self, service: str):
        return ["svc", "start", service]

    def restart_service_command(self, service: str):
        return ["svc", "restart", service]

    def stop_service_command(self, service: str):
        return ["svc", "stop", service]

    def service_status_command(self, service: str):
        return ["svc", "status", service]

    def psql_command(self, *args: str) -> list[str]:
        return ["psql", *args]

    @property
    def log_dir(self) -> Path:
        return self.base / "system-logs"

    @property
    def nginx_site_links(self) -> list[Path]:
        return [self.base / "nginx" / "sites-enabled" / "trunk_player"]

    @property
    def supervisor_links(self) -> list[Path]:
        return [self.base / "supervisor" / "conf.d" / "trunk_player.conf"]

    @property
    def service_user(self) -> str:
        return "tester"

    def is_service_running(self, service: str) -> bool:
        return True


@pytest.fixture
def adapter(temp_dir: Path) -> FakeAdapter:
    return FakeAdapter(temp_dir / "system")


class FakeRunner:
    """Async command runner that simulates the commands an install issues.

    Every call is recorded. ``fail`` maps a substring of the rendered
    command to the CommandResult to return instead of the simulation.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail: dict[str, CommandResult] = {}
        self.roles: set[str] = set()
        self.databases: set[str] = set()
        self.fail_setup = False
        self.migrated = False

    def commands(self) -> list[str]:
        return [c for c, _ in self.calls]

    def ran(self, fragment: str) -> bool:
        return any(fragment in c for c in self.commands())

    async def __call__(self, command, timeout=10, **kwargs) -> CommandResult:
        display = describe_command(command)
        self.calls.append((display, kwargs))
        for fragment, result in self.fail.items():
            if fragment in display:
                return result

        parts = command if isinstance(command, list) else display.split()
        cwd = kwargs.get("cwd")

        if "-m" in parts and "venv" in parts:
            venv = Path(cwd) / parts[parts.index("venv") + 1]
            (venv / "bin").mkdir(parents=True, exist_ok=True)
            (venv / "bin" / "python").write_text("")
            (venv / "bin" / "pip").write_text("")
            return CommandResult("", 0)

        if "migrate" in parts:
            if "--check" in parts:
                return CommandResult("", 0 if self.migrated else 1)
            settings = Path(cwd) / "trunk_player" / "settings_local.py"
            if "sqlite3" in settings.read_text():
                (Path(cwd) / "db.sqlite3").write_text("")
            self.migrated = True
            return CommandResult("Applying migrations... OK", 0)

        if "collectstatic" in parts:
            static = Path(cwd) / "static"
            static.mkdir(exist_ok=True)
            (static / "site.css").write_text("")
            return CommandResult("1 static file copied", 0)

        if parts and parts[0] == "psql":
            return self._psql(parts, kwargs.get("input_text"))

        return CommandResult("", 0)

    def _psql(self, parts: list[str], input_text: str | None) -> CommandResult:
        if "-tAc" in parts:
            query = parts[-1]
            if "pg_roles" in query:
                found = any(f"'{r}'" in query for r in self.roles)
            else:
                found = any(f"'{d}'" in query for d in self.databases)
            return CommandResult("1" if found else "", 0)

        if "ON_ERROR_STOP=1" in parts:
            if "CREATE USER trunk_player_user" in input_text:
                self.roles.add("trunk_player_user")
            if self.fail_setup:
                return CommandResult("ERROR:  permission denied to create database", 3)
            if "CREATE DATABASE trunk_player" in input_text:
                self.databases.add("trunk_player")
            return CommandResult("CREATE ROLE\nCREATE DATABASE", 0)

        statement = parts[-1]
        if statement.startswith("DROP DATABASE"):
            self.databases.discard(statement.split()[-1].rstrip(";"))
        elif statement.startswith("DROP USER"):
            self.roles.discard(statement.split()[-1].rstrip(";"))
        return CommandResult("", 0)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sqlite_config(checkout: Path) -> Configuration:
    return Configuration(
        project_dir=checkout,
        database=DatabaseEngine.SQLITE,
        skip_services=True,
        non_interactive=True,
        start_dev_server=False,
    )


@pytest.fixture
def state(checkout: Path) -> StateStore:
    return StateStore(checkout / ".trunkinstall" / "state.jsonl")


@pytest.fixture
def make_context(adapter: FakeAdapter, state: StateStore, runner: FakeRunner):
    """Factory for an ExecutionContext wired to the fakes."""

    def _make(config: Configuration) -> ExecutionContext:
        return ExecutionContext(
            config=config,
            layout=project_layout(config),
            adapter=adapter,
            state=state,
            runner=runner,
            spawn=lambda command, log_path, cwd=None: 4242,
        )

    return _make


def cap(name: str, installed: bool = True, running: bool = True, version: str | None = None) -> Capability:
    return Capability(name, installed=installed, running=running, version=version, details=MappingProxyType({}))


def fresh_host(**overrides: Capability) -> dict[str, Capability]:
    """Probe results for a host with Python but nothing provisioned yet."""
    probed = {
        PYTHON: cap(PYTHON, version="3.11.4"),
        VENV: cap(VENV, installed=False, running=False),
        VENV_PACKAGES: cap(VENV_PACKAGES, installed=False, running=False),
        POSTGRESQL: cap(POSTGRESQL, installed=False, running=False),
        POSTGRES_DATABASE: cap(POSTGRES_DATABASE, installed=False, running=False),
        POSTGRES_ROLE: cap(POSTGRES_ROLE, installed=False, running=False),
        NGINX: cap(NGINX),
        SUPERVISOR: cap(SUPERVISOR),
        DISK_SPACE: cap(DISK_SPACE),
        PYPI: cap(PYPI),
    }
    probed.update(overrides)
    return probed


def provisioned_host(**overrides: Capability) -> dict[str, Capability]:
    """Probe results after a successful first run."""
    probed = fresh_host(
        **{
            VENV: cap(VENV, version="3.11.4"),
            VENV_PACKAGES: cap(VENV_PACKAGES, version="4.2"),
        }
    )
    probed.update(overrides)
    return probed


@pytest.fixture
def provider() -> NonInteractiveProvider:
    return NonInteractiveProvider()


@pytest.fixture
def mock_tty() -> Generator[None, None, None]:
    """Mock sys.stdin.isatty to return True."""
    with patch("sys.stdin.isatty", return_value=True):
        yield


@pytest.fixture
def mock_no_tty() -> Generator[None, None, None]:
    """Mock sys.stdin.isatty to return False."""
    with patch("sys.stdin.isatty", return_value=False):
        yield
