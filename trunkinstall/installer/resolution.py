"""Decision table: probed capabilities plus desired configuration to plan choices."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from ..config import Configuration, DatabaseEngine, ExistingDatabaseChoice
from ..errors import PrerequisiteError
from ..state import ResourceKind, StateStore
from ..tui import ConfirmationProvider
from .capabilities import (
    DISK_SPACE,
    MIN_FREE_DISK_MB,
    MIN_PYTHON_VERSION,
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


class VenvDecision(Enum):
    CREATE = "create"
    RECREATE = "recreate"
    FORCE_REINSTALL = "force-reinstall"
    REUSE = "reuse"


class DatabasePath(Enum):
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"
    NONE = "none"


@dataclass
class DatabaseDecision:
    path: DatabasePath
    install_postgresql: bool = False
    start_postgresql: bool = False
    create: bool = True
    drop_existing: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class ServiceDecision:
    name: str
    install: bool = False
    start: bool = False


def _cap(probed: Mapping[str, Capability], name: str) -> Capability:
    return probed.get(name) or Capability(name, installed=False, method="not-probed")


def check_prerequisites(probed: Mapping[str, Capability]) -> list[str]:
    """Raise on hard blockers; return warnings for soft ones."""
    python = _cap(probed, PYTHON)
    if not python.installed:
        raise PrerequisiteError("Python 3 interpreter not found")
    if not python.running:
        raise PrerequisiteError(
            f"Python {MIN_PYTHON_VERSION}+ is required, found {python.version or 'unknown'}"
        )

    warnings = []
    disk = probed.get(DISK_SPACE)
    if disk is not None and disk.installed and not disk.running:
        free = disk.details.get("free_mb", "?")
        warnings.append(f"Low disk space: {free} MB free, at least {MIN_FREE_DISK_MB} MB recommended")
    pypi = probed.get(PYPI)
    if pypi is not None and not pypi.running:
        warnings.append("Cannot reach PyPI; dependency installation may fail")
    return warnings


def decide_venv(probed: Mapping[str, Capability]) -> VenvDecision:
    venv = _cap(probed, VENV)
    if not venv.installed:
        return VenvDecision.CREATE
    if not venv.running:
        return VenvDecision.RECREATE
    if not _cap(probed, VENV_PACKAGES).installed:
        return VenvDecision.FORCE_REINSTALL
    return VenvDecision.REUSE


def decide_database(
    config: Configuration,
    probed: Mapping[str, Capability],
    state: StateStore,
    confirm: ConfirmationProvider,
    sqlite_configured: bool = False,
) -> DatabaseDecision:
    if config.database is DatabaseEngine.SQLITE:
        return DatabaseDecision(DatabasePath.SQLITE)
    if config.database is DatabaseEngine.AUTO and sqlite_configured:
        return DatabaseDecision(
            DatabasePath.SQLITE,
            warnings=["Settings already use SQLite from an earlier run; keeping SQLite"],
        )

    server = _cap(probed, POSTGRESQL)
    decision = DatabaseDecision(DatabasePath.POSTGRESQL)

    if not server.running:
        if not server.installed:
            decision.install_postgresql = confirm.confirm(
                "install_postgresql",
                "PostgreSQL is not installed. Install it now? (otherwise SQLite is used)",
                default=config.install_postgresql,
            )
        decision.start_postgresql = decision.install_postgresql or server.installed
        if not decision.start_postgresql:
            if config.database is DatabaseEngine.POSTGRESQL:
                raise PrerequisiteError("PostgreSQL was requested but is not installed")
            return DatabaseDecision(DatabasePath.SQLITE)
        if not decision.install_postgresql and config.database is DatabaseEngine.AUTO:
            decision.warnings.append("PostgreSQL is installed but not running; it will be started")
        # Nothing can pre-exist on a server we could not query
        return decision

    db_exists = _cap(probed, POSTGRES_DATABASE).installed
    role_exists = _cap(probed, POSTGRES_ROLE).installed
    if not (db_exists or role_exists):
        return decision

    ours = (
        (not db_exists or state.has(ResourceKind.DATABASE, config.db_name))
        and (not role_exists or state.has(ResourceKind.DB_USER, config.db_user))
    )
    if ours:
        return decision

    found = []
    if db_exists:
        found.append(f"database '{config.db_name}'")
    if role_exists:
        found.append(f"user '{config.db_user}'")
    choice_value = confirm.choose(
        "existing_database",
        f"Existing PostgreSQL {' and '.join(found)} not created by this installer",
        [
            (ExistingDatabaseChoice.DROP_AND_RECREATE.value, "Drop and recreate (DESTROYS ALL DATA)"),
            (ExistingDatabaseChoice.REUSE_EXISTING.value, "Use existing setup (recommended)"),
            (ExistingDatabaseChoice.SKIP_DB_SETUP.value, "Skip database setup"),
        ],
        default=config.existing_database.value if config.existing_database else None,
        hint="pass --existing-db drop-and-recreate|reuse-existing|skip-db-setup",
    )
    choice = ExistingDatabaseChoice(choice_value)

    if choice is ExistingDatabaseChoice.DROP_AND_RECREATE:
        decision.drop_existing = True
    elif choice is ExistingDatabaseChoice.REUSE_EXISTING:
        decision.create = False
        decision.warnings.append(
            "Reusing existing database: make sure PASSWORD in settings_local.py matches the existing user"
        )
    else:
        decision = DatabaseDecision(
            DatabasePath.NONE,
            warnings=["Database setup skipped: configure DATABASES in settings_local.py manually"],
        )
    return decision


def decide_service(name: str, probed: Mapping[str, Capability]) -> ServiceDecision:
    cap = _cap(probed, name)
    decision = ServiceDecision(name)
    if not cap.installed:
        decision.install = True
        decision.start = True
    elif not cap.running:
        decision.start = True
    return decision


def decide_services(probed: Mapping[str, Capability]) -> list[ServiceDecision]:
    return [decide_service(NGINX, probed), decide_service(SUPERVISOR, probed)]


__all__ = [
    "VenvDecision",
    "DatabasePath",
    "DatabaseDecision",
    "ServiceDecision",
    "check_prerequisites",
    "decide_venv",
    "decide_database",
    "decide_service",
    "decide_services",
]
