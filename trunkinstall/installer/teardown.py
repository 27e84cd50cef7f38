"""Uninstall planning: the inverse of the install plan, driven by the state ledger.

Only resources recorded in the StateStore are ever touched. Each kind of
resource needs its own confirmation; unconfirmed entries are kept and
reported. System packages are a separate tier the caller must confirm
more strongly.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Iterable, Mapping

from ..config import Configuration
from ..execution import INSTALL_TIMEOUT, SETUP_TIMEOUT
from ..paths import ProjectLayout
from ..platforms import PlatformAdapter
from ..state import ResourceKind, StateEntry
from .actions import (
    Action,
    CommandAction,
    CompositeAction,
    RemovePathsAction,
    StopProcessAction,
    process_marker,
)
from .database import drop_database_action, drop_role_action
from .models import Criticality, Plan, RetryPolicy, Step, project_layout

_logging = logging.getLogger(__name__)

# Services stop before their config is unlinked; the database goes before
# its owner; files go last and system packages after everything using them
TEARDOWN_ORDER = (
    ResourceKind.DEV_SERVER,
    ResourceKind.SUPERVISOR_JOB,
    ResourceKind.NGINX_SITE,
    ResourceKind.DATABASE,
    ResourceKind.DB_USER,
    ResourceKind.SQLITE_DB,
    ResourceKind.VENV,
    ResourceKind.LOG_DIR,
    ResourceKind.SYSTEM_PACKAGE,
)

_VERBS = {
    ResourceKind.DEV_SERVER: "stop",
    ResourceKind.DATABASE: "drop",
    ResourceKind.DB_USER: "drop",
    ResourceKind.SYSTEM_PACKAGE: "uninstall",
}


def _paths(entry: StateEntry, *names: str) -> list[Path]:
    found = []
    for name in names:
        value = entry.params.get(name)
        if isinstance(value, list):
            found += [Path(v) for v in value]
        elif value:
            found.append(Path(value))
    return found


def _pid(entry: StateEntry) -> int:
    try:
        return int(entry.params.get("pid", 0))
    except (TypeError, ValueError):
        return 0


def _supervisor_action(entry: StateEntry, adapter: PlatformAdapter) -> Action:
    return CompositeAction(
        [
            CommandAction(adapter.supervisorctl_command("stop", f"{entry.identifier}:"), check=False),
            RemovePathsAction(_paths(entry, "links"), privileged=adapter.needs_privilege),
            RemovePathsAction(_paths(entry, "rendered")),
            CommandAction(adapter.supervisorctl_command("reread"), check=False),
            CommandAction(adapter.supervisorctl_command("update"), check=False),
        ],
        removes=entry.key,
    )


def _nginx_action(entry: StateEntry, adapter: PlatformAdapter) -> Action:
    return CompositeAction(
        [
            RemovePathsAction(_paths(entry, "links"), privileged=adapter.needs_privilege),
            RemovePathsAction(_paths(entry, "rendered")),
            CommandAction(adapter.nginx_test_command(), check=False),
            CommandAction(adapter.restart_service_command("nginx"), check=False),
        ],
        removes=entry.key,
    )


def teardown_action(
    entry: StateEntry, adapter: PlatformAdapter, layout: ProjectLayout
) -> Action:
    """The action that removes exactly the resource entry describes."""
    kind = entry.kind
    if kind is ResourceKind.DEV_SERVER:
        return StopProcessAction(_pid(entry), process_marker(entry), removes=entry.key)
    if kind is ResourceKind.SUPERVISOR_JOB:
        return _supervisor_action(entry, adapter)
    if kind is ResourceKind.NGINX_SITE:
        return _nginx_action(entry, adapter)
    if kind is ResourceKind.DATABASE:
        return drop_database_action(entry.identifier, removes=entry.key)
    if kind is ResourceKind.DB_USER:
        return drop_role_action(entry.identifier, removes=entry.key)
    if kind is ResourceKind.SQLITE_DB:
        paths = _paths(entry, "path") or [layout.root / entry.identifier]
        return RemovePathsAction(paths, removes=entry.key)
    if kind is ResourceKind.VENV:
        paths = _paths(entry, "path") or [layout.root / entry.identifier]
        return RemovePathsAction(paths, removes=entry.key)
    if kind is ResourceKind.LOG_DIR:
        paths = _paths(entry, "path") or [Path(entry.identifier)]
        return RemovePathsAction(paths, privileged=adapter.needs_privilege, removes=entry.key)
    if kind is ResourceKind.SYSTEM_PACKAGE:
        return CommandAction(
            adapter.uninstall_package_command(entry.identifier),
            destructive=True,
            removes=entry.key,
        )
    raise ValueError(f"No teardown for resource kind '{kind.value}'")


def _step_id(entry: StateEntry, duplicated: bool) -> str:
    verb = _VERBS.get(entry.kind, "remove")
    base = f"{verb}-{entry.kind.value.replace('_', '-')}"
    if entry.kind is ResourceKind.SYSTEM_PACKAGE:
        return f"{verb}-{entry.identifier}"
    if duplicated:
        return f"{base}-{entry.identifier}"
    return base


def _order(entries: Iterable[StateEntry]) -> list[StateEntry]:
    rank = {kind: i for i, kind in enumerate(TEARDOWN_ORDER)}
    return sorted(entries, key=lambda e: rank[e.kind])


def build_teardown(
    entries: Iterable[StateEntry],
    confirmations: Mapping[ResourceKind, bool],
    config: Configuration,
    adapter: PlatformAdapter,
    layout: ProjectLayout | None = None,
) -> Plan:
    """Produce teardown Steps for the confirmed subset of recorded resources.

    Args:
        entries: Active StateStore entries
        confirmations: Per-kind consent; a missing kind means keep

    Returns:
        Plan whose ``kept`` lists every entry left in place
    """
    layout = layout or project_layout(config)
    ordered = _order(entries)
    counts = Counter(e.kind for e in ordered)

    steps: list[Step] = []
    kept: list[StateEntry] = []
    for entry in ordered:
        if not confirmations.get(entry.kind, False):
            kept.append(entry)
            continue
        timeout = INSTALL_TIMEOUT if entry.kind is ResourceKind.SYSTEM_PACKAGE else SETUP_TIMEOUT
        steps.append(
            Step(
                id=_step_id(entry, counts[entry.kind] > 1),
                description=f"Remove {entry.kind.value.replace('_', ' ')} '{entry.identifier}'",
                action=teardown_action(entry, adapter, layout),
                idempotency_key=entry.key,
                retry=RetryPolicy(timeout=timeout),
                criticality=Criticality.WARN,
            )
        )

    warnings = []
    if kept:
        warnings.append(f"{len(kept)} recorded resource(s) kept without confirmation")
    _logging.debug(f"Teardown plan: {[s.id for s in steps]}, kept {[e.key for e in kept]}")
    return Plan(title="uninstall", steps=tuple(steps), warnings=tuple(warnings), kept=tuple(kept))


__all__ = [
    "TEARDOWN_ORDER",
    "teardown_action",
    "build_teardown",
]
