"""Durable ledger of resources the provisioner created.

The ledger is an append-only JSON Lines file. ``record`` appends a
``record`` event, ``remove`` appends a ``remove`` event; nothing is ever
rewritten, so the full history stays auditable. Every append is flushed
and fsynced before returning.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List

from .errors import ProvisionError

_logging = logging.getLogger(__name__)


class Tier(Enum):
    PROJECT = "project"
    SYSTEM = "system"


class ResourceKind(Enum):
    VENV = "venv"
    SQLITE_DB = "sqlite_db"
    DATABASE = "database"
    DB_USER = "db_user"
    NGINX_SITE = "nginx_site"
    SUPERVISOR_JOB = "supervisor_job"
    LOG_DIR = "log_dir"
    DEV_SERVER = "dev_server"
    SYSTEM_PACKAGE = "system_package"

    @property
    def tier(self) -> Tier:
        if self is ResourceKind.SYSTEM_PACKAGE:
            return Tier.SYSTEM
        return Tier.PROJECT


class StateStoreError(ProvisionError):
    """The ledger file is unreadable or corrupt."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class StateEntry:
    kind: ResourceKind
    identifier: str
    created_at: str = field(default_factory=_now)
    params: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.identifier}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "identifier": self.identifier,
            "created_at": self.created_at,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateEntry":
        return cls(
            kind=ResourceKind(data["kind"]),
            identifier=data["identifier"],
            created_at=data.get("created_at", ""),
            params=dict(data.get("params") or {}),
        )


class StateStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def record(self, entry: StateEntry) -> None:
        """Append a provisioned resource. A later record with the same key supersedes."""
        self._append({"op": "record", "at": _now(), "entry": entry.to_dict()})
        _logging.debug(f"State recorded: {entry.key}")

    def remove(self, key: str) -> None:
        """Mark a resource as torn down. History is kept."""
        self._append({"op": "remove", "at": _now(), "key": key})
        _logging.debug(f"State removed: {key}")

    def history(self) -> List[dict[str, Any]]:
        return list(self._events())

    def list(self) -> List[StateEntry]:
        """Return active entries in creation order."""
        active: dict[str, StateEntry] = {}
        for event in self._events():
            if event["op"] == "record":
                entry = StateEntry.from_dict(event["entry"])
                active.pop(entry.key, None)
                active[entry.key] = entry
            elif event["op"] == "remove":
                active.pop(event["key"], None)
        return list(active.values())

    def get(self, key: str) -> StateEntry | None:
        return next((e for e in self.list() if e.key == key), None)

    def has(self, kind: ResourceKind, identifier: str | None = None) -> bool:
        return any(
            e.kind is kind and (identifier is None or e.identifier == identifier)
            for e in self.list()
        )

    def _append(self, event: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._drop_torn_tail()
        line = json.dumps(event, sort_keys=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _drop_torn_tail(self) -> None:
        """Cut an incomplete last line left by a crash so the next event starts clean."""
        if not self.path.exists():
            return
        with open(self.path, "r+b") as f:
            data = f.read()
            if not data or data.endswith(b"\n"):
                return
            keep = data.rfind(b"\n") + 1
            try:
                json.loads(data[keep:])
            except ValueError:
                _logging.warning(f"Discarding incomplete last line in {self.path}")
                f.truncate(keep)
            else:
                f.write(b"\n")
            f.flush()
            os.fsync(f.fileno())

    def _events(self):
        if not self.path.exists():
            return
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StateStoreError(f"Cannot read state file {self.path}: {e}") from e

        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as e:
                # A crash mid-append can leave a torn final line
                if lineno == len(lines):
                    _logging.warning(f"Ignoring incomplete last line in {self.path}")
                    return
                raise StateStoreError(
                    f"Corrupt state file {self.path} at line {lineno}: {e.msg}"
                ) from e
            if event.get("op") not in ("record", "remove"):
                raise StateStoreError(
                    f"Corrupt state file {self.path} at line {lineno}: unknown op"
                )
            yield event


__all__ = [
    "Tier",
    "ResourceKind",
    "StateEntry",
    "StateStore",
    "StateStoreError",
]
