"""Path helpers for a Trunk Player checkout."""

import os
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILENAME = "trunkinstall.json"
STATE_DIRNAME = ".trunkinstall"
STATE_FILENAME = "state.jsonl"

REQUIRED_PROJECT_FILES = ("manage.py", "requirements.txt")

RECORDER_SEARCH_DIRS = (
    "~/trunk-recorder-build",
    "/usr/local/trunk-recorder",
    "/opt/trunk-recorder",
    "~/trunk-recorder",
)


def get_config_path(project_dir: Path) -> Path:
    """Return path to the provisioner config file.

    Priority:
    1. TRUNKINSTALL_CONFIG environment variable (if set)
    2. <project>/trunkinstall.json
    """
    if "TRUNKINSTALL_CONFIG" in os.environ:
        return Path(os.environ["TRUNKINSTALL_CONFIG"])
    return Path(project_dir) / CONFIG_FILENAME


def get_state_path(project_dir: Path, create: bool = False) -> Path:
    """Return path to the state ledger.

    TRUNKINSTALL_STATE overrides the default ``<project>/.trunkinstall/state.jsonl``.

    Args:
        create: If True, create the parent directory
    """
    if "TRUNKINSTALL_STATE" in os.environ:
        state_path = Path(os.environ["TRUNKINSTALL_STATE"])
    else:
        state_path = Path(project_dir) / STATE_DIRNAME / STATE_FILENAME
    if create:
        state_path.parent.mkdir(parents=True, exist_ok=True)
    return state_path


@dataclass(frozen=True)
class ProjectLayout:
    root: Path
    venv_dir: str = "venv"

    @property
    def venv(self) -> Path:
        return self.root / self.venv_dir

    @property
    def venv_python(self) -> Path:
        return self.venv / "bin" / "python"

    @property
    def venv_pip(self) -> Path:
        return self.venv / "bin" / "pip"

    @property
    def manage_py(self) -> Path:
        return self.root / "manage.py"

    @property
    def requirements(self) -> Path:
        return self.root / "requirements.txt"

    @property
    def app_dir(self) -> Path:
        return self.root / "trunk_player"

    @property
    def settings(self) -> Path:
        return self.app_dir / "settings_local.py"

    @property
    def settings_sample(self) -> Path:
        return self.app_dir / "settings_local.py.sample"

    @property
    def nginx_conf(self) -> Path:
        return self.app_dir / "trunk_player.nginx"

    @property
    def nginx_sample(self) -> Path:
        return self.app_dir / "trunk_player.nginx.sample"

    @property
    def supervisor_conf(self) -> Path:
        return self.app_dir / "supervisor.conf"

    @property
    def supervisor_sample(self) -> Path:
        return self.app_dir / "supervisor.conf.sample"

    @property
    def sqlite_db(self) -> Path:
        return self.root / "db.sqlite3"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def static_dir(self) -> Path:
        return self.root / "static"

    @property
    def dev_server_log(self) -> Path:
        return self.logs_dir / "django.log"

    @property
    def requirements_stamp(self) -> Path:
        return self.venv / ".trunkinstall-requirements"

    @property
    def recorder_script(self) -> Path:
        return self.root / "utility" / "trunk-recoder" / "encode-local-sys-0.sh"

    def missing_files(self) -> list[str]:
        return [name for name in REQUIRED_PROJECT_FILES if not (self.root / name).is_file()]


def find_recorder_dir() -> Path | None:
    """Return the first trunk-recorder directory found in the usual locations."""
    for candidate in RECORDER_SEARCH_DIRS:
        path = Path(candidate).expanduser()
        if path.is_dir():
            return path
    return None


__all__ = [
    "CONFIG_FILENAME",
    "REQUIRED_PROJECT_FILES",
    "ProjectLayout",
    "get_config_path",
    "get_state_path",
    "find_recorder_dir",
]
