"""Platform adapters: package managers, service managers and config locations."""

import logging
import os
import shlex
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import PrerequisiteError
from .execution import QUICK_TIMEOUT

_logging = logging.getLogger(__name__)

Command = str | list[str]


class PlatformAdapter(ABC):
    """Host-specific commands and paths, selected once at startup."""

    name: str = ""
    package_manager: str = ""
    # System config directories need sudo unless running as root
    needs_privilege: bool = False

    # Package names per capability
    packages: dict[str, list[str]] = {}

    def __init__(self, is_root: bool | None = None):
        if is_root is None:
            is_root = hasattr(os, "geteuid") and os.geteuid() == 0
        self.is_root = is_root

    def privileged(self, command: list[str]) -> list[str]:
        return list(command)

    def package_names(self, capability: str) -> list[str]:
        return self.packages.get(capability, [capability])

    @abstractmethod
    def install_package_command(self, capability: str) -> Command: ...

    @abstractmethod
    def uninstall_package_command(self, capability: str) -> Command: ...

    @abstractmethod
    def start_service_command(self, service: str) -> Command: ...

    @abstractmethod
    def restart_service_command(self, service: str) -> Command: ...

    @abstractmethod
    def stop_service_command(self, service: str) -> Command: ...

    @abstractmethod
    def service_status_command(self, service: str) -> Command: ...

    @abstractmethod
    def psql_command(self, *args: str) -> list[str]: ...

    @property
    @abstractmethod
    def log_dir(self) -> Path: ...

    @property
    @abstractmethod
    def nginx_site_links(self) -> list[Path]: ...

    @property
    @abstractmethod
    def supervisor_links(self) -> list[Path]: ...

    @property
    def nginx_main_conf(self) -> Path | None:
        return None

    @property
    def service_user(self) -> str:
        return os.environ.get("SUDO_USER") or os.environ.get("USER") or "radio"

    def initdb_command(self) -> Command | None:
        return None

    def nginx_test_command(self) -> list[str]:
        return self.privileged(["nginx", "-t"])

    def supervisorctl_command(self, *args: str) -> list[str]:
        return self.privileged(["supervisorctl", *args])

    def is_service_running(self, service: str) -> bool:
        """Check service state synchronously. Errors count as not running."""
        command = self.service_status_command(service)
        try:
            result = subprocess.run(
                command,
                shell=isinstance(command, str),
                capture_output=True,
                text=True,
                timeout=QUICK_TIMEOUT,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            _logging.debug(f"Service status check for {service} failed: {e}")
            return False
        return self.parse_service_status(service, result.returncode, result.stdout)

    def parse_service_status(self, service: str, returncode: int, output: str) -> bool:
        return returncode == 0


class LinuxSystemdAdapter(PlatformAdapter):
    name = "linux-systemd"
    needs_privilege = True

    _PACKAGES = {
        "apt": {
            "postgresql": ["postgresql", "postgresql-contrib"],
            "nginx": ["nginx"],
            "supervisor": ["supervisor"],
        },
        "dnf": {
            "postgresql": ["postgresql", "postgresql-server", "postgresql-contrib"],
            "nginx": ["nginx"],
            "supervisor": ["supervisor"],
        },
        "yum": {
            "postgresql": ["postgresql", "postgresql-server", "postgresql-contrib"],
            "nginx": ["nginx"],
            "supervisor": ["supervisor"],
        },
    }

    # systemd unit names where they differ from the capability name
    _UNITS = {"supervisor": {"dnf": "supervisord", "yum": "supervisord"}}

    def __init__(self, package_manager: str = "apt", is_root: bool | None = None):
        super().__init__(is_root)
        if package_manager not in self._PACKAGES:
            raise ValueError(f"Unsupported package manager: {package_manager}")
        self.package_manager = package_manager
        self.packages = self._PACKAGES[package_manager]

    def privileged(self, command: list[str]) -> list[str]:
        if self.is_root:
            return list(command)
        return ["sudo", *command]

    def _unit(self, service: str) -> str:
        return self._UNITS.get(service, {}).get(self.package_manager, service)

    def install_package_command(self, capability: str) -> Command:
        names = self.package_names(capability)
        if self.package_manager == "apt":
            update = shlex.join(self.privileged(["apt-get", "update"]))
            install = shlex.join(self.privileged(["apt-get", "install", "-y", *names]))
            return f"{update} && {install}"
        return self.privileged([self.package_manager, "install", "-y", *names])

    def uninstall_package_command(self, capability: str) -> Command:
        names = self.package_names(capability)
        if self.package_manager == "apt":
            return self.privileged(["apt-get", "remove", "-y", *names])
        return self.privileged([self.package_manager, "remove", "-y", *names])

    def start_service_command(self, service: str) -> Command:
        unit = self._unit(service)
        start = shlex.join(self.privileged(["systemctl", "start", unit]))
        enable = shlex.join(self.privileged(["systemctl", "enable", unit]))
        return f"{start} && {enable}"

    def restart_service_command(self, service: str) -> Command:
        return self.privileged(["systemctl", "restart", self._unit(service)])

    def stop_service_command(self, service: str) -> Command:
        return self.privileged(["systemctl", "stop", self._unit(service)])

    def service_status_command(self, service: str) -> Command:
        return ["systemctl", "is-active", "--quiet", self._unit(service)]

    def psql_command(self, *args: str) -> list[str]:
        return ["sudo", "-u", "postgres", "psql", *args]

    def initdb_command(self) -> Command | None:
        if self.package_manager in ("dnf", "yum"):
            return self.privileged(["postgresql-setup", "--initdb"])
        return None

    @property
    def log_dir(self) -> Path:
        return Path("/var/log/trunk-player")

    @property
    def nginx_site_links(self) -> list[Path]:
        if self.package_manager == "apt":
            return [Path("/etc/nginx/sites-enabled/trunk_player")]
        return [Path("/etc/nginx/conf.d/trunk_player.conf")]

    @property
    def supervisor_links(self) -> list[Path]:
        if self.package_manager == "apt":
            return [Path("/etc/supervisor/conf.d/trunk_player.conf")]
        return [Path("/etc/supervisord.d/trunk_player.ini")]


class MacOSHomebrewAdapter(PlatformAdapter):
    name = "macos-homebrew"
    package_manager = "brew"

    packages = {
        "postgresql": ["postgresql"],
        "nginx": ["nginx"],
        "supervisor": ["supervisor"],
    }

    def __init__(self, prefix: Path | None = None, is_root: bool | None = None):
        super().__init__(is_root)
        self.prefix = Path(prefix) if prefix else _brew_prefix()

    def install_package_command(self, capability: str) -> Command:
        return ["brew", "install", *self.package_names(capability)]

    def uninstall_package_command(self, capability: str) -> Command:
        return ["brew", "uninstall", *self.package_names(capability)]

    def start_service_command(self, service: str) -> Command:
        return ["brew", "services", "start", service]

    def restart_service_command(self, service: str) -> Command:
        return ["brew", "services", "restart", service]

    def stop_service_command(self, service: str) -> Command:
        return ["brew", "services", "stop", service]

    def service_status_command(self, service: str) -> Command:
        return ["brew", "services", "list"]

    def parse_service_status(self, service: str, returncode: int, output: str) -> bool:
        if returncode != 0:
            return False
        for line in output.splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0].startswith(service) and fields[1] == "started":
                return True
        return False

    def psql_command(self, *args: str) -> list[str]:
        return ["psql", "postgres", *args]

    @property
    def log_dir(self) -> Path:
        return self.prefix / "var" / "log" / "trunk-player"

    @property
    def nginx_site_links(self) -> list[Path]:
        return [self.prefix / "etc" / "nginx" / "servers" / "trunk_player.conf"]

    @property
    def supervisor_links(self) -> list[Path]:
        conf_dir = self.prefix / "etc" / "supervisor.d"
        return [conf_dir / "trunk_player.conf", conf_dir / "trunk_player.ini"]

    @property
    def nginx_main_conf(self) -> Path | None:
        return self.prefix / "etc" / "nginx" / "nginx.conf"


def _brew_prefix() -> Path:
    try:
        result = subprocess.run(
            ["brew", "--prefix"],
            capture_output=True,
            text=True,
            timeout=QUICK_TIMEOUT,
        )
        if result.returncode == 0 and result.stdout.strip():
            return Path(result.stdout.strip())
    except (subprocess.TimeoutExpired, OSError) as e:
        _logging.debug(f"brew --prefix failed: {e}")
    return Path("/opt/homebrew") if Path("/opt/homebrew").exists() else Path("/usr/local")


def detect_platform() -> PlatformAdapter:
    """Pick the adapter for this host.

    Raises:
        PrerequisiteError: If no supported package manager is found
    """
    if sys.platform == "darwin":
        if shutil.which("brew") is None:
            raise PrerequisiteError("Homebrew is required on macOS (https://brew.sh)")
        return MacOSHomebrewAdapter()

    for manager in ("apt", "dnf", "yum"):
        if shutil.which(manager):
            _logging.debug(f"Detected package manager: {manager}")
            return LinuxSystemdAdapter(manager)

    raise PrerequisiteError("No supported package manager found (apt, dnf or yum)")


__all__ = [
    "Command",
    "PlatformAdapter",
    "LinuxSystemdAdapter",
    "MacOSHomebrewAdapter",
    "detect_platform",
]
