"""Tests for platform adapters."""

import subprocess
from pathlib import Path

import pytest

from trunkinstall.errors import PrerequisiteError
from trunkinstall.platforms import LinuxSystemdAdapter, MacOSHomebrewAdapter, detect_platform

BREW_SERVICES = """\
Name       Status  User  File
nginx      started radio ~/Library/LaunchAgents/homebrew.mxcl.nginx.plist
postgresql@14 none
supervisor error  256  radio
"""


class TestLinuxSystemdAdapter:
    def test_apt_install_updates_first(self):
        adapter = LinuxSystemdAdapter("apt", is_root=False)

        command = adapter.install_package_command("postgresql")

        assert command == (
            "sudo apt-get update && sudo apt-get install -y postgresql postgresql-contrib"
        )

    def test_dnf_install(self):
        adapter = LinuxSystemdAdapter("dnf", is_root=True)

        assert adapter.install_package_command("nginx") == ["dnf", "install", "-y", "nginx"]
        assert adapter.initdb_command() == ["postgresql-setup", "--initdb"]

    def test_apt_has_no_initdb(self):
        assert LinuxSystemdAdapter("apt", is_root=True).initdb_command() is None

    def test_supervisor_unit_name(self):
        apt = LinuxSystemdAdapter("apt", is_root=True)
        dnf = LinuxSystemdAdapter("dnf", is_root=True)

        assert apt.restart_service_command("supervisor") == ["systemctl", "restart", "supervisor"]
        assert dnf.restart_service_command("supervisor") == ["systemctl", "restart", "supervisord"]

    def test_start_also_enables(self):
        adapter = LinuxSystemdAdapter("apt", is_root=False)

        assert adapter.start_service_command("nginx") == (
            "sudo systemctl start nginx && sudo systemctl enable nginx"
        )

    def test_privileged_as_root(self):
        assert LinuxSystemdAdapter("apt", is_root=True).privileged(["ln", "-s"]) == ["ln", "-s"]

    def test_psql_runs_as_postgres(self):
        adapter = LinuxSystemdAdapter("apt", is_root=True)
        assert adapter.psql_command("-c", "\\q") == ["sudo", "-u", "postgres", "psql", "-c", "\\q"]

    def test_config_locations(self):
        apt = LinuxSystemdAdapter("apt", is_root=True)
        dnf = LinuxSystemdAdapter("dnf", is_root=True)

        assert apt.nginx_site_links == [Path("/etc/nginx/sites-enabled/trunk_player")]
        assert dnf.nginx_site_links == [Path("/etc/nginx/conf.d/trunk_player.conf")]
        assert dnf.supervisor_links == [Path("/etc/supervisord.d/trunk_player.ini")]
        assert apt.log_dir == Path("/var/log/trunk-player")
        assert apt.needs_privilege

    def test_unsupported_manager(self):
        with pytest.raises(ValueError, match="pacman"):
            LinuxSystemdAdapter("pacman")

    def test_service_running(self, mocker):
        mocker.patch(
            "trunkinstall.platforms.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, "", ""),
        )
        assert LinuxSystemdAdapter("apt", is_root=True).is_service_running("nginx")

    def test_service_check_error_means_stopped(self, mocker):
        mocker.patch(
            "trunkinstall.platforms.subprocess.run",
            side_effect=subprocess.TimeoutExpired("systemctl", 10),
        )
        assert not LinuxSystemdAdapter("apt", is_root=True).is_service_running("nginx")


class TestMacOSHomebrewAdapter:
    @pytest.fixture
    def adapter(self, tmp_path):
        return MacOSHomebrewAdapter(prefix=tmp_path, is_root=False)

    def test_commands_are_unprivileged(self, adapter):
        assert adapter.install_package_command("postgresql") == ["brew", "install", "postgresql"]
        assert adapter.start_service_command("nginx") == ["brew", "services", "start", "nginx"]
        assert adapter.privileged(["ln", "-s"]) == ["ln", "-s"]
        assert not adapter.needs_privilege

    def test_paths_under_prefix(self, adapter, tmp_path):
        assert adapter.log_dir == tmp_path / "var" / "log" / "trunk-player"
        assert adapter.nginx_site_links == [tmp_path / "etc" / "nginx" / "servers" / "trunk_player.conf"]
        assert [p.name for p in adapter.supervisor_links] == ["trunk_player.conf", "trunk_player.ini"]
        assert adapter.nginx_main_conf == tmp_path / "etc" / "nginx" / "nginx.conf"

    def test_parse_brew_services(self, adapter):
        assert adapter.parse_service_status("nginx", 0, BREW_SERVICES)
        assert not adapter.parse_service_status("supervisor", 0, BREW_SERVICES)
        assert not adapter.parse_service_status("postgresql", 0, BREW_SERVICES)
        assert not adapter.parse_service_status("nginx", 1, BREW_SERVICES)


class TestDetectPlatform:
    def test_linux_apt(self, mocker):
        mocker.patch("trunkinstall.platforms.sys.platform", "linux")
        mocker.patch(
            "trunkinstall.platforms.shutil.which",
            side_effect=lambda name: "/usr/bin/apt" if name == "apt" else None,
        )

        adapter = detect_platform()

        assert isinstance(adapter, LinuxSystemdAdapter)
        assert adapter.package_manager == "apt"

    def test_linux_dnf(self, mocker):
        mocker.patch("trunkinstall.platforms.sys.platform", "linux")
        mocker.patch(
            "trunkinstall.platforms.shutil.which",
            side_effect=lambda name: "/usr/bin/dnf" if name == "dnf" else None,
        )

        assert detect_platform().package_manager == "dnf"

    def test_no_package_manager(self, mocker):
        mocker.patch("trunkinstall.platforms.sys.platform", "linux")
        mocker.patch("trunkinstall.platforms.shutil.which", return_value=None)

        with pytest.raises(PrerequisiteError, match="apt, dnf or yum"):
            detect_platform()

    def test_macos_requires_homebrew(self, mocker):
        mocker.patch("trunkinstall.platforms.sys.platform", "darwin")
        mocker.patch("trunkinstall.platforms.shutil.which", return_value=None)

        with pytest.raises(PrerequisiteError, match="Homebrew"):
            detect_platform()

    def test_macos(self, mocker, tmp_path):
        mocker.patch("trunkinstall.platforms.sys.platform", "darwin")
        mocker.patch("trunkinstall.platforms.shutil.which", return_value="/opt/homebrew/bin/brew")
        mocker.patch("trunkinstall.platforms._brew_prefix", return_value=tmp_path)

        adapter = detect_platform()

        assert isinstance(adapter, MacOSHomebrewAdapter)
        assert adapter.prefix == tmp_path
