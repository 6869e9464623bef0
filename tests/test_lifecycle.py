"""Tests for openindiana_up.lifecycle module."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from openindiana_up.constants import STATUS_RUNNING, STATUS_STOPPED
from openindiana_up.exceptions import (
    ConfigError,
    ManagerError,
    PersistenceError,
    SpawnError,
    TerminationError,
    VmNotFoundError,
)
from openindiana_up.lifecycle import LifecycleController
from openindiana_up.models import BootSource, PortForward
from openindiana_up.process import LaunchedProcess, ProcessSupervisor

MAC = "52:54:00:12:34:56"
DEFAULT_URL = "https://dlc.openindiana.org/isos/hipster/20251026/OI-hipster-text-20251026.iso"


@pytest.fixture(autouse=True)
def host_side_effects():
    with patch("openindiana_up.config.kvm_available", return_value=True), \
         patch("openindiana_up.lifecycle.ensure_bridge") as mock_bridge, \
         patch("openindiana_up.lifecycle.random_mac", return_value=MAC):
        yield mock_bridge


@pytest.fixture
def supervisor() -> MagicMock:
    sup = MagicMock(spec=ProcessSupervisor)
    sup.is_alive.return_value = True
    sup.terminate.return_value = True
    sup.wait.return_value = 0
    return sup


@pytest.fixture
def controller(repo, supervisor) -> LifecycleController:
    return LifecycleController(repo, supervisor, grace_period=0, restart_delay=0, user_defaults={})


@pytest.fixture
def iso(tmp_path) -> Path:
    path = tmp_path / "isos" / "oi.iso"
    path.parent.mkdir()
    path.write_bytes(b"iso")
    return path


def _launched(pid: int = 4321, detached: bool = True) -> LaunchedProcess:
    return LaunchedProcess(pid=pid, process=MagicMock(), detached=detached, log_path=Path("/tmp/vm.log"))


def _launched_argv(supervisor: MagicMock) -> list:
    return supervisor.launch.call_args[0][0]


class TestCreate:
    def test_detached_with_local_iso(self, controller, supervisor, repo, launch_config, iso):
        supervisor.launch.return_value = _launched()
        config = replace(launch_config, detach=True, name="calm-otter")

        assert controller.create(config, BootSource("path", str(iso))) == 0

        vm = repo.find("calm-otter")
        assert vm.status == STATUS_RUNNING
        assert vm.pid == 4321
        assert vm.mac_address == MAC
        assert vm.iso_path == str(iso.resolve())
        assert vm.drive_path is None
        assert vm.bridge is None
        assert vm.version is None
        argv = _launched_argv(supervisor)
        assert argv[argv.index("-cdrom") + 1] == str(iso.resolve())
        assert f"e1000,netdev=net0,mac={MAC}" in argv
        assert supervisor.launch.call_args[0][1:] == ("calm-otter", True)

    def test_relative_paths_stored_canonical(self, controller, supervisor, repo, launch_config, iso, monkeypatch):
        monkeypatch.chdir(iso.parent)
        supervisor.launch.return_value = _launched()
        config = replace(launch_config, detach=True, name="calm-otter", drive_path="disk.img")

        with patch(
            "openindiana_up.lifecycle.ensure_disk_image",
            side_effect=lambda path, fmt, size: Path(path).touch() or True,
        ) as mock_disk:
            controller.create(config, BootSource("path", "oi.iso"))

        mock_disk.assert_called_once_with("disk.img", "raw", "20G")
        vm = repo.find("calm-otter")
        assert vm.iso_path == str(iso.resolve())
        assert vm.drive_path == str((iso.parent / "disk.img").resolve())
        assert f"file={vm.drive_path},format=raw,if=none,id=disk0" in _launched_argv(supervisor)

    def test_default_version_downloads_media(self, controller, supervisor, repo, launch_config, iso):
        supervisor.launch.return_value = _launched()
        config = replace(launch_config, detach=True, name="calm-otter")

        with patch("openindiana_up.lifecycle.fetch_boot_media", return_value=iso) as mock_fetch:
            controller.create(config, BootSource("version", DEFAULT_URL, "20251026"), output=str(iso))

        mock_fetch.assert_called_once_with(DEFAULT_URL, output=str(iso), drive_path=None)
        vm = repo.find("calm-otter")
        assert vm.version == "20251026"
        assert vm.iso_path == str(iso.resolve())

    def test_non_empty_drive_boots_without_media(self, controller, supervisor, repo, launch_config, tmp_path):
        drive = tmp_path / "disk.img"
        drive.write_bytes(b"installed")
        supervisor.launch.return_value = _launched()
        config = replace(launch_config, detach=True, name="calm-otter", drive_path=str(drive))

        with patch("openindiana_up.lifecycle.fetch_boot_media", return_value=None), \
             patch("openindiana_up.lifecycle.ensure_disk_image", return_value=False):
            controller.create(config, BootSource("version", DEFAULT_URL, "20251026"))

        assert "-cdrom" not in _launched_argv(supervisor)
        assert repo.find("calm-otter").iso_path is None

    def test_generated_name(self, controller, supervisor, repo, launch_config, iso):
        supervisor.launch.return_value = _launched()
        controller.create(replace(launch_config, detach=True), BootSource("path", str(iso)))
        (vm,) = repo.list()
        assert "-" in vm.name

    def test_bridged_provisions_bridge(self, controller, supervisor, repo, launch_config, iso, host_side_effects):
        supervisor.launch.return_value = _launched()
        config = replace(launch_config, detach=True, name="calm-otter", bridge="br0")

        controller.create(config, BootSource("path", str(iso)))

        host_side_effects.assert_called_once_with("br0")
        assert _launched_argv(supervisor)[0] == "sudo"
        assert repo.find("calm-otter").bridge == "br0"

    def test_port_forwards_persisted(self, controller, supervisor, repo, launch_config, iso):
        supervisor.launch.return_value = _launched()
        config = replace(
            launch_config, detach=True, name="calm-otter",
            port_forwards=[PortForward(2222, 22), PortForward(8080, 80)],
        )
        controller.create(config, BootSource("path", str(iso)))
        assert repo.find("calm-otter").port_forward == "2222:22,8080:80"

    def test_attached_marks_stopped_on_exit(self, controller, supervisor, repo, launch_config, iso):
        supervisor.launch.return_value = _launched(detached=False)
        supervisor.wait.return_value = 3

        assert controller.create(replace(launch_config, name="calm-otter"), BootSource("path", str(iso))) == 3

        vm = repo.find("calm-otter")
        assert vm.status == STATUS_STOPPED
        assert vm.pid == 4321

    def test_missing_local_media(self, controller, supervisor, launch_config, tmp_path):
        with pytest.raises(ConfigError, match="Boot media not found"):
            controller.create(launch_config, BootSource("path", str(tmp_path / "nope.iso")))
        supervisor.launch.assert_not_called()

    def test_duplicate_name_rejected_before_launch(self, controller, supervisor, make_vm, launch_config, iso):
        make_vm(name="calm-otter")
        with pytest.raises(ConfigError, match="already exists"):
            controller.create(replace(launch_config, name="calm-otter"), BootSource("path", str(iso)))
        supervisor.launch.assert_not_called()

    def test_duplicate_name_rejected_before_provisioning(
        self, controller, supervisor, make_vm, launch_config, host_side_effects, tmp_path
    ):
        make_vm(name="calm-otter")
        config = replace(launch_config, name="calm-otter", bridge="br0", drive_path=str(tmp_path / "disk.img"))

        with patch("openindiana_up.lifecycle.fetch_boot_media") as mock_fetch, \
             patch("openindiana_up.lifecycle.ensure_disk_image") as mock_disk:
            with pytest.raises(ConfigError, match="already exists"):
                controller.create(config, BootSource("version", DEFAULT_URL, "20251026"))

        host_side_effects.assert_not_called()
        mock_fetch.assert_not_called()
        mock_disk.assert_not_called()
        supervisor.launch.assert_not_called()
        assert not (tmp_path / "disk.img").exists()

    def test_persistence_failure_reports_leaked_pid(self, controller, supervisor, repo, launch_config, iso, capsys):
        supervisor.launch.return_value = _launched()
        with patch.object(repo, "create", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                controller.create(replace(launch_config, detach=True), BootSource("path", str(iso)))
        assert "PID 4321" in capsys.readouterr().out


class TestPlan:
    def test_no_side_effects(self, controller, supervisor, repo, launch_config):
        with patch("openindiana_up.lifecycle.fetch_boot_media") as mock_fetch:
            argv = controller.plan(launch_config, BootSource("version", DEFAULT_URL, "20251026"))
        assert argv[argv.index("-cdrom") + 1] == "OI-hipster-text-20251026.iso"
        mock_fetch.assert_not_called()
        supervisor.launch.assert_not_called()
        assert repo.list() == []


class TestStop:
    def test_stop_running(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)

        vm = controller.stop("calm-otter")

        supervisor.terminate.assert_called_once_with(4321, use_sudo=False, grace_period=0)
        assert vm.status == STATUS_STOPPED
        assert repo.find("calm-otter").status == STATUS_STOPPED

    def test_bridged_uses_privilege_wrapper(self, controller, supervisor, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321, bridge="br0")
        controller.stop("calm-otter")
        assert supervisor.terminate.call_args[1]["use_sudo"] is True

    def test_survivor_is_not_marked_stopped(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.terminate.return_value = False

        with pytest.raises(TerminationError, match="4321"):
            controller.stop("calm-otter")

        assert repo.find("calm-otter").status == STATUS_RUNNING

    def test_dead_pid_marked_stopped(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.is_alive.return_value = False

        controller.stop("calm-otter")

        supervisor.terminate.assert_not_called()
        assert repo.find("calm-otter").status == STATUS_STOPPED

    def test_already_stopped(self, controller, supervisor, make_vm):
        make_vm(name="calm-otter")
        assert controller.stop("calm-otter").status == STATUS_STOPPED
        supervisor.terminate.assert_not_called()

    def test_unknown(self, controller):
        with pytest.raises(VmNotFoundError, match="nope"):
            controller.stop("nope")


class TestStart:
    def test_rebuilds_same_identity(self, controller, supervisor, repo, make_vm, iso):
        vm = make_vm(
            name="calm-otter", mac_address="52:54:00:ab:cd:ef", iso_path=str(iso),
            port_forward="8080:80", pid=111,
        )
        supervisor.launch.return_value = _launched(pid=555)

        assert controller.start(vm.id, detach=True) == 0

        argv = _launched_argv(supervisor)
        assert "e1000,netdev=net0,mac=52:54:00:ab:cd:ef" in argv
        assert "user,id=net0,hostfwd=tcp::8080-:80" in argv
        assert argv[argv.index("-cdrom") + 1] == str(iso)
        stored = repo.find("calm-otter")
        assert (stored.status, stored.pid) == (STATUS_RUNNING, 555)

    def test_overrides_persisted(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter")
        supervisor.launch.return_value = _launched(pid=555)

        controller.start("calm-otter", cpus=4, memory="8G", detach=True)

        argv = _launched_argv(supervisor)
        assert argv[argv.index("-smp") + 1] == "4"
        assert argv[argv.index("-m") + 1] == "8G"
        stored = repo.find("calm-otter")
        assert (stored.cpus, stored.memory) == (4, "8G")

    def test_bridged_start_checks_bridge(self, controller, supervisor, make_vm, host_side_effects):
        make_vm(name="calm-otter", bridge="br0")
        supervisor.launch.return_value = _launched()
        controller.start("calm-otter", detach=True)
        host_side_effects.assert_called_once_with("br0")
        assert _launched_argv(supervisor)[:2] == ["sudo", "qemu-system-x86_64"]

    def test_already_running(self, controller, supervisor, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        with pytest.raises(ManagerError, match="already running"):
            controller.start("calm-otter")
        supervisor.launch.assert_not_called()

    def test_stale_running_record_can_start(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.is_alive.return_value = False
        supervisor.launch.return_value = _launched(pid=555)

        controller.start("calm-otter", detach=True)

        assert repo.find("calm-otter").pid == 555

    def test_attached_start_waits(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter")
        supervisor.launch.return_value = _launched(pid=555, detached=False)

        assert controller.start("calm-otter") == 0

        supervisor.wait.assert_called_once()
        assert repo.find("calm-otter").status == STATUS_STOPPED

    def test_spawn_failure_leaves_record(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", pid=111)
        supervisor.launch.side_effect = SpawnError("Hypervisor binary not found")

        with pytest.raises(SpawnError):
            controller.start("calm-otter", detach=True)

        stored = repo.find("calm-otter")
        assert (stored.status, stored.pid) == (STATUS_STOPPED, 111)

    def test_unknown(self, controller):
        with pytest.raises(VmNotFoundError):
            controller.start("nope")


class TestRestart:
    def test_stop_then_detached_start(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.launch.return_value = _launched(pid=555)

        with patch("openindiana_up.lifecycle.time.sleep") as mock_sleep:
            assert controller.restart("calm-otter", memory="4G") == 0

        supervisor.terminate.assert_called_once()
        mock_sleep.assert_called_once_with(0)
        assert supervisor.launch.call_args[0][2] is True
        stored = repo.find("calm-otter")
        assert (stored.status, stored.pid, stored.memory) == (STATUS_RUNNING, 555, "4G")

    def test_survivor_is_not_relaunched(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.terminate.return_value = False
        supervisor.launch.return_value = _launched(pid=555)

        with patch("openindiana_up.lifecycle.time.sleep") as mock_sleep:
            with pytest.raises(TerminationError):
                controller.restart("calm-otter")

        supervisor.launch.assert_not_called()
        mock_sleep.assert_not_called()
        stored = repo.find("calm-otter")
        assert (stored.status, stored.pid) == (STATUS_RUNNING, 4321)


class TestQueries:
    def test_inspect_by_name_or_id(self, controller, make_vm):
        vm = make_vm(name="calm-otter")
        assert controller.inspect("calm-otter") is controller.inspect(vm.id)

    def test_inspect_reconciles(self, controller, supervisor, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.is_alive.return_value = False
        assert controller.inspect("calm-otter").status == STATUS_STOPPED

    def test_list_running_only(self, controller, supervisor, make_vm):
        make_vm(name="alive", status=STATUS_RUNNING, pid=100)
        make_vm(name="dead", status=STATUS_RUNNING, pid=200)
        make_vm(name="stopped")
        supervisor.is_alive.side_effect = lambda pid: pid == 100

        assert [vm.name for vm in controller.list()] == ["alive"]
        everything = {vm.name: vm.status for vm in controller.list(show_all=True)}
        assert everything == {"alive": STATUS_RUNNING, "dead": STATUS_STOPPED, "stopped": STATUS_STOPPED}

    def test_logs_by_id(self, controller, supervisor, make_vm):
        vm = make_vm(name="calm-otter")
        supervisor.view_log.return_value = 0
        assert controller.logs(vm.id, follow=True) == 0
        supervisor.view_log.assert_called_once_with("calm-otter", True)


class TestRemove:
    def test_removes_without_liveness_check(self, controller, supervisor, repo, make_vm):
        make_vm(name="calm-otter", status=STATUS_RUNNING, pid=4321)
        supervisor.is_alive.reset_mock()

        controller.remove("calm-otter")

        assert repo.find("calm-otter") is None
        supervisor.is_alive.assert_not_called()
        supervisor.terminate.assert_not_called()
        with pytest.raises(VmNotFoundError):
            controller.inspect("calm-otter")

    def test_unknown(self, controller):
        with pytest.raises(VmNotFoundError, match="not found"):
            controller.remove("nonexistent")
