"""VM lifecycle orchestration and state reconciliation for openindiana-up."""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openindiana_up.config import merge_overrides
from openindiana_up.constants import GRACE_PERIOD, RESTART_DELAY, STATUS_RUNNING, STATUS_STOPPED
from openindiana_up.database import VirtualMachine
from openindiana_up.exceptions import ConfigError, ManagerError, PersistenceError, TerminationError, VmNotFoundError
from openindiana_up.models import BootSource, LaunchConfig
from openindiana_up.network import ensure_bridge
from openindiana_up.process import LaunchedProcess, ProcessSupervisor
from openindiana_up.provision import ensure_disk_image, fetch_boot_media, iso_filename
from openindiana_up.qemu import build_qemu_args
from openindiana_up.repository import IVMRepository
from openindiana_up.utils import canonical_path, generate_vm_name, log, random_mac


class LifecycleController:
    """Create, start, stop and track guests.

    Every operation resolves its target by name or id through ``repo``; the
    only handle on a running guest is the pid stored in its record.
    """

    def __init__(
        self,
        repo: IVMRepository,
        supervisor: ProcessSupervisor,
        grace_period: float = GRACE_PERIOD,
        restart_delay: float = RESTART_DELAY,
        user_defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.repo = repo
        self.supervisor = supervisor
        self.grace_period = grace_period
        self.restart_delay = restart_delay
        self.user_defaults = user_defaults if user_defaults is not None else {}

    def _get(self, name_or_id: str) -> VirtualMachine:
        vm = self.repo.find(name_or_id)
        if vm is None:
            raise VmNotFoundError(f"Virtual machine with name or ID {name_or_id} not found.")
        return vm

    # ------------------------------------------------------------------
    # Create and launch
    # ------------------------------------------------------------------

    def _resolve_boot_media(
        self, config: LaunchConfig, source: BootSource, output: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        if source.kind == "path":
            if not Path(source.value).expanduser().exists():
                raise ConfigError(f"Boot media not found: {source.value}")
            return canonical_path(source.value), None
        iso = fetch_boot_media(source.value, output=output, drive_path=config.drive_path)
        if iso is None:
            return None, source.version
        return canonical_path(str(iso)), source.version

    def _pick_name(self, config: LaunchConfig) -> str:
        if config.name:
            if self.repo.find(config.name) is not None:
                raise ConfigError(f"A virtual machine named {config.name} already exists")
            return config.name
        return generate_vm_name(self.repo.names())

    def plan(self, config: LaunchConfig, source: BootSource, output: Optional[str] = None) -> List[str]:
        """The argv ``create`` would run, with no side effects."""
        if source.kind == "path":
            iso_path: Optional[str] = source.value
        else:
            iso_path = output or iso_filename(source.value)
        return build_qemu_args(config, iso_path, random_mac())

    def create(self, config: LaunchConfig, source: BootSource, output: Optional[str] = None) -> int:
        """Provision, launch and record a new guest.

        Returns 0 once a detached guest is running, otherwise the exit code of
        the attached hypervisor.
        """
        name = self._pick_name(config)

        if config.bridge:
            ensure_bridge(config.bridge)

        iso_path, version = self._resolve_boot_media(config, source, output)

        if config.drive_path:
            ensure_disk_image(config.drive_path, config.disk_format, config.disk_size)
            config = replace(config, drive_path=canonical_path(config.drive_path))

        mac_address = random_mac()
        argv = build_qemu_args(config, iso_path, mac_address)
        launched = self.supervisor.launch(argv, name, config.detach)

        vm = VirtualMachine(
            id=uuid.uuid4().hex,
            name=name,
            mac_address=mac_address,
            cpu=config.cpu,
            cpus=config.cpus,
            memory=config.memory,
            disk_size=config.disk_size,
            disk_format=config.disk_format,
            drive_path=config.drive_path,
            iso_path=iso_path,
            bridge=config.bridge,
            port_forward=config.port_forward_spec,
            version=version,
            status=STATUS_RUNNING,
            pid=launched.pid,
        )
        try:
            self.repo.create(vm)
        except PersistenceError:
            log("ERROR", f"Hypervisor is running untracked as PID {launched.pid}; stop it manually")
            raise

        return self._after_launch(vm, launched)

    def _after_launch(self, vm: VirtualMachine, launched: LaunchedProcess) -> int:
        if launched.detached:
            log("SUCCESS", f"Virtual machine {vm.name} started in background (PID: {launched.pid})")
            log("INFO", f"Logs will be written to: {launched.log_path}")
            return 0

        log("INFO", f"Virtual machine {vm.name} running (PID: {launched.pid})")
        returncode = self.supervisor.wait(launched)
        self.repo.update(vm, status=STATUS_STOPPED)
        if returncode != 0:
            log("WARN", f"Virtual machine {vm.name} exited with status {returncode}")
        return returncode

    # ------------------------------------------------------------------
    # Existing records
    # ------------------------------------------------------------------

    def _relaunch(self, vm: VirtualMachine, config: LaunchConfig) -> int:
        if vm.bridge:
            ensure_bridge(vm.bridge)
        argv = build_qemu_args(config, vm.iso_path, vm.mac_address)
        launched = self.supervisor.launch(argv, vm.name, config.detach)
        self.repo.update(
            vm,
            status=STATUS_RUNNING,
            pid=launched.pid,
            cpu=config.cpu,
            cpus=config.cpus,
            memory=config.memory,
            port_forward=config.port_forward_spec,
        )
        return self._after_launch(vm, launched)

    def start(
        self,
        name_or_id: str,
        cpu: Optional[str] = None,
        cpus: Optional[int] = None,
        memory: Optional[str] = None,
        port_forward: Optional[str] = None,
        detach: bool = False,
    ) -> int:
        vm = self.reconcile(self._get(name_or_id))
        if vm.status == STATUS_RUNNING:
            raise ManagerError(f"Virtual machine {vm.name} is already running (PID: {vm.pid})")

        log("INFO", f"Starting virtual machine {vm.name} (ID: {vm.id})...")
        config = merge_overrides(
            vm, cpu=cpu, cpus=cpus, memory=memory, port_forward=port_forward,
            detach=detach, user_defaults=self.user_defaults,
        )
        return self._relaunch(vm, config)

    def stop(self, name_or_id: str) -> VirtualMachine:
        vm = self._get(name_or_id)
        if vm.status != STATUS_RUNNING:
            log("INFO", f"Virtual machine {vm.name} is already stopped.")
            return vm
        if vm.pid is None or not self.supervisor.is_alive(vm.pid):
            log("INFO", f"Virtual machine {vm.name} is no longer running; marking it stopped.")
            return self.repo.update(vm, status=STATUS_STOPPED)

        log("INFO", f"Stopping virtual machine {vm.name} (ID: {vm.id})...")
        if not self.supervisor.terminate(vm.pid, use_sudo=bool(vm.bridge), grace_period=self.grace_period):
            raise TerminationError(f"Failed to stop virtual machine {vm.name} (PID: {vm.pid}).")

        vm = self.repo.update(vm, status=STATUS_STOPPED)
        log("SUCCESS", f"Virtual machine {vm.name} stopped.")
        return vm

    def restart(
        self,
        name_or_id: str,
        cpu: Optional[str] = None,
        cpus: Optional[int] = None,
        memory: Optional[str] = None,
        port_forward: Optional[str] = None,
    ) -> int:
        """Stop, pause, then relaunch detached.

        A guest that survives termination is left running and tracked; no
        second hypervisor is spawned over it.
        """
        vm = self.stop(name_or_id)

        time.sleep(self.restart_delay)

        config = merge_overrides(
            vm, cpu=cpu, cpus=cpus, memory=memory, port_forward=port_forward,
            detach=True, user_defaults=self.user_defaults,
        )
        return self._relaunch(vm, config)

    def inspect(self, name_or_id: str) -> VirtualMachine:
        return self.reconcile(self._get(name_or_id))

    def remove(self, name_or_id: str) -> VirtualMachine:
        """Delete the record only; a running guest keeps running."""
        vm = self._get(name_or_id)
        log("INFO", f"Removing virtual machine {vm.name} (ID: {vm.id})...")
        self.repo.delete(vm)
        return vm

    def list(self, show_all: bool = False) -> List[VirtualMachine]:
        vms = [self.reconcile(vm) for vm in self.repo.list()]
        if show_all:
            return vms
        return [vm for vm in vms if vm.status == STATUS_RUNNING]

    def logs(self, name_or_id: str, follow: bool = False) -> int:
        vm = self._get(name_or_id)
        return self.supervisor.view_log(vm.name, follow)

    def reconcile(self, vm: VirtualMachine) -> VirtualMachine:
        """Mark a RUNNING record STOPPED when its process is gone."""
        if vm.status == STATUS_RUNNING and not self.supervisor.is_alive(vm.pid):
            log("DEBUG", f"PID {vm.pid} of {vm.name} is gone; marking it stopped")
            return self.repo.update(vm, status=STATUS_STOPPED)
        return vm
