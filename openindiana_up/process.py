"""Hypervisor process supervision for openindiana-up."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from openindiana_up.constants import GRACE_PERIOD, LOGS_DIR, PRIVILEGE_WRAPPER, RUN_DIR, SETTLE_DELAY
from openindiana_up.exceptions import ManagerError, SpawnError
from openindiana_up.qemu import describe_command, uses_privilege_wrapper
from openindiana_up.utils import ensure_directory, log


@dataclass
class LaunchedProcess:
    pid: int
    process: subprocess.Popen
    detached: bool
    log_path: Optional[Path] = None


class ProcessSupervisor:
    """Spawn QEMU attached or detached and manage it later by pid."""

    def __init__(
        self,
        logs_dir: Path = LOGS_DIR,
        run_dir: Path = RUN_DIR,
        settle_delay: float = SETTLE_DELAY,
        attached_pid_timeout: float = 30.0,
    ) -> None:
        self.logs_dir = logs_dir
        self.run_dir = run_dir
        self.settle_delay = settle_delay
        self.attached_pid_timeout = attached_pid_timeout

    def log_path(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def pidfile_path(self, name: str) -> Path:
        return self.run_dir / f"{name}.pid"

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def launch(self, argv: Sequence[str], name: str, detach: bool) -> LaunchedProcess:
        """Start the hypervisor and return its pid without waiting for it to exit.

        QEMU is asked to write its own pidfile so the recorded pid is the
        hypervisor even when it runs under the privilege wrapper.
        """
        if not argv:
            raise SpawnError("Empty hypervisor command")
        privileged = uses_privilege_wrapper(argv)
        ensure_directory(self.run_dir)
        pidfile = self.pidfile_path(name)
        self._remove_stale_pidfile(pidfile)
        full_argv = [*argv, "-pidfile", str(pidfile)]
        log("DEBUG", f"Launching: {describe_command(full_argv)}")

        if detach and privileged:
            # No terminal once detached: ask for the password up front.
            self._refresh_privilege()

        log_path: Optional[Path] = None
        try:
            if detach:
                ensure_directory(self.logs_dir)
                log_path = self.log_path(name)
                with open(log_path, "ab") as log_file:
                    proc = subprocess.Popen(
                        full_argv,
                        stdin=subprocess.DEVNULL,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        **self._detach_kwargs(privileged),
                    )
            else:
                proc = subprocess.Popen(full_argv)
        except FileNotFoundError as exc:
            raise SpawnError(f"Hypervisor binary not found: {exc.filename or argv[0]}") from exc
        except PermissionError as exc:
            raise SpawnError(f"Permission denied launching {argv[0]}: {exc}") from exc
        except OSError as exc:
            raise SpawnError(f"Failed to launch {argv[0]}: {exc}") from exc

        timeout = self.settle_delay if detach else self.attached_pid_timeout
        pid = self._resolve_pid(proc, pidfile, timeout, privileged)

        if detach:
            returncode = proc.poll()
            if returncode is not None:
                raise SpawnError(
                    f"Hypervisor exited during startup with status {returncode}; see {log_path}",
                    returncode=returncode,
                )

        return LaunchedProcess(pid=pid, process=proc, detached=detach, log_path=log_path)

    def wait(self, launched: LaunchedProcess) -> int:
        """Block until an attached hypervisor exits and return its exit code."""
        proc = launched.process
        try:
            return proc.wait()
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            return proc.wait()

    def _detach_kwargs(self, privileged: bool) -> Dict[str, Any]:
        if privileged:
            # The sudo ticket from `sudo -v` is keyed to the controlling tty.
            return {"preexec_fn": os.setpgrp}
        return {"start_new_session": True}

    def _remove_stale_pidfile(self, pidfile: Path) -> None:
        try:
            pidfile.unlink(missing_ok=True)
        except OSError as exc:
            log("WARN", f"Could not remove stale pidfile {pidfile}: {exc}")

    def _refresh_privilege(self) -> None:
        try:
            result = subprocess.run([PRIVILEGE_WRAPPER, "-v"], check=False)
        except FileNotFoundError as exc:
            raise SpawnError(f"{PRIVILEGE_WRAPPER} is required for bridged networking") from exc
        if result.returncode != 0:
            raise SpawnError(f"{PRIVILEGE_WRAPPER} authentication failed", returncode=result.returncode)

    def _resolve_pid(self, proc: subprocess.Popen, pidfile: Path, timeout: float, privileged: bool) -> int:
        deadline = time.monotonic() + timeout
        while True:
            pid = self._read_pidfile(pidfile, privileged)
            if pid is not None:
                return pid
            if proc.poll() is not None or time.monotonic() >= deadline:
                break
            time.sleep(0.1)
        if privileged:
            log("WARN", f"QEMU did not report its pid; tracking wrapper pid {proc.pid} instead")
        return proc.pid

    def _read_pidfile(self, pidfile: Path, privileged: bool) -> Optional[int]:
        if not pidfile.exists():
            return None
        try:
            raw = pidfile.read_text()
        except PermissionError:
            if not privileged:
                return None
            # QEMU creates the pidfile 0600 when it runs as root.
            result = subprocess.run(
                [PRIVILEGE_WRAPPER, "cat", str(pidfile)],
                capture_output=True,
                text=True,
                check=False,
            )
            if result.returncode != 0:
                return None
            raw = result.stdout
        except OSError:
            return None
        try:
            return int(raw.strip())
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Signals and liveness
    # ------------------------------------------------------------------

    def is_alive(self, pid: Optional[int]) -> bool:
        if pid is None or pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user (bridged guests run as root).
            return True
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            return True
        return reaped == 0

    def send_signal(self, pid: int, sig: signal.Signals, use_sudo: bool = False) -> bool:
        """Deliver ``sig``; returns whether the OS accepted it."""
        if use_sudo:
            cmd = [PRIVILEGE_WRAPPER, "kill", f"-{sig.name[3:]}", str(pid)]
            log("DEBUG", f"Running: {' '.join(cmd)}")
            try:
                result = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
            except FileNotFoundError:
                return False
            return result.returncode == 0
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            log("WARN", f"Not permitted to signal pid {pid}: {exc}")
            return False
        return True

    def _wait_for_exit(self, pid: int, timeout: float, interval: float = 0.1) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                return True
            time.sleep(interval)
        return not self.is_alive(pid)

    def terminate(self, pid: int, use_sudo: bool = False, grace_period: float = GRACE_PERIOD) -> bool:
        """SIGTERM, wait ``grace_period``, then SIGKILL.

        Returns True only once the process is confirmed gone.
        """
        if not self.is_alive(pid):
            return True
        if self.send_signal(pid, signal.SIGTERM, use_sudo) and self._wait_for_exit(pid, grace_period):
            return True
        log("WARN", f"Process {pid} still alive after {grace_period:.0f}s; sending SIGKILL")
        self.send_signal(pid, signal.SIGKILL, use_sudo)
        return self._wait_for_exit(pid, 2.0)

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def view_log(self, name: str, follow: bool = False) -> int:
        log_path = self.log_path(name)
        if not log_path.exists():
            raise ManagerError(f"No logs found for virtual machine {name} ({log_path})")
        if not follow:
            print(log_path.read_text(errors="replace"), end="", flush=True)
            return 0
        cmd: List[str] = ["tail", "-n", "100", "-f", str(log_path)]
        try:
            return subprocess.call(cmd)
        except KeyboardInterrupt:
            return 0
