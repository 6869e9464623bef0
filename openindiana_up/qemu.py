"""QEMU command-line construction for openindiana-up."""

from __future__ import annotations

import shlex
from typing import List, Optional, Sequence

from openindiana_up.constants import PRIVILEGE_WRAPPER
from openindiana_up.models import LaunchConfig
from openindiana_up.network import render_netdev_args

DISK_CONTROLLER_ID = "ahci0"
DISK_ID = "disk0"


def console_args() -> List[str]:
    """Headless guest with the serial console on this process's stdio."""
    return [
        "-nographic",
        "-monitor",
        "none",
        "-chardev",
        "stdio,id=con0,signal=off",
        "-serial",
        "chardev:con0",
    ]


def disk_args(drive_path: str, disk_format: str) -> List[str]:
    return [
        "-device",
        f"ahci,id={DISK_CONTROLLER_ID}",
        "-drive",
        f"file={drive_path},format={disk_format},if=none,id={DISK_ID}",
        "-device",
        f"ide-hd,drive={DISK_ID},bus={DISK_CONTROLLER_ID}.0",
    ]


def build_qemu_args(config: LaunchConfig, iso_path: Optional[str], mac_address: str) -> List[str]:
    """Return the full argv (wrapper and binary included) for one guest.

    Bridged guests need root to attach to the host bridge, so only they get
    the privilege wrapper in front of the hypervisor binary.
    """
    args: List[str] = []
    if config.bridge is not None:
        args.append(PRIVILEGE_WRAPPER)
    args.append(config.qemu_binary)

    if config.enable_kvm:
        args.append("-enable-kvm")
    args.extend(["-cpu", config.cpu, "-m", config.memory, "-smp", str(config.cpus)])

    if iso_path:
        args.extend(["-cdrom", iso_path])

    args.extend(render_netdev_args(mac_address, bridge=config.bridge, port_forwards=config.port_forwards))
    args.extend(console_args())

    if config.drive_path:
        args.extend(disk_args(config.drive_path, config.disk_format))

    return args


def uses_privilege_wrapper(argv: Sequence[str]) -> bool:
    return bool(argv) and argv[0] == PRIVILEGE_WRAPPER


def describe_command(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(arg) for arg in argv)
