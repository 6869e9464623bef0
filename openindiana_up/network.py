"""Network clause rendering and host bridge provisioning for openindiana-up."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from openindiana_up.constants import DEFAULT_SSH_FORWARD, MAC_ADDRESS_RE, PRIVILEGE_WRAPPER, QEMU_BRIDGE_CONF
from openindiana_up.exceptions import ManagerError, ProvisionError
from openindiana_up.models import PortForward
from openindiana_up.utils import log, run

NETDEV_ID = "net0"
NIC_MODEL = "e1000"


def render_hostfwd(port_forwards: Sequence[PortForward]) -> str:
    """Translate port pairs into QEMU ``hostfwd`` options."""
    return ",".join(f"hostfwd=tcp::{pf.host_port}-:{pf.guest_port}" for pf in port_forwards)


def render_netdev_args(
    mac_address: str,
    bridge: Optional[str] = None,
    port_forwards: Optional[Sequence[PortForward]] = None,
) -> List[str]:
    """Render the ``-netdev``/``-device`` pair for bridged or user-mode networking."""
    if not mac_address:
        raise ManagerError("A MAC address is required to render the network clause")
    mac = mac_address.lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise ManagerError(f"Invalid MAC address: {mac_address}")

    if bridge is not None:
        if not bridge.strip():
            raise ManagerError("Bridge name must not be empty")
        netdev = f"bridge,id={NETDEV_ID},br={bridge}"
    else:
        forwards = list(port_forwards or []) or [PortForward(*DEFAULT_SSH_FORWARD)]
        netdev = f"user,id={NETDEV_ID},{render_hostfwd(forwards)}"

    return [
        "-netdev",
        netdev,
        "-device",
        f"{NIC_MODEL},netdev={NETDEV_ID},mac={mac}",
    ]


def bridge_exists(bridge: str) -> bool:
    result = subprocess.run(
        ["ip", "link", "show", bridge],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=False,
    )
    return result.returncode == 0


def _privileged(cmd: List[str], failure: str) -> None:
    try:
        run([PRIVILEGE_WRAPPER, *cmd])
    except subprocess.CalledProcessError as exc:
        raise ProvisionError(failure, returncode=exc.returncode) from exc
    except FileNotFoundError as exc:
        raise ProvisionError(f"{failure}: {exc}") from exc


def ensure_bridge_allowed(bridge: str, conf_path: Path = QEMU_BRIDGE_CONF) -> bool:
    """Allow-list ``bridge`` for qemu-bridge-helper; returns False when already present."""
    try:
        content = conf_path.read_text()
    except OSError:
        content = ""
    if f"allow {bridge}" in content.splitlines():
        log("INFO", f"QEMU bridge configuration for {bridge} already exists.")
        return False

    log("INFO", f"Adding QEMU bridge configuration for {bridge}...")
    _privileged(
        ["sh", "-c", f'mkdir -p "{conf_path.parent}" && echo "allow {bridge}" >> "{conf_path}"'],
        f"Failed to add QEMU bridge configuration for {bridge}",
    )
    log("SUCCESS", f"QEMU bridge configuration for {bridge} added.")
    return True


def ensure_bridge(bridge: str, conf_path: Path = QEMU_BRIDGE_CONF) -> bool:
    """Make sure the host bridge exists, is up and is usable by QEMU.

    Returns True when the bridge device had to be created.
    """
    created = False
    if bridge_exists(bridge):
        log("INFO", f"Network bridge {bridge} already exists.")
    else:
        log("INFO", f"Creating network bridge {bridge}...")
        _privileged(["ip", "link", "add", bridge, "type", "bridge"], f"Failed to create network bridge {bridge}")
        _privileged(["ip", "link", "set", "dev", bridge, "up"], f"Failed to bring up network bridge {bridge}")
        log("SUCCESS", f"Network bridge {bridge} created and up.")
        created = True

    ensure_bridge_allowed(bridge, conf_path)
    return created
