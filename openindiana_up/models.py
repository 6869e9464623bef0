"""Data models for openindiana-up."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


class BootSource(NamedTuple):
    kind: str  # "version", "url", "path"
    value: str
    version: Optional[str] = None


@dataclass
class LaunchConfig:
    cpu: str
    cpus: int
    memory: str
    disk_format: str
    disk_size: str
    drive_path: Optional[str] = None
    bridge: Optional[str] = None
    port_forwards: List[PortForward] = field(default_factory=list)
    detach: bool = False
    name: Optional[str] = None
    enable_kvm: bool = True
    qemu_binary: str = "qemu-system-x86_64"

    @property
    def nat(self) -> bool:
        return self.bridge is None

    @property
    def port_forward_spec(self) -> Optional[str]:
        """Normalized ``host:guest,...`` form stored alongside the record."""
        if not self.port_forwards or not self.nat:
            return None
        return ",".join(f"{pf.host_port}:{pf.guest_port}" for pf in self.port_forwards)
