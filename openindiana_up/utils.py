"""Utility functions for openindiana-up."""

from __future__ import annotations

import os
import random
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

from openindiana_up.constants import (
    _LOG_VERBOSE,
    NAME_ADJECTIVES,
    NAME_NOUNS,
    SIZE_RE,
)
from openindiana_up.exceptions import ConfigError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def validate_size(raw: str, label: str = "size") -> str:
    if not SIZE_RE.match(raw or ""):
        raise ConfigError(
            f"Invalid {label} '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_mac() -> str:
    """Generate a locally-administered MAC address with the QEMU prefix."""
    octets = [0x52, 0x54, 0x00]  # qemu prefix
    octets += [random.randint(0x00, 0xFF) for _ in range(3)]
    return ":".join(f"{octet:02x}" for octet in octets)


def generate_vm_name(taken: Iterable[str] = ()) -> str:
    """Pick an ``adjective-noun`` label that is not already in use."""
    taken_set = set(taken)
    candidates = [f"{adj}-{noun}" for adj in NAME_ADJECTIVES for noun in NAME_NOUNS]
    free = [name for name in candidates if name not in taken_set]
    if free:
        return random.choice(free)
    # Every plain pair is taken; add a numeric suffix.
    suffix = 2
    while True:
        name = f"{random.choice(candidates)}-{suffix}"
        if name not in taken_set:
            return name
        suffix += 1


def canonical_path(path: str) -> str:
    """Resolve ``path`` to an absolute, symlink-free form; it must exist."""
    try:
        return str(Path(path).expanduser().resolve(strict=True))
    except FileNotFoundError:
        raise ManagerError(f"Path not found: {path}")


def disk_usage_kb(path: Path) -> int:
    """Allocated size of ``path`` in KiB, like ``du`` reports it."""
    st = path.stat()
    blocks = getattr(st, "st_blocks", None)
    if blocks is None:  # pragma: no cover - non-POSIX
        return st.st_size // 1024
    return (blocks * 512) // 1024


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
