"""Global constants and path configuration for openindiana-up."""

from __future__ import annotations

import os
import re
from pathlib import Path

# OIUP_HOME provides a single root for the state database, logs and config.
CONFIG_DIR = Path(os.environ.get("OIUP_HOME") or Path.home() / ".openindiana-up")
DB_PATH = CONFIG_DIR / "state.sqlite"
LOGS_DIR = CONFIG_DIR / "logs"
RUN_DIR = CONFIG_DIR / "run"
USER_CONFIG_PATH = CONFIG_DIR / "config.yaml"

QEMU_BINARY = os.environ.get("OIUP_QEMU_BINARY", "qemu-system-x86_64")
QEMU_IMG_BINARY = "qemu-img"
PRIVILEGE_WRAPPER = "sudo"
QEMU_BRIDGE_CONF = Path("/etc/qemu/bridge.conf")

DEFAULT_VERSION = "20251026"
DOWNLOAD_URL_TEMPLATE = "https://dlc.openindiana.org/isos/hipster/{version}/OI-hipster-text-{version}.iso"

DEFAULT_CPU = "host"
DEFAULT_CPUS = 2
DEFAULT_MEMORY = "2G"
DEFAULT_DISK_FORMAT = "raw"
DEFAULT_DISK_SIZE = "20G"
DEFAULT_SSH_FORWARD = (2222, 22)

# Drives smaller than this (allocated KiB, as reported by du) count as blank.
EMPTY_DISK_THRESHOLD_KB = 100

# Seconds.
SETTLE_DELAY = 2.0
GRACE_PERIOD = 3.0
RESTART_DELAY = 2.0

STATUS_RUNNING = "RUNNING"
STATUS_STOPPED = "STOPPED"
VM_STATUSES = (STATUS_RUNNING, STATUS_STOPPED)

TRUTHY = {"1", "true", "yes", "on"}
VERSION_RE = re.compile(r"^\d{8}$")
SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
VM_ID_RE = re.compile(r"^[0-9a-f]{32}$")
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

SUPPORTED_DISK_FORMATS = {"raw", "qcow2", "qed", "vdi", "vmdk", "vhdx"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

NAME_ADJECTIVES = (
    "amber", "ancient", "autumn", "bold", "brave", "bright", "calm", "clever",
    "cool", "crimson", "dawn", "eager", "fancy", "frosty", "gentle", "golden",
    "hidden", "icy", "jolly", "keen", "lively", "lucky", "misty", "noble",
    "odd", "proud", "quiet", "rapid", "rusty", "shy", "silent", "snowy",
    "solid", "swift", "tidy", "vast", "wild", "witty", "young", "zesty",
)
NAME_NOUNS = (
    "badger", "bear", "bison", "cobra", "crane", "eagle", "falcon", "ferret",
    "fox", "gecko", "heron", "ibis", "jackal", "koala", "lemur", "lynx",
    "marten", "moose", "newt", "otter", "owl", "panda", "puma", "quail",
    "raven", "salmon", "seal", "shrew", "stork", "swan", "tapir", "tiger",
    "toad", "trout", "viper", "walrus", "weasel", "wolf", "yak", "zebra",
)
