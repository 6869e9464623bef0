"""Option resolution and user defaults for openindiana-up."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from openindiana_up.constants import (
    DEFAULT_CPU,
    DEFAULT_CPUS,
    DEFAULT_DISK_FORMAT,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY,
    DEFAULT_VERSION,
    DOWNLOAD_URL_TEMPLATE,
    QEMU_BINARY,
    SUPPORTED_DISK_FORMATS,
    USER_CONFIG_PATH,
    VERSION_RE,
    VM_ID_RE,
    VM_NAME_RE,
)
from openindiana_up.exceptions import ConfigError
from openindiana_up.models import BootSource, LaunchConfig, PortForward
from openindiana_up.utils import get_env, kvm_available, log, validate_size

_DEFAULT_KEYS = {"cpu", "cpus", "memory", "disk_format", "size", "bridge", "port_forward"}
_TOP_LEVEL_KEYS = {"defaults", "qemu_binary"}


def construct_download_url(version: str) -> str:
    return DOWNLOAD_URL_TEMPLATE.format(version=version)


def classify_input(token: Optional[str]) -> BootSource:
    """Interpret the positional path-or-URL-or-version argument."""
    if not token:
        log("INFO", f"No ISO path provided, defaulting to OpenIndiana {DEFAULT_VERSION}...")
        return BootSource("version", construct_download_url(DEFAULT_VERSION), DEFAULT_VERSION)

    token = token.strip()
    if VERSION_RE.match(token):
        log("INFO", f"Detected version {token}, constructing download URL...")
        return BootSource("version", construct_download_url(token), token)

    if token.startswith(("http://", "https://")):
        return BootSource("url", token)

    return BootSource("path", token)


def load_user_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML defaults file; a missing file yields ``{}``."""
    if config_path is None:
        config_path = USER_CONFIG_PATH
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")

    for key in sorted(set(data) - _TOP_LEVEL_KEYS):
        log("WARN", f"Ignoring unknown key '{key}' in {config_path}")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigError(f"'defaults' in {config_path} must be a mapping")
    for key in sorted(set(defaults) - _DEFAULT_KEYS):
        log("WARN", f"Ignoring unknown default '{key}' in {config_path}")

    result = {key: value for key, value in defaults.items() if key in _DEFAULT_KEYS}
    if data.get("qemu_binary"):
        result["qemu_binary"] = str(data["qemu_binary"])
    return result


def parse_port_forwards(raw: Optional[str]) -> List[PortForward]:
    """Parse ``host:guest`` pairs separated by commas."""
    port_forwards: List[PortForward] = []
    if not raw:
        return port_forwards
    for entry in str(raw).split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 2:
            raise ConfigError(f"Invalid port forward '{entry}': expected format host_port:guest_port")
        try:
            host_port = int(parts[0])
            guest_port = int(parts[1])
        except ValueError:
            raise ConfigError(f"Invalid port forward '{entry}': ports must be integers")
        if not (1 <= host_port <= 65535):
            raise ConfigError(f"Invalid port forward '{entry}': host port {host_port} out of range (1-65535)")
        if not (1 <= guest_port <= 65535):
            raise ConfigError(f"Invalid port forward '{entry}': guest port {guest_port} out of range (1-65535)")
        port_forwards.append(PortForward(host_port=host_port, guest_port=guest_port))

    seen: Dict[int, str] = {}
    for pf in port_forwards:
        if pf.host_port in seen:
            raise ConfigError(f"Port conflict: host port {pf.host_port} is forwarded more than once")
        seen[pf.host_port] = f"{pf.host_port}:{pf.guest_port}"
    return port_forwards


def _qemu_binary(user_defaults: Dict[str, Any]) -> str:
    explicit = get_env("OIUP_QEMU_BINARY")
    if explicit:
        return explicit
    return str(user_defaults.get("qemu_binary") or QEMU_BINARY)


def _pick(explicit: Any, user_defaults: Dict[str, Any], key: str, fallback: Any) -> Any:
    if explicit is not None:
        return explicit
    value = user_defaults.get(key)
    if value is not None:
        return value
    return fallback


def _parse_cpus(raw: Any) -> int:
    try:
        cpus = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"CPU count must be an integer (got '{raw}')")
    if cpus < 1:
        raise ConfigError(f"CPU count must be >= 1 (got {cpus})")
    return cpus


def _parse_disk_format(raw: Any) -> str:
    disk_format = str(raw).strip().lower()
    if disk_format not in SUPPORTED_DISK_FORMATS:
        supported = ", ".join(sorted(SUPPORTED_DISK_FORMATS))
        raise ConfigError(f"Unsupported disk format '{raw}'. Supported: {supported}")
    return disk_format


def _normalize_optional(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def resolve_options(
    cpu: Optional[str] = None,
    cpus: Optional[int] = None,
    memory: Optional[str] = None,
    drive: Optional[str] = None,
    disk_format: Optional[str] = None,
    size: Optional[str] = None,
    bridge: Optional[str] = None,
    port_forward: Optional[str] = None,
    detach: bool = False,
    name: Optional[str] = None,
    user_defaults: Optional[Dict[str, Any]] = None,
) -> LaunchConfig:
    """Normalize raw options into a validated, fully-defaulted LaunchConfig."""
    if user_defaults is None:
        user_defaults = load_user_config()

    resolved_cpu = str(_pick(cpu, user_defaults, "cpu", DEFAULT_CPU)).strip()
    if not resolved_cpu:
        raise ConfigError("CPU model must not be empty")
    resolved_cpus = _parse_cpus(_pick(cpus, user_defaults, "cpus", DEFAULT_CPUS))
    resolved_memory = validate_size(str(_pick(memory, user_defaults, "memory", DEFAULT_MEMORY)), "memory size")
    resolved_format = _parse_disk_format(_pick(disk_format, user_defaults, "disk_format", DEFAULT_DISK_FORMAT))
    resolved_size = validate_size(str(_pick(size, user_defaults, "size", DEFAULT_DISK_SIZE)), "disk size")

    resolved_bridge = _normalize_optional(_pick(bridge, user_defaults, "bridge", None))
    port_forward_raw = _normalize_optional(_pick(port_forward, user_defaults, "port_forward", None))
    port_forwards = parse_port_forwards(port_forward_raw)
    if port_forwards and resolved_bridge:
        log("WARN", f"Port forwarding is ignored with bridged networking (bridge {resolved_bridge})")
        port_forwards = []

    resolved_name = _normalize_optional(name)
    if resolved_name and not VM_NAME_RE.match(resolved_name):
        raise ConfigError(
            f"Invalid VM name '{resolved_name}'. Use letters, digits, '.', '_' or '-' (not leading)"
        )
    if resolved_name and VM_ID_RE.match(resolved_name):
        raise ConfigError(f"Invalid VM name '{resolved_name}': it has the form of a VM ID")

    return LaunchConfig(
        cpu=resolved_cpu,
        cpus=resolved_cpus,
        memory=resolved_memory,
        disk_format=resolved_format,
        disk_size=resolved_size,
        drive_path=_normalize_optional(drive),
        bridge=resolved_bridge,
        port_forwards=port_forwards,
        detach=detach,
        name=resolved_name,
        enable_kvm=kvm_available(),
        qemu_binary=_qemu_binary(user_defaults),
    )


def merge_overrides(
    vm,
    cpu: Optional[str] = None,
    cpus: Optional[int] = None,
    memory: Optional[str] = None,
    port_forward: Optional[str] = None,
    detach: bool = False,
    user_defaults: Optional[Dict[str, Any]] = None,
) -> LaunchConfig:
    """Rebuild a LaunchConfig from a stored record plus fresh overrides."""
    if user_defaults is None:
        user_defaults = load_user_config()

    resolved_cpus = _parse_cpus(cpus if cpus is not None else vm.cpus)
    resolved_memory = validate_size(memory if memory is not None else vm.memory, "memory size")
    port_forwards = parse_port_forwards(port_forward if port_forward is not None else vm.port_forward)
    if port_forwards and vm.bridge:
        log("WARN", f"Port forwarding is ignored with bridged networking (bridge {vm.bridge})")
        port_forwards = []

    return LaunchConfig(
        cpu=(cpu or vm.cpu).strip(),
        cpus=resolved_cpus,
        memory=resolved_memory,
        disk_format=vm.disk_format,
        disk_size=vm.disk_size,
        drive_path=vm.drive_path,
        bridge=vm.bridge,
        port_forwards=port_forwards,
        detach=detach,
        name=vm.name,
        enable_kvm=kvm_available(),
        qemu_binary=_qemu_binary(user_defaults),
    )
