"""openindiana-up package."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "constants",
    "database",
    "exceptions",
    "lifecycle",
    "models",
    "network",
    "process",
    "provision",
    "qemu",
    "repository",
    "utils",
]
