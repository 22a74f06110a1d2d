"""winvm package: Windows on Arm VM provisioning and launching."""

__version__ = "2.0.0"

__all__ = [
    "allocator",
    "artifacts",
    "cli",
    "config",
    "confirm",
    "constants",
    "download",
    "exceptions",
    "media",
    "models",
    "network",
    "patcher",
    "pipeline",
    "qemu",
    "session",
    "utils",
]
