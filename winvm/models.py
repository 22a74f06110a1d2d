"""Data models for winvm."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, NamedTuple, Optional


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass(frozen=True)
class ResourceAllocation:
    cpu_count: int
    memory_gib: int


@dataclass(frozen=True)
class VMConfig:
    workspace: Path
    username: str
    password: str
    disk_size_gb: int
    rdp_port: int
    language: str
    vm_memory_gb: Optional[int] = None
    created: Optional[str] = None

    @property
    def disk_size_bytes(self) -> int:
        return self.disk_size_gb * 1024**3


@dataclass(frozen=True)
class DeviceTopology:
    """Devices attached to one hypervisor launch."""

    disk_image: Path
    pid_file: Path
    firmware: Path
    installer_image: Optional[Path] = None
    answer_image: Optional[Path] = None
    port_forward: Optional[PortForward] = None
    headless: bool = False


@dataclass(frozen=True)
class InstallerSource:
    url: str
    checksums: FrozenSet[str]
