"""Utility functions for winvm."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from winvm.constants import _LOG_VERBOSE
from winvm.exceptions import InsufficientSpaceError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
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
    stream = sys.stderr if level == "ERROR" else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


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


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def has_graphical_session() -> bool:
    return bool(os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def remove_path(path: Path) -> None:
    """Remove a file or directory tree if present."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def get_host_info() -> Dict[str, int]:
    """Collect host CPU and memory facts."""
    info: Dict[str, int] = {
        "cpu_count": os.cpu_count() or 1,
        "mem_total": 0,
    }
    try:
        with open("/proc/meminfo") as f:
            for line in f:
                key, _, rest = line.partition(":")
                fields = rest.split()
                if not fields:
                    continue
                if key == "MemTotal":
                    info["mem_total"] = int(fields[0]) * 1024
    except (OSError, ValueError):
        log("WARN", "Could not read /proc/meminfo; assuming no memory information")
    return info


def host_resources() -> Tuple[int, int]:
    """Return (cores, total memory in whole GiB) for the allocator."""
    info = get_host_info()
    return info["cpu_count"], info["mem_total"] // 1024**3


def get_available_disk_space(path: Path) -> int:
    """Free bytes available to an unprivileged user on the filesystem holding path."""
    return shutil.disk_usage(path).free


def check_disk_space(path: Path, required: int, reclaimable: int = 0) -> None:
    """Require strictly more than ``required`` free bytes at ``path``."""
    available = get_available_disk_space(path) + reclaimable
    if available <= required:
        raise InsufficientSpaceError(path, required, available)
    log("DEBUG", f"Disk space OK at {path}: {available} bytes available, {required} required")


def file_digest(path: Path, algorithm: str = "sha256", chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def retry(
    action: Callable[[], bool],
    attempts: int,
    delay: float,
    error: ManagerError,
    on_failure: Optional[Callable[[int], None]] = None,
) -> int:
    """Call ``action`` until it returns True, at most ``attempts`` times.

    Sleeps ``delay`` seconds between attempts and raises ``error`` once the
    attempts are exhausted. Returns the number of the successful attempt.
    """
    for attempt in range(1, attempts + 1):
        if action():
            return attempt
        if on_failure is not None:
            on_failure(attempt)
        if attempt < attempts:
            time.sleep(delay)
    raise error


def privileged(cmd: List[str]) -> List[str]:
    """Prefix a command with sudo unless already running as root."""
    if os.geteuid() == 0:
        return cmd
    return ["sudo"] + cmd


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
