"""Workspace artifacts for winvm.

A workspace is the directory holding one guest instance. Every file or
directory winvm produces inside it is a named artifact, and every artifact
is either absent or fully written: producers write to a staging path inside
the workspace and the result is moved onto the final name only on success.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, NamedTuple, Optional

from winvm.exceptions import MissingArtifactError
from winvm.utils import log, remove_path


class ArtifactSpec(NamedTuple):
    filename: str
    is_directory: bool = False


ARTIFACTS: Dict[str, ArtifactSpec] = {
    "installer-image": ArtifactSpec("installer.iso"),
    "driver-source-image": ArtifactSpec("virtio-win.iso"),
    "driver-answer-volume": ArtifactSpec("unattended", is_directory=True),
    "driver-answer-image": ArtifactSpec("unattended.iso"),
    "disk-image": ArtifactSpec("disk.qcow2"),
    "pid-record": ArtifactSpec("qemu.pid"),
    "config-record": ArtifactSpec("vm-config.txt"),
}


def _spec(name: str) -> ArtifactSpec:
    try:
        return ARTIFACTS[name]
    except KeyError:
        raise KeyError(f"Unknown artifact '{name}'") from None


class Workspace:
    """The on-disk directory of one VM, viewed as a set of named artifacts."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"Workspace({str(self.root)!r})"

    def path(self, name: str) -> Path:
        return self.root / _spec(name).filename

    def exists(self, name: str) -> bool:
        spec = _spec(name)
        target = self.root / spec.filename
        return target.is_dir() if spec.is_directory else target.is_file()

    def require_root(self, hint: Optional[str] = None) -> None:
        if not self.root.is_dir():
            raise MissingArtifactError("workspace", self.root, hint)

    def require_present(self, name: str, hint: Optional[str] = None) -> Path:
        if not self.exists(name):
            raise MissingArtifactError(name, self.path(name), hint)
        return self.path(name)

    def remove(self, name: str) -> None:
        target = self.path(name)
        if target.exists() or target.is_symlink():
            log("DEBUG", f"Removing {name} at {target}")
            remove_path(target)

    def write(self, name: str, producer: Callable[[Path], None]) -> Path:
        """Run ``producer`` against a staging path and place the result as ``name``.

        The producer gets an empty file (or directory, for directory
        artifacts) inside the workspace. If it raises, the staging path is
        removed and any existing artifact is left as it was.
        """
        spec = _spec(name)
        final = self.root / spec.filename
        prefix = f".{spec.filename}.partial-"
        if spec.is_directory:
            staging = Path(tempfile.mkdtemp(prefix=prefix, dir=self.root))
        else:
            fd, raw = tempfile.mkstemp(prefix=prefix, dir=self.root)
            os.close(fd)
            staging = Path(raw)

        try:
            producer(staging)
            if spec.is_directory and final.is_dir():
                remove_path(final)
            os.replace(staging, final)
        except BaseException:
            remove_path(staging)
            raise
        log("DEBUG", f"Wrote {name} to {final}")
        return final
