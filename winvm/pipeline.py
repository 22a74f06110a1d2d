"""Provisioning stages for winvm.

``create -> download -> prepare -> first-boot``, each independently
runnable and resumable. A stage checks its preconditions before touching
the workspace and reports the first missing artifact.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from winvm import allocator, media
from winvm.artifacts import Workspace
from winvm.config import write_config_record
from winvm.confirm import Confirmer
from winvm.constants import DRIVER_IMAGE_URL, QEMU_IMG_BINARY
from winvm.download import download_file, resolve_installer, verify_checksum
from winvm.exceptions import (
    ChecksumMismatchError,
    ConfirmationDeclinedError,
    ExternalToolError,
    ManagerError,
    SignatureNotFoundError,
)
from winvm.models import VMConfig
from winvm.patcher import patch_image
from winvm.qemu import HypervisorManager, describe_exit_status, install_topology
from winvm.utils import check_disk_space, ensure_directory, has_graphical_session, host_resources, log, run

STAGES = ("create", "download", "prepare", "first-boot")
ALL = "all"

_CREATE_HINT = "Run the 'create' stage first."
_DOWNLOAD_HINT = "Run the 'download' stage first."
_PREPARE_HINT = "Run the 'prepare' stage first."

# Environment for the interactive display on Mesa/Panfrost hosts
FIRST_BOOT_ENV = {"PAN_MESA_DEBUG": "gl3"}


def allocated_bytes(path: Path) -> int:
    """Bytes actually backing ``path`` on disk (sparse images report less than their size)."""
    try:
        return path.stat().st_blocks * 512
    except (OSError, AttributeError):
        return 0


class Provisioner:
    """Runs provisioning stages against one workspace."""

    def __init__(
        self,
        config: VMConfig,
        confirm: Confirmer,
        host: Optional[Callable[[], Tuple[int, int]]] = None,
    ) -> None:
        self.config = config
        self.confirm = confirm
        self.workspace = Workspace(config.workspace)
        self.host = host or host_resources
        self.hypervisor = HypervisorManager(self.workspace)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def create(self) -> None:
        cfg = self.config
        log("INFO", f"Creating VM workspace at {cfg.workspace}")
        ensure_directory(cfg.workspace)
        self.workspace.write("config-record", lambda target: write_config_record(target, cfg))
        log("INFO", f"  Username:  {cfg.username}")
        log("INFO", f"  Disk size: {cfg.disk_size_gb} GB")
        log("INFO", f"  RDP port:  {cfg.rdp_port}")
        log("INFO", f"  Language:  {cfg.language}")
        if cfg.vm_memory_gb is not None:
            log("INFO", f"  Memory:    {cfg.vm_memory_gb} GB")
        log("SUCCESS", f"VM configuration saved to {self.workspace.path('config-record')}")

    def download(self) -> None:
        ws = self.workspace
        ws.require_root(_CREATE_HINT)

        if ws.exists("installer-image"):
            if self.confirm("installer.iso already exists. Delete it and download a fresh copy?", default=True):
                ws.remove("installer-image")
            else:
                log("INFO", "Keeping the existing installer.iso")

        if not ws.exists("installer-image"):
            self._fetch_installer()

        self._fetch_drivers()

    def prepare(self) -> None:
        ws = self.workspace
        cfg = self.config
        ws.require_present("driver-answer-volume", _DOWNLOAD_HINT)

        reclaimable = 0
        if ws.exists("disk-image"):
            if not self.confirm(
                f"{ws.path('disk-image').name} already exists. Delete it and create a new empty disk?",
                default=True,
            ):
                raise ConfirmationDeclinedError(f"Keeping existing {ws.path('disk-image')}; disk not recreated")
            reclaimable = allocated_bytes(ws.path("disk-image"))

        check_disk_space(ws.root, cfg.disk_size_bytes, reclaimable)
        media.build_answer_image(ws)
        ws.remove("disk-image")
        log("INFO", f"Allocating {cfg.disk_size_gb}GB disk image...")

        def _produce(target: Path) -> None:
            cmd = [
                QEMU_IMG_BINARY,
                "create",
                "-f",
                "qcow2",
                "-o",
                "cluster_size=2M,nocow=on,preallocation=metadata",
                str(target),
                f"{cfg.disk_size_gb}G",
            ]
            try:
                result = run(cmd, check=False, capture_output=True)
            except FileNotFoundError:
                raise ExternalToolError(QEMU_IMG_BINARY, f"{QEMU_IMG_BINARY} not found. Install qemu-utils.")
            if result.returncode != 0:
                raise ExternalToolError(
                    QEMU_IMG_BINARY,
                    f"Failed to allocate {ws.path('disk-image').name}:\n{(result.stderr or '').strip()}",
                    result.returncode,
                )

        ws.write("disk-image", _produce)
        log("SUCCESS", f"{ws.path('disk-image').name} created")

    def first_boot(self) -> None:
        ws = self.workspace
        ws.require_present("installer-image", _DOWNLOAD_HINT)
        ws.require_present("driver-answer-image", _PREPARE_HINT)
        ws.require_present("disk-image", _PREPARE_HINT)
        if not has_graphical_session():
            raise ManagerError(
                "The first boot needs a graphical session (DISPLAY or WAYLAND_DISPLAY) for the installer window"
            )

        cores, memory_gib = self.host()
        allocation = allocator.allocate(allocator.PROVISION, cores, memory_gib, self.config.vm_memory_gb)
        log("INFO", "Booting the installer. Windows setup runs unattended; close the window when it finishes.")
        status = self.hypervisor.launch(allocation, install_topology(ws), env=FIRST_BOOT_ENV)
        if status != 0:
            raise ExternalToolError("qemu", describe_exit_status(status), status)
        log("SUCCESS", "First boot finished. Start the VM with: winvm-run " + str(ws.root))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fetch_installer(self) -> None:
        ws = self.workspace
        cfg = self.config
        target = ws.path("installer-image")
        check_disk_space(ws.root, cfg.disk_size_bytes)
        source = resolve_installer(cfg.language, target)

        def _produce(staging: Path) -> None:
            download_file(source.url, staging, "Downloading Windows 11 ARM64")
            verify_checksum(staging, source.checksums)

        ws.write("installer-image", _produce)
        log("INFO", "Patching installer to boot without a key press...")
        try:
            patch_image(target)
        except (SignatureNotFoundError, ChecksumMismatchError):
            # patch_image fails before writing, so the verified image is intact
            log(
                "WARN",
                f"Kept the verified, unpatched {target.name}. Re-run 'download' and answer 'n' "
                "to keep it, then continue with 'prepare'.",
            )
            raise
        log("SUCCESS", f"{target.name} ready")

    def _fetch_drivers(self) -> None:
        ws = self.workspace
        if not ws.exists("driver-source-image"):
            ws.write(
                "driver-source-image",
                lambda staging: download_file(DRIVER_IMAGE_URL, staging, "Downloading VirtIO drivers"),
            )
        media.synthesize(ws, ws.path("driver-source-image"), self.config)
        ws.remove("driver-source-image")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def handlers(self) -> Dict[str, Callable[[], None]]:
        return {
            "create": self.create,
            "download": self.download,
            "prepare": self.prepare,
            "first-boot": self.first_boot,
        }

    def run_stage(self, name: str) -> None:
        if name == ALL:
            self.run_all()
            return
        handler = self.handlers().get(name)
        if handler is None:
            raise ManagerError(f"Unknown stage '{name}'. Choose from: {', '.join(STAGES + (ALL,))}")
        log("INFO", f"=== {name} ===")
        handler()

    def run_all(self) -> None:
        for name in STAGES:
            self.run_stage(name)
