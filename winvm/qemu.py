"""Hypervisor process lifecycle for winvm."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from winvm.artifacts import Workspace
from winvm.constants import (
    GUEST_RDP_PORT,
    QEMU_BINARY,
    QEMU_EFI_FIRMWARE,
    QEMU_EXIT_MESSAGES,
    VM_DISPLAY_NAME,
)
from winvm.exceptions import ExternalToolError, ManagerError
from winvm.models import DeviceTopology, PortForward, ResourceAllocation
from winvm.network import render_netdev
from winvm.utils import kvm_available, log, run


def install_topology(workspace: Workspace) -> DeviceTopology:
    """Devices for the interactive first boot: installer and answer media attached."""
    return DeviceTopology(
        disk_image=workspace.path("disk-image"),
        pid_file=workspace.path("pid-record"),
        firmware=QEMU_EFI_FIRMWARE,
        installer_image=workspace.path("installer-image"),
        answer_image=workspace.path("driver-answer-image"),
    )


def run_topology(workspace: Workspace, rdp_port: int) -> DeviceTopology:
    """Devices for headless steady-state runs with RDP forwarded to the host."""
    return DeviceTopology(
        disk_image=workspace.path("disk-image"),
        pid_file=workspace.path("pid-record"),
        firmware=QEMU_EFI_FIRMWARE,
        port_forward=PortForward(host_port=rdp_port, guest_port=GUEST_RDP_PORT),
        headless=True,
    )


def _usb_cdrom(drive_id: str, index: int, image: Path) -> List[str]:
    return [
        "-drive",
        f"media=cdrom,index={index},file={image},if=none,id={drive_id},readonly=on",
        "-device",
        f"usb-storage,drive={drive_id}",
    ]


def build_qemu_command(
    allocation: ResourceAllocation, topology: DeviceTopology, binary: str = QEMU_BINARY
) -> List[str]:
    cmd = [
        binary,
        "-M", "virt,accel=kvm",
        "-cpu", "host",
        "-m", f"{allocation.memory_gib}G",
        "-smp", str(allocation.cpu_count),
        "-name", VM_DISPLAY_NAME,
        "-pidfile", str(topology.pid_file),
    ]
    if topology.headless:
        cmd += ["-device", "virtio-balloon", "-vga", "none", "-device", "virtio-gpu-pci", "-display", "none"]
    else:
        cmd += ["-device", "ramfb", "-display", "gtk,grab-on-hover=on,gl=on"]
    cmd += [
        "-device", "qemu-xhci",
        "-device", "usb-kbd",
        "-device", "usb-tablet",
        "-device", "virtio-rng-pci,rng=rng0",
        "-object", "rng-random,id=rng0,filename=/dev/urandom",
        "-netdev", render_netdev(topology.port_forward),
        "-device", "virtio-net-pci,netdev=nic",
        "-bios", str(topology.firmware),
    ]
    if topology.installer_image is not None:
        cmd += _usb_cdrom("installer", 0, topology.installer_image)
    if topology.answer_image is not None:
        # Attached twice; setup only scans some USB ports for drivers
        cmd += _usb_cdrom("unattended", 1, topology.answer_image)
        cmd += _usb_cdrom("unattended2", 2, topology.answer_image)
    disk_opts = "if=virtio,aio=threads,cache=none"
    if topology.headless:
        disk_opts = "if=virtio,discard=unmap,aio=threads,cache=none"
    cmd += ["-drive", f"file={topology.disk_image},{disk_opts}"]
    if topology.headless:
        cmd.append("-daemonize")
    return cmd


def describe_exit_status(code: int) -> str:
    detail = QEMU_EXIT_MESSAGES.get(code, "Please check the output for errors.")
    return f"QEMU exited with code {code}. {detail}"


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class HypervisorManager:
    def __init__(self, workspace: Workspace, binary: str = QEMU_BINARY) -> None:
        self.workspace = workspace
        self.binary = binary

    def _preflight(self, topology: DeviceTopology) -> None:
        if not kvm_available():
            log("WARN", "/dev/kvm is not available; QEMU will refuse to start with accel=kvm")
        if not topology.firmware.exists():
            raise ManagerError(
                f"UEFI firmware not found at {topology.firmware}. "
                "Install qemu-efi-aarch64 or set QEMU_EFI_FIRMWARE."
            )

    def launch(
        self,
        allocation: ResourceAllocation,
        topology: DeviceTopology,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run QEMU in the foreground and return its exit status."""
        self._preflight(topology)
        cmd = build_qemu_command(allocation, topology, self.binary)
        child_env: Optional[Dict[str, str]] = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)
        log("INFO", f"Starting QEMU with {allocation.memory_gib}GB RAM and {allocation.cpu_count} CPU cores")
        try:
            result = run(cmd, check=False, env=child_env)
        except FileNotFoundError:
            raise ExternalToolError(self.binary, f"{self.binary} not found. Install qemu-system-arm.")
        return result.returncode

    def read_pid(self) -> Optional[int]:
        path = self.workspace.path("pid-record")
        try:
            raw = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ManagerError(f"Cannot read PID record {path}: {exc}") from exc
        try:
            return int(raw)
        except ValueError:
            log("WARN", f"Ignoring unreadable PID record {path}: '{raw[:20]}'")
            return None

    def is_running(self) -> bool:
        pid = self.read_pid()
        return pid is not None and pid > 0 and pid_alive(pid)

    def ensure_running(self, allocation: ResourceAllocation, rdp_port: int) -> int:
        """Start the VM headless unless the recorded instance is still alive; returns its PID."""
        if self.is_running():
            pid = self.read_pid()
            log("INFO", f"VM is already running (PID: {pid})")
            return pid
        if self.workspace.path("pid-record").exists():
            log("INFO", "Removing stale PID record")
            self.workspace.remove("pid-record")

        topology = run_topology(self.workspace, rdp_port)
        self._preflight(topology)
        log("INFO", "Starting Windows VM in headless mode...")
        log("INFO", f"Using {allocation.memory_gib}GB RAM and {allocation.cpu_count} CPU cores")
        cmd = build_qemu_command(allocation, topology, self.binary)
        try:
            result = run(cmd, check=False, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise ExternalToolError(self.binary, f"{self.binary} not found. Install qemu-system-arm.")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ExternalToolError(
                self.binary, f"{describe_exit_status(result.returncode)}\n{stderr}".rstrip(), result.returncode
            )
        new_pid = self.read_pid()
        if new_pid is None:
            raise ExternalToolError(self.binary, f"QEMU started but did not write {topology.pid_file}")
        log("SUCCESS", f"VM started successfully (PID: {new_pid})")
        return new_pid
