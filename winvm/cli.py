"""CLI entry points for winvm."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from winvm import __version__, allocator
from winvm.artifacts import Workspace
from winvm.config import build_config, read_config_record, resolve_workspace_path
from winvm.confirm import ASSUME_NO, ASSUME_YES, Confirmer, default_confirmer
from winvm.constants import _SENSITIVE_FIELDS
from winvm.exceptions import ManagerError
from winvm.models import ResourceAllocation, VMConfig
from winvm.network import await_service
from winvm.pipeline import ALL, STAGES, Provisioner
from winvm.qemu import HypervisorManager
from winvm.session import connect
from winvm.utils import host_resources, kvm_available, log

_BUG_REPORT = "This is likely a bug. Please report it with the output above."


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        else:
            print(f"  {field.name}: {value}")


def print_startup_banner(cfg: VMConfig, allocation: ResourceAllocation) -> None:
    """Print a visually distinct access-info banner after the VM starts."""
    lines: List[str] = []
    lines.append(f"  VM: {cfg.workspace}")
    lines.append(f"  Memory: {allocation.memory_gib} GB | CPUs: {allocation.cpu_count} | Disk: {cfg.disk_size_gb} GB")
    lines.append(f"  RDP:  127.0.0.1:{cfg.rdp_port}")
    lines.append(f"  User: {cfg.username}  Pass: {cfg.password}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def _split_stage(parser: argparse.ArgumentParser, positional: List[str]):
    if len(positional) == 1:
        return ALL, positional[0]
    if len(positional) == 2:
        stage, path = positional
        if stage not in STAGES + (ALL,):
            parser.error(f"unknown stage '{stage}' (choose from {', '.join(STAGES + (ALL,))})")
        return stage, path
    parser.error("expected [STAGE] PATH")


def _pick_confirmer(args: argparse.Namespace) -> Confirmer:
    if args.yes:
        return ASSUME_YES
    if args.no:
        return ASSUME_NO
    return default_confirmer()


def build_provision_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="winvm",
        description="Provision a Windows 11 on Arm virtual machine",
        epilog=f"Stages: {', '.join(STAGES)}, or '{ALL}' (default) to run them in order.",
    )
    parser.add_argument("args", nargs="+", metavar="[STAGE] PATH", help="Optional stage followed by the VM directory")
    parser.add_argument("--account", "--username", dest="username", help="Windows account name")
    parser.add_argument("--secret", "--password", dest="password", help="Windows account password")
    parser.add_argument("--disk-size-gb", "--disksize", dest="disk_size_gb", metavar="N", help="Disk size in GB (>= 20)")
    parser.add_argument("--guest-port", "--rdp-port", dest="rdp_port", metavar="P", help="Host port for RDP (1024-65535)")
    parser.add_argument("--language", help="Installer language, e.g. 'English (United States)'")
    parser.add_argument("--vm-memory-gb", "--vm-mem", dest="vm_memory_gb", metavar="N", help="VM memory in GB (>= 2)")
    answers = parser.add_mutually_exclusive_group()
    answers.add_argument("--yes", action="store_true", help="Answer yes to every confirmation prompt")
    answers.add_argument("--no", action="store_true", help="Answer no to every confirmation prompt")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_provision_parser()
    args = parser.parse_intermixed_args(argv)
    stage, raw_path = _split_stage(parser, args.args)

    options = {
        "username": args.username,
        "password": args.password,
        "disk_size_gb": args.disk_size_gb,
        "rdp_port": args.rdp_port,
        "language": args.language,
        "vm_memory_gb": args.vm_memory_gb,
    }
    try:
        root = resolve_workspace_path(raw_path)
        # create writes a fresh record, so earlier values must not leak into it
        record = {}
        if stage not in ("create", ALL):
            record = read_config_record(Workspace(root).path("config-record"))
        cfg = build_config(root, options, record)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    try:
        Provisioner(cfg, _pick_confirmer(args)).run_stage(stage)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", _BUG_REPORT)
        import traceback

        traceback.print_exc()
        return 1
    return 0


def build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="winvm-run",
        description="Boot a provisioned Windows VM headless and connect to it over RDP",
    )
    parser.add_argument("path", help="VM directory created by winvm")
    parser.add_argument("--fullscreen", action="store_true", help="Connect in fullscreen mode")
    parser.add_argument("--guest-port", "--rdp-port", dest="rdp_port", metavar="P", help="Override the RDP port")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def run_main(argv: Optional[List[str]] = None) -> int:
    args = build_run_parser().parse_args(argv)

    try:
        root = resolve_workspace_path(args.path)
        workspace = Workspace(root)
        workspace.require_root("Provision it first with: winvm <path>")
        workspace.require_present("disk-image", "Provision it first with: winvm <path>")
        record = read_config_record(workspace.path("config-record"))
        cfg = build_config(root, {"rdp_port": args.rdp_port}, record)

        cores, memory_gib = host_resources()
        log("INFO", f"Host: {cores} cores | {memory_gib} GB RAM")
        if not kvm_available():
            log("WARN", "KVM: NOT available (/dev/kvm)")
        allocation = allocator.allocate(allocator.RUN, cores, memory_gib, cfg.vm_memory_gb)

        HypervisorManager(workspace).ensure_running(allocation, cfg.rdp_port)
        print_startup_banner(cfg, allocation)
        await_service(cfg.rdp_port)
        connect(workspace, cfg.rdp_port, cfg.username, cfg.password, args.fullscreen)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", _BUG_REPORT)
        import traceback

        traceback.print_exc()
        return 1
    return 0
