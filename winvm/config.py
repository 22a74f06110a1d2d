"""Configuration record and option resolution for winvm."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from winvm import __version__
from winvm.constants import (
    DEFAULT_DISK_SIZE_GB,
    DEFAULT_LANGUAGE,
    DEFAULT_PASSWORD,
    DEFAULT_RDP_PORT,
    DEFAULT_USERNAME,
    LANGUAGES_CATALOG_PATH,
    MAX_GUEST_PORT,
    MIN_DISK_SIZE_GB,
    MIN_GUEST_PORT,
    MIN_VM_MEMORY_GB,
)
from winvm.exceptions import ManagerError, ValidationError
from winvm.models import VMConfig
from winvm.utils import log

RECORD_KEYS = ("VM_PATH", "USERNAME", "PASSWORD", "DISKSIZE", "RDP_PORT", "LANGUAGE", "VM_MEM", "CREATED")


def resolve_workspace_path(raw: str) -> Path:
    if not raw or not raw.strip():
        raise ValidationError("VM path is required")
    return Path(raw).expanduser().absolute()


def parse_int_option(
    name: str, raw: object, min_val: Optional[int] = None, max_val: Optional[int] = None
) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{name} must be an integer (got '{raw}')")
    if min_val is not None and value < min_val:
        raise ValidationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ValidationError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_guest_port(raw: object) -> int:
    return parse_int_option("RDP port", raw, MIN_GUEST_PORT, MAX_GUEST_PORT)


def render_config_record(cfg: VMConfig) -> str:
    values = {
        "VM_PATH": str(cfg.workspace),
        "USERNAME": cfg.username,
        "PASSWORD": cfg.password,
        "DISKSIZE": str(cfg.disk_size_gb),
        "RDP_PORT": str(cfg.rdp_port),
        "LANGUAGE": cfg.language,
        "VM_MEM": "" if cfg.vm_memory_gb is None else str(cfg.vm_memory_gb),
        "CREATED": cfg.created or time.strftime("%a %b %d %H:%M:%S %Z %Y"),
    }
    lines = [
        "# VM Configuration",
        f"# Generated by winvm v{__version__}",
    ]
    lines.extend(f"{key}={values[key]}" for key in RECORD_KEYS)
    return "\n".join(lines) + "\n"


def write_config_record(path: Path, cfg: VMConfig) -> None:
    path.write_text(render_config_record(cfg))


def read_config_record(path: Path) -> Dict[str, str]:
    """Parse KEY=value lines; comments and blank lines are ignored."""
    record: Dict[str, str] = {}
    if not path.is_file():
        return record
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        record[key.strip()] = value
    return record


def build_config(
    workspace: Path,
    options: Mapping[str, Optional[object]],
    record: Optional[Mapping[str, str]] = None,
) -> VMConfig:
    """Resolve a VMConfig: explicit options win over the record, the record over defaults."""
    record = record or {}

    def pick(option: str, key: str, default: object) -> object:
        value = options.get(option)
        if value is not None:
            return value
        recorded = record.get(key)
        if recorded is not None and recorded != "":
            return recorded
        return default

    username = str(pick("username", "USERNAME", DEFAULT_USERNAME))
    password = str(pick("password", "PASSWORD", DEFAULT_PASSWORD))
    if not username:
        raise ValidationError("Username must not be empty")
    disk_size_gb = parse_int_option("Disk size (GB)", pick("disk_size_gb", "DISKSIZE", DEFAULT_DISK_SIZE_GB), MIN_DISK_SIZE_GB)
    rdp_port = validate_guest_port(pick("rdp_port", "RDP_PORT", DEFAULT_RDP_PORT))
    language = str(pick("language", "LANGUAGE", DEFAULT_LANGUAGE))
    vm_memory_raw = pick("vm_memory_gb", "VM_MEM", None)
    vm_memory_gb = None
    if vm_memory_raw is not None:
        vm_memory_gb = parse_int_option("VM memory (GB)", vm_memory_raw, MIN_VM_MEMORY_GB)

    return VMConfig(
        workspace=workspace,
        username=username,
        password=password,
        disk_size_gb=disk_size_gb,
        rdp_port=rdp_port,
        language=language,
        vm_memory_gb=vm_memory_gb,
        created=record.get("CREATED"),
    )


def load_language_catalog(config_path: Optional[Path] = None) -> Dict[str, Dict[str, str]]:
    """Load the supported-language table mapping display names to locale settings."""
    if config_path is None:
        config_path = LANGUAGES_CATALOG_PATH
    if not config_path.exists():
        raise ManagerError(f"Language catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Language catalog {config_path} contains invalid YAML: {exc}")
    languages = data.get("languages", {})
    if not isinstance(languages, dict):
        raise ManagerError(f"Language catalog {config_path} must contain a 'languages' mapping")
    for name, entry in languages.items():
        missing = {"locale", "input_locale"} - set(entry or {})
        if missing:
            raise ManagerError(f"Language '{name}' in {config_path} is missing: {', '.join(sorted(missing))}")
    log("DEBUG", f"Loaded {len(languages)} languages from {config_path}")
    return languages
