"""Driver and answer-file volume synthesis for winvm."""

from __future__ import annotations

import shutil
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from winvm.artifacts import Workspace
from winvm.config import load_language_catalog
from winvm.constants import (
    ANSWER_FILE_NAME,
    CERTIFICATE_DIR,
    DRIVER_ARCH_DIR,
    DRIVER_OS_TAG,
    FIRSTLOGIN_SCRIPT_NAME,
    GUEST_AGENT_INSTALLER,
    MKISOFS_BINARY,
    PASSWORD_PLACEHOLDER,
    TEMPLATES_DIR,
    UNMOUNT_ATTEMPTS,
    UNMOUNT_DELAY,
    USERNAME_PLACEHOLDER,
    WINPE_INTERNATIONAL_COMPONENT,
    WINPE_SETTINGS_TAG,
)
from winvm.exceptions import ExternalToolError, ManagerError
from winvm.models import VMConfig
from winvm.utils import ensure_directory, log, privileged, retry, run

_LANGUAGE_BLOCK = textwrap.dedent(
    """\
    <component name="Microsoft-Windows-International-Core-WinPE" processorArchitecture="arm64" publicKeyToken="31bf3856ad364e35" language="neutral" versionScope="nonSxS" xmlns:wcm="http://schemas.microsoft.com/WMIConfig/2002/State" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">
      <SetupUILanguage>
        <UILanguage>{locale}</UILanguage>
      </SetupUILanguage>
      <InputLocale>{input_locale}</InputLocale>
      <SystemLocale>{locale}</SystemLocale>
      <UILanguage>{locale}</UILanguage>
      <UserLocale>{locale}</UserLocale>
    </component>"""
)


def render_language_block(entry: Mapping[str, str]) -> str:
    block = _LANGUAGE_BLOCK.format(locale=entry["locale"], input_locale=entry["input_locale"])
    return textwrap.indent(block, "    ")


def apply_language(text: str, language: str, catalog: Mapping[str, Mapping[str, str]]) -> str:
    """Insert the WinPE locale component for ``language`` after the windowsPE settings tag."""
    if WINPE_INTERNATIONAL_COMPONENT in text:
        return text
    entry = catalog.get(language)
    if entry is None:
        log("WARN", f"No locale settings known for language '{language}'; keeping installer defaults")
        return text
    return text.replace(WINPE_SETTINGS_TAG, f"{WINPE_SETTINGS_TAG}\n{render_language_block(entry)}")


def apply_credentials(text: str, username: str, password: str) -> str:
    """Replace the default placeholders with the chosen credentials.

    Plain text replacement: the password placeholder is substituted first, so
    a password containing the username placeholder is rewritten again.
    """
    return text.replace(PASSWORD_PLACEHOLDER, password).replace(USERNAME_PLACEHOLDER, username)


def write_answer_files(volume: Path, cfg: VMConfig, catalog: Optional[Dict[str, Dict[str, str]]] = None) -> None:
    if catalog is None:
        catalog = load_language_catalog()
    ensure_directory(volume)
    template = TEMPLATES_DIR / ANSWER_FILE_NAME
    try:
        text = template.read_text()
        shutil.copyfile(TEMPLATES_DIR / FIRSTLOGIN_SCRIPT_NAME, volume / FIRSTLOGIN_SCRIPT_NAME)
    except OSError as exc:
        raise ManagerError(f"Failed to copy answer file templates from {TEMPLATES_DIR}: {exc}")
    text = apply_language(text, cfg.language, catalog)
    text = apply_credentials(text, cfg.username, cfg.password)
    (volume / ANSWER_FILE_NAME).write_text(text)


def find_driver_dirs(root: Path, arch_dir: str = DRIVER_ARCH_DIR, os_tag: str = DRIVER_OS_TAG) -> Dict[str, List[Path]]:
    """Map driver name to its architecture directories for the target OS."""
    drivers: Dict[str, List[Path]] = {}
    for candidate in sorted(root.rglob(arch_dir)):
        if not candidate.is_dir():
            continue
        relative = candidate.relative_to(root)
        if os_tag not in relative.parts:
            continue
        drivers.setdefault(relative.parts[0], []).append(candidate)
    return drivers


def copy_drivers(source_root: Path, volume: Path) -> List[str]:
    drivers = find_driver_dirs(source_root)
    for name, directories in drivers.items():
        log("INFO", f"  - {name}")
        for directory in directories:
            try:
                shutil.copytree(
                    directory, volume / name, dirs_exist_ok=True, copy_function=shutil.copyfile
                )
            except (OSError, shutil.Error) as exc:
                raise ManagerError(f"Failed to copy {name} to {volume}: {exc}")

    agent = source_root / GUEST_AGENT_INSTALLER
    certs = source_root / CERTIFICATE_DIR
    try:
        ensure_directory(volume / GUEST_AGENT_INSTALLER.parent)
        shutil.copyfile(agent, volume / GUEST_AGENT_INSTALLER)
        shutil.copytree(certs, volume / CERTIFICATE_DIR, dirs_exist_ok=True, copy_function=shutil.copyfile)
    except (OSError, shutil.Error) as exc:
        raise ManagerError(f"Failed to copy guest agent and certificates to {volume}: {exc}")
    return sorted(drivers)


def unmount(mount_point: Path, attempts: int = UNMOUNT_ATTEMPTS, delay: float = UNMOUNT_DELAY) -> None:
    """Unmount, retrying while the device is still busy."""

    def _try_unmount() -> bool:
        result = run(privileged(["umount", str(mount_point)]), check=False, capture_output=True)
        return result.returncode == 0

    def _report(attempt: int) -> None:
        log("WARN", f"Unmount attempt {attempt} failed, retrying in {delay:g} second(s)...")

    retry(
        _try_unmount,
        attempts=attempts,
        delay=delay,
        error=ExternalToolError("umount", f"Failed to unmount {mount_point} after {attempts} attempts"),
        on_failure=_report,
    )


def extract_drivers(driver_image: Path, volume: Path) -> List[str]:
    """Copy ARM64 drivers, the guest agent and certificates out of the driver image."""
    log("INFO", "Extracting VirtIO drivers...")
    mount_point = Path(tempfile.mkdtemp(prefix="winvm-drivers-"))
    try:
        result = run(
            privileged(["mount", "-r", str(driver_image), str(mount_point)]),
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            raise ExternalToolError(
                "mount",
                f"Failed to mount {driver_image.name} for extracting files: {(result.stderr or '').strip()}",
                result.returncode,
            )
        try:
            drivers = copy_drivers(mount_point, volume)
        finally:
            unmount(mount_point)
    finally:
        if mount_point.is_dir() and not any(mount_point.iterdir()):
            mount_point.rmdir()
    return drivers


def synthesize(workspace: Workspace, driver_image: Path, cfg: VMConfig) -> Path:
    """Build the driver/answer-file volume as one artifact."""
    log("INFO", "Setting up unattended installation files...")
    catalog = load_language_catalog()

    def _produce(volume: Path) -> None:
        write_answer_files(volume, cfg, catalog)
        extract_drivers(driver_image, volume)

    return workspace.write("driver-answer-volume", _produce)


def build_answer_image(workspace: Workspace) -> Path:
    """Pack the driver/answer-file volume into an ISO image."""
    volume = workspace.require_present("driver-answer-volume", "Run 'download' command first.")
    log("INFO", "Making unattended.iso...")

    def _produce(target: Path) -> None:
        cmd = [
            MKISOFS_BINARY,
            "-quiet",
            "-l",
            "-J",
            "-r",
            "-allow-lowercase",
            "-allow-multidot",
            "-o",
            str(target),
            f"{volume}/",
        ]
        try:
            result = run(cmd, check=False, capture_output=True)
        except FileNotFoundError:
            raise ExternalToolError(MKISOFS_BINARY, f"{MKISOFS_BINARY} not found. Install genisoimage or cdrtools.")
        if result.returncode != 0:
            raise ExternalToolError(
                MKISOFS_BINARY,
                f"Failed to create unattended.iso:\n{(result.stderr or '').strip()}",
                result.returncode,
            )

    path = workspace.write("driver-answer-image", _produce)
    log("SUCCESS", "unattended.iso created")
    return path
