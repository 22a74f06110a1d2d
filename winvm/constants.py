"""Global constants and path configuration for winvm."""

from __future__ import annotations

import os
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
LANGUAGES_CATALOG_PATH = TEMPLATES_DIR / "languages.yaml"

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

QEMU_BINARY = os.environ.get("QEMU_BINARY", "qemu-system-aarch64")
QEMU_EFI_FIRMWARE = Path(os.environ.get("QEMU_EFI_FIRMWARE", "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"))
QEMU_IMG_BINARY = os.environ.get("QEMU_IMG_BINARY", "qemu-img")
MKISOFS_BINARY = os.environ.get("MKISOFS_BINARY", "mkisofs")
REMMINA_BINARY = os.environ.get("REMMINA_BINARY", "remmina")
VM_DISPLAY_NAME = "Windows on Arm"

# Pre-decided answer for destructive confirmation prompts ("yes" / "no").
ASSUME_ANSWER = os.environ.get("WINVM_ASSUME", "").strip().lower()

# Defaults recorded in the configuration record on create
DEFAULT_USERNAME = "win11arm"
DEFAULT_PASSWORD = "win11arm"
DEFAULT_DISK_SIZE_GB = 40
DEFAULT_RDP_PORT = 3389
DEFAULT_LANGUAGE = "English (United States)"

MIN_DISK_SIZE_GB = 20
MIN_VM_MEMORY_GB = 2
MIN_GUEST_PORT = 1024
MAX_GUEST_PORT = 65535

GUEST_RDP_PORT = 3389

# Answer-file placeholders replaced with the chosen credentials
ANSWER_FILE_NAME = "autounattend.xml"
FIRSTLOGIN_SCRIPT_NAME = "firstlogin.ps1"
PASSWORD_PLACEHOLDER = "win11arm"
USERNAME_PLACEHOLDER = "Win11ARM"
WINPE_SETTINGS_TAG = '<settings pass="windowsPE">'
WINPE_INTERNATIONAL_COMPONENT = "Microsoft-Windows-International-Core-WinPE"

VENDOR_DOWNLOAD_PAGE = "https://www.microsoft.com/en-us/software-download/windows11arm64"
VENDOR_SESSION_URL = "https://vlscppe.microsoft.com/tags?org_id=y6jn8c31&session_id={session_id}"
VENDOR_API_BASE = "https://www.microsoft.com/software-download-connector/api"
VENDOR_PROFILE = "606624d44113"
VENDOR_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:100.0) Gecko/20100101 Firefox/100.0"
VENDOR_REJECTION_TEXT = "Sentinel marked this request as rejected."

DRIVER_IMAGE_URL = (
    "https://fedorapeople.org/groups/virt/virtio-win/direct-downloads/stable-virtio/virtio-win.iso"
)
DRIVER_ARCH_DIR = "ARM64"
DRIVER_OS_TAG = "w11"
GUEST_AGENT_INSTALLER = Path("guest-agent") / "qemu-ga-x86_64.msi"
CERTIFICATE_DIR = "cert"

UNMOUNT_ATTEMPTS = 5
UNMOUNT_DELAY = 1.0

SERVICE_MAX_ATTEMPTS = 60
SERVICE_INTERVAL = 2.0
SERVICE_CONNECT_TIMEOUT = 3.0

# Client state that makes reconnecting to a recreated guest fail
REMMINA_CACHE_FILES = (
    Path(".config/freerdp/server/127.0.0.1_{port}.pem"),
    Path(".config/freerdp/known_hosts2"),
    Path(".local/share/remmina/remmina.pref"),
)

QEMU_EXIT_MESSAGES = {
    1: "This usually means an error occurred during execution.",
    2: "This may indicate an I/O error.",
    3: "This may indicate a bad configuration.",
}

_SENSITIVE_FIELDS = {"password"}
