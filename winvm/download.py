"""Installer and driver downloads for winvm.

The vendor's download flow is treated as an external oracle: a catalog page,
a session registration and a SKU/link lookup yield a download
URL, and the catalog page lists the SHA-256 sums of every published image.
Failures are never retried automatically; they are reported together with
instructions for downloading the image by hand.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from winvm.constants import (
    VENDOR_API_BASE,
    VENDOR_DOWNLOAD_PAGE,
    VENDOR_PROFILE,
    VENDOR_REJECTION_TEXT,
    VENDOR_SESSION_URL,
    VENDOR_USER_AGENT,
)
from winvm.exceptions import ChecksumMismatchError, ExternalToolError, ManagerError
from winvm.models import InstallerSource
from winvm.utils import file_digest, log

_EDITION_RE = re.compile(r'<option value="([0-9]+)">Windows')
_SHA256_RE = re.compile(r"\b[0-9a-fA-F]{64}\b")


def manual_instructions(target: Path) -> str:
    return (
        f"    Using a web browser, please manually download the Windows 11 ARM64 ISO from: {VENDOR_DOWNLOAD_PAGE}\n"
        f"    Save the downloaded ISO to: {target}\n"
        f"    Make sure the file is named {target.name}\n"
        "    Then run this command again."
    )


def _fetch(url: str, referer: Optional[str] = None, max_bytes: int = 1024 * 1024) -> str:
    headers = {"User-Agent": VENDOR_USER_AGENT, "Accept": "*/*"}
    if referer:
        headers["Referer"] = referer
    req = Request(url, headers=headers)
    with urlopen(req, timeout=60) as response:
        body = response.read(max_bytes + 1)
    if len(body) > max_bytes:
        raise ManagerError(f"Response from {url.split('?')[0]} exceeded {max_bytes} bytes")
    return body.decode("utf-8", errors="replace")


def extract_checksums(page: str) -> frozenset:
    return frozenset(match.lower() for match in _SHA256_RE.findall(page))


def select_sku(sku_table: Dict, language: str) -> Optional[str]:
    for sku in sku_table.get("Skus", []):
        if language in (sku.get("LocalizedLanguage"), sku.get("Language")):
            return sku.get("Id")
    return None


def select_download_link(links: Dict, marker: str = "Arm64") -> Optional[str]:
    for option in links.get("ProductDownloadOptions", []):
        uri = option.get("Uri") or ""
        if marker in uri:
            return uri
    return None


def resolve_installer(language: str, target: Path, session_id: Optional[str] = None) -> InstallerSource:
    """Ask the vendor for the installer URL of ``language`` and the published checksums."""
    fallback = manual_instructions(target)
    session_id = session_id or str(uuid.uuid4())
    log("INFO", f"Downloading Windows 11 ARM64 ({language})")

    def _step(number: int, url: str, **kwargs) -> str:
        try:
            return _fetch(url, **kwargs)
        except (HTTPError, URLError, OSError, ManagerError) as exc:
            raise ExternalToolError(
                "download", f"Failed to scrape the webpage on step {number}: {exc}\n{fallback}"
            ) from exc

    log("INFO", f"  - Parsing download page: {VENDOR_DOWNLOAD_PAGE}")
    page = _step(1, VENDOR_DOWNLOAD_PAGE)
    match = _EDITION_RE.search(page)
    if match is None:
        raise ExternalToolError("download", f"Failed to find a product edition on the download page.\n{fallback}")
    edition_id = match.group(1)[:16]
    log("INFO", f"  - Product edition ID: {edition_id}")

    log("INFO", f"  - Permit session ID: {session_id}")
    _step(2, VENDOR_SESSION_URL.format(session_id=session_id), max_bytes=100 * 1024)

    query = {
        "profile": VENDOR_PROFILE,
        "ProductEditionId": edition_id,
        "SKU": "undefined",
        "friendlyFileName": "undefined",
        "Locale": "en-US",
        "sessionID": session_id,
    }
    raw_skus = _step(3, f"{VENDOR_API_BASE}/getskuinformationbyproductedition?{urlencode(query)}", max_bytes=100 * 1024)
    try:
        sku_id = select_sku(json.loads(raw_skus), language)
    except (ValueError, AttributeError):
        sku_id = None
    if not sku_id:
        raise ExternalToolError("download", f"Failed to get the SKU ID for '{language}'.\n{fallback}")
    log("INFO", f"  - Language SKU ID: {sku_id}")

    log("INFO", "  - Getting ISO download link...")
    query = {
        "profile": VENDOR_PROFILE,
        "productEditionId": "undefined",
        "SKU": sku_id,
        "friendlyFileName": "undefined",
        "Locale": "en-US",
        "sessionID": session_id,
    }
    raw_links = _step(
        4, f"{VENDOR_API_BASE}/GetProductDownloadLinksBySku?{urlencode(query)}", referer=VENDOR_DOWNLOAD_PAGE
    )
    if not raw_links.strip():
        raise ExternalToolError(
            "download",
            f"Microsoft servers gave an empty response to the request for an automated download.\n{fallback}",
        )
    if VENDOR_REJECTION_TEXT in raw_links:
        raise ExternalToolError(
            "download",
            "Microsoft blocked the automated download request based on your IP address. Follow the "
            "instructions below, or wait an hour and try again to see if your IP has been unblocked.\n"
            f"{fallback}",
        )
    try:
        url = select_download_link(json.loads(raw_links))
    except (ValueError, AttributeError):
        url = None
    if not url:
        raise ExternalToolError(
            "download", f"Microsoft servers gave no download link to the request for an automated download.\n{fallback}"
        )
    log("INFO", f"  - URL: {url.split('?')[0]}")
    return InstallerSource(url=url, checksums=extract_checksums(page))


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url.split('?')[0]}")
    req = Request(url, headers={"User-Agent": VENDOR_USER_AGENT})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ExternalToolError("download", f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ExternalToolError("download", f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with response, open(destination, "wb") as out:
        chunk_size = 1024 * 256  # 256 KiB
        while True:
            try:
                chunk = response.read(chunk_size)
            except OSError as exc:
                raise ExternalToolError("download", f"Download of {destination.name} interrupted: {exc}")
            if not chunk:
                break
            out.write(chunk)
            downloaded += len(chunk)

            elapsed = time.time() - start_time
            speed = downloaded / elapsed if elapsed > 0 else 0
            downloaded_mb = downloaded / (1024 * 1024)

            if total_bytes:
                total_mb = total_bytes / (1024 * 1024)
                pct = downloaded * 100 / total_bytes
                remaining = (total_bytes - downloaded) / speed if speed > 0 else 0
                eta_str = time.strftime("%M:%S", time.gmtime(remaining))
                bar_len = 30
                filled = int(bar_len * downloaded / total_bytes)
                bar = "#" * filled + "-" * (bar_len - filled)
                print(
                    f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                    f"({speed / (1024 * 1024):.1f} MiB/s, ETA {eta_str})",
                    end="", flush=True,
                )
            else:
                print(
                    f"\r  {downloaded_mb:.1f} MiB downloaded "
                    f"({speed / (1024 * 1024):.1f} MiB/s)",
                    end="", flush=True,
                )
    print(flush=True)  # newline after progress
    if total_bytes and downloaded != total_bytes:
        raise ExternalToolError(
            "download", f"Download of {destination.name} truncated ({downloaded} of {total_bytes} bytes)"
        )
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def verify_checksum(path: Path, checksums: Iterable[str]) -> str:
    """Require the SHA-256 of ``path`` to be one of ``checksums``."""
    log("INFO", "  - Verifying download...")
    digest = file_digest(path, "sha256")
    if digest not in {c.lower() for c in checksums}:
        raise ChecksumMismatchError(
            f"{path.name} seems corrupted after download. Its sha256sum was:\n{digest}\n"
            "which does not match any on the expected list"
        )
    log("SUCCESS", "  - Verification successful.")
    return digest
