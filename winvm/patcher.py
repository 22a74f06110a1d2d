"""In-place boot payload patching for Windows installer images.

The stock Windows on Arm ISO boots through an EFI payload that waits for a
keypress ("Press any key to boot from CD or DVD"). The same ISO also ships a
``noprompt`` build of that payload. Both are located by content: each payload
embeds the PDB path of the boot loader it was built from, sitting a fixed
distance after the start of the payload, which begins with a FAT boot sector
header.

Patching extracts the ``noprompt`` payload, checks its SHA-1, and copies it
over every prompting payload. The overwrite is exact-length so every other
offset in the ISO 9660 / UDF structures is preserved.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from winvm.exceptions import ChecksumMismatchError, PatchIOError, SignatureNotFoundError
from winvm.utils import file_digest, log

SCAN_CHUNK_SIZE = 8 * 1024 * 1024
HEADER_LENGTH = 16


@dataclass(frozen=True)
class PatchSpec:
    extract_marker: bytes
    replace_marker: bytes
    marker_offset: int
    payload_length: int
    header: bytes
    payload_sha1: str


NOPROMPT_PATCH = PatchSpec(
    extract_marker=b"cdboot_noprompt.pdb",
    replace_marker=b"cdboot.pdb",
    marker_offset=934748,
    payload_length=1720320,
    header=b"\xeb<\x90MSDMF3.2\x00\x02\x02\x01\x00",
    payload_sha1="906e019eb371949290df917e73e387f8a18696d7",
)

_MANUAL_STEPS = (
    "  The installer image was left unmodified and can still be used, but setup\n"
    "  will wait for a keypress: press any key in the VM window as soon as\n"
    "  'Press any key to boot from CD or DVD' appears during first boot."
)


def scan_for_marker(image: Path, marker: bytes, chunk_size: int = SCAN_CHUNK_SIZE) -> Iterator[int]:
    """Yield the offset of every occurrence of ``marker`` in ``image``."""
    overlap = len(marker) - 1
    with open(image, "rb") as f:
        base = 0
        buf = b""
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                return
            buf += chunk
            idx = buf.find(marker)
            while idx != -1:
                yield base + idx
                idx = buf.find(marker, idx + 1)
            tail = buf[len(buf) - overlap:] if overlap else b""
            base += len(buf) - len(tail)
            buf = tail


def _header_matches(f, start: int, spec: PatchSpec) -> bool:
    if start < 0:
        return False
    f.seek(start)
    return f.read(HEADER_LENGTH) == spec.header[:HEADER_LENGTH]


def find_payload_starts(image: Path, marker: bytes, spec: PatchSpec) -> Iterator[int]:
    """Yield candidate payload offsets for ``marker`` whose header is valid."""
    with open(image, "rb") as f:
        for match in scan_for_marker(image, marker):
            start = match - spec.marker_offset
            if _header_matches(f, start, spec):
                log("DEBUG", f"  - positive match at byte {start}")
                yield start
            else:
                log("DEBUG", f"  - negative match at byte {max(start, 0)}")


def _extract_payload(image: Path, start: int, spec: PatchSpec, scratch: Path) -> None:
    with open(image, "rb") as src, open(scratch, "wb") as dst:
        src.seek(start)
        dst.write(src.read(spec.payload_length))


def patch_image(image: Path, spec: PatchSpec = NOPROMPT_PATCH) -> int:
    """Replace every prompting boot payload in ``image``.

    Returns the number of payload sites overwritten.
    """
    log("INFO", "Modifying Windows ISO to boot to installer without keypress")
    fd, raw = tempfile.mkstemp(prefix="efisys_noprompt-", suffix=".bin")
    os.close(fd)
    scratch = Path(raw)
    try:
        try:
            start: Optional[int] = next(find_payload_starts(image, spec.extract_marker, spec), None)
            if start is None:
                raise SignatureNotFoundError(
                    f"Failed to find the no-prompt boot payload in {image}.\n{_MANUAL_STEPS}"
                )
            log("INFO", f"  - Extracting no-prompt payload at byte {start}")
            _extract_payload(image, start, spec, scratch)
            digest = file_digest(scratch, "sha1")
        except OSError as exc:
            raise PatchIOError(f"Failed to read {image}: {exc}") from exc

        if digest != spec.payload_sha1:
            raise ChecksumMismatchError(
                f"The extracted no-prompt payload had an unexpected SHA-1 ({digest}, "
                f"expected {spec.payload_sha1}); refusing to patch {image}"
            )
        log("INFO", "  - Checksums match, searching image for payloads to replace")

        try:
            payload = scratch.read_bytes()
            sites: List[int] = list(find_payload_starts(image, spec.replace_marker, spec))
            with open(image, "r+b") as f:
                for site in sites:
                    log("INFO", f"  - Replacing {spec.payload_length} bytes at byte {site}")
                    f.seek(site)
                    f.write(payload)
        except OSError as exc:
            raise PatchIOError(f"Failed to patch {image}: {exc}") from exc
    finally:
        scratch.unlink(missing_ok=True)

    if sites:
        log("SUCCESS", f"Patched {len(sites)} boot payload(s) in {image.name}")
    else:
        log("WARN", f"No prompting boot payload found in {image.name}; image already boots without keypress")
    return len(sites)
