"""Custom exceptions for winvm."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Bad command line input or option value."""


class MissingArtifactError(ManagerError):
    """A stage precondition is not met."""

    def __init__(self, artifact: str, path: Path, hint: Optional[str] = None) -> None:
        self.artifact = artifact
        self.path = path
        message = f"Required {artifact} not found at {path}."
        if hint:
            message += f" {hint}"
        super().__init__(message)


class ExternalToolError(ManagerError):
    """An external program or service returned an unexpected result."""

    def __init__(self, tool: str, message: str, returncode: Optional[int] = None) -> None:
        self.tool = tool
        self.returncode = returncode
        super().__init__(message)


class SignatureNotFoundError(ManagerError):
    """No valid boot payload header was found in the installer image."""


class ChecksumMismatchError(ManagerError):
    """A file's digest does not match any known-good value."""


class PatchIOError(ManagerError):
    """Reading or writing the installer image failed while patching."""


class InsufficientSpaceError(ManagerError):
    def __init__(self, path: Path, required: int, available: int) -> None:
        self.path = path
        self.required = required
        self.available = available
        gib = 1024**3
        super().__init__(
            f"Insufficient free disk space at {path}. "
            f"{required // gib} GB is needed, but you only have {available // gib} GB."
        )


class ServiceTimeoutError(ManagerError):
    """A guest service never became reachable."""


class ConfirmationDeclinedError(ManagerError):
    """The operator declined a destructive action."""
