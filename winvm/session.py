"""Remote desktop session launcher for winvm."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from winvm.artifacts import Workspace
from winvm.constants import REMMINA_BINARY, REMMINA_CACHE_FILES
from winvm.exceptions import ExternalToolError
from winvm.utils import log, run

PROFILE_NAME = "temp-connect.remmina"

# Remmina aborts on exit with glib's slice allocator; these keep it quiet
CLIENT_ENV = {"G_SLICE": "always-malloc", "MALLOC_CHECK_": "0"}


def cleanup_certificates(port: int, home: Optional[Path] = None) -> List[Path]:
    """Forget cached server certificates so a recreated guest is accepted."""
    home = Path(home) if home is not None else Path.home()
    removed = []
    for relative in REMMINA_CACHE_FILES:
        target = home / str(relative).format(port=port)
        try:
            target.unlink()
        except FileNotFoundError:
            continue
        removed.append(target)
        log("DEBUG", f"Removed cached client state {target}")
    return removed


def render_remmina_profile(username: str, password: str, port: int) -> str:
    fields = [
        ("password", password),
        ("username", username),
        ("domain", ""),
        ("resolution_mode", "1"),
        ("group", ""),
        ("server", f"127.0.0.1:{port}"),
        ("colordepth", "32"),
        ("resolution_width", "1024"),
        ("resolution_height", "768"),
        ("name", "Windows VM"),
        ("protocol", "RDP"),
        ("window_maximize", "1"),
        ("viewmode", "1"),
        ("quality", "9"),
        ("sound", "local"),
        ("scale", "2"),
        ("disable_fastpath", "0"),
        ("glyph-cache", "0"),
        ("multitransport", "0"),
        ("relax-order-checks", "1"),
        ("ignore-tls-errors", "1"),
        ("cert_ignore", "1"),
        ("disableautoreconnect", "1"),
        ("network", "lan"),
    ]
    lines = ["[remmina]"] + [f"{key}={value}" for key, value in fields]
    return "\n".join(lines) + "\n"


def connect(
    workspace: Workspace,
    port: int,
    username: str,
    password: str,
    fullscreen: bool = False,
    home: Optional[Path] = None,
) -> int:
    """Open a Remmina session to the guest and return the client's exit status.

    The status is informational only: Remmina regularly crashes on exit
    while the guest keeps running.
    """
    cleanup_certificates(port, home)
    profile = workspace.root / PROFILE_NAME
    fd = os.open(profile, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(render_remmina_profile(username, password, port))

    cmd = [REMMINA_BINARY, "-c", str(profile), "--no-tray-icon"]
    if fullscreen:
        cmd.append("--kiosk")
    env = dict(os.environ)
    env.update(CLIENT_ENV)
    log("INFO", f"Connecting to 127.0.0.1:{port} as {username}...")
    try:
        result = run(cmd, check=False, env=env)
    except FileNotFoundError:
        raise ExternalToolError(REMMINA_BINARY, f"{REMMINA_BINARY} not found. Install remmina and its RDP plugin.")
    finally:
        profile.unlink(missing_ok=True)
    if result.returncode != 0:
        log("DEBUG", f"Remmina exited with status {result.returncode}; ignoring")
    log("INFO", "Session closed. The VM keeps running in the background.")
    return result.returncode
