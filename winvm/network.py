"""Guest network plumbing for winvm: port forwards and service reachability."""

from __future__ import annotations

import socket
from typing import Optional

from winvm.constants import SERVICE_CONNECT_TIMEOUT, SERVICE_INTERVAL, SERVICE_MAX_ATTEMPTS
from winvm.exceptions import ServiceTimeoutError
from winvm.models import PortForward
from winvm.utils import log, retry


def render_netdev(port_forward: Optional[PortForward] = None, netdev_id: str = "nic") -> str:
    """Render a QEMU user-mode ``-netdev`` value, optionally forwarding one TCP port."""
    value = f"user,id={netdev_id}"
    if port_forward is not None:
        value += f",hostfwd=tcp:127.0.0.1:{port_forward.host_port}-:{port_forward.guest_port}"
    return value


def port_open(port: int, host: str = "localhost", timeout: float = SERVICE_CONNECT_TIMEOUT) -> bool:
    """Return True if a TCP connection to host:port succeeds within ``timeout``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def await_service(
    port: int,
    max_attempts: int = SERVICE_MAX_ATTEMPTS,
    interval: float = SERVICE_INTERVAL,
    timeout: float = SERVICE_CONNECT_TIMEOUT,
) -> int:
    """Poll localhost:port until it accepts connections; returns the attempt count."""
    log("INFO", f"Waiting for RDP service on port {port}...")

    def _progress(attempt: int) -> None:
        if attempt % 10 == 0:
            log("INFO", f"Still waiting for RDP... (attempt {attempt}/{max_attempts})")

    attempt = retry(
        lambda: port_open(port, timeout=timeout),
        attempts=max_attempts,
        delay=interval,
        error=ServiceTimeoutError(
            f"RDP service did not become available after {int(max_attempts * interval)} seconds"
        ),
        on_failure=_progress,
    )
    log("SUCCESS", "RDP service is available!")
    return attempt
