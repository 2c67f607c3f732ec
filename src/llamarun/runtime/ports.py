"""Port selection for the llama-server child process.

Bind-then-release probing is inherently racy: another process can take the
port between the check and the child's own bind. The supervisor treats a
spawn or readiness failure on the chosen port as an ordinary failure.
"""

from __future__ import annotations

import socket
from collections.abc import Iterable

from llamarun.constants import LOOPBACK_HOST
from llamarun.runtime.logging import RuntimeLogComponent, get_logger

logger = get_logger(RuntimeLogComponent.PORTS)


def is_port_available(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Check if a port is available for binding.

    Uses two strategies:
    1. Try connecting to the port (detects listening servers)
    2. Try binding to the port and release it immediately

    Args:
        port: Port number to check
        host: Host to check on (default: 127.0.0.1)

    Returns:
        True if port is available, False otherwise
    """
    if not 0 < port < 65536:
        return False

    # Strategy 1: if we can connect, something is definitely listening
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.2)
            if sock.connect_ex((host, port)) == 0:
                return False
    except OSError:
        pass

    # Strategy 2: bind without SO_REUSEADDR so TIME_WAIT sockets count as busy
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
    except OSError:
        return False

    return True


def find_available_port(ports: Iterable[int], host: str = LOOPBACK_HOST) -> int | None:
    """Return the first bindable port from ``ports`` in iteration order.

    Args:
        ports: Candidate ports, scanned in order
        host: Host to check on (default: 127.0.0.1)

    Returns:
        Available port number or None if no port is available
    """
    for port in ports:
        if is_port_available(port, host):
            return port
    return None


def pick_port(
    preferred: int, scan_range: Iterable[int], host: str = LOOPBACK_HOST
) -> int | None:
    """Choose a port: ``preferred`` if bindable, else the first free one in ``scan_range``.

    Args:
        preferred: Port tried first
        scan_range: Fallback ports, scanned in ascending order
        host: Host to bind on

    Returns:
        The selected port, or None when the whole range is exhausted
    """
    if is_port_available(preferred, host):
        return preferred
    fallback = find_available_port(sorted(scan_range), host)
    if fallback is not None:
        logger.info(f"Port {preferred} busy, using {fallback}")
    return fallback
