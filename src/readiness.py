"""Readiness checks for the embedded server.

Actively probes a server over the wire: connects (completing a TLS
handshake when security is enabled), sends the "stat" four-letter word and
checks the first line of the reply. Every per-attempt failure counts as
"not ready yet"; only an exhausted retry budget produces a negative result.
"""

import logging
import socket
import ssl
import time
from typing import Optional

from config import ProbeSettings
from zkserver.tls import CredentialError, build_client_context, load_handshake_material

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "localhost"
STATUS_COMMAND = b"stat"
STATUS_PREFIX = "Zookeeper version:"
MAX_STATUS_LINE = 1024


def _split_address(address: str) -> tuple[str, int]:
    """Split "host:port" into (host, port)."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Expected host:port, got '{address}'")
    return host.strip("[]"), int(port)


def _read_status_line(sock) -> Optional[str]:
    sock.sendall(STATUS_COMMAND)
    with sock.makefile("rb") as reader:
        line = reader.readline(MAX_STATUS_LINE)
    if not line:
        return None
    return line.decode("utf-8", errors="replace")


def _probe_once(
    host: str,
    port: int,
    settings: ProbeSettings,
    context: Optional[ssl.SSLContext],
) -> bool:
    """Make one connection attempt. Raises OSError on connection failures."""
    with socket.create_connection((host, port), timeout=settings.connect_timeout) as raw:
        if context is None:
            line = _read_status_line(raw)
        else:
            with context.wrap_socket(raw, server_hostname=host) as tls:
                line = _read_status_line(tls)
    return line is not None and line.startswith(STATUS_PREFIX)


def probe(
    address: str,
    secure: bool = False,
    trust_store: str = "",
    key_store: str = "",
    key_store_password: str = "",
    trust_store_password: str = "",
    settings: Optional[ProbeSettings] = None,
) -> bool:
    """Block until the server at address answers "stat", or the budget runs out.

    Args:
        address: "host:port" of the server
        secure: Connect over TLS, presenting the key-store and validating
            the server against the trust-store (with host-name verification)
        trust_store: Trust-store path (ignored unless secure)
        key_store: Key-store path (ignored unless secure)
        key_store_password: Key-store password
        trust_store_password: Trust-store password
        settings: Retry budget (default: 30 attempts, 250ms apart)

    Returns:
        True if a status reply was observed, False once every attempt failed
    """
    settings = settings or ProbeSettings()
    host, port = _split_address(address)

    for attempt in range(1, settings.retries + 1):
        try:
            context = None
            if secure:
                # Stores are reloaded on every attempt
                material = load_handshake_material(
                    key_store, key_store_password, trust_store, trust_store_password
                )
                context = build_client_context(material)
            if _probe_once(host, port, settings, context):
                logger.info("Server UP at %s", address)
                return True
            logger.warning("Server %s not up: unexpected status reply (attempt %d/%d)",
                           address, attempt, settings.retries)
        except (OSError, CredentialError) as e:
            logger.warning("Server %s not up (attempt %d/%d): %s",
                           address, attempt, settings.retries, e)

        if attempt < settings.retries:
            try:
                time.sleep(settings.retry_delay)
            except InterruptedError:
                logger.error("Interrupted while waiting to retry %s", address)

    logger.warning("Server %s not up after %d attempts", address, settings.retries)
    return False


def wait_for_server_up(
    port: int,
    secure: bool = False,
    trust_store: str = "",
    key_store: str = "",
    key_store_password: str = "",
    trust_store_password: str = "",
    settings: Optional[ProbeSettings] = None,
) -> bool:
    """Wait for a server listening on the loopback address.

    See probe() for the arguments and retry behavior.
    """
    return probe(
        f"{LOOPBACK_ADDRESS}:{port}",
        secure=secure,
        trust_store=trust_store,
        key_store=key_store,
        key_store_password=key_store_password,
        trust_store_password=trust_store_password,
        settings=settings,
    )
