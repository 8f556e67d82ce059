"""Shared pytest fixtures for zk-runner tests."""

import os
import socket
import socketserver
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from zkserver import properties
from zkserver.cnxn import TLSServerCnxnFactory
from zkserver.server import EmbeddedServer
from zkserver.tls import create_self_signed_stores

STORE_PASSWORD = "changeit"


@dataclass(frozen=True)
class Stores:
    """Paths and password of a generated key-store/trust-store pair."""
    key_store: str
    trust_store: str
    password: str = STORE_PASSWORD


def free_port() -> int:
    """Return a loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def isolated_environ():
    """Undo ambient server settings written by a test."""
    with patch.dict(os.environ):
        for key in properties.SSL_PROPERTIES + (properties.FOUR_LETTER_WORD_WHITELIST,):
            os.environ.pop(key, None)
        yield


@pytest.fixture(scope="session")
def stores(tmp_path_factory):
    """Password-protected stores for a self-signed localhost certificate."""
    directory = tmp_path_factory.mktemp("stores")
    key_store, trust_store = create_self_signed_stores(directory, password=STORE_PASSWORD)
    return Stores(key_store=str(key_store), trust_store=str(trust_store))


@pytest.fixture(scope="session")
def other_stores(tmp_path_factory):
    """Stores for a different certificate, which does not trust `stores`."""
    directory = tmp_path_factory.mktemp("other-stores")
    key_store, trust_store = create_self_signed_stores(directory, password=STORE_PASSWORD)
    return Stores(key_store=str(key_store), trust_store=str(trust_store))


class _StatusHandler(socketserver.StreamRequestHandler):
    reply = b"Zookeeper version: 3.5.5\r\n"

    def handle(self):
        self.rfile.read(4)
        self.wfile.write(self.reply)


@pytest.fixture
def status_listener():
    """Plain TCP listener that answers any command with a version line.

    Yields:
        Port the listener is bound to
    """
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _StatusHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()
        thread.join()


@pytest.fixture
def secure_listener(stores, tmp_path):
    """Embedded server behind the TLS connection factory, using `stores`.

    Yields:
        Port the listener is bound to
    """
    os.environ[properties.FOUR_LETTER_WORD_WHITELIST] = "*"
    os.environ[properties.SSL_KEYSTORE_LOCATION] = stores.key_store
    os.environ[properties.SSL_KEYSTORE_PASSWORD] = stores.password
    os.environ[properties.SSL_TRUSTSTORE_LOCATION] = stores.trust_store
    os.environ[properties.SSL_TRUSTSTORE_PASSWORD] = stores.password

    server = EmbeddedServer(tmp_path, tmp_path)
    factory = TLSServerCnxnFactory()
    factory.configure(("localhost", 0), 10, True)
    factory.startup(server)
    try:
        yield factory.local_port
    finally:
        factory.close_all()
        factory.shutdown()
        server.shutdown()
        server.database.close()
