"""Embedded ZooKeeper-compatible server.

A single-node, in-process server that answers the four-letter-word admin
commands over plain TCP or TLS. Only what is needed to run and probe a
local instance is implemented.
"""

from zkserver.server import (
    EmbeddedServer,
    DEFAULT_TICK_TIME,
    VERSION,
)
from zkserver.database import Database
from zkserver.cnxn import (
    ServerCnxnFactory,
    TLSServerCnxnFactory,
    create_factory,
)
from zkserver.tls import (
    CredentialError,
    CredentialFailure,
    HandshakeMaterial,
    KeyMaterial,
    TrustMaterial,
    build_client_context,
    build_server_context,
    create_self_signed_stores,
    load_handshake_material,
    load_key_material,
    load_trust_material,
)

__all__ = [
    # Server
    "EmbeddedServer",
    "DEFAULT_TICK_TIME",
    "VERSION",
    "Database",
    # Connection factories
    "ServerCnxnFactory",
    "TLSServerCnxnFactory",
    "create_factory",
    # TLS
    "CredentialError",
    "CredentialFailure",
    "HandshakeMaterial",
    "KeyMaterial",
    "TrustMaterial",
    "build_client_context",
    "build_server_context",
    "create_self_signed_stores",
    "load_handshake_material",
    "load_key_material",
    "load_trust_material",
]
