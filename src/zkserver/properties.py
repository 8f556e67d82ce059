"""Process-wide settings read by the embedded server at construction time.

The server and its connection factories do not take TLS or admin-command
settings as parameters; they read them from the process environment, the
same way a JVM server reads system properties. Callers set these right
before constructing a server and clear them right after stopping it.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

SERVER_CNXN_FACTORY = "ZOOKEEPER_SERVER_CNXN_FACTORY"
SSL_KEYSTORE_LOCATION = "ZOOKEEPER_SSL_KEYSTORE_LOCATION"
SSL_KEYSTORE_PASSWORD = "ZOOKEEPER_SSL_KEYSTORE_PASSWORD"
SSL_TRUSTSTORE_LOCATION = "ZOOKEEPER_SSL_TRUSTSTORE_LOCATION"
SSL_TRUSTSTORE_PASSWORD = "ZOOKEEPER_SSL_TRUSTSTORE_PASSWORD"
FOUR_LETTER_WORD_WHITELIST = "ZOOKEEPER_4LW_COMMANDS_WHITELIST"

# Keys written when TLS is enabled, cleared together on stop
SSL_PROPERTIES = (
    SERVER_CNXN_FACTORY,
    SSL_KEYSTORE_LOCATION,
    SSL_KEYSTORE_PASSWORD,
    SSL_TRUSTSTORE_LOCATION,
    SSL_TRUSTSTORE_PASSWORD,
)


def get_property(key: str, default: Optional[str] = None) -> Optional[str]:
    """Return the current value of an ambient setting."""
    return os.environ.get(key, default)


def set_property(key: str, value: str) -> None:
    """Set an ambient setting for the whole process."""
    os.environ[key] = value


def clear_property(key: str) -> None:
    """Remove an ambient setting. Missing keys are ignored."""
    os.environ.pop(key, None)


def clear_ssl_properties() -> None:
    """Clear all TLS-related ambient settings."""
    for key in SSL_PROPERTIES:
        clear_property(key)
    logger.debug("Cleared ambient TLS settings")
