"""Embedded ZooKeeper-compatible server.

A single-node server that owns its storage and answers the four-letter-word
admin commands. Client connections are accepted by a connection factory
(see zkserver.cnxn), which hands each command to process_command().
"""

import logging
import threading
from pathlib import Path
from typing import Optional, TextIO

from zkserver import properties
from zkserver.database import Database

logger = logging.getLogger(__name__)

VERSION = "3.5.5-inproc"
BUILD_DATE = "05/03/2019 12:07 GMT"
DEFAULT_TICK_TIME = 3000
DEFAULT_MAX_CLIENT_CNXNS = 60

# Commands allowed when no whitelist is configured
DEFAULT_WHITELIST = "srvr"

FOUR_LETTER_WORDS = ("conf", "ruok", "srvr", "stat")


def parse_whitelist(value: Optional[str]) -> frozenset:
    """Parse a comma-separated command whitelist. "*" allows every command."""
    if not value:
        return frozenset()
    words = {w.strip() for w in value.split(",") if w.strip()}
    if "*" in words:
        return frozenset(FOUR_LETTER_WORDS)
    return frozenset(words & set(FOUR_LETTER_WORDS))


class EmbeddedServer:
    """In-process server backed by a data and snapshot directory.

    The command whitelist is read from the ambient settings when the
    server is constructed; later changes do not affect a built server.
    """

    def __init__(self, data_dir: Path, snap_dir: Path, tick_time: int = DEFAULT_TICK_TIME):
        if tick_time <= 0:
            raise ValueError(f"tick_time must be positive, got {tick_time}")
        self.data_dir = Path(data_dir)
        self.snap_dir = Path(snap_dir)
        self.tick_time = tick_time
        self.max_client_cnxns = DEFAULT_MAX_CLIENT_CNXNS
        self.client_port: Optional[int] = None
        self.database: Optional[Database] = Database(self.data_dir, self.snap_dir)
        self.whitelist = parse_whitelist(
            properties.get_property(properties.FOUR_LETTER_WORD_WHITELIST, DEFAULT_WHITELIST)
        )

        self._running = False
        self._received = 0
        self._sent = 0
        self._lock = threading.Lock()

    @property
    def min_session_timeout(self) -> int:
        return self.tick_time * 2

    @property
    def max_session_timeout(self) -> int:
        return self.tick_time * 20

    @property
    def is_running(self) -> bool:
        return self._running

    def startup(self) -> None:
        """Load storage and start serving requests."""
        if self.database is None:
            raise RuntimeError("Server storage already released")
        self.database.open()
        with self._lock:
            self._running = True
        logger.debug("Server started with data dir %s", self.data_dir)

    def shutdown(self) -> None:
        """Stop serving requests. Storage is left for the caller to close."""
        with self._lock:
            was_running, self._running = self._running, False
        if was_running:
            logger.debug("Server at %s shut down", self.data_dir)

    def dump_conf(self, stream: TextIO) -> None:
        """Write the effective server configuration, one key=value per line."""
        stream.write(self._conf_text())

    def _conf_text(self) -> str:
        lines = [
            f"clientPort={self.client_port if self.client_port is not None else ''}",
            f"dataDir={self.snap_dir.resolve() / 'version-2'}",
            f"dataDirSize={_dir_size(self.snap_dir)}",
            f"dataLogDir={self.data_dir.resolve() / 'version-2'}",
            f"dataLogSize={_dir_size(self.data_dir)}",
            f"tickTime={self.tick_time}",
            f"maxClientCnxns={self.max_client_cnxns}",
            f"minSessionTimeout={self.min_session_timeout}",
            f"maxSessionTimeout={self.max_session_timeout}",
            "serverId=0",
        ]
        return "\n".join(lines) + "\n"

    def is_whitelisted(self, command: str) -> bool:
        return command in self.whitelist

    def process_command(self, command: str, clients: list) -> Optional[str]:
        """Answer a four-letter-word command.

        Args:
            command: The 4-character command
            clients: Remote addresses of currently open connections

        Returns:
            Reply text, or None for an unknown command (connection is
            closed without a reply)
        """
        with self._lock:
            self._received += 1

        if command not in FOUR_LETTER_WORDS:
            logger.debug("Unknown command %r", command)
            return None
        if not self.is_whitelisted(command):
            return f"{command} is not executed because it is not in the whitelist.\n"

        if command == "ruok":
            reply = "imok"
        elif command == "conf":
            reply = self._conf_text()
        elif not self._running:
            reply = "This ZooKeeper instance is not currently serving requests\n"
        else:
            reply = self._stat_text(clients if command == "stat" else None)

        with self._lock:
            self._sent += 1
        return reply

    def _stat_text(self, clients: Optional[list]) -> str:
        lines = [f"Zookeeper version: {VERSION}, built on {BUILD_DATE}"]
        if clients is not None:
            lines.append("Clients:")
            lines.extend(f" /{c}[0](queued=0,recved=1,sent=0)" for c in clients)
            lines.append("")
        db = self.database
        lines.extend([
            "Latency min/avg/max: 0/0/0",
            f"Received: {self._received}",
            f"Sent: {self._sent}",
            f"Connections: {len(clients) if clients is not None else 0}",
            "Outstanding: 0",
            f"Zxid: 0x{db.zxid if db else 0:x}",
            "Mode: standalone",
            f"Node count: {db.node_count if db else 0}",
        ])
        return "\n".join(lines) + "\n"


def _dir_size(path: Path) -> int:
    """Total size in bytes of the regular files below path."""
    total = 0
    for p in path.rglob("*"):
        if p.is_file():
            total += p.stat().st_size
    return total
