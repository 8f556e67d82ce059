"""On-disk storage for the embedded server.

Only the parts the runner depends on are kept: the data and snapshot
directory layout and a transaction log file that stays open while the
server runs and must be closed on shutdown.
"""

import logging
import threading
from pathlib import Path
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

# Storage format version directory, matching the ZooKeeper on-disk layout
VERSION_DIR = "version-2"

# Znodes present in an empty tree: /, /zookeeper, /zookeeper/quota, /zookeeper/config
SYSTEM_NODE_COUNT = 4


class Database:
    """Transaction log and snapshot directories for one server instance.

    Attributes:
        data_dir: Directory holding the transaction log
        snap_dir: Directory holding snapshots
        zxid: Last transaction id applied
        node_count: Number of znodes in the tree
    """

    def __init__(self, data_dir: Path, snap_dir: Path):
        self.data_dir = Path(data_dir) / VERSION_DIR
        self.snap_dir = Path(snap_dir) / VERSION_DIR
        self.zxid = 0
        self.node_count = SYSTEM_NODE_COUNT
        self._log: Optional[BinaryIO] = None
        self._lock = threading.Lock()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.snap_dir.mkdir(parents=True, exist_ok=True)

    @property
    def log_path(self) -> Path:
        """Path of the current transaction log file."""
        return self.data_dir / f"log.{self.zxid + 1:x}"

    @property
    def is_open(self) -> bool:
        return self._log is not None

    def open(self) -> None:
        """Open the transaction log for appending. No-op if already open."""
        with self._lock:
            if self._log is not None:
                return
            self._log = open(self.log_path, "ab")
            logger.debug("Opened transaction log %s", self.log_path)

    def close(self) -> None:
        """Flush and close the transaction log. Safe to call repeatedly."""
        with self._lock:
            log, self._log = self._log, None
        if log is not None:
            log.close()
            logger.debug("Closed transaction log in %s", self.data_dir)
