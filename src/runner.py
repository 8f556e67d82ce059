"""In-process server lifecycle management.

Runs one embedded server on a loopback port, optionally behind TLS:

    with ServiceRunner(RunnerSettings(port=2181)) as runner:
        runner.initialize()
        runner.start()
        ...

initialize() prepares a fresh working directory and the ambient settings
the server reads at construction time; start() builds the server, binds
the listener and blocks until the server answers a readiness probe;
stop() tears both down; close() also deletes the working directory.
"""

import io
import logging
import shutil
import sys
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Optional

import readiness
from config import RunnerSettings
from zkserver import properties
from zkserver.cnxn import ServerCnxnFactory, create_factory
from zkserver.server import EmbeddedServer

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "localhost"
BACKLOG = 1000
WORK_DIR_PREFIX = "zookeeper"
WORK_DIR_SUFFIX = "inproc"

_UNSET = object()


class RunnerError(Exception):
    """Base exception for lifecycle errors."""


class InitializationError(RunnerError):
    """Working directory could not be prepared."""


class IllegalStateError(RunnerError):
    """Operation not allowed in the current lifecycle state."""


class AlreadyStartedError(IllegalStateError):
    """A server is already running under this runner."""


class StartupTimeoutError(RunnerError):
    """Server never answered the readiness probe."""


class RunnerState(Enum):
    IDLE = "idle"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"
    RELEASED = "released"


class AtomicReference:
    """A value slot with atomic swap and compare-and-set."""

    def __init__(self, value=None):
        self._value = value
        self._lock = threading.Lock()

    def get(self):
        with self._lock:
            return self._value

    def set(self, value) -> None:
        with self._lock:
            self._value = value

    def get_and_set(self, value):
        with self._lock:
            old, self._value = self._value, value
            return old

    def compare_and_set(self, expected, value) -> bool:
        """Set value only if the slot currently holds expected (by identity)."""
        with self._lock:
            if self._value is not expected:
                return False
            self._value = value
            return True


class ServiceRunner:
    """Owns one embedded server, its listener and its working directory.

    At most one server runs per runner. stop() and close() are safe to
    call from any state and any number of times.
    """

    def __init__(self, settings: Optional[RunnerSettings] = None):
        self.settings = settings or RunnerSettings()
        self._server: AtomicReference = AtomicReference()
        self._factory: AtomicReference = AtomicReference()
        self._work_dir: AtomicReference = AtomicReference()
        self._saved_whitelist = _UNSET
        self._tls_applied = False
        self._stopped = False
        self._released = False

    def __enter__(self) -> "ServiceRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def state(self) -> RunnerState:
        if self._released:
            return RunnerState.RELEASED
        if self._server.get() is not None:
            return RunnerState.RUNNING
        if self._stopped:
            return RunnerState.STOPPED
        if self._work_dir.get() is not None:
            return RunnerState.INITIALIZED
        return RunnerState.IDLE

    @property
    def work_dir(self) -> Optional[Path]:
        return self._work_dir.get()

    @property
    def port(self) -> int:
        """Port the listener is bound to (the configured port until started)."""
        factory: Optional[ServerCnxnFactory] = self._factory.get()
        if factory is not None and factory.local_port is not None:
            return factory.local_port
        return self.settings.port

    @property
    def server(self) -> Optional[EmbeddedServer]:
        return self._server.get()

    def initialize(self) -> None:
        """Prepare the working directory and ambient server settings.

        Raises:
            InitializationError: If the working directory cannot be created
            IllegalStateError: If the runner was already stopped or closed
        """
        if self._stopped or self._released:
            raise IllegalStateError("Runner already stopped")

        if self._work_dir.get() is None:
            try:
                work_dir = Path(tempfile.mkdtemp(
                    prefix=WORK_DIR_PREFIX,
                    suffix=WORK_DIR_SUFFIX,
                    dir=self.settings.temp_root,
                ))
            except OSError as e:
                raise InitializationError(f"Couldn't create working directory: {e}") from e
            if not self._work_dir.compare_and_set(None, work_dir):
                shutil.rmtree(work_dir, ignore_errors=True)
            else:
                logger.debug("Created working directory %s", work_dir)

        # The stat probe is a four-letter word, disabled by default
        if self._saved_whitelist is _UNSET:
            self._saved_whitelist = properties.get_property(properties.FOUR_LETTER_WORD_WHITELIST)
        properties.set_property(properties.FOUR_LETTER_WORD_WHITELIST, "*")

        tls = self.settings.tls
        if tls.secure:
            properties.set_property(properties.SERVER_CNXN_FACTORY, "tls")
            properties.set_property(properties.SSL_KEYSTORE_LOCATION, tls.key_store)
            properties.set_property(properties.SSL_KEYSTORE_PASSWORD, tls.key_store_password)
            properties.set_property(properties.SSL_TRUSTSTORE_LOCATION, tls.trust_store)
            properties.set_property(properties.SSL_TRUSTSTORE_PASSWORD, tls.trust_store_password)
            self._tls_applied = True

    def start(self) -> None:
        """Start the server and block until it answers the readiness probe.

        On failure the caller must still call stop() or close() to release
        whatever was acquired.

        Raises:
            IllegalStateError: If initialize() has not been called
            AlreadyStartedError: If a server is already running
            StartupTimeoutError: If the server never became ready
            OSError: If the listener cannot bind its port
        """
        work_dir = self._work_dir.get()
        if work_dir is None or self._stopped or self._released:
            raise IllegalStateError("Not Initialized")

        server = EmbeddedServer(work_dir, work_dir, self.settings.tick_time)
        if not self._server.compare_and_set(None, server):
            server.shutdown()
            raise AlreadyStartedError("Already started")

        factory = create_factory()
        self._factory.set(factory)
        tls = self.settings.tls
        address = f"{LOOPBACK_ADDRESS}:{self.settings.port}"
        logger.info("Starting ZooKeeper server at %s ...", address)
        factory.configure((LOOPBACK_ADDRESS, self.settings.port), BACKLOG, tls.secure)
        factory.startup(server)

        if not readiness.wait_for_server_up(
            factory.local_port,
            secure=tls.secure,
            trust_store=tls.trust_store,
            key_store=tls.key_store,
            key_store_password=tls.key_store_password,
            trust_store_password=tls.trust_store_password,
            settings=self.settings.probe,
        ):
            raise StartupTimeoutError(
                f"ZooKeeper server failed to start on port {factory.local_port}"
            )

        conf = io.StringIO()
        server.dump_conf(conf)
        print(conf.getvalue(), file=sys.stderr)

    def stop(self) -> None:
        """Shut down the listener and the server. Never raises.

        Listener and server teardown are attempted independently; a
        failure in one is logged and does not skip the other.
        """
        try:
            factory = self._factory.get_and_set(None)
            if factory is not None:
                factory.close_all()
                factory.shutdown()
        except Exception:
            logger.warning("Unable to cleanly shutdown ZooKeeper connection factory", exc_info=True)

        try:
            server = self._server.get_and_set(None)
            if server is not None:
                self._stopped = True
                server.shutdown()
                database = server.database
                if database is not None:
                    # Release the transaction log
                    database.close()
        except Exception:
            logger.warning("Unable to cleanly shutdown ZooKeeper server", exc_info=True)

        if self._tls_applied:
            properties.clear_ssl_properties()
            self._tls_applied = False

    def close(self) -> None:
        """Stop the server and delete the working directory. Never raises."""
        self.stop()

        work_dir = self._work_dir.get_and_set(None)
        if work_dir is not None:
            logger.info("Cleaning up %s", work_dir)
            try:
                shutil.rmtree(work_dir)
            except OSError as e:
                logger.warning("Unable to delete %s: %s", work_dir, e)

        if self._saved_whitelist is not _UNSET:
            if self._saved_whitelist is None:
                properties.clear_property(properties.FOUR_LETTER_WORD_WHITELIST)
            else:
                properties.set_property(properties.FOUR_LETTER_WORD_WHITELIST, self._saved_whitelist)
            self._saved_whitelist = _UNSET

        self._released = True
