"""Connection factories for the embedded server.

A factory owns the listening socket. It is configured with a bind address,
a backlog and a TLS flag, then started up with the server it serves. Each
accepted connection reads one four-letter-word command, writes the reply
and closes.

The factory class is chosen through the ambient SERVER_CNXN_FACTORY
setting: "threaded" (plain TCP only) or "tls" (plain or TLS).
"""

import logging
import socket
import socketserver
import ssl
import threading
from typing import Optional

from zkserver import properties
from zkserver.server import EmbeddedServer
from zkserver.tls import build_server_context, load_handshake_material

logger = logging.getLogger(__name__)

DEFAULT_FACTORY = "threaded"

# Seconds a client may take to send its command
CLIENT_TIMEOUT = 10.0


class _CommandHandler(socketserver.StreamRequestHandler):
    """Read a four-letter word and answer it."""

    timeout = CLIENT_TIMEOUT

    def setup(self):
        context = self.server.ssl_context
        if context is not None:
            self.request.settimeout(self.timeout)
            self.request = context.wrap_socket(self.request, server_side=True)
        self.server.track(self.request)
        super().setup()

    def handle(self):
        command = self.rfile.read(4).decode("ascii", errors="replace")
        if len(command) < 4:
            return
        zk = self.server.zk_server
        if zk is None:
            return
        reply = zk.process_command(command, self.server.client_addresses())
        if reply is not None:
            self.wfile.write(reply.encode("utf-8"))

    def finish(self):
        try:
            super().finish()
        finally:
            self.server.untrack(self.request)
            # socketserver only closes the plain socket it accepted
            if isinstance(self.request, ssl.SSLSocket):
                self.request.close()


class _ListenerServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """TCP listener that tracks open connections so they can be force-closed."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, bind_address, backlog: int, ssl_context: Optional[ssl.SSLContext]):
        self.request_queue_size = backlog
        self.ssl_context = ssl_context
        self.zk_server: Optional[EmbeddedServer] = None
        self._connections: dict = {}
        self._connections_lock = threading.Lock()
        super().__init__(bind_address, _CommandHandler, bind_and_activate=False)
        try:
            self.server_bind()
            self.server_activate()
        except Exception:
            self.server_close()
            raise

    def track(self, conn) -> None:
        with self._connections_lock:
            try:
                self._connections[conn] = conn.getpeername()
            except OSError:
                self._connections[conn] = None

    def untrack(self, conn) -> None:
        with self._connections_lock:
            self._connections.pop(conn, None)

    def client_addresses(self) -> list:
        with self._connections_lock:
            peers = list(self._connections.values())
        return [f"{p[0]}:{p[1]}" for p in peers if p]

    def close_connections(self) -> int:
        """Close every open connection. Returns how many were closed."""
        with self._connections_lock:
            conns = list(self._connections)
            self._connections.clear()
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        return len(conns)

    def handle_error(self, request, client_address):
        """Log per-connection failures (failed handshakes, resets) instead of printing."""
        logger.warning("Connection from %s failed", client_address, exc_info=True)


class ServerCnxnFactory:
    """Plain TCP connection factory."""

    supports_tls = False

    def __init__(self):
        self._listener: Optional[_ListenerServer] = None
        self._thread: Optional[threading.Thread] = None
        self.secure = False

    @property
    def local_port(self) -> Optional[int]:
        """Port actually bound, or None before configure()."""
        if self._listener is None:
            return None
        return self._listener.server_address[1]

    def configure(self, bind_address: tuple, backlog: int, secure: bool = False) -> None:
        """Bind the listening socket.

        Args:
            bind_address: (host, port) tuple; port 0 picks a free port
            backlog: Maximum number of pending connections
            secure: Require TLS on every connection

        Raises:
            ValueError: If TLS is requested from a factory without TLS support
            OSError: If the address cannot be bound
        """
        if secure and not self.supports_tls:
            raise ValueError(f"{type(self).__name__} does not support TLS")
        if self._listener is not None:
            raise RuntimeError("Connection factory already configured")
        self.secure = secure
        context = self._server_context() if secure else None
        self._listener = _ListenerServer(bind_address, backlog, context)
        logger.debug("Bound %s on %s:%d (backlog %d, secure=%s)",
                     type(self).__name__, bind_address[0], self.local_port, backlog, secure)

    def _server_context(self) -> Optional[ssl.SSLContext]:
        return None

    def startup(self, server: EmbeddedServer) -> None:
        """Start the server and begin accepting connections on a background thread."""
        if self._listener is None:
            raise RuntimeError("Connection factory not configured")
        server.client_port = self.local_port
        server.startup()
        self._listener.zk_server = server
        self._thread = threading.Thread(
            target=self._listener.serve_forever,
            name=f"cnxn-factory-{self.local_port}",
            daemon=True,
        )
        self._thread.start()

    def close_all(self) -> None:
        """Close every open client connection."""
        if self._listener is None:
            return
        closed = self._listener.close_connections()
        if closed:
            logger.debug("Closed %d client connection(s)", closed)

    def shutdown(self) -> None:
        """Stop accepting connections and release the listening socket."""
        listener, self._listener = self._listener, None
        thread, self._thread = self._thread, None
        if listener is None:
            return
        try:
            if thread is not None:
                listener.shutdown()
                thread.join()
        finally:
            listener.zk_server = None
            listener.server_close()


class TLSServerCnxnFactory(ServerCnxnFactory):
    """Connection factory with TLS support.

    The server certificate and the trusted client certificates come from
    the ambient key-store and trust-store settings, read at configure time.
    """

    supports_tls = True

    def _server_context(self) -> ssl.SSLContext:
        key_store = properties.get_property(properties.SSL_KEYSTORE_LOCATION)
        trust_store = properties.get_property(properties.SSL_TRUSTSTORE_LOCATION)
        if not key_store or not trust_store:
            raise ValueError(
                f"TLS requires {properties.SSL_KEYSTORE_LOCATION} and "
                f"{properties.SSL_TRUSTSTORE_LOCATION} to be set"
            )
        material = load_handshake_material(
            key_store,
            properties.get_property(properties.SSL_KEYSTORE_PASSWORD, ""),
            trust_store,
            properties.get_property(properties.SSL_TRUSTSTORE_PASSWORD, ""),
        )
        return build_server_context(material)


CNXN_FACTORIES = {
    "threaded": ServerCnxnFactory,
    "tls": TLSServerCnxnFactory,
}


def create_factory() -> ServerCnxnFactory:
    """Create the connection factory selected by the ambient settings.

    Raises:
        ValueError: If the selected factory name is unknown
    """
    name = properties.get_property(properties.SERVER_CNXN_FACTORY) or DEFAULT_FACTORY
    try:
        factory_class = CNXN_FACTORIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown connection factory '{name}' (available: {', '.join(CNXN_FACTORIES)})"
        ) from None
    logger.debug("Using connection factory %s", factory_class.__name__)
    return factory_class()
