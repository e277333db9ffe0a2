"""TCP accept loop that hands each connection to a Responder."""

from __future__ import annotations

from enum import Enum
import logging
import socket
import threading
from typing import List, Optional, Tuple

from .errors import RemoteRunError
from .sync.orchestrator import Responder

logger = logging.getLogger("remoterun.server")


class ServerState(str, Enum):
    """Responder server lifecycle states."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class ResponderServer:
    """Accepts connections and runs one responder cycle per connection.

    A failure in one connection is logged and never stops the accept loop.
    """

    def __init__(
        self,
        responder: Responder,
        host: str = "0.0.0.0",
        port: int = 55455,
        concurrent: bool = True,
        backlog: int = 16,
    ) -> None:
        self.responder = responder
        self.host = host
        self.port = port
        self.concurrent = concurrent
        self.backlog = backlog
        self.connections_handled = 0
        self.connections_failed = 0

        self._state = ServerState.STOPPED
        self._listener: Optional[socket.socket] = None
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def address(self) -> Tuple[str, int]:
        """Bound address; the real port once bound with port 0."""
        if self._listener is None:
            return self.host, self.port
        host, port = self._listener.getsockname()[:2]
        return host, port

    def bind(self) -> Tuple[str, int]:
        if self._listener is None:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                listener.bind((self.host, self.port))
                listener.listen(self.backlog)
            except OSError:
                listener.close()
                raise
            self._listener = listener
            logger.info("Listening on %s:%d", *self.address)
        return self.address

    def serve_forever(self) -> None:
        """Accept connections until :meth:`shutdown` is called."""
        self.bind()
        listener = self._listener
        self._state = ServerState.RUNNING
        try:
            while self._state is ServerState.RUNNING:
                try:
                    conn, peer = listener.accept()
                except OSError as exc:
                    if self._state is not ServerState.RUNNING:
                        break
                    logger.warning("Accept failed: %s", exc)
                    continue
                if self.concurrent:
                    worker = threading.Thread(
                        target=self._handle,
                        args=(conn, peer),
                        name=f"remoterun-conn-{peer[0]}:{peer[1]}",
                        daemon=True,
                    )
                    self._workers = [w for w in self._workers if w.is_alive()]
                    self._workers.append(worker)
                    worker.start()
                else:
                    self._handle(conn, peer)
        finally:
            self._state = ServerState.STOPPED
            self._close_listener()

    def shutdown(self, wait: float = 0.0) -> None:
        """Stop accepting; optionally wait for in-flight connections."""
        if self._state is ServerState.RUNNING:
            self._state = ServerState.STOPPING
        self._close_listener()
        if wait:
            for worker in list(self._workers):
                worker.join(timeout=wait)

    def _handle(self, conn: socket.socket, peer: Tuple[str, int]) -> None:
        logger.info("Handling request from %s:%d", peer[0], peer[1])
        with conn:
            try:
                result = self.responder.handle(conn)
            except RemoteRunError as exc:
                with self._lock:
                    self.connections_failed += 1
                logger.warning("Request from %s:%d aborted: %s", peer[0], peer[1], exc)
            except Exception:
                with self._lock:
                    self.connections_failed += 1
                logger.exception("Unexpected error handling %s:%d", peer[0], peer[1])
            else:
                logger.info(
                    "Done with %s:%d (%d lines, exit %s)",
                    peer[0],
                    peer[1],
                    result.lines_relayed,
                    result.returncode,
                )
        with self._lock:
            self.connections_handled += 1

    def _close_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        try:
            # Wake a thread blocked in accept() on platforms where close() alone does not.
            listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        listener.close()


__all__ = ["ResponderServer", "ServerState"]
