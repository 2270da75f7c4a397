"""Session relay server: clients host or join rooms and chat through it."""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import struct
import threading
from typing import Optional, Sequence

from .protocol import (
    EXIT_COMMAND,
    PORT,
    SHUTDOWN_NOTICE,
    ConnectionClosed,
    recv_all,
    send_all,
)
from .sessions import (
    BACKLOG,
    MAX_CONNECTIONS,
    JoinStatus,
    Session,
    SessionRegistry,
)

log = logging.getLogger(__name__)

OPTION_HOST = 1
OPTION_JOIN = 2
OPTION_QUIT = 3

RELAY_BUFFER = 279
ACCEPT_POLL = 0.2

SESSION_ID = struct.Struct("!i")
JOIN_REPLY = struct.Struct("=i")


def _text_of(frame: bytes) -> bytes:
    """The part of a frame up to its first NUL byte."""
    return frame.split(b"\0", 1)[0]


class ChatServer:
    """Accepts clients and relays chat lines between members of a session."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = PORT,
        registry: Optional[SessionRegistry] = None,
        max_connections: int = MAX_CONNECTIONS,
        backlog: int = BACKLOG,
    ) -> None:
        self.host = host
        self.port = port
        self.registry = registry if registry is not None else SessionRegistry()
        self.max_connections = max_connections
        self.backlog = backlog
        self._listener: Optional[socket.socket] = None
        self._clients: set[socket.socket] = set()
        self._clients_lock = threading.Lock()
        self._broadcast_lock = threading.Lock()
        self._stopping = threading.Event()

    @property
    def address(self) -> tuple:
        """Address of the listening socket."""
        if self._listener is None:
            raise RuntimeError("server is not bound")
        return self._listener.getsockname()

    @property
    def connection_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    def bind(self) -> socket.socket:
        """Create, bind and listen on the server socket."""
        if self._listener is not None:
            return self._listener
        last_error: Optional[OSError] = None
        infos = socket.getaddrinfo(
            self.host, self.port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )
        for family, socktype, proto, _, sockaddr in infos:
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError as exc:
                last_error = exc
                continue
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(sockaddr)
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            sock.listen(self.backlog)
            sock.settimeout(ACCEPT_POLL)
            self._listener = sock
            return sock
        raise OSError(f"failed to bind {self.host}:{self.port}") from last_error

    def serve_forever(self) -> None:
        """Accept clients until :meth:`shutdown` is called."""
        listener = self.bind()
        log.info("waiting for new connections")
        while not self._stopping.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopping.is_set():
                    break
                log.exception("accept failed")
                continue
            conn.settimeout(None)
            with self._clients_lock:
                if len(self._clients) >= self.max_connections:
                    log.warning("max connections reached, client rejected")
                    conn.close()
                    continue
                self._clients.add(conn)
            log.info("connection from %s", peer[0])
            worker = threading.Thread(target=self.handle_client, args=(conn,), daemon=True)
            try:
                worker.start()
            except RuntimeError:
                log.exception("could not start client thread")
                with self._clients_lock:
                    self._clients.discard(conn)
                conn.close()

    def handle_client(self, conn: socket.socket) -> None:
        """Serve one client's menu choices until it quits or disconnects."""
        current: Optional[Session] = None
        try:
            while True:
                try:
                    option = recv_all(conn, 1)[0]
                except (ConnectionClosed, OSError):
                    log.info("client %s disconnected", conn.fileno())
                    break
                log.debug("client sent option %d", option)

                if option == OPTION_QUIT:
                    break
                if option == OPTION_HOST:
                    session = self.registry.create(conn)
                    session_id = session.session_id if session is not None else -1
                    try:
                        send_all(conn, SESSION_ID.pack(session_id))
                    except OSError:
                        log.warning("failed to send session id")
                        if session is not None:
                            self.registry.leave(conn, session)
                        continue
                    if session is None:
                        continue
                    current = session
                elif option == OPTION_JOIN:
                    try:
                        (session_id,) = SESSION_ID.unpack(recv_all(conn, SESSION_ID.size))
                    except (ConnectionClosed, OSError):
                        log.warning("failed to receive session id")
                        continue
                    status = self.registry.validate(session_id)
                    try:
                        send_all(conn, JOIN_REPLY.pack(int(status)))
                    except OSError:
                        log.warning("failed to send join status")
                        continue
                    if status is not JoinStatus.OK:
                        log.info("client used invalid session id")
                        continue
                    session = self.registry.add(conn, session_id)
                    if session is None:
                        continue
                    current = session
                else:
                    continue

                self.relay(conn, current)
                self.registry.leave(conn, current)
                current = None
        finally:
            if current is not None:
                self.registry.leave(conn, current)
            conn.close()
            with self._clients_lock:
                self._clients.discard(conn)

    def relay(self, conn: socket.socket, session: Session) -> None:
        """Forward this client's frames to the rest of its session until EXIT."""
        while True:
            try:
                data = conn.recv(RELAY_BUFFER)
            except OSError:
                log.info("client hung up")
                return
            if not data:
                log.info("client disconnected")
                return
            if _text_of(data) == EXIT_COMMAND.encode():
                return
            with self._broadcast_lock:
                for member in list(session.clients):
                    if member is conn:
                        continue
                    try:
                        send_all(member, data)
                    except OSError:
                        log.warning("failed to relay message to a member")

    def shutdown(self) -> None:
        """Tell every session member the server is going away and stop accepting."""
        self._stopping.set()
        notice = SHUTDOWN_NOTICE.encode() + b"\0"
        for session in self.registry.active_sessions():
            for member in list(session.clients):
                try:
                    member.sendall(notice)
                    member.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
        if self._listener is not None:
            self._listener.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="whisp-server", description="Run the chat relay server.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=PORT)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    server = ChatServer(host=args.host, port=args.port)
    try:
        server.bind()
    except OSError as exc:
        print(f"server: failed to bind: {exc}")
        return 1

    def _stop(signum, frame):
        server.shutdown()
        raise SystemExit(0)

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    server.serve_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())