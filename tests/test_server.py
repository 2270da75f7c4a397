import socket
import threading
import time

import pytest

from whisp.protocol import serialize_message
from whisp.server import JOIN_REPLY, SESSION_ID, ChatServer
from whisp.sessions import JoinStatus, SessionRegistry


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _start(server):
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


def _connect(server):
    sock = socket.create_connection(server.address[:2], timeout=5)
    return sock


@pytest.fixture
def running():
    registry = SessionRegistry(max_clients=2, id_source=iter(range(123456, 123999)).__next__)
    server = ChatServer(host="127.0.0.1", port=0, registry=registry)
    thread = _start(server)
    sockets = []

    def connect():
        sock = _connect(server)
        sockets.append(sock)
        return sock

    yield server, connect, thread
    server.shutdown()
    thread.join(timeout=5)
    for sock in sockets:
        sock.close()


def _host(sock):
    sock.sendall(bytes([1]))
    (session_id,) = SESSION_ID.unpack(_recv_exact(sock, SESSION_ID.size))
    return session_id


def _join(sock, session_id):
    sock.sendall(bytes([2]) + SESSION_ID.pack(session_id))
    (status,) = JOIN_REPLY.unpack(_recv_exact(sock, JOIN_REPLY.size))
    return status


def test_bind_uses_ephemeral_port():
    server = ChatServer(host="127.0.0.1", port=0)
    try:
        server.bind()
        assert server.address[0] == "127.0.0.1"
        assert server.address[1] > 0
    finally:
        server.shutdown()


def test_host_receives_session_id(running):
    server, connect, _ = running
    host = connect()
    session_id = _host(host)
    assert session_id == 123456
    assert [s.session_id for s in server.registry.active_sessions()] == [123456]


def test_join_unknown_session_is_invalid(running):
    _, connect, _ = running
    client = connect()
    assert _join(client, 42) == JoinStatus.INVALID


def test_messages_relayed_between_members(running):
    _, connect, _ = running
    host = connect()
    guest = connect()
    session_id = _host(host)
    assert _join(guest, session_id) == JoinStatus.OK

    frame = serialize_message("bob", None, "hello")
    guest.sendall(frame)
    assert _recv_exact(host, len(frame)) == frame

    reply = serialize_message("ann", None, "hi bob")
    host.sendall(reply)
    assert _recv_exact(guest, len(reply)) == reply


def test_full_session_rejects_join(running):
    _, connect, _ = running
    host = connect()
    guest = connect()
    late = connect()
    session_id = _host(host)
    assert _join(guest, session_id) == JoinStatus.OK
    assert _join(late, session_id) == JoinStatus.FULL


def test_exit_and_quit_wipe_session(running):
    server, connect, _ = running
    host = connect()
    _host(host)
    host.sendall(b"EXIT\0")
    assert _wait_for(lambda: server.registry.active_sessions() == [])
    host.sendall(bytes([3]))
    assert host.recv(16) == b""
    assert _wait_for(lambda: server.connection_count == 0)


def test_disconnect_removes_member(running):
    server, connect, _ = running
    host = connect()
    guest = connect()
    session_id = _host(host)
    assert _join(guest, session_id) == JoinStatus.OK
    guest.close()
    _wait_for(lambda: [s.client_count for s in server.registry.active_sessions()] == [1])
    sessions = server.registry.active_sessions()
    assert [s.session_id for s in sessions] == [session_id]
    assert [s.client_count for s in sessions] == [1]


def test_connection_limit_rejects_extra_client():
    server = ChatServer(host="127.0.0.1", port=0, max_connections=1)
    thread = _start(server)
    first = _connect(server)
    second = _connect(server)
    try:
        assert _wait_for(lambda: server.connection_count == 1)
        try:
            data = second.recv(16)
        except ConnectionResetError:
            data = b""
        assert data == b""
        assert server.connection_count == 1
    finally:
        first.close()
        second.close()
        server.shutdown()
        thread.join(timeout=5)


def test_shutdown_notifies_members_and_stops():
    server = ChatServer(host="127.0.0.1", port=0)
    thread = _start(server)
    host = _connect(server)
    try:
        _host(host)
        server.shutdown()
        assert _recv_exact(host, 16) == b"SERVER_SHUTDOWN\0"
        thread.join(timeout=5)
        assert not thread.is_alive()
    finally:
        host.close()


def test_handle_client_quit_closes_connection():
    server = ChatServer()
    ours, theirs = socket.socketpair()
    theirs.settimeout(5)
    try:
        ours.settimeout(None)
        worker = threading.Thread(target=server.handle_client, args=(ours,))
        worker.start()
        theirs.sendall(bytes([3]))
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert theirs.recv(16) == b""
    finally:
        theirs.close()


def test_relay_forwards_to_others_until_exit():
    registry = SessionRegistry(id_source=lambda: 555555)
    server = ChatServer(registry=registry)
    a_server, a_client = socket.socketpair()
    b_server, b_client = socket.socketpair()
    for sock in (a_client, b_client):
        sock.settimeout(5)
    try:
        session = registry.create(a_server)
        assert registry.add(b_server, session.session_id) is session
        worker = threading.Thread(target=server.relay, args=(a_server, session))
        worker.start()

        frame = serialize_message("ann", None, "ping")
        a_client.sendall(frame)
        assert _recv_exact(b_client, len(frame)) == frame

        a_client.sendall(b"EXIT\0")
        worker.join(timeout=5)
        assert not worker.is_alive()
    finally:
        for sock in (a_server, a_client, b_server, b_client):
            sock.close()