"""Minimal SOCKS5 CONNECT handshake by domain name, as used to reach Tor."""

from __future__ import annotations

import socket

from .protocol import ConnectionClosed, recv_all, send_all

SOCKS_VERSION = 5
CMD_CONNECT = 1
ATYP_DOMAIN = 3
NO_AUTH = 0
REPLY_SIZE = 10

GREETING = bytes([SOCKS_VERSION, 1, NO_AUTH])

_REPLY_TEXT = {
    1: "general SOCKS server failure",
    2: "connection not allowed by ruleset",
    3: "network unreachable",
    4: "host unreachable",
    5: "connection refused",
    6: "TTL expired",
    7: "command not supported",
    8: "address type not supported",
}


class Socks5Error(ConnectionError):
    """The SOCKS5 proxy refused or broke off the handshake."""

    def __init__(self, message: str, reply: int | None = None) -> None:
        super().__init__(message)
        self.reply = reply


def build_connect_request(host: str, port: int | str) -> bytes:
    """Build a CONNECT request addressing ``host`` by domain name."""
    name = host.encode("idna") if not host.isascii() else host.encode("ascii")
    if len(name) > 255:
        raise ValueError("host name longer than 255 bytes")
    port_number = int(port)
    if not 0 <= port_number <= 0xFFFF:
        raise ValueError(f"port out of range: {port_number}")
    return (
        bytes([SOCKS_VERSION, CMD_CONNECT, 0, ATYP_DOMAIN, len(name)])
        + name
        + port_number.to_bytes(2, "big")
    )


def socks5_connect(sock: socket.socket, host: str, port: int | str) -> None:
    """Ask the proxy on ``sock`` to open a tunnel to ``host:port``."""
    request = build_connect_request(host, port)
    try:
        send_all(sock, GREETING)
        recv_all(sock, 2)
        send_all(sock, request)
        reply = recv_all(sock, REPLY_SIZE)
    except ConnectionClosed as exc:
        raise Socks5Error("proxy closed the connection during handshake") from exc

    if reply[0] != SOCKS_VERSION:
        raise Socks5Error(f"unexpected SOCKS version {reply[0]}")
    if reply[1] != 0:
        text = _REPLY_TEXT.get(reply[1], "unassigned reply code")
        raise Socks5Error(f"proxy refused connection: {text}", reply=reply[1])