"""Chat wire format, message validation and blocking socket helpers."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

DELIMITER = "|"
DEFAULT_NAME = "????"

RESET = "\033[0m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
BLUE = "\033[34m"
MAGENTA = "\033[35m"
CYAN = "\033[36m"
WHITE = "\033[37m"
DEFAULT_COLOR = WHITE

PORT = 8888
MAX_INPUT = 256
FRAME_SIZE = 276
USERNAME_SIZE = 12
COLOR_SIZE = 9
MESSAGE_SIZE = 256
SPAM_INTERVAL = 2

EXIT_COMMAND = "EXIT"
SHUTDOWN_NOTICE = "SERVER_SHUTDOWN"

_DELIM = DELIMITER.encode()


class ConnectionClosed(ConnectionError):
    """The peer closed the connection before the expected data arrived."""


@dataclass(frozen=True)
class ChatMessage:
    """A decoded chat line: sender name, ANSI colour and text."""

    username: str = DEFAULT_NAME
    color: str = DEFAULT_COLOR
    message: str = ""

    def __str__(self) -> str:
        return f"{self.color}{self.username}{RESET}: {self.message}"


class MessageState(Enum):
    VALID = "valid"
    EMPTY = "empty"
    INVALID = "invalid"
    SPAM = "spam"


class MessageValidator:
    """Checks outgoing chat lines, rejecting bursts sent too close together."""

    def __init__(
        self,
        interval: float = SPAM_INTERVAL,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.interval = interval
        self._clock = clock or (lambda: int(time.time()))
        self._last: Optional[float] = None

    def validate(self, text: str) -> MessageState:
        if not text:
            return MessageState.EMPTY
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return MessageState.SPAM
        self._last = now
        if not is_ascii_message(text):
            return MessageState.INVALID
        return MessageState.VALID


def is_ascii_message(text: str) -> bool:
    """True when every character is printable ASCII."""
    return all(32 <= ord(ch) <= 126 for ch in text)


def serialize_message(name: Optional[str], color: Optional[str], msg: str) -> bytes:
    """Encode a chat line as a NUL-terminated ``name|color|message`` frame."""
    name = DEFAULT_NAME if name is None else name
    color = DEFAULT_COLOR if color is None else color
    payload = f"{name}{DELIMITER}{color}{DELIMITER}{msg}".encode("utf-8")
    return payload[: FRAME_SIZE - 1] + b"\0"


def _next_token(raw: bytes, pos: int) -> tuple[Optional[bytes], int]:
    while pos < len(raw) and raw[pos : pos + 1] == _DELIM:
        pos += 1
    if pos >= len(raw):
        return None, len(raw)
    end = raw.find(_DELIM, pos)
    if end == -1:
        return raw[pos:], len(raw)
    return raw[pos:end], end + 1


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def unpack_message(data: bytes | str) -> ChatMessage:
    """Decode a frame produced by :func:`serialize_message`."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    raw = data.split(b"\0", 1)[0][: FRAME_SIZE - 1]

    username, pos = _next_token(raw, 0)
    color, pos = _next_token(raw, pos)
    message = raw[pos:]

    return ChatMessage(
        username=_decode(username[: USERNAME_SIZE - 1]) if username else DEFAULT_NAME,
        color=_decode(color[: COLOR_SIZE - 1]) if color else DEFAULT_COLOR,
        message=_decode(message[: MESSAGE_SIZE - 1]),
    )


def send_all(sock: socket.socket, data: bytes) -> int:
    """Send every byte of ``data``; return the number sent."""
    sock.sendall(data)
    return len(data)


def recv_all(sock: socket.socket, size: int) -> bytes:
    """Receive exactly ``size`` bytes or raise :class:`ConnectionClosed`."""
    chunks = bytearray()
    while len(chunks) < size:
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            raise ConnectionClosed(
                f"connection closed after {len(chunks)} of {size} bytes"
            )
        chunks.extend(chunk)
    return bytes(chunks)