"""Interactive chat client that reaches the relay server through Tor."""

from __future__ import annotations

import argparse
import os
import queue
import re
import select
import socket
import struct
import sys
import threading
from enum import Enum
from typing import IO, Mapping, Optional, Sequence

from .protocol import (
    BLUE,
    CYAN,
    DEFAULT_COLOR,
    DEFAULT_NAME,
    EXIT_COMMAND,
    FRAME_SIZE,
    GREEN,
    MAGENTA,
    MAX_INPUT,
    PORT,
    RED,
    RESET,
    SHUTDOWN_NOTICE,
    USERNAME_SIZE,
    WHITE,
    YELLOW,
    ConnectionClosed,
    MessageState,
    MessageValidator,
    recv_all,
    send_all,
    serialize_message,
    unpack_message,
)
from .socks5 import socks5_connect

TOR_HOST = "127.0.0.1"
TOR_PORT = 9050
ONION_VARIABLE = "WHISP_ONION"

OPTION_HOST = 1
OPTION_JOIN = 2
OPTION_QUIT = 3

SESSION_ID = struct.Struct("!i")
JOIN_REPLY = struct.Struct("=i")

JOIN_OK = 1
JOIN_FULL = 2

COLORS = {1: RED, 2: GREEN, 3: YELLOW, 4: BLUE, 5: MAGENTA, 6: CYAN}
_COLOR_NAMES = ["Red", "Green", "Yellow", "Blue", "Magenta", "Cyan"]

MENU_TEXT = "1. Host Session\n2. Join Session\n3. Quit\nEnter choice: "

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


class ClientState(Enum):
    MENU = "menu"
    HOSTING = "hosting"
    JOINING = "joining"
    QUIT = "quit"


def _atoi(text: str) -> int:
    """Leading integer of ``text``, or 0 when there is none."""
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else 0


def _to_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def get_onion_address(environ: Optional[Mapping[str, str]] = None) -> str:
    """The server's onion address from the environment."""
    env = os.environ if environ is None else environ
    onion = env.get(ONION_VARIABLE)
    if not onion:
        raise RuntimeError(
            f"{ONION_VARIABLE} environment variable not set; "
            f"please set: export {ONION_VARIABLE}=your_onion_address.onion"
        )
    return onion


def parse_username(line: str) -> str:
    """Username from an input line; ValueError when it is too long."""
    if line == "":
        return DEFAULT_NAME
    name = line[:-1] if line.endswith("\n") else line
    if len(name) > USERNAME_SIZE - 2:
        raise ValueError(f"username too long; keep it under {USERNAME_SIZE} characters")
    return name or DEFAULT_NAME


def choose_color(choice: str | int) -> str:
    """ANSI colour for a menu choice 1-6; white for anything else."""
    number = choice if isinstance(choice, int) else _atoi(choice)
    return COLORS.get(number, WHITE)


def connect_via_tor(
    onion: str, proxy_host: str = TOR_HOST, proxy_port: int = TOR_PORT
) -> socket.socket:
    """Open a connection to the server's onion address through a SOCKS5 proxy."""
    last_error: Optional[OSError] = None
    infos = socket.getaddrinfo(proxy_host, proxy_port, socket.AF_UNSPEC, socket.SOCK_STREAM)
    for family, socktype, proto, _, sockaddr in infos:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            last_error = exc
            continue
        try:
            sock.connect(sockaddr)
            socks5_connect(sock, onion, PORT)
        except OSError as exc:
            sock.close()
            last_error = exc
            continue
        return sock
    raise ConnectionError(
        f"failed to connect to {onion} through {proxy_host}:{proxy_port}"
    ) from last_error


class _LineReader:
    """Reads lines from a stream on a thread; selectable through a wake socket."""

    def __init__(self, stream: IO[str]) -> None:
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._wake_r, self._wake_w = socket.socketpair()
        self._thread = threading.Thread(target=self._pump, args=(stream,), daemon=True)
        self._thread.start()

    def _pump(self, stream: IO[str]) -> None:
        try:
            for line in iter(stream.readline, ""):
                self._push(line)
        except (OSError, ValueError):
            pass
        self._push(None)

    def _push(self, line: Optional[str]) -> None:
        self._queue.put(line)
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def fileno(self) -> int:
        return self._wake_r.fileno()

    def get(self) -> Optional[str]:
        """Next line, blocking; None once the stream has ended."""
        line = self._queue.get()
        try:
            self._wake_r.recv(1)
        except OSError:
            pass
        return line

    def close(self) -> None:
        self._wake_r.close()
        self._wake_w.close()


class WhispClient:
    """Menu and chat loop of one connected user."""

    def __init__(
        self,
        sock: socket.socket,
        username: str = DEFAULT_NAME,
        color: str = DEFAULT_COLOR,
        stdin: Optional[IO[str]] = None,
        stdout: Optional[IO[str]] = None,
        validator: Optional[MessageValidator] = None,
    ) -> None:
        self.sock = sock
        self.username = username
        self.color = color
        self._stdin = stdin if stdin is not None else sys.stdin
        self._out = stdout if stdout is not None else sys.stdout
        self.validator = validator if validator is not None else MessageValidator()
        self._reader: Optional[_LineReader] = None

    @property
    def _input(self) -> _LineReader:
        if self._reader is None:
            self._reader = _LineReader(self._stdin)
        return self._reader

    def _say(self, text: str = "", end: str = "\n") -> None:
        self._out.write(text + end)
        self._out.flush()

    def _wait(self) -> list:
        ready, _, _ = select.select([self.sock, self._input], [], [])
        return ready

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None

    def menu(self) -> ClientState:
        """Show the menu and act on one choice."""
        states = {
            OPTION_HOST: ClientState.HOSTING,
            OPTION_JOIN: ClientState.JOINING,
            OPTION_QUIT: ClientState.QUIT,
        }
        while True:
            self._say(MENU_TEXT, end="")
            ready = self._wait()

            if self.sock in ready:
                try:
                    data = self.sock.recv(MAX_INPUT - 1)
                except OSError as exc:
                    self._say(f"\nLost connection to server: {exc}")
                    return ClientState.QUIT
                if not data:
                    self._say("\nServer closed the connection")
                    return ClientState.QUIT
                if data.split(b"\0", 1)[0] == SHUTDOWN_NOTICE.encode():
                    self._say("\nServer is shutting down")
                    return ClientState.QUIT

            if self._input in ready:
                line = self._input.get()
                if line is None:
                    return ClientState.QUIT
                choice = _atoi(line)
                state = states.get(choice)
                if state is None:
                    self._say("Invalid option")
                    return ClientState.MENU
                try:
                    send_all(self.sock, bytes([choice]))
                except OSError:
                    return ClientState.QUIT
                return state

    def host(self) -> ClientState:
        """Receive a new session id from the server and start chatting."""
        try:
            (session_id,) = SESSION_ID.unpack(recv_all(self.sock, SESSION_ID.size))
        except (ConnectionClosed, OSError):
            self._say("Failed to receive session ID")
            return ClientState.MENU
        self._say(f"Your session ID: {session_id}")
        self.chat_loop()
        return ClientState.MENU

    def join(self) -> ClientState:
        """Ask for a session id, send it and chat if the server accepts."""
        self._say("Provide sessionID: ", end="")
        line = self._input.get()
        if line is None:
            return ClientState.MENU
        session_id = _to_int32(_atoi(line))
        try:
            send_all(self.sock, SESSION_ID.pack(session_id))
            self._say("Waiting for server confirmation...")
            (confirm,) = JOIN_REPLY.unpack(recv_all(self.sock, JOIN_REPLY.size))
        except (ConnectionClosed, OSError):
            self._say("Lost connection to server")
            return ClientState.QUIT
        if confirm == JOIN_OK:
            self.chat_loop()
        elif confirm == JOIN_FULL:
            self._say("Session is full try again later")
        else:
            self._say("Invalid sessionID")
        return ClientState.MENU

    def _send_exit(self) -> None:
        try:
            send_all(self.sock, EXIT_COMMAND.encode() + b"\0")
        except OSError:
            pass

    def _handle_chat_line(self, line: str) -> bool:
        """Act on one typed line; True when the user leaves the chat."""
        text = line[:-1] if line.endswith("\n") else line
        if len(text) > MAX_INPUT - 2:
            self._say("Message too long. Try again")
            return False
        state = self.validator.validate(text)
        if state is MessageState.EMPTY:
            self._say("Empty message. Try again")
        elif state is MessageState.SPAM:
            self._say("Please don't spam")
        elif state is MessageState.INVALID:
            self._say("Invalid ASCII characters")
        elif text == EXIT_COMMAND:
            self._send_exit()
            return True
        else:
            try:
                send_all(self.sock, serialize_message(self.username, self.color, text))
            except OSError:
                self._say("Server error. Disconnecting")
                return True
        return False

    def chat_loop(self) -> None:
        """Print incoming messages and send typed ones until EXIT."""
        self._say(f"Type {EXIT_COMMAND} to return to menu")
        while True:
            ready = self._wait()
            if self.sock in ready:
                try:
                    data = self.sock.recv(FRAME_SIZE - 1)
                except OSError:
                    data = b""
                if not data:
                    self._say("Server error. Disconnecting")
                    return
                self._say(str(unpack_message(data)))
            if self._input in ready:
                line = self._input.get()
                if line is None:
                    self._send_exit()
                    return
                if self._handle_chat_line(line):
                    return

    def run(self) -> None:
        """Drive the menu, hosting and joining states until the user quits."""
        handlers = {
            ClientState.MENU: self.menu,
            ClientState.HOSTING: self.host,
            ClientState.JOINING: self.join,
        }
        state = ClientState.MENU
        while state is not ClientState.QUIT:
            state = handlers.get(state, self.menu)()


def _ask_username(stdin: IO[str], out: IO[str]) -> str:
    while True:
        out.write("Set username (ENTER to skip): ")
        out.flush()
        try:
            return parse_username(stdin.readline())
        except ValueError:
            out.write(f"Username too long. Keep it under {USERNAME_SIZE} characters\n")


def _ask_color(stdin: IO[str], out: IO[str]) -> str:
    out.write("Choose message color:\n")
    for number, name in enumerate(_COLOR_NAMES, start=1):
        out.write(f"{COLORS[number]}{number}. {name}\n{RESET}")
    out.write("Enter choice (1-6, ENTER to skip): ")
    out.flush()
    return choose_color(stdin.readline())


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="whisp", description="Chat through the relay server.")
    parser.add_argument("--proxy-host", default=TOR_HOST)
    parser.add_argument("--proxy-port", type=int, default=TOR_PORT)
    args = parser.parse_args(argv)

    try:
        onion = get_onion_address()
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        sock = connect_via_tor(onion, args.proxy_host, args.proxy_port)
    except OSError as exc:
        print(f"client: failed to connect: {exc}", file=sys.stderr)
        return 2

    with sock:
        print("\n/////////// WELCOME TO WHISP ///////////\n")
        username = _ask_username(sys.stdin, sys.stdout)
        print(f"Username set: {username}")
        color = _ask_color(sys.stdin, sys.stdout)
        client = WhispClient(sock, username=username, color=color)
        try:
            client.run()
        finally:
            client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())