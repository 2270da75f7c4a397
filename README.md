# whisp

whisp is a small chat program for the terminal. A relay server holds up to
ten chat sessions, and each session holds up to four people. Clients reach
the server through Tor as an onion service.

## Install

    pip install .

## Running the server

    whisp-server [--host HOST] [--port PORT]

By default the server listens on `127.0.0.1:8888`. Point a Tor hidden
service at that port. The server accepts at most 20 connections at once.
Ctrl-C or SIGTERM stops it. Before it exits, it sends `SERVER_SHUTDOWN` to
every client that is in a session and then shuts down those connections.

## Running the client

The client connects through a SOCKS5 proxy, which is Tor at
`127.0.0.1:9050` by default. It reads the server's onion address from the
`WHISP_ONION` environment variable and connects to port 8888 there:

    export WHISP_ONION=youraddress.onion
    whisp-client [--proxy-host HOST] [--proxy-port PORT]

When the client starts, it asks for a username of at most 10 characters.
Press ENTER to use `????`. It then asks for a message colour from 1 to 6
(red, green, yellow, blue, magenta, cyan). Any other answer gives white.
After that the menu appears:

1. **Host Session**: the server creates a session and the client prints
   its ID. Give this ID to the people you want to chat with.
2. **Join Session**: enter a session ID to join that session. The server
   refuses IDs it does not know and sessions that are already full.
3. **Quit**

While you chat, type `EXIT` to go back to the menu. A message must not be
empty, must be printable ASCII and must be at most 254 characters long.
The client sends at most one message every two seconds. If you type
faster, it answers "Please don't spam" and does not send the message.

## Library use

Each module also works on its own:

- `whisp.protocol` holds the wire format (`serialize_message`,
  `unpack_message`, `ChatMessage`), the message checks
  (`MessageValidator`, `MessageState`, `is_ascii_message`) and the
  blocking socket helpers `send_all` and `recv_all`. `recv_all` raises
  `ConnectionClosed` if the peer closes the connection before all the
  bytes arrive.
- `whisp.socks5` holds `build_connect_request` and `socks5_connect`. They
  perform a SOCKS5 CONNECT by domain name and raise `Socks5Error` when the
  proxy refuses.
- `whisp.sessions` holds `SessionRegistry`, `Session` and `JoinStatus`.
  The registry creates, validates, joins and leaves sessions, and several
  threads can use it at once.
- `whisp.server` holds `ChatServer`, which provides `bind`,
  `serve_forever`, `handle_client`, `relay` and `shutdown`.
- `whisp.client` holds `WhispClient`, which provides `menu`, `host`,
  `join`, `chat_loop` and `run`. It also holds `connect_via_tor`,
  `get_onion_address`, `parse_username` and `choose_color`.

## What it does not do

Messages travel as plain text between the server and its clients. Only
Tor protects them on the way. The server keeps no history and stores
nothing on disk, so a session ends when its last member leaves.

## Tests

    pip install .[test]
    pytest