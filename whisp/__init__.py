"""Terminal chat sessions relayed by a server reached through a SOCKS5 (Tor) proxy."""

__version__ = "0.1.0"