"""A TCP-like transport with partial reliability over UDP datagrams, with client, server and video gateway commands."""

__version__ = "0.1.0"

__all__ = ["client", "core", "gateway", "pdu", "protocol", "server"]