"""Protocol data units: states, addresses, headers and their wire format."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Optional

# Two ports, two sequence numbers, three flags and one padding byte.
_HEADER = struct.Struct("<HHIIBBBx")

HEADER_SIZE = _HEADER.size


class ProtocolState(enum.Enum):
    """Connection state of a socket."""

    IDLE = enum.auto()
    CLOSED = enum.auto()
    SYN_SENT = enum.auto()
    SYN_RECEIVED = enum.auto()
    ESTABLISHED = enum.auto()
    CLOSING = enum.auto()


class StartMode(enum.Enum):
    """Side on which the protocol stack is started."""

    CLIENT = enum.auto()
    SERVER = enum.auto()


@dataclass
class SockAddr:
    """Host name or IP address together with a protocol port."""

    ip_addr: Optional[str] = None
    port: int = 0


@dataclass
class Header:
    """Header of a PDU."""

    source_port: int = 0
    dest_port: int = 0
    seq_num: int = 0
    ack_num: int = 0
    syn: bool = False
    ack: bool = False
    fin: bool = False

    def pack(self) -> bytes:
        """Encode the header into its fixed-size wire form."""
        try:
            return _HEADER.pack(
                self.source_port,
                self.dest_port,
                self.seq_num,
                self.ack_num,
                int(bool(self.syn)),
                int(bool(self.ack)),
                int(bool(self.fin)),
            )
        except struct.error as exc:
            raise ValueError(f"header field out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        """Decode a header from the first HEADER_SIZE bytes of ``data``."""
        if len(data) < HEADER_SIZE:
            raise ValueError(
                f"need at least {HEADER_SIZE} bytes for a header, got {len(data)}"
            )
        source_port, dest_port, seq_num, ack_num, syn, ack, fin = _HEADER.unpack_from(
            data
        )
        return cls(
            source_port=source_port,
            dest_port=dest_port,
            seq_num=seq_num,
            ack_num=ack_num,
            syn=bool(syn),
            ack=bool(ack),
            fin=bool(fin),
        )


@dataclass
class Pdu:
    """A header followed by application data."""

    header: Header = field(default_factory=Header)
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        """Encode the PDU as one datagram."""
        return self.header.pack() + bytes(self.payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Pdu":
        """Decode a datagram into a PDU."""
        header = Header.unpack(data)
        return cls(header=header, payload=bytes(data[HEADER_SIZE:]))