"""Video gateway: replays recorded RTP packets over UDP or the protocol stack."""

from __future__ import annotations

import argparse
import enum
import getopt
import socket
import struct
import sys
import time
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple

from mictcp.core import Core, CoreError
from mictcp.pdu import SockAddr, StartMode
from mictcp.protocol import MicTcp, MicTcpError

ENABLE_TCP_LOSS = True
TCP_LOSS_PERIOD = 600
TCP_LOSS_DELAY = 2
MAX_UDP_SEGMENT_SIZE = 1480
MICTCP_PORT = 1337
VIDEO_FILE = "../video/video.bin"
SINK_HOST = "127.0.0.1"
USAGE = "usage: gateway [-p|-s][-t tcp|mictcp] (<server>) <port>"

# Seconds and nanoseconds on 4 bytes each, then the packet size.
_PACKET_HEAD = struct.Struct("<IIi")

Timestamp = Tuple[int, int]


class GatewayFunction(enum.Enum):
    """Role of the gateway."""

    UNDEFINED = enum.auto()
    SOURCE = enum.auto()
    SINK = enum.auto()


class GatewayProtocol(enum.Enum):
    """Transport used by the gateway."""

    TCP = enum.auto()
    MICTCP = enum.auto()


class UsageError(Exception):
    """Raised when the command line is not valid."""


@dataclass(frozen=True)
class RtpPacket:
    """One recorded RTP packet with its capture time as (seconds, nanoseconds)."""

    timestamp: Timestamp
    data: bytes


def read_rtp_packet(stream: BinaryIO, buffer_size: int) -> Optional[RtpPacket]:
    """Read the next packet from ``stream``; return None at end of file."""
    head = stream.read(_PACKET_HEAD.size)
    if not head:
        return None
    sec, nsec, size = _PACKET_HEAD.unpack(head.ljust(_PACKET_HEAD.size, b"\0"))
    if size > buffer_size:
        raise ValueError("Buffer is too small to store the packet")
    if size < 0:
        raise ValueError(f"invalid packet size {size}")
    return RtpPacket((sec, nsec), stream.read(size))


def iter_rtp_packets(stream: BinaryIO, buffer_size: int) -> Iterator[RtpPacket]:
    """Yield every packet of ``stream`` in order."""
    while True:
        packet = read_rtp_packet(stream, buffer_size)
        if packet is None:
            return
        yield packet


def ts_subtract(time1: Timestamp, time2: Timestamp) -> Timestamp:
    """Return ``time1 - time2`` when ``time1`` is later, (0, 0) otherwise."""
    sec1, nsec1 = time1
    sec2, nsec2 = time2
    if (sec1, nsec1) <= (sec2, nsec2):
        return (0, 0)
    sec = sec1 - sec2
    if nsec1 < nsec2:
        return (sec - 1, nsec1 + 1_000_000_000 - nsec2)
    return (sec, nsec1 - nsec2)


def _paced(packets: Iterable[RtpPacket]) -> Iterator[RtpPacket]:
    """Yield packets, waiting between them as long as their timestamps say."""
    last: Optional[Timestamp] = None
    for packet in packets:
        if last is not None:
            sec, nsec = ts_subtract(packet.timestamp, last)
            delay = sec + nsec / 1_000_000_000
            if delay > 0:
                time.sleep(delay)
        last = packet.timestamp
        yield packet


def parse_args(argv: Sequence[str]) -> Tuple[GatewayFunction, GatewayProtocol, List[str]]:
    """Parse options ``-s``, ``-p`` and ``-t tcp|mictcp``; return role, transport and operands."""
    try:
        options, operands = getopt.gnu_getopt(list(argv), "t:sp")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc)) from exc

    proto = GatewayProtocol.TCP
    func = GatewayFunction.UNDEFINED
    for option, value in options:
        if option == "-t":
            if value == "mictcp":
                proto = GatewayProtocol.MICTCP
            elif value == "tcp":
                proto = GatewayProtocol.TCP
            else:
                raise UsageError(f"Unrecognized transport : {value}")
        else:
            if func is not GatewayFunction.UNDEFINED:
                raise UsageError("only one of -s and -p may be given")
            func = GatewayFunction.SOURCE if option == "-s" else GatewayFunction.SINK

    expected = {GatewayFunction.SOURCE: 2, GatewayFunction.SINK: 1}
    if func is GatewayFunction.UNDEFINED or len(operands) != expected[func]:
        raise UsageError("wrong arguments")
    return func, proto, operands


def file_to_faketcp(filename: str, host: str, port: int) -> int:
    """Replay the file over UDP to ``host``:``port``, stalling now and then like TCP on loss.

    Returns the number of packets sent.
    """
    ip = socket.gethostbyname(host)
    sent = 0
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock, open(filename, "rb") as stream:
        count = 0
        for packet in _paced(iter_rtp_packets(stream, MAX_UDP_SEGMENT_SIZE)):
            if ENABLE_TCP_LOSS:
                if count == TCP_LOSS_PERIOD:
                    print("Simulating TCP loss")
                    time.sleep(TCP_LOSS_DELAY)
                    count = 0
                else:
                    count += 1
            sock.sendto(packet.data, (ip, port))
            sent += 1
    return sent


def file_to_mictcp(filename: str, stack) -> int:
    """Replay the file over a protocol connection; return the number of packets handed over."""
    try:
        fd = stack.socket(StartMode.CLIENT)
    except MicTcpError:
        print("ERROR creating the MICTCP socket")
        raise

    try:
        stack.connect(fd, SockAddr("localhost", MICTCP_PORT))
    except MicTcpError:
        print("ERROR connecting the MICTCP socket")

    count = 0
    with open(filename, "rb") as stream:
        for packet in _paced(iter_rtp_packets(stream, MAX_UDP_SEGMENT_SIZE)):
            try:
                stack.send(fd, packet.data)
            except MicTcpError:
                print("ERROR on MICTCP send")
            count += 1

    try:
        stack.close(fd)
    except MicTcpError:
        print("ERROR on MICTCP close")
    return count


def mictcp_to_udp(host: str, port: int, stack) -> int:
    """Forward messages received on the protocol port to UDP ``host``:``port``.

    Stops at the first empty or failed receive; returns the number forwarded.
    """
    ip = socket.gethostbyname(host)
    forwarded = 0
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        try:
            fd = stack.socket(StartMode.SERVER)
        except MicTcpError:
            print("ERROR creating the MICTCP socket")
            raise
        try:
            stack.bind(fd, SockAddr(None, MICTCP_PORT))
        except MicTcpError:
            print("ERROR on binding the MICTCP socket")
        try:
            stack.accept(fd)
        except MicTcpError:
            print("ERROR on accept on the MICTCP socket")

        while True:
            try:
                data = stack.recv(fd, MAX_UDP_SEGMENT_SIZE)
            except MicTcpError:
                print("ERROR on mic_recv on the MICTCP socket")
                break
            if not data:
                break
            udp.sendto(data, (ip, port))
            forwarded += 1

        try:
            stack.close(fd)
        except MicTcpError:
            print("ERROR on MICTCP close")
    return forwarded


def _port(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise UsageError(f"invalid port: {text}") from None


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        func, proto, operands = parse_args(args)
        ports = [_port(text) for text in operands[-1:]]
    except UsageError as exc:
        print(exc)
        print(USAGE)
        return 1

    try:
        if proto is GatewayProtocol.TCP:
            if func is GatewayFunction.SOURCE:
                file_to_faketcp(VIDEO_FILE, operands[0], ports[0])
            else:
                print("No gateway needed for puits using UDP")
        else:
            with Core() as core:
                stack = MicTcp(core)
                if func is GatewayFunction.SOURCE:
                    file_to_mictcp(VIDEO_FILE, stack)
                else:
                    mictcp_to_udp(SINK_HOST, ports[0], stack)
    except (OSError, ValueError, MicTcpError, CoreError) as exc:
        print(f"gateway: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())