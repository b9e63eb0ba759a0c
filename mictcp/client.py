"""Command that sends lines read from standard input over a connection."""

from __future__ import annotations

import argparse
import logging
import re
import sys
from typing import Iterable, Iterator, List, Optional, Sequence, Union

from mictcp.core import Core
from mictcp.pdu import SockAddr, StartMode
from mictcp.protocol import MicTcp, MicTcpError

logger = logging.getLogger(__name__)

MAX_SIZE = 1000

_MESSAGE = re.compile(rb"[^\r\n\0]*")


def _read_chunks(lines: Iterable[Union[str, bytes]]) -> Iterator[bytes]:
    """Split input into pieces the way a bounded line read does."""
    limit = MAX_SIZE - 1
    for line in lines:
        data = line.encode() if isinstance(line, str) else bytes(line)
        while data:
            newline = data.find(b"\n", 0, limit)
            cut = newline + 1 if newline >= 0 else min(len(data), limit)
            chunk, data = data[:cut], data[cut:]
            yield chunk


def _to_message(chunk: bytes) -> bytes:
    """Cut a chunk at its line end and add the terminating NUL."""
    match = _MESSAGE.match(chunk)
    return match.group() + b"\0"


def run_client(stack, host: str, port: int, lines: Iterable[Union[str, bytes]]) -> List[int]:
    """Connect to ``host``:``port``, send every line, close; return the sizes reported by send."""
    fd = stack.socket(StartMode.CLIENT)
    print("[TSOCK] MICTCP socket created: OK")
    stack.connect(fd, SockAddr(host, port))
    print("[TSOCK] MICTCP socket connected: OK")
    print("[TSOCK] Enter messages to send, CTRL+D to quit")

    sizes = []
    for chunk in _read_chunks(lines):
        message = _to_message(chunk)
        sent = stack.send(fd, message)
        print(f"[TSOCK] mic_send called with a message of size: {len(message)}")
        print(f"[TSOCK] mic_send returned: {sent}")
        sizes.append(sent)

    try:
        stack.close(fd)
    except MicTcpError as exc:
        logger.warning("error while closing: %s", exc)
    return sizes


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mictcp-client", description="Send lines from standard input."
    )
    parser.add_argument("host", help="server host name or address")
    parser.add_argument("port", type=int, help="server protocol port")
    args = parser.parse_args(argv)

    with Core() as core:
        stack = MicTcp(core)
        try:
            run_client(stack, args.host, args.port, sys.stdin)
        except MicTcpError as exc:
            print(f"[TSOCK] Error: {exc}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())