"""Command that accepts a connection and prints the messages it receives."""

from __future__ import annotations

import argparse
import sys
from typing import Callable, Optional, Sequence

from mictcp.core import Core, CoreError
from mictcp.pdu import SockAddr, StartMode
from mictcp.protocol import MicTcp, MicTcpError

MAX_SIZE = 1000
BIND_ADDR = "127.0.0.1"


def _print_message(data: bytes) -> None:
    text = data.split(b"\0", 1)[0].decode(errors="replace")
    print(f"[TSOCK] Received a message of size: {len(data)}")
    print(f"[TSOCK] Message received: {text}")


def serve(
    stack,
    port: int,
    on_message: Optional[Callable[[bytes], None]] = None,
    max_messages: Optional[int] = None,
) -> int:
    """Accept on ``port`` and hand each received message to ``on_message``.

    Runs forever unless ``max_messages`` is given; returns the number of
    messages received.
    """
    fd = stack.socket(StartMode.SERVER)
    print("[TSOCK] MICTCP socket created: OK")
    stack.bind(fd, SockAddr(BIND_ADDR, port))
    print("[TSOCK] MICTCP socket bound: OK")
    stack.accept(fd)
    print("[TSOCK] Accept on MICTCP socket: OK")
    print("[TSOCK] Press CTRL+C to quit ...")

    handler = on_message or _print_message
    count = 0
    while max_messages is None or count < max_messages:
        data = stack.recv(fd, MAX_SIZE)
        handler(data)
        count += 1
    return count


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mictcp-server", description="Print messages received on a port."
    )
    parser.add_argument("port", type=int, help="protocol port to listen on")
    args = parser.parse_args(argv)

    try:
        with Core() as core:
            serve(MicTcp(core), args.port)
    except KeyboardInterrupt:
        return 0
    except (MicTcpError, CoreError) as exc:
        print(f"[TSOCK] Error: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())