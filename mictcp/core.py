"""Simulated IP layer: lossy UDP transport, receive thread and application buffer."""

from __future__ import annotations

import logging
import random
import select
import socket
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from mictcp.pdu import HEADER_SIZE, Pdu, StartMode

logger = logging.getLogger(__name__)

API_CS_PORT = 8524
API_SC_PORT = 8525
MAX_DATAGRAM = 1500
MAX_PAYLOAD = MAX_DATAGRAM - HEADER_SIZE
LOCAL_ADDR = "localhost"

_POLL_INTERVAL = 0.1

Handler = Callable[[Pdu, str, str], None]


class CoreError(Exception):
    """Raised when the simulated IP layer cannot do its work."""


class AppBuffer:
    """Thread-safe FIFO of received application data."""

    def __init__(self) -> None:
        self._entries: Deque[bytes] = deque()
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def put(self, data: bytes) -> None:
        """Append a copy of ``data`` and wake any waiting reader."""
        with self._cond:
            self._entries.append(bytes(data))
            self._cond.notify_all()

    def get(self, max_size: int) -> bytes:
        """Remove the oldest entry, waiting for one, and return at most ``max_size`` bytes of it."""
        if max_size < 0:
            raise ValueError("max_size must not be negative")
        with self._cond:
            self._cond.wait_for(lambda: bool(self._entries))
            entry = self._entries.popleft()
        return entry[:max_size]


class Core:
    """UDP-backed stand-in for the IP layer, with configurable packet loss."""

    def __init__(
        self,
        handler: Optional[Handler] = None,
        cs_port: int = API_CS_PORT,
        sc_port: int = API_SC_PORT,
        host: str = LOCAL_ADDR,
    ) -> None:
        self.handler = handler
        self.cs_port = cs_port
        self.sc_port = sc_port
        self.host = host
        self.loss_rate = 0
        self.buffer = AppBuffer()
        self._rng = random.Random()
        self._sock: Optional[socket.socket] = None
        self._remote_port: Optional[int] = None
        self._listener: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def __enter__(self) -> "Core":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def initialized(self) -> bool:
        return self._sock is not None

    def initialize(self, mode: StartMode) -> None:
        """Open the UDP socket for ``mode``; a server also starts the receive thread."""
        if self._sock is not None:
            return
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise CoreError(f"cannot create socket: {exc}") from exc

        if mode is StartMode.SERVER:
            try:
                sock.bind(("", self.cs_port))
            except OSError as exc:
                sock.close()
                raise CoreError(f"cannot bind port {self.cs_port}: {exc}") from exc
            self._remote_port = self.sc_port
        else:
            self._remote_port = self.cs_port
            try:
                sock.bind(("", self.sc_port))
            except OSError as exc:
                logger.warning("cannot bind port %d: %s", self.sc_port, exc)
        self._sock = sock

        if mode is StartMode.SERVER:
            self._stopping.clear()
            self._listener = threading.Thread(
                target=self._listen, name="mictcp-listener", daemon=True
            )
            self._listener.start()

    def set_loss_rate(self, rate: int) -> None:
        """Set the percentage of sent datagrams that are dropped."""
        if rate < 0:
            raise ValueError("loss rate must not be negative")
        self.loss_rate = rate

    def ip_send(self, pdu: Pdu, addr: Optional[str] = None) -> int:
        """Send ``pdu`` to ``addr`` (or the default host); return the payload size sent."""
        sock = self._require_socket()
        datagram = pdu.to_bytes()
        if self._rng.random() * 100 < self.loss_rate:
            logger.info("packet lost")
            sent = len(datagram)
        else:
            target = addr or self.host
            try:
                ip = socket.gethostbyname(target)
                sent = sock.sendto(datagram, (ip, self._remote_port))
            except OSError as exc:
                raise CoreError(f"cannot send to {target}: {exc}") from exc
            logger.info("sent IP packet of size %d to %s", sent, target)
        return sent - HEADER_SIZE

    def ip_recv(
        self, timeout: int, max_payload: int = MAX_PAYLOAD
    ) -> Tuple[Pdu, str, str]:
        """Wait up to ``timeout`` ms (0 waits forever) for a PDU.

        Returns the PDU with the local and remote addresses; raises
        TimeoutError when nothing arrives in time.
        """
        sock = self._require_socket()
        try:
            sock.settimeout(timeout / 1000 if timeout > 0 else None)
        except OSError as exc:
            raise CoreError(f"cannot set receive timeout: {exc}") from exc
        return self._read(sock, max_payload, timeout)

    def app_buffer_put(self, data: bytes) -> None:
        """Deliver data to the application buffer."""
        self.buffer.put(data)

    def app_buffer_get(self, max_size: int) -> bytes:
        """Take the next delivered data, waiting if none is there."""
        return self.buffer.get(max_size)

    def close(self) -> None:
        """Stop the receive thread and close the socket."""
        self._stopping.set()
        listener = self._listener
        if listener is not None and listener is not threading.current_thread():
            listener.join()
        self._listener = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise CoreError("core is not initialized")
        return self._sock

    def _read(
        self, sock: socket.socket, max_payload: int, timeout: int
    ) -> Tuple[Pdu, str, str]:
        try:
            data, sender = sock.recvfrom(HEADER_SIZE + max_payload)
        except TimeoutError:
            raise TimeoutError(f"no datagram within {timeout} ms") from None
        except OSError as exc:
            raise CoreError(f"receive failed: {exc}") from exc
        if len(data) < HEADER_SIZE:
            raise CoreError(f"datagram of {len(data)} bytes is shorter than a header")
        remote_ip = sender[0]
        logger.info("received IP packet of size %d from %s", len(data), remote_ip)
        return Pdu.from_bytes(data), LOCAL_ADDR, remote_ip

    def _listen(self) -> None:
        logger.info("starting network receive thread")
        sock = self._sock
        while sock is not None and not self._stopping.is_set():
            try:
                ready, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                break
            if not ready or self._stopping.is_set():
                continue
            try:
                pdu, local, remote = self._read(sock, MAX_PAYLOAD, 0)
            except (CoreError, TimeoutError) as exc:
                logger.error("error in recv: %s", exc)
                continue
            if self.handler is None:
                continue
            try:
                self.handler(pdu, local, remote)
            except Exception:
                logger.exception("PDU handler failed")


def format_header(pdu: Pdu) -> str:
    """Describe the ports and sequence numbers of a PDU."""
    header = pdu.header
    return (
        f"SP: {header.source_port}, DP: {header.dest_port}, "
        f"SEQ: {header.seq_num}, ACK: {header.ack_num}"
    )


def now_usec() -> int:
    """Wall-clock time in microseconds."""
    return time.time_ns() // 1_000


def now_msec() -> int:
    """Wall-clock time in milliseconds."""
    return now_usec() // 1_000