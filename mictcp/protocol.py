"""Connection-oriented transport with a loss-tolerant send window."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, List, Optional

from mictcp.core import CoreError
from mictcp.pdu import Header, Pdu, ProtocolState, SockAddr, StartMode

logger = logging.getLogger(__name__)

TIMEOUT_RECV = 100
TIMEOUT_CONNECTION = 1000
TIMEOUT_FIN_CONNECTION = 5000
WINDOW_SIZE = 100
ACCEPTABLE_LOSS = 3
DEFAULT_LOSS_RATE = 50


class MicTcpError(Exception):
    """Raised when a socket operation fails."""


class LossWindow:
    """Sliding record of the last deliveries, used to decide whether a loss is tolerable."""

    def __init__(self, size: int = WINDOW_SIZE, acceptable_loss: int = ACCEPTABLE_LOSS) -> None:
        if size <= 0:
            raise ValueError("window size must be positive")
        if acceptable_loss < 0:
            raise ValueError("acceptable loss must not be negative")
        self.size = size
        self.acceptable_loss = acceptable_loss
        self._slots: Deque[bool] = deque([True] * size, maxlen=size)

    def update(self, value: bool) -> None:
        """Record one delivery outcome, dropping the oldest."""
        self._slots.append(bool(value))

    def losses(self) -> int:
        """Number of failed deliveries in the window."""
        return sum(1 for delivered in self._slots if not delivered)

    def is_acceptable(self) -> bool:
        """Whether the losses in the window stay within the tolerated amount."""
        return self.losses() <= self.acceptable_loss


@dataclass
class Socket:
    """State of one protocol socket."""

    fd: int
    state: ProtocolState = ProtocolState.IDLE
    local_addr: SockAddr = field(default_factory=SockAddr)
    remote_addr: SockAddr = field(default_factory=SockAddr)


class MicTcp:
    """Protocol stack driving a simulated IP layer."""

    def __init__(self, core, loss_rate: int = DEFAULT_LOSS_RATE) -> None:
        self.core = core
        self.loss_rate = loss_rate
        self.sockets: List[Socket] = []
        self.window = LossWindow()
        self.num_sequence = 0
        self.num_ack = 0
        core.handler = self.process_received_pdu

    def _get(self, fd: int) -> Socket:
        if not 0 <= fd < len(self.sockets) or self.sockets[fd].state is ProtocolState.CLOSED:
            raise MicTcpError(f"invalid or closed socket {fd}")
        return self.sockets[fd]

    def _send_until_done(self, pdu: Pdu, addr: Optional[str]) -> int:
        while True:
            try:
                return self.core.ip_send(pdu, addr)
            except CoreError as exc:
                logger.warning("error sending acknowledgement, retrying: %s", exc)

    def socket(self, mode: StartMode) -> int:
        """Create a socket; return its descriptor."""
        logger.debug("socket(%s)", mode.name)
        try:
            self.core.initialize(mode)
        except CoreError as exc:
            raise MicTcpError(f"cannot initialize the IP layer: {exc}") from exc
        self.core.set_loss_rate(self.loss_rate)
        sock = Socket(fd=len(self.sockets))
        self.sockets.append(sock)
        self.window = LossWindow()
        return sock.fd

    def bind(self, fd: int, addr: SockAddr) -> None:
        """Give the socket a local address."""
        logger.debug("bind(%d, %s)", fd, addr)
        self._get(fd).local_addr = replace(addr)

    def accept(self, fd: int) -> SockAddr:
        """Make the socket wait for an incoming connection."""
        logger.debug("accept(%d)", fd)
        sock = self._get(fd)
        sock.state = ProtocolState.IDLE
        sock.remote_addr = SockAddr()
        return replace(sock.remote_addr)

    def connect(self, fd: int, addr: SockAddr) -> None:
        """Run the three-way handshake with ``addr``."""
        logger.debug("connect(%d, %s)", fd, addr)
        sock = self._get(fd)
        sock.remote_addr = replace(addr)

        syn = Pdu(Header(source_port=sock.local_addr.port, dest_port=addr.port, syn=True))
        try:
            self.core.ip_send(syn, sock.remote_addr.ip_addr)
        except CoreError as exc:
            raise MicTcpError(f"connection setup failed: {exc}") from exc
        sock.state = ProtocolState.SYN_SENT

        try:
            reply, local, _remote = self.core.ip_recv(TIMEOUT_CONNECTION)
        except (TimeoutError, CoreError) as exc:
            raise MicTcpError(f"no SYN-ACK received: {exc}") from exc
        sock.local_addr.ip_addr = local
        if not (reply.header.syn and reply.header.ack):
            raise MicTcpError("received PDU is not a SYN-ACK")

        ack = Pdu(
            Header(
                source_port=sock.local_addr.port,
                dest_port=sock.remote_addr.port,
                ack=True,
            )
        )
        try:
            self.core.ip_send(ack, sock.remote_addr.ip_addr)
        except CoreError as exc:
            raise MicTcpError(f"connection setup failed: {exc}") from exc
        sock.state = ProtocolState.ESTABLISHED
        logger.info("connected")

    def send(self, fd: int, message: bytes) -> int:
        """Send ``message``; return the payload size sent, or 0 for a tolerated loss."""
        logger.debug("send(%d, %d bytes)", fd, len(message))
        sock = self._get(fd)
        payload = bytes(message)
        while True:
            pdu = Pdu(
                Header(
                    source_port=sock.local_addr.port,
                    dest_port=sock.remote_addr.port,
                    seq_num=self.num_sequence,
                    syn=True,
                ),
                payload,
            )
            try:
                sent = self.core.ip_send(pdu, sock.remote_addr.ip_addr)
            except CoreError as exc:
                logger.warning("error sending message, retrying: %s", exc)
                continue

            try:
                reply, _local, _remote = self.core.ip_recv(TIMEOUT_RECV)
            except (TimeoutError, CoreError):
                self.window.update(False)
                if self.window.is_acceptable():
                    logger.info("acceptable loss (timeout)")
                    return 0
                logger.info("loss not acceptable (timeout), resending")
                continue

            if not reply.header.ack or reply.header.ack_num != self.num_sequence:
                self.window.update(False)
                if self.window.is_acceptable():
                    logger.info("acceptable loss (sequence number)")
                    self.num_sequence = reply.header.ack_num
                    return 0
                logger.info("loss not acceptable (sequence number), resending")
                continue

            self.window.update(True)
            self.num_sequence += 1
            return sent

    def recv(self, fd: int, max_size: int) -> bytes:
        """Take the next delivered message, at most ``max_size`` bytes of it."""
        logger.debug("recv(%d, %d)", fd, max_size)
        self._get(fd)
        return self.core.app_buffer_get(max_size)

    def close(self, fd: int) -> None:
        """Close the connection with a FIN / FIN-ACK / ACK exchange."""
        logger.debug("close(%d)", fd)
        sock = self._get(fd)
        while True:
            fin = Pdu(
                Header(
                    source_port=sock.local_addr.port,
                    dest_port=sock.remote_addr.port,
                    fin=True,
                )
            )
            try:
                self.core.ip_send(fin, sock.remote_addr.ip_addr)
            except CoreError as exc:
                raise MicTcpError(f"error while closing the connection: {exc}") from exc
            sock.state = ProtocolState.CLOSING

            try:
                reply, _local, _remote = self.core.ip_recv(TIMEOUT_FIN_CONNECTION)
            except (TimeoutError, CoreError):
                continue
            if reply.header.fin and reply.header.ack:
                break
            logger.info("received PDU is not a FIN-ACK")

        ack = Pdu(
            Header(
                source_port=sock.local_addr.port,
                dest_port=sock.remote_addr.port,
                ack=True,
            )
        )
        try:
            self.core.ip_send(ack, sock.remote_addr.ip_addr)
        except CoreError as exc:
            raise MicTcpError(f"error while closing the connection: {exc}") from exc
        sock.state = ProtocolState.CLOSED
        logger.info("socket closed")

    def process_received_pdu(self, pdu: Pdu, local_addr: str, remote_addr: str) -> None:
        """Handle a PDU that arrived from the network."""
        header = pdu.header
        for sock in list(self.sockets):
            if sock.local_addr.port != header.dest_port:
                continue

            if sock.state is ProtocolState.IDLE:
                if not header.syn:
                    raise MicTcpError("received PDU is not a SYN")
                sock.remote_addr = SockAddr(remote_addr, header.source_port)
                syn_ack = Pdu(
                    Header(
                        source_port=sock.local_addr.port,
                        dest_port=sock.remote_addr.port,
                        syn=True,
                        ack=True,
                    )
                )
                try:
                    self.core.ip_send(syn_ack, sock.remote_addr.ip_addr)
                except CoreError as exc:
                    raise MicTcpError(f"connection setup failed: {exc}") from exc
                sock.state = ProtocolState.SYN_RECEIVED

            elif sock.state is ProtocolState.SYN_RECEIVED:
                if not header.ack:
                    raise MicTcpError("received PDU is not an ACK")
                sock.state = ProtocolState.ESTABLISHED
                logger.info("connected")

            elif sock.state is ProtocolState.ESTABLISHED:
                if header.fin:
                    logger.info("closing connection")
                    fin_ack = Pdu(
                        Header(
                            source_port=sock.local_addr.port,
                            dest_port=sock.remote_addr.port,
                            ack_num=header.seq_num,
                            ack=True,
                            fin=True,
                        )
                    )
                    self._send_until_done(fin_ack, remote_addr)
                    sock.state = ProtocolState.CLOSING

                ack = Pdu(
                    Header(
                        source_port=sock.local_addr.port,
                        dest_port=sock.remote_addr.port,
                        ack_num=header.seq_num,
                        ack=True,
                    )
                )
                self._send_until_done(ack, remote_addr)
                if header.seq_num == self.num_ack:
                    self.core.app_buffer_put(pdu.payload)
                    self.num_ack += 1
                return

            elif sock.state is ProtocolState.CLOSING:
                sock.state = ProtocolState.CLOSED
                logger.info("socket closed")
                return