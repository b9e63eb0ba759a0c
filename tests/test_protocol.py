import socket
import time
from collections import deque

import pytest

from mictcp.core import AppBuffer, Core, CoreError
from mictcp.pdu import Header, Pdu, ProtocolState, SockAddr, StartMode
from mictcp.protocol import (
    TIMEOUT_CONNECTION,
    LossWindow,
    MicTcp,
    MicTcpError,
)


class FakeCore:
    def __init__(self, replies=(), fail_sends=0, init_error=False):
        self.handler = None
        self.sent = []
        self.replies = deque(replies)
        self.fail_sends = fail_sends
        self.init_error = init_error
        self.loss_rate = None
        self.modes = []
        self.timeouts = []
        self.buffer = AppBuffer()

    def initialize(self, mode):
        if self.init_error:
            raise CoreError("no socket")
        self.modes.append(mode)

    def set_loss_rate(self, rate):
        self.loss_rate = rate

    def ip_send(self, pdu, addr=None):
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise CoreError("send failed")
        self.sent.append((pdu, addr))
        return len(pdu.payload)

    def ip_recv(self, timeout, max_payload=1484):
        self.timeouts.append(timeout)
        if not self.replies:
            raise TimeoutError("nothing")
        reply = self.replies.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return reply, "localhost", "127.0.0.1"

    def app_buffer_put(self, data):
        self.buffer.put(data)

    def app_buffer_get(self, max_size):
        return self.buffer.get(max_size)


def syn_ack():
    return Pdu(Header(syn=True, ack=True))


def ack(num):
    return Pdu(Header(ack=True, ack_num=num))


def fin_ack():
    return Pdu(Header(ack=True, fin=True))


def connected():
    core = FakeCore(replies=[syn_ack()])
    stack = MicTcp(core, loss_rate=0)
    fd = stack.socket(StartMode.CLIENT)
    stack.connect(fd, SockAddr("127.0.0.1", 1337))
    return core, stack, fd


def listening():
    core = FakeCore()
    stack = MicTcp(core, loss_rate=0)
    fd = stack.socket(StartMode.SERVER)
    stack.bind(fd, SockAddr("127.0.0.1", 1337))
    stack.accept(fd)
    return core, stack, fd


def data_pdus(core):
    return [pdu for pdu, _ in core.sent if pdu.payload]


def test_loss_window_starts_clean():
    window = LossWindow()
    assert window.losses() == 0
    assert window.is_acceptable()


def test_loss_window_threshold():
    window = LossWindow()
    for _ in range(3):
        window.update(False)
    assert window.is_acceptable()
    window.update(False)
    assert not window.is_acceptable()


def test_loss_window_slides():
    window = LossWindow(5, 3)
    for _ in range(4):
        window.update(False)
    assert not window.is_acceptable()
    for _ in range(5):
        window.update(True)
    assert window.losses() == 0


def test_loss_window_rejects_bad_size():
    with pytest.raises(ValueError):
        LossWindow(0, 3)


def test_socket_registers_handler_and_loss_rate():
    core = FakeCore()
    stack = MicTcp(core, loss_rate=50)
    fds = [stack.socket(StartMode.CLIENT), stack.socket(StartMode.CLIENT)]
    assert fds == [0, 1]
    assert core.loss_rate == 50
    assert core.handler == stack.process_received_pdu
    assert stack.sockets[0].state is ProtocolState.IDLE


def test_socket_init_failure():
    stack = MicTcp(FakeCore(init_error=True))
    with pytest.raises(MicTcpError):
        stack.socket(StartMode.CLIENT)
    assert stack.sockets == []


def test_bind_invalid_fd():
    stack = MicTcp(FakeCore())
    with pytest.raises(MicTcpError):
        stack.bind(5, SockAddr("127.0.0.1", 1337))


def test_bind_sets_local_address():
    stack = MicTcp(FakeCore())
    fd = stack.socket(StartMode.SERVER)
    stack.bind(fd, SockAddr("127.0.0.1", 1337))
    assert stack.sockets[fd].local_addr == SockAddr("127.0.0.1", 1337)


def test_connect_handshake():
    core, stack, fd = connected()
    syn, syn_addr = core.sent[0]
    assert syn.header.syn and not syn.header.ack
    assert syn.header.dest_port == 1337
    assert syn_addr == "127.0.0.1"
    final_ack = core.sent[1][0]
    assert final_ack.header.ack and not final_ack.header.syn
    assert stack.sockets[fd].state is ProtocolState.ESTABLISHED
    assert core.timeouts == [TIMEOUT_CONNECTION]


def test_connect_rejects_non_synack():
    core = FakeCore(replies=[ack(0)])
    stack = MicTcp(core)
    fd = stack.socket(StartMode.CLIENT)
    with pytest.raises(MicTcpError):
        stack.connect(fd, SockAddr("127.0.0.1", 1337))


def test_connect_timeout():
    stack = MicTcp(FakeCore())
    fd = stack.socket(StartMode.CLIENT)
    with pytest.raises(MicTcpError):
        stack.connect(fd, SockAddr("127.0.0.1", 1337))
    assert stack.sockets[fd].state is ProtocolState.SYN_SENT


def test_connect_send_failure():
    stack = MicTcp(FakeCore(fail_sends=1))
    fd = stack.socket(StartMode.CLIENT)
    with pytest.raises(MicTcpError):
        stack.connect(fd, SockAddr("127.0.0.1", 1337))
    assert stack.sockets[fd].state is ProtocolState.IDLE


def test_send_acknowledged():
    core, stack, fd = connected()
    core.replies.append(ack(0))
    message = b"hello\0"
    assert stack.send(fd, message) == len(message)
    assert stack.num_sequence == 1
    sent = data_pdus(core)
    assert [p.payload for p in sent] == [message]
    assert sent[0].header.seq_num == 0


def test_send_timeout_is_tolerated():
    core, stack, fd = connected()
    assert stack.send(fd, b"x") == 0
    assert stack.window.losses() == 1
    assert stack.num_sequence == 0


def test_send_retries_when_loss_unacceptable():
    core, stack, fd = connected()
    for _ in range(3):
        assert stack.send(fd, b"x") == 0
    core.replies.extend([TimeoutError(), ack(0)])
    assert stack.send(fd, b"late") == len(b"late")
    assert len(data_pdus(core)) == 5
    assert not stack.window.is_acceptable()


def test_send_wrong_ack_number_is_tolerated():
    core, stack, fd = connected()
    core.replies.append(ack(7))
    assert stack.send(fd, b"x") == 0
    assert stack.num_sequence == 7


def test_send_retries_after_ip_error():
    core, stack, fd = connected()
    core.fail_sends = 1
    core.replies.append(ack(0))
    assert stack.send(fd, b"abc") == len(b"abc")
    assert len(data_pdus(core)) == 1


def test_recv_returns_buffered_data():
    core, stack, fd = connected()
    core.app_buffer_put(b"abc")
    assert stack.recv(fd, 2) == b"ab"


def test_recv_invalid_fd():
    stack = MicTcp(FakeCore())
    with pytest.raises(MicTcpError):
        stack.recv(-1, 10)


def test_close_sequence():
    core, stack, fd = connected()
    core.replies.extend([TimeoutError(), fin_ack()])
    stack.close(fd)
    after = [pdu for pdu, _ in core.sent[2:]]
    assert [p.header.fin for p in after] == [True, True, False]
    assert after[-1].header.ack
    assert stack.sockets[fd].state is ProtocolState.CLOSED
    with pytest.raises(MicTcpError):
        stack.close(fd)
    with pytest.raises(MicTcpError):
        stack.recv(fd, 10)


def test_close_ignores_non_fin_ack():
    core, stack, fd = connected()
    core.replies.extend([ack(0), fin_ack()])
    stack.close(fd)
    fins = [pdu for pdu, _ in core.sent if pdu.header.fin]
    assert len(fins) == 2


def test_server_handshake_and_data():
    core, stack, fd = listening()
    syn = Pdu(Header(source_port=40000, dest_port=1337, syn=True))
    stack.process_received_pdu(syn, "localhost", "127.0.0.1")
    reply, addr = core.sent[-1]
    assert reply.header.syn and reply.header.ack
    assert reply.header.dest_port == 40000
    assert addr == "127.0.0.1"
    assert stack.sockets[fd].state is ProtocolState.SYN_RECEIVED

    stack.process_received_pdu(Pdu(Header(dest_port=1337, ack=True)), "localhost", "127.0.0.1")
    assert stack.sockets[fd].state is ProtocolState.ESTABLISHED

    data = Pdu(Header(dest_port=1337, seq_num=0, syn=True), b"hi")
    stack.process_received_pdu(data, "localhost", "127.0.0.1")
    assert core.sent[-1][0].header.ack
    assert core.sent[-1][0].header.ack_num == 0
    assert stack.recv(fd, 100) == b"hi"

    stack.process_received_pdu(data, "localhost", "127.0.0.1")
    assert core.sent[-1][0].header.ack
    assert len(core.buffer) == 0


def test_server_fin_closes():
    core, stack, fd = listening()
    remote = "127.0.0.1"
    stack.process_received_pdu(Pdu(Header(source_port=40000, dest_port=1337, syn=True)), "localhost", remote)
    stack.process_received_pdu(Pdu(Header(dest_port=1337, ack=True)), "localhost", remote)
    stack.process_received_pdu(Pdu(Header(dest_port=1337, seq_num=0), b"a"), "localhost", remote)
    stack.process_received_pdu(Pdu(Header(dest_port=1337, seq_num=5, fin=True)), "localhost", remote)
    fin_reply = core.sent[-2][0]
    last = core.sent[-1][0]
    assert fin_reply.header.fin and fin_reply.header.ack
    assert fin_reply.header.ack_num == 5
    assert last.header.ack and not last.header.fin
    assert stack.sockets[fd].state is ProtocolState.CLOSING
    stack.process_received_pdu(Pdu(Header(dest_port=1337, ack=True)), "localhost", remote)
    assert stack.sockets[fd].state is ProtocolState.CLOSED


def test_server_rejects_non_syn_when_idle():
    core, stack, fd = listening()
    with pytest.raises(MicTcpError):
        stack.process_received_pdu(Pdu(Header(dest_port=1337, ack=True)), "localhost", "127.0.0.1")


def test_server_ignores_other_ports():
    core, stack, fd = listening()
    stack.process_received_pdu(Pdu(Header(dest_port=9999, syn=True)), "localhost", "127.0.0.1")
    assert core.sent == []
    assert stack.sockets[fd].state is ProtocolState.IDLE


def _free_ports():
    first = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    second = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    with first, second:
        first.bind(("", 0))
        second.bind(("", 0))
        return first.getsockname()[1], second.getsockname()[1]


def test_loopback_exchange():
    cs_port, sc_port = _free_ports()
    server_core = Core(cs_port=cs_port, sc_port=sc_port)
    client_core = Core(cs_port=cs_port, sc_port=sc_port)
    with server_core, client_core:
        server = MicTcp(server_core, loss_rate=0)
        client = MicTcp(client_core, loss_rate=0)
        sfd = server.socket(StartMode.SERVER)
        server.bind(sfd, SockAddr("127.0.0.1", 1337))
        server.accept(sfd)

        cfd = client.socket(StartMode.CLIENT)
        client.connect(cfd, SockAddr("localhost", 1337))
        message = b"hello\0"
        assert client.send(cfd, message) == len(message)
        assert server.recv(sfd, 100) == message

        client.close(cfd)
        assert client.sockets[cfd].state is ProtocolState.CLOSED
        deadline = time.monotonic() + 2
        while server.sockets[sfd].state is not ProtocolState.CLOSED and time.monotonic() < deadline:
            time.sleep(0.01)
        assert server.sockets[sfd].state is ProtocolState.CLOSED