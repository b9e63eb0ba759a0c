# mictcp

`mictcp` is a small connection-oriented transport protocol. It runs on top of
UDP datagrams on the local machine. It has:

- a three-way handshake (SYN, SYN-ACK, ACK) to open a connection,
- stop-and-wait sending with sequence and acknowledgement numbers,
- **partial reliability**: a sliding window of the last 100 sends records
  which ones were acknowledged. A send that times out, or gets a wrong
  acknowledgement, is repeated only when the window then holds more than 3
  losses. Otherwise the loss is accepted and `send` returns 0,
- a FIN / FIN-ACK / ACK exchange to close a connection,
- a simulated loss rate on the sending side (50 % by default), so that the
  reliability mechanism can be observed.

Every PDU starts with a fixed 16-byte little-endian header: source and
destination ports, sequence and acknowledgement numbers, and the SYN, ACK and
FIN flags. The application data follows the header.

## Installation

```
pip install .
```

The package needs only the Python standard library (3.10 or later).

## How the datagram layer is wired

`Core` uses two fixed UDP ports, 8524 and 8525 by default. The server side
binds 8524 and sends to 8525. The client side binds 8525 and sends to 8524.
The protocol ports given to the commands (for example `1337`) are carried in
the PDU headers. They are not UDP ports. So only one client and one server
can run on a machine at a time, unless you build `Core` with other ports
(`Core(cs_port=..., sc_port=...)`).

## Command-line tools

Three commands are installed. Each one returns exit status 1 on an error.

### `mictcp-server`

```
mictcp-server 1337
```

Opens a server socket, binds it to protocol port 1337 and waits for a
connection. It then prints every message it receives (the text up to the first
NUL byte, and the size). It runs until you press Ctrl+C.

### `mictcp-client`

```
mictcp-client 127.0.0.1 1337
```

Connects to the server and sends each line of standard input as one message.
The line end is removed and a NUL byte is added. A line longer than 999 bytes
is sent in several pieces. The command prints the size that `send` returned
for each message. End the input with Ctrl+D to close the connection.

### `mictcp-gateway`

Replays a recorded RTP video stream packet by packet, at the pace given by the
recorded timestamps.

```
mictcp-gateway -s -t tcp <server> <port>     # source: plain UDP to <server>:<port>
mictcp-gateway -s -t mictcp <server> <port>  # source: over mictcp
mictcp-gateway -p -t mictcp <port>           # sink: mictcp in, UDP out to 127.0.0.1:<port>
```

- `-s` selects the source side and `-p` the sink side. Exactly one of them
  must be given.
- `-t` selects the transport, `tcp` (the default) or `mictcp`.
- With `-t tcp`, the source sends over plain UDP. After every 600 packets it
  pauses for 2 seconds, the way a TCP stream stalls after a loss. A sink with
  `-t tcp` only prints that no gateway is needed.
- With `-t mictcp`, the source always connects to `localhost` on protocol
  port 1337. The `<server>` and `<port>` operands must be present, but they
  are not used. The sink accepts on protocol port 1337 and forwards each
  message to UDP `127.0.0.1:<port>`.

The source reads the stream from the fixed path `../video/video.bin`, relative
to the current directory. Each record in that file holds a 4-byte seconds
field, a 4-byte nanoseconds field and a 4-byte size, all little-endian,
followed by the packet bytes. A packet can be at most 1480 bytes.

## What the package does not do

- It ships no video file. You must supply `../video/video.bin` yourself.
- It plays no video. The sink only forwards datagrams to a UDP port, where a
  separate player has to listen.
- It talks only between the two fixed UDP ports described above. It does not
  multiplex several connections.

## Library overview

- `mictcp.pdu`: the wire format (`Header.pack`, `Header.unpack`,
  `Pdu.to_bytes`, `Pdu.from_bytes`), socket addresses (`SockAddr`) and the
  `ProtocolState` and `StartMode` enumerations.
- `mictcp.core`: the datagram layer (`Core`). It provides `initialize`,
  `set_loss_rate`, `ip_send`, `ip_recv`, `app_buffer_put`, `app_buffer_get`
  and `close`. On the server side it runs a receive thread that hands each PDU
  to its handler. It also holds the thread-safe receive buffer (`AppBuffer`),
  plus the helpers `format_header`, `now_msec` and `now_usec`.
- `mictcp.protocol`: the transport itself (`MicTcp`, `Socket`, `LossWindow`).
  It provides `socket`, `bind`, `accept`, `connect`, `send`, `recv` and
  `close`, and handles incoming PDUs in `process_received_pdu`.
- `mictcp.client` (`run_client`), `mictcp.server` (`serve`) and
  `mictcp.gateway` (`parse_args`, `read_rtp_packet`, `iter_rtp_packets`,
  `ts_subtract`, `file_to_faketcp`, `file_to_mictcp`, `mictcp_to_udp`): the
  applications behind the commands above.

A minimal client:

```python
from mictcp.core import Core
from mictcp.pdu import SockAddr, StartMode
from mictcp.protocol import MicTcp

with Core() as core:
    stack = MicTcp(core, loss_rate=0)
    fd = stack.socket(StartMode.CLIENT)
    stack.connect(fd, SockAddr("127.0.0.1", 1337))
    stack.send(fd, b"hello\0")
    stack.close(fd)
```

Errors are raised as exceptions. `CoreError` comes from the datagram layer,
`TimeoutError` from `Core.ip_recv` when nothing arrives in time, `MicTcpError`
from the transport and `UsageError` from bad gateway arguments. Progress is
reported through the standard `logging` module.

## Running the tests

```
pip install ".[test]"
pytest
```