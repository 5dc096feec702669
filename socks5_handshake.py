import enum
import logging
import socket
from typing import NamedTuple

from proxy_errors import (MalformedRequest, UnsupportedAddressType,
                          UnsupportedCommand, UnsupportedVersion)

SOCKS_VERSION = 0x05
METHOD_NO_AUTH = 0x00
CMD_CONNECT = 0x01

# VER=5, METHOD=0 (no authentication required)
GREETING_REPLY = bytes([SOCKS_VERSION, METHOD_NO_AUTH])
# VER=5, REP=0 (succeeded), RSV=0, ATYP=1, BND.ADDR=0.0.0.0, BND.PORT=0
SUCCESS_REPLY = bytes([0x05, 0x00, 0x00, 0x01, 0, 0, 0, 0, 0, 0])

_logger = logging.getLogger('ProxyServer.handshake')


class AddressType(enum.IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class HandshakeState(enum.Enum):
    AWAIT_GREETING = 'await_greeting'
    AWAIT_REQUEST = 'await_request'
    PARSED = 'parsed'
    ERROR = 'error'


class Destination(NamedTuple):
    host: str
    port: int

    def __str__(self):
        return f"{self.host}:{self.port}"


def failure_reply(rep: int) -> bytes:
    return bytes([SOCKS_VERSION, rep, 0x00, 0x01, 0, 0, 0, 0, 0, 0])


def recv_exact(sock, n: int) -> bytes:
    """Read exactly n bytes, looping over short reads."""
    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = sock.recv(n - len(buf))
        except socket.timeout:
            raise MalformedRequest(f"timed out after {len(buf)} of {n} bytes")
        if not chunk:
            raise MalformedRequest(f"connection closed after {len(buf)} of {n} bytes")
        buf += chunk
    return bytes(buf)


class Socks5Handshake:
    """Server side of the SOCKS5 handshake for a single client connection.

    Only the "no authentication" method and the CONNECT command are
    supported. Each instance reads one greeting and one request; once it
    reaches PARSED or ERROR it is done.
    """

    def __init__(self, sock, error_replies=True):
        self.sock = sock
        self.error_replies = error_replies
        self.state = HandshakeState.AWAIT_GREETING
        self.destination = None

    def negotiate(self) -> Destination:
        self.read_greeting()
        return self.read_request()

    def read_greeting(self):
        self._expect(HandshakeState.AWAIT_GREETING)
        try:
            ver, nmethods = recv_exact(self.sock, 2)
            if ver != SOCKS_VERSION:
                raise UnsupportedVersion(f"unsupported SOCKS version {ver:#04x}")
            # offered methods are read off the wire but not inspected
            recv_exact(self.sock, nmethods)
            self.sock.sendall(GREETING_REPLY)
        except Exception:
            self.state = HandshakeState.ERROR
            raise
        self.state = HandshakeState.AWAIT_REQUEST

    def read_request(self) -> Destination:
        self._expect(HandshakeState.AWAIT_REQUEST)
        try:
            ver, cmd, rsv, atyp = recv_exact(self.sock, 4)
            if cmd != CMD_CONNECT:
                raise UnsupportedCommand(f"only CONNECT supported, got {cmd:#04x}")

            if atyp == AddressType.IPV4:
                host = socket.inet_ntoa(recv_exact(self.sock, 4))
                port = int.from_bytes(recv_exact(self.sock, 2), 'big')
            elif atyp == AddressType.DOMAIN:
                length = recv_exact(self.sock, 1)[0]
                raw = recv_exact(self.sock, length)
                # port is read first so the whole request is off the wire either way
                port = int.from_bytes(recv_exact(self.sock, 2), 'big')
                try:
                    host = raw.decode('utf-8')
                except UnicodeDecodeError:
                    raise MalformedRequest(f"domain name is not valid text: {raw!r}")
            else:
                raise UnsupportedAddressType(f"address type {atyp:#04x} not supported")
        except Exception:
            self.state = HandshakeState.ERROR
            raise

        self.destination = Destination(host, port)
        self.state = HandshakeState.PARSED
        return self.destination

    def send_success(self):
        self.sock.sendall(SUCCESS_REPLY)

    def send_failure(self, error) -> bool:
        """Tell the client why its request failed; returns True if a reply was written."""
        self.state = HandshakeState.ERROR
        rep = getattr(error, 'reply_code', None)
        if not self.error_replies or rep is None:
            return False
        try:
            self.sock.sendall(failure_reply(rep))
        except OSError as e:
            _logger.debug(f"Could not send failure reply: {e}")
            return False
        return True

    def _expect(self, state):
        if self.state is not state:
            raise RuntimeError(f"handshake is in state {self.state.value}, expected {state.value}")
