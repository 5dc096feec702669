import socket
import threading

import pytest

from conftest import recv_exactly
from proxy_errors import RelayIOError
from relay import relay


class RelayThread(threading.Thread):
    def __init__(self, client, upstream):
        super().__init__(daemon=True)
        self.client = client
        self.upstream = upstream
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = relay(self.client, self.upstream)
        except Exception as e:
            self.error = e


@pytest.fixture
def pairs():
    # app <-> client_side is the accepted client, upstream_side <-> remote is the upstream
    app, client_side = socket.socketpair()
    upstream_side, remote = socket.socketpair()
    for s in (app, remote):
        s.settimeout(5.0)
    yield app, client_side, upstream_side, remote
    for s in (app, client_side, upstream_side, remote):
        s.close()


def test_bytes_flow_both_ways_verbatim(pairs):
    app, client_side, upstream_side, remote = pairs
    t = RelayThread(client_side, upstream_side)
    t.start()

    payload = bytes(range(256)) * 64
    app.sendall(payload)
    assert recv_exactly(remote, len(payload)) == payload

    remote.sendall(b'\x00reply\xff')
    assert recv_exactly(app, 7) == b'\x00reply\xff'

    app.close()
    t.join(5.0)
    assert not t.is_alive()
    assert t.error is None
    assert t.result == (len(payload), 7)
    # upstream sees the teardown
    assert remote.recv(16) == b''


def test_upstream_close_tears_down_client(pairs):
    app, client_side, upstream_side, remote = pairs
    t = RelayThread(client_side, upstream_side)
    t.start()

    remote.sendall(b'bye')
    assert recv_exactly(app, 3) == b'bye'
    remote.close()

    t.join(5.0)
    assert not t.is_alive()
    # client half is torn down without waiting for the client to finish
    assert app.recv(16) == b''


def test_error_in_first_direction_is_reported(pairs):
    app, client_side, upstream_side, remote = pairs

    class BrokenSocket:
        def __init__(self, real):
            self.real = real

        def recv(self, n):
            raise ConnectionResetError('reset by peer')

        def sendall(self, data):
            self.real.sendall(data)

        def shutdown(self, how):
            self.real.shutdown(how)

    t = RelayThread(BrokenSocket(client_side), upstream_side)
    t.start()
    t.join(5.0)
    assert not t.is_alive()
    assert isinstance(t.error, RelayIOError)
    assert 'client->upstream' in str(t.error)
