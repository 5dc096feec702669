import socket
import socketserver
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler

import pytest

from proxy_config import ProxyConfig
from proxy_server import ProxyServer
from socks5_stub import Socks5Server


class EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(4096)
            if not data:
                break
            self.request.sendall(data)


class UpperHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(4096)
            if not data:
                break
            self.request.sendall(data.upper())


class EchoServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class SimpleHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b'{"ok": true, "via": "origin", "path": "%s"}' % self.path.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.send_header('Connection', 'close')
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        return


@pytest.fixture
def echo_server():
    srv = EchoServer(('127.0.0.1', 0), EchoHandler)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    yield srv.server_address
    srv.shutdown()
    srv.server_close()


@pytest.fixture
def upper_server():
    srv = EchoServer(('127.0.0.1', 0), UpperHandler)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    yield srv.server_address
    srv.shutdown()
    srv.server_close()


@pytest.fixture
def http_origin():
    httpd = HTTPServer(('127.0.0.1', 0), SimpleHandler)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    yield httpd.server_address
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def upstream():
    socks = Socks5Server('127.0.0.1', 0)
    socks.start_in_thread()
    yield socks
    socks.stop()


@pytest.fixture
def make_forwarder():
    servers = []

    def _make(upstream_port, **overrides):
        values = dict(local_host='127.0.0.1', local_port=0,
                      upstream_host='127.0.0.1', upstream_port=upstream_port,
                      connect_timeout=5.0, handshake_timeout=5.0)
        values.update(overrides)
        server = ProxyServer(ProxyConfig(**values))
        server.bind()
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.stop()


@pytest.fixture
def forwarder(upstream, make_forwarder):
    return make_forwarder(upstream.port)


@pytest.fixture
def unused_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('127.0.0.1', 0))
    port = s.getsockname()[1]
    s.close()
    return port


def recv_exactly(sock, n):
    buf = b''
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf
