import socket
import threading

from proxy_errors import ForwarderError, UpstreamConnectFailed
from relay import relay
from socks5_handshake import Socks5Handshake

# Minimal SOCKS5 server standing in for the Tor client in tests.
# NO AUTH and CONNECT only, connects to the destination directly.
# Designed for local testing only (not production-grade).


class Socks5Server:
    def __init__(self, host='127.0.0.1', port=0, refuse_with=None):
        self.host = host
        self.port = port
        # when set, every CONNECT is answered with this REP code
        self.refuse_with = refuse_with
        self.requests = []
        self.ready = threading.Event()
        self._running = False
        self._sock = None

    def start(self):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((self.host, self.port))
        self._sock.listen(16)
        self.port = self._sock.getsockname()[1]
        self._running = True
        self.ready.set()
        while self._running:
            try:
                client, addr = self._sock.accept()
            except OSError:
                break
            t = threading.Thread(target=self.handle_client, args=(client,), daemon=True)
            t.start()

    def start_in_thread(self, timeout=5.0):
        t = threading.Thread(target=self.start, daemon=True)
        t.start()
        self.ready.wait(timeout)
        return t

    def stop(self):
        self._running = False
        if self._sock is None:
            return
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def handle_client(self, conn):
        handshake = Socks5Handshake(conn)
        remote = None
        try:
            dest = handshake.negotiate()
            self.requests.append(dest)
            if self.refuse_with is not None:
                handshake.send_failure(UpstreamConnectFailed('refused by stub', reply_code=self.refuse_with))
                return
            try:
                remote = socket.create_connection((dest.host, dest.port), timeout=5.0)
                remote.settimeout(None)
            except OSError as e:
                # reply: connection refused
                handshake.send_failure(UpstreamConnectFailed(str(e), reply_code=0x05))
                return
            handshake.send_success()
            relay(conn, remote)
        except (ForwarderError, OSError):
            pass
        finally:
            for s in (remote, conn):
                if s is not None:
                    s.close()


if __name__ == '__main__':
    s = Socks5Server('127.0.0.1', 1080)
    try:
        s.start()
    except KeyboardInterrupt:
        s.stop()
