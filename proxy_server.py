import socket
import threading
import logging

from proxy_config import ProxyConfig
from proxy_errors import ForwarderError, HandshakeError
from relay import relay
from socks5_handshake import Socks5Handshake
from upstream import open_upstream


class Session:
    """One accepted client connection: handshake -> upstream connect -> relay.

    A session owns its client socket and, once connected, its upstream
    socket. Nothing here is shared with other sessions.
    """

    def __init__(self, client_socket, client_addr, config, log):
        self.client_socket = client_socket
        self.client_addr = client_addr
        self.config = config
        self._log = log
        self.handshake = Socks5Handshake(client_socket, error_replies=config.error_replies)
        self.upstream_socket = None
        self.destination = None
        # None on success, otherwise the exception that ended the session
        self.outcome = None
        self.sent = 0
        self.received = 0

    @property
    def state(self):
        return self.handshake.state

    def run(self):
        try:
            self._run()
        except ForwarderError as e:
            self.outcome = e
            self._log(f"Session {self._peer()} failed ({type(e).__name__}): {e}", logging.WARNING)
        except OSError as e:
            # client went away while we were writing a reply
            self.outcome = e
            self._log(f"Session {self._peer()} socket error: {e}", logging.WARNING)
        except Exception as e:
            self.outcome = e
            self._log(f"Unexpected error in session {self._peer()}: {e}", logging.ERROR, exc_info=True)
        finally:
            self.close()
        return self.outcome

    def _run(self):
        self.client_socket.settimeout(self.config.handshake_timeout)
        try:
            self.destination = self.handshake.negotiate()
        except HandshakeError as e:
            self.handshake.send_failure(e)
            raise

        self._log(f"Connecting to {self.destination} via upstream "
                  f"{self.config.upstream_host}:{self.config.upstream_port}...")
        try:
            self.upstream_socket = open_upstream(self.destination,
                                                 self.config.upstream_host,
                                                 self.config.upstream_port,
                                                 timeout=self.config.connect_timeout)
        except ForwarderError as e:
            self.handshake.send_failure(e)
            raise

        self.handshake.send_success()
        self.client_socket.settimeout(None)
        self.sent, self.received = relay(self.client_socket, self.upstream_socket,
                                         buffer_size=self.config.buffer_size)
        self._log(f"Session {self._peer()} -> {self.destination} closed "
                  f"(sent {self.sent} bytes, received {self.received} bytes)")

    def close(self):
        for s in (self.upstream_socket, self.client_socket):
            if s is None:
                continue
            try:
                s.close()
            except OSError:
                pass

    def _peer(self):
        if isinstance(self.client_addr, tuple) and len(self.client_addr) >= 2:
            return f"{self.client_addr[0]}:{self.client_addr[1]}"
        return str(self.client_addr)


class ProxyServer:
    def __init__(self, config=None, logger=None, log_level=None):
        self.config = config or ProxyConfig()
        self.local_host = self.config.local_host
        self.local_port = self.config.local_port
        self.socket = None
        self.running = False
        # logger may be a callable for GUI integration; also use stdlib logging
        self.logger = logger
        self._logger = logging.getLogger('ProxyServer')
        if log_level is not None:
            self._logger.setLevel(log_level)

    def _log(self, message: str, level=logging.INFO, exc_info=False):
        self._logger.log(level, message, exc_info=exc_info)

        # GUI-style logger callable (if provided)
        if self.logger:
            try:
                self.logger(message)
            except Exception:
                self._logger.debug("logger callable failed", exc_info=True)

    def bind(self):
        """绑定本地监听端口（port 为 0 时使用系统分配的端口）"""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.local_host, self.local_port))
            sock.listen(self.config.backlog)
        except OSError:
            sock.close()
            raise
        self.socket = sock
        self.local_port = sock.getsockname()[1]
        self.running = True
        self._log(f"Proxy listening on {self.local_host}:{self.local_port}")
        return self.local_port

    def serve_forever(self):
        """Accept connections until stop() closes the listener."""
        while self.running:
            try:
                client_socket, addr = self.socket.accept()
            except OSError as e:
                if not self.running:
                    # socket was closed via stop(); exit loop
                    break
                self._log(f"Accept error: {e}", logging.WARNING)
                continue

            self._log(f"Accepted connection from {addr[0]}:{addr[1]}")
            t = threading.Thread(target=self.handle_client, args=(client_socket, addr), daemon=True)
            t.start()

    def start(self):
        """启动代理服务器"""
        self.bind()
        self.serve_forever()

    def stop(self):
        """停止代理服务器"""
        self.running = False
        if self.socket is not None:
            try:
                # shutdown wakes a thread blocked in accept(); close alone does not on Linux
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self.socket.close()
            except OSError:
                pass
        self._log("Proxy server stopped")

    def handle_client(self, client_socket, addr=None):
        """处理单个客户端连接，失败只影响本会话"""
        return Session(client_socket, addr, self.config, self._log).run()
