import logging
import queue
import socket
import threading

from proxy_errors import RelayIOError

_logger = logging.getLogger('ProxyServer.relay')


class _Pipe:
    """One direction of the relay: src -> dst until EOF or error."""

    def __init__(self, name, src, dst, buffer_size, finished):
        self.name = name
        self.src = src
        self.dst = dst
        self.buffer_size = buffer_size
        self.finished = finished
        self.transferred = 0
        self.error = None
        self.thread = threading.Thread(target=self.run, name=f"relay-{name}", daemon=True)

    def run(self):
        try:
            while True:
                data = self.src.recv(self.buffer_size)
                if not data:
                    break
                self.dst.sendall(data)
                self.transferred += len(data)
        except OSError as e:
            self.error = e
        finally:
            self.finished.put(self)


def _shutdown(sock):
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # already disconnected
        pass


def relay(client, upstream, buffer_size=4096):
    """双向转发数据，任一方向结束即拆除整个会话

    Returns (client_to_upstream, upstream_to_client) byte counts. Raises
    RelayIOError if the direction that ended the session failed. The
    sockets are shut down but not closed; closing is left to the caller.
    """
    finished = queue.Queue()
    outbound = _Pipe('client->upstream', client, upstream, buffer_size, finished)
    inbound = _Pipe('upstream->client', upstream, client, buffer_size, finished)

    outbound.thread.start()
    inbound.thread.start()

    first = finished.get()
    # the other pipe is unblocked by the shutdown; its error, if any, is expected
    _shutdown(client)
    _shutdown(upstream)
    outbound.thread.join()
    inbound.thread.join()

    if first.error is not None:
        raise RelayIOError(f"{first.name} failed: {first.error}")
    _logger.debug(f"relay finished by {first.name}")
    return outbound.transferred, inbound.transferred
