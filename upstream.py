import logging
import socket
import time

import socks  # PySocks

from proxy_errors import StartupTimeout, UpstreamConnectFailed, REP_GENERAL_FAILURE

_logger = logging.getLogger('ProxyServer.upstream')


def wait_for_upstream(host, port, attempts=10, delay=1.0, timeout=1.0, log=None):
    """Poll the upstream SOCKS port until it accepts a TCP connection.

    Returns the 1-based attempt that succeeded. Raises StartupTimeout once
    ``attempts`` probes have failed; ``delay`` seconds are slept between
    probes but not after the last one.
    """
    log = log or _logger.info
    for i in range(1, attempts + 1):
        try:
            probe = socket.create_connection((host, port), timeout=timeout)
        except OSError:
            log(f"Waiting for upstream startup... ({i}/{attempts})")
            if i < attempts:
                time.sleep(delay)
            continue
        probe.close()
        log(f"Upstream is ready at {host}:{port}")
        return i
    raise StartupTimeout(f"upstream {host}:{port} did not start in time ({attempts} attempts)")


def _upstream_reply_code(err):
    # PySocks formats negotiation failures as "0x05: Connection refused" and
    # socksocket.connect() may wrap them in GeneralProxyError("Socket error", ...)
    if not isinstance(err, socks.SOCKS5Error):
        err = getattr(err, 'socket_err', None)
    if isinstance(err, socks.SOCKS5Error):
        try:
            return int(str(err).split(':', 1)[0], 16)
        except ValueError:
            pass
    return REP_GENERAL_FAILURE


def open_upstream(destination, upstream_host, upstream_port, timeout=10.0):
    """通过上游 SOCKS5 建立到目标的连接，返回已协商完成的 socket"""
    s = socks.socksocket()
    # rdns: let the upstream resolve domain names, nothing is looked up locally
    s.set_proxy(socks.SOCKS5, upstream_host, int(upstream_port), rdns=True)
    s.settimeout(timeout)
    try:
        s.connect((destination.host, destination.port))
    except (socks.ProxyError, OSError, ValueError) as e:
        # ValueError: PySocks idna-encodes the name, which fails on empty or over-long labels
        try:
            s.close()
        except OSError:
            pass
        raise UpstreamConnectFailed(f"upstream connect to {destination} failed: {e}",
                                    reply_code=_upstream_reply_code(e))
    # relay has no idle timeout
    s.settimeout(None)
    return s
