# main.py - 程序入口：等待上游 SOCKS 就绪，然后启动本地 SOCKS5 转发
import argparse
import logging
import sys

from proxy_config import ProxyConfig
from proxy_errors import ConfigError, StartupTimeout
from proxy_server import ProxyServer
from upstream import wait_for_upstream

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(level='INFO', log_file=None):
    logger = logging.getLogger('ProxyServer')
    # avoid adding multiple handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    for h in handlers:
        h.setFormatter(formatter)
        logger.addHandler(h)
    logger.setLevel(level)
    return logger


def build_parser():
    parser = argparse.ArgumentParser(
        description='Local SOCKS5 listener that forwards every connection through an upstream SOCKS5 proxy (e.g. Tor).')
    parser.add_argument('--config', help='JSON config file')
    parser.add_argument('--local-host')
    parser.add_argument('--local-port', type=int)
    parser.add_argument('--upstream-host')
    parser.add_argument('--upstream-port', type=int)
    parser.add_argument('--probe-attempts', type=int, help='upstream readiness probes before giving up')
    parser.add_argument('--probe-delay', type=float, help='seconds between readiness probes')
    parser.add_argument('--log-level')
    parser.add_argument('--log-file')
    parser.add_argument('--no-error-replies', action='store_true',
                        help='close failed requests silently instead of sending a SOCKS5 error reply')
    return parser


def load_config(args):
    config = ProxyConfig.load(args.config) if args.config else ProxyConfig()
    return config.replace(
        local_host=args.local_host,
        local_port=args.local_port,
        upstream_host=args.upstream_host,
        upstream_port=args.upstream_port,
        probe_attempts=args.probe_attempts,
        probe_delay=args.probe_delay,
        log_level=args.log_level,
        log_file=args.log_file,
        error_replies=False if args.no_error_replies else None,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"配置错误: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(config.log_level, config.log_file)

    try:
        wait_for_upstream(config.upstream_host, config.upstream_port,
                          attempts=config.probe_attempts, delay=config.probe_delay,
                          log=logger.info)
    except StartupTimeout as e:
        logger.error(str(e))
        return 1

    server = ProxyServer(config)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Cannot listen on {config.local_host}:{config.local_port}: {e}")
        return 2

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down proxy server...")
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
