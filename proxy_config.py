import json
import logging
from pathlib import Path

from proxy_errors import ConfigError

DEFAULTS = {
    # 本地 SOCKS5 监听（对应用程序可见）
    'local_host': '127.0.0.1',
    'local_port': 12345,
    # 上游 SOCKS5（Tor 客户端）
    'upstream_host': '127.0.0.1',
    'upstream_port': 9050,
    # 启动时等待上游就绪
    'probe_attempts': 10,
    'probe_delay': 1.0,
    'connect_timeout': 10.0,
    'handshake_timeout': 30.0,
    'buffer_size': 4096,
    'backlog': 128,
    'error_replies': True,
    'log_level': 'INFO',
    'log_file': None,
}

_PORT_KEYS = ('local_port', 'upstream_port')
_POSITIVE_INT_KEYS = ('probe_attempts', 'buffer_size', 'backlog')
_SECONDS_KEYS = ('probe_delay', 'connect_timeout', 'handshake_timeout')
_NULLABLE_KEYS = ('handshake_timeout', 'log_file')
_TIMEOUT_KEYS = ('connect_timeout', 'handshake_timeout')


class ProxyConfig:
    """Settings for the forwarder, loadable from and savable to a JSON file."""

    def __init__(self, **values):
        unknown = set(values) - set(DEFAULTS)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        merged = dict(DEFAULTS)
        for key, value in values.items():
            if value is None and key not in _NULLABLE_KEYS:
                continue
            merged[key] = value
        for key, value in self._validate(merged).items():
            setattr(self, key, value)

    @classmethod
    def from_dict(cls, data):
        return cls(**data)

    @classmethod
    def load(cls, path):
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding='utf-8'))
        except FileNotFoundError:
            raise ConfigError(f"config file not found: {p.resolve()}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid JSON in {p}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{p} must contain a JSON object")
        return cls.from_dict(data)

    def save(self, path):
        p = Path(path)
        p.write_text(json.dumps(self.to_dict(), indent=2), encoding='utf-8')
        return p

    def to_dict(self):
        return {key: getattr(self, key) for key in DEFAULTS}

    def replace(self, **changes):
        data = self.to_dict()
        data.update({k: v for k, v in changes.items() if v is not None})
        return ProxyConfig(**data)

    @staticmethod
    def _validate(values):
        out = dict(values)
        for key in _PORT_KEYS:
            try:
                port = int(out[key])
            except (TypeError, ValueError):
                raise ConfigError(f"{key} is not a valid integer: {out[key]!r}")
            low = 0 if key == 'local_port' else 1
            if not low <= port <= 65535:
                raise ConfigError(f"{key} out of range: {port}")
            out[key] = port
        for key in _POSITIVE_INT_KEYS:
            try:
                out[key] = int(out[key])
            except (TypeError, ValueError):
                raise ConfigError(f"{key} is not a valid integer: {out[key]!r}")
            if out[key] < 1:
                raise ConfigError(f"{key} must be at least 1")
        for key in _SECONDS_KEYS:
            if out[key] is None and key in _NULLABLE_KEYS:
                continue
            try:
                out[key] = float(out[key])
            except (TypeError, ValueError):
                raise ConfigError(f"{key} is not a number: {out[key]!r}")
            if key in _TIMEOUT_KEYS:
                # settimeout(0) would switch the socket to non-blocking mode
                if out[key] <= 0:
                    raise ConfigError(f"{key} must be greater than 0")
            elif out[key] < 0:
                raise ConfigError(f"{key} must not be negative")
        level = str(out['log_level']).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigError(f"unknown log level: {out['log_level']!r}")
        out['log_level'] = level
        out['error_replies'] = bool(out['error_replies'])
        return out

    def __repr__(self):
        return f"ProxyConfig({self.to_dict()!r})"
