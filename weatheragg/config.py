import logging
import os

from .errors import InvalidArgument

# Optional key=value properties file
CONFIG_FILE = os.environ.get('WEATHERAGG_CONFIG')

DEFAULTS = {
    'HEARTBEAT_SCHEDULE': 30000,
    'WAIT_TIME': 30000,
    'FRESH_COUNT': 20,
    'databaseDir': os.path.join('storage', 'database.msgpack'),
    'archiveDir': os.path.join('storage', 'archive.msgpack'),
    'WORKER_COUNT': 4,
    'REQUEST_TIMEOUT': 3000,
    'PROBE_TIMEOUT': 1000,
    'FORWARD_TIMEOUT': 2500,
    'SNAPSHOT_SCHEDULE': 0,
    'MAX_PORT_ATTEMPTS': 100,
}

LOG_FORMAT = '[%(levelname)-5s] %(name)s: %(message)s'


def load_properties(path):
    """Read a key=value file. Lines starting with # are comments."""
    props = {}
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            key, sep, value = line.partition('=')
            if not sep:
                raise InvalidArgument(f'invalid config line in {path}: {line!r}')
            props[key.strip()] = value.strip()
    return props


class Config:
    def __init__(self, path=CONFIG_FILE, **overrides):
        self.values = dict(DEFAULTS)
        if path and os.path.exists(path):
            self.values.update(load_properties(path))
        for key in DEFAULTS:
            if key in os.environ:
                self.values[key] = os.environ[key]
        self.values.update(overrides)

    def get(self, key, default=None):
        return self.values.get(key, default)

    def get_int(self, key):
        value = self.values.get(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidArgument(f'config key {key} must be an integer, got {value!r}') from None

    def __getitem__(self, key):
        return self.values[key]

    def __repr__(self):
        return f'Config({self.values!r})'


def configure_logging(level=None):
    level = level or os.environ.get('LOG_LEVEL', 'INFO')
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
