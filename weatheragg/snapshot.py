import logging
import os

import msgpack

from .errors import CorruptSnapshot

logger = logging.getLogger(__name__)


def _ensure_parent(path):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def write_map(path, data):
    _ensure_parent(path)
    tmp = path + '.tmp'
    with open(tmp, 'wb') as f:
        f.write(msgpack.packb(data, use_bin_type=True))
    os.replace(tmp, path)


def read_map(path):
    with open(path, 'rb') as f:
        raw = f.read()
    try:
        data = msgpack.unpackb(raw, raw=False, strict_map_key=False)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as e:
        raise CorruptSnapshot(f'snapshot {path} is unreadable: {e}') from e
    if not isinstance(data, dict):
        raise CorruptSnapshot(f'snapshot {path} does not hold a map')
    return data


class Snapshot:
    """Persists the station database and the archive to two msgpack files."""

    def __init__(self, database_path, archive_path):
        self.database_path = database_path
        self.archive_path = archive_path

    def exists(self):
        return os.path.exists(self.database_path) and os.path.exists(self.archive_path)

    def save(self, database, archive):
        write_map(self.database_path, database)
        write_map(self.archive_path, archive)
        logger.info('[SNAPSHOT] saved %d stations to %s, %d producers to %s',
                    len(database), self.database_path, len(archive), self.archive_path)

    def load(self):
        """Returns (database, archive), or (None, None) when no snapshot exists."""
        if not self.exists():
            return None, None
        database = read_map(self.database_path)
        archive = read_map(self.archive_path)
        logger.info('[SNAPSHOT] loaded %d stations, %d producers', len(database), len(archive))
        return database, archive
