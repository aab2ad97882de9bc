import pathlib
import random
import socket
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from weatheragg.aggregator import AggregationServer
from weatheragg.config import Config
from weatheragg.contentclient import ContentClient
from weatheragg.getclient import GetClient

RESOURCES = pathlib.Path(__file__).resolve().parent / 'resources'
LOCALHOST = '127.0.0.1'


def _port_free(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
        except OSError:
            return False
    return True


def find_ports(span=1):
    """First port of `span` consecutive free ports."""
    for _ in range(200):
        start = random.randint(20000, 40000)
        if all(_port_free(start + i) for i in range(span)):
            return start
    raise RuntimeError('no free port range found')


def make_station_file(directory, name, station_id, **fields):
    path = pathlib.Path(directory) / name
    lines = [f'id:{station_id}'] + [f'{k}:{v}' for k, v in fields.items()]
    path.write_text('\n'.join(lines) + '\n', encoding='utf-8')
    return str(path)


def put_file(port, path):
    return ContentClient(LOCALHOST, port, str(path)).run()


def get_station(port, station_id=None):
    return GetClient(LOCALHOST, port, station_id).run()


@pytest.fixture
def resources():
    return RESOURCES


@pytest.fixture
def config(tmp_path):
    return Config(
        path=None,
        databaseDir=str(tmp_path / 'snapshot' / 'database.msgpack'),
        archiveDir=str(tmp_path / 'snapshot' / 'archive.msgpack'),
        WAIT_TIME=30000,
        FRESH_COUNT=20,
        WORKER_COUNT=4,
        REQUEST_TIMEOUT=1000,
        PROBE_TIMEOUT=500,
        FORWARD_TIMEOUT=1000,
        HEARTBEAT_SCHEDULE=30000,
        SNAPSHOT_SCHEDULE=0,
    )


@pytest.fixture
def server(config):
    srv = AggregationServer(find_ports(), config=config, host=LOCALHOST).start()
    yield srv
    srv.close()
