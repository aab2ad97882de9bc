import os
import time

import pytest
import zmq

from weatheragg.aggregator import AggregationServer
from weatheragg.balancer import LOCALHOST, LoadBalancer, ServerInfo
from weatheragg.clock import LamportClock
from weatheragg.config import Config
from weatheragg.errors import IOFailure
from weatheragg.getclient import GetClient
from weatheragg.message import parse_response

from conftest import find_ports, get_station, put_file


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def balancer(config):
    lb = LoadBalancer(find_ports(span=4), config=config).start()
    yield lb
    lb.close()


def test_builtin_server_takes_next_port(balancer):
    assert balancer.builtin_server.port == balancer.port + 1
    assert balancer.leader == ServerInfo(LOCALHOST, balancer.port + 1)
    assert balancer.registry == [balancer.leader]


def test_requests_are_forwarded_to_leader(balancer, resources):
    assert get_station(balancer.port).status_code == 204
    assert put_file(balancer.port, resources / 'adelaide_1600.txt').status_code == 201

    response = get_station(balancer.port, 'IDS60901')
    assert response.status_code == 200
    assert '"air_temp": 13.3' in response.body
    assert 'IDS60901' in balancer.builtin_server.database


def test_interleaved_get_put(balancer, resources):
    put_file(balancer.port, resources / 'adelaide_1600.txt')
    assert '15/04:00pm' in get_station(balancer.port, 'IDS60901').body
    put_file(balancer.port, resources / 'adelaide_1630.txt')
    assert '15/04:30pm' in get_station(balancer.port, 'IDS60901').body
    put_file(balancer.port, resources / 'two_stations.txt')
    assert '15/04:30pm' in get_station(balancer.port, 'IDS60901').body


def test_dead_builtin_is_not_alive(balancer):
    balancer.builtin_server.close()
    assert balancer.leader.port == balancer.port + 1
    assert not balancer.is_alive(LOCALHOST, balancer.port + 1)


def test_dead_leader_gives_500_until_election(balancer):
    balancer.builtin_server.close()
    assert get_station(balancer.port, 'A0').status_code == 500

    balancer.elect_leader()
    assert balancer.is_alive(LOCALHOST, balancer.port + 1)
    assert get_station(balancer.port, 'A0').status_code == 404


def test_election_replaces_dead_builtin(balancer):
    old = balancer.builtin_server
    old.close()

    leader = balancer.elect_leader()

    assert leader == ServerInfo(LOCALHOST, balancer.port + 1)
    assert balancer.builtin_server is not old
    assert balancer.builtin_server.is_up
    assert balancer.registry.count(leader) == 1


def test_heartbeat_triggers_failover(tmp_path):
    config = Config(
        path=None,
        databaseDir=str(tmp_path / 'database.msgpack'),
        archiveDir=str(tmp_path / 'archive.msgpack'),
        HEARTBEAT_SCHEDULE=200,
        PROBE_TIMEOUT=300,
        FORWARD_TIMEOUT=1000,
        REQUEST_TIMEOUT=1000,
    )
    lb = LoadBalancer(find_ports(span=4), config=config).start()
    try:
        old = lb.builtin_server
        old.close()
        assert wait_for(lambda: lb.builtin_server is not old and lb.builtin_server.is_up)
        assert get_station(lb.port).status_code == 204
    finally:
        lb.close()


def test_set_leader_rejects_unreachable_server(balancer):
    leader = balancer.leader
    with pytest.raises(IOFailure):
        balancer.set_leader(LOCALHOST, find_ports())
    assert balancer.leader == leader
    assert balancer.registry == [leader]


def test_add_server_rejects_duplicates(balancer):
    assert balancer.add_server(LOCALHOST, balancer.port + 1)
    assert balancer.contains(LOCALHOST, balancer.port + 1)
    assert len(balancer.registry) == 1


def test_close_shuts_down_builtin(config):
    lb = LoadBalancer(find_ports(span=4), config=config).start()
    builtin = lb.builtin_server
    lb.close()
    assert not lb.is_up
    assert not builtin.is_up


def test_builtin_snapshot(balancer, resources, config):
    put_file(balancer.port, resources / 'two_stations.txt')
    balancer.builtin_server.create_snapshot()

    assert os.path.exists(config['archiveDir'])
    assert os.path.exists(config['databaseDir'])


def test_balancer_error_reply_follows_client_clock(balancer):
    balancer.builtin_server.close()
    client = GetClient(LOCALHOST, balancer.port, 'A0', clock=LamportClock(1000))

    response = client.run()

    assert response.status_code == 500
    assert response.lamport > 1001
    assert client.connection.clock.time > response.lamport


def test_balancer_merges_leader_replies(balancer):
    response = get_station(balancer.port)
    assert response.status_code == 204
    assert balancer.clock.time >= response.lamport


def test_malformed_request_to_balancer_is_400(balancer):
    context = zmq.Context.instance()
    sock = context.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 2000)
    sock.connect(f'tcp://{LOCALHOST}:{balancer.port}')
    try:
        sock.send(b'GET / HTTP/1.1\r\nLamport-Clock: soon\r\n\r\n')
        response = parse_response(sock.recv())
    finally:
        sock.close()
    assert response.status_code == 400
    assert balancer.builtin_server.database == {}


def test_heartbeat_survives_failed_election(tmp_path, monkeypatch):
    config = Config(
        path=None,
        databaseDir=str(tmp_path / 'database.msgpack'),
        archiveDir=str(tmp_path / 'archive.msgpack'),
        HEARTBEAT_SCHEDULE=100,
        PROBE_TIMEOUT=300,
        FORWARD_TIMEOUT=1000,
    )
    lb = LoadBalancer(find_ports(span=4), config=config)
    elect = lb.elect_leader
    calls = []

    def flaky_election():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError('snapshot unreadable')
        return elect()

    monkeypatch.setattr(lb, 'elect_leader', flaky_election)
    lb.start()
    try:
        old = lb.builtin_server
        old.close()
        assert wait_for(lambda: len(calls) >= 2 and lb.builtin_server is not old and lb.builtin_server.is_up)
    finally:
        lb.close()


def test_forward_timeout_sits_between_probe_and_client_timeouts():
    config = Config(path=None)
    assert config.get_int('PROBE_TIMEOUT') < config.get_int('FORWARD_TIMEOUT') < config.get_int('REQUEST_TIMEOUT')


class TestPresetFailoverServer:
    @pytest.fixture
    def cluster(self, config):
        port = find_ports(span=4)
        external = AggregationServer(port + 1, config=config).start()
        lb = LoadBalancer(port, config=config).start()
        lb.add_server(LOCALHOST, port + 1)
        lb.set_leader(LOCALHOST, port + 1)
        yield lb, external
        lb.close()
        external.close()

    def test_builtin_skips_occupied_port(self, cluster):
        lb, _ = cluster
        assert lb.builtin_server.port == lb.port + 2

    def test_external_is_leader(self, cluster):
        lb, external = cluster
        assert lb.leader.port == external.port
        assert lb.is_alive(LOCALHOST, external.port)
        assert lb.registry == [ServerInfo(LOCALHOST, lb.port + 2), ServerInfo(LOCALHOST, external.port)]

    def test_requests_reach_external_leader(self, cluster, resources):
        lb, external = cluster
        put_file(lb.port, resources / 'two_stations.txt')
        assert 'A0' in external.database
        assert 'A0' not in lb.builtin_server.database

    def test_leader_swaps_to_builtin_when_external_dies(self, cluster):
        lb, external = cluster
        external.close()
        lb.elect_leader()
        assert lb.leader.port == lb.port + 2
        assert get_station(lb.port).status_code == 204
