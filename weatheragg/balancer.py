"""Load balancer in front of a registry of aggregation servers.

Every request is forwarded verbatim to the current leader. A heartbeat thread
probes the leader and, when it stops answering, elects the first healthy
member of the registry or spawns a fresh built-in aggregator.
"""

import argparse
import collections
import concurrent.futures
import logging
import sys
import threading

import zmq

from .aggregator import AggregationServer
from .clock import LamportClock
from .config import Config, configure_logging
from .errors import CorruptSnapshot, IOFailure, MalformedMessage
from .message import LAMPORT_HEADER, json_response, parse_request, parse_response
from .store import error_body
from .transport import endpoint, probe

logger = logging.getLogger(__name__)

LOCALHOST = '127.0.0.1'
OUTBOX = 'inproc://balancer-outbox'
POLL_INTERVAL = 100  # ms

ServerInfo = collections.namedtuple('ServerInfo', 'hostname port')


class LoadBalancer:
    def __init__(self, port, config=None, host='*'):
        self.config = config or Config()
        self.port = port
        self.clock = LamportClock()
        self.heartbeat_schedule = self.config.get_int('HEARTBEAT_SCHEDULE')
        self.forward_timeout = self.config.get_int('FORWARD_TIMEOUT')
        self.probe_timeout = self.config.get_int('PROBE_TIMEOUT')
        self.max_port_attempts = self.config.get_int('MAX_PORT_ATTEMPTS')

        self.registry = []
        self.leader = None
        self.builtin_server = None
        self.new_port = port + 1
        self.election_lock = threading.RLock()

        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.ROUTER)
        self.socket.setsockopt(zmq.LINGER, 0)
        try:
            self.socket.bind(f'tcp://{host}:{port}')
        except zmq.ZMQError:
            self.socket.close()
            self.context.term()
            raise
        self.outbox = self.context.socket(zmq.PULL)
        self.outbox.setsockopt(zmq.LINGER, 0)
        self.outbox.bind(OUTBOX)

        self._local = threading.local()
        self._pushers = []
        self._pushers_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads = []
        self.connection_pool = None
        self.is_up = True
        logger.info('[START] load balancer bound on port %s', port)

        try:
            self.start_builtin_server()
        except Exception:
            self.close()
            raise

    # ---------------- Registry ----------------

    def contains(self, hostname, port):
        return ServerInfo(hostname, port) in self.registry

    def is_alive(self, hostname, port):
        return probe(hostname, port, timeout=self.probe_timeout, clock=self.clock, context=self.context)

    def add_server(self, hostname, port):
        """Register an aggregator if it answers a probe. Returns True if it is registered."""
        info = ServerInfo(hostname, port)
        with self.election_lock:
            if info in self.registry:
                return True
            logger.info('[REGISTRY] adding %s:%s', hostname, port)
            if not self.is_alive(hostname, port):
                logger.warning('[REGISTRY] %s:%s is not responding, not added', hostname, port)
                return False
            self.registry.append(info)
            return True

    def set_leader(self, hostname, port):
        with self.election_lock:
            if not self.add_server(hostname, port):
                raise IOFailure(f'cannot make {hostname}:{port} leader, it is not responding')
            self.leader = ServerInfo(hostname, port)
            logger.info('[LEADER] %s:%s', hostname, port)

    def start_builtin_server(self):
        """Spawn an aggregator on the first free port from new_port upwards."""
        with self.election_lock:
            for _ in range(self.max_port_attempts):
                try:
                    server = AggregationServer(self.new_port, config=self.config)
                except zmq.ZMQError as e:
                    logger.info('[BUILTIN] port %s unavailable: %s', self.new_port, e)
                    self.new_port += 1
                    continue
                if self.builtin_server is not None:
                    self.builtin_server.close()
                self.builtin_server = server.start()
                logger.info('[BUILTIN] aggregation server started on port %s', self.new_port)
                self.set_leader(LOCALHOST, self.new_port)
                return server
            raise IOFailure(f'no free port for a built-in server after {self.max_port_attempts} attempts')

    def elect_leader(self):
        """Make the first responsive registry member leader, else spawn a built-in server."""
        with self.election_lock:
            logger.info('[ELECTION] electing a new leader among %d servers', len(self.registry))
            for info in list(self.registry):
                if self.is_alive(info.hostname, info.port):
                    self.leader = info
                    logger.info('[ELECTION] selected %s:%s', info.hostname, info.port)
                    return info
            logger.info('[ELECTION] no registered server is alive, starting a built-in server')
            self.start_builtin_server()
            return self.leader

    # ---------------- Lifecycle ----------------

    def start(self):
        self.connection_pool = concurrent.futures.ThreadPoolExecutor(thread_name_prefix=f'balancer-{self.port}')
        self._spawn(self._serve_loop, 'serve')
        self._spawn(self._heartbeat_loop, 'heartbeat')
        return self

    def _spawn(self, target, name):
        t = threading.Thread(target=target, name=f'balancer-{self.port}-{name}', daemon=True)
        t.start()
        self._threads.append(t)

    def serve_forever(self):
        self.start()
        try:
            while not self._stop.wait(1):
                pass
        except KeyboardInterrupt:
            logger.info('[STOP] interrupted')
        finally:
            self.close()

    def close(self):
        if not self.is_up:
            return
        self.is_up = False
        self._stop.set()
        for t in self._threads:
            t.join()
        if self.connection_pool is not None:
            self.connection_pool.shutdown(wait=True, cancel_futures=True)
        with self._pushers_lock:
            for sock in self._pushers:
                sock.close(linger=0)
            self._pushers = []
        self.outbox.close(linger=0)
        self.socket.close(linger=0)
        self.context.term()
        if self.builtin_server is not None and self.builtin_server.is_up:
            self.builtin_server.close()
        logger.info('[STOP] load balancer on port %s closed', self.port)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---------------- Heartbeat ----------------

    def _heartbeat_loop(self):
        while not self._stop.wait(self.heartbeat_schedule / 1000.0):
            leader = self.leader
            if leader is not None and self.is_alive(leader.hostname, leader.port):
                continue
            logger.warning('[HEARTBEAT] leader %s is not responding', leader)
            try:
                self.elect_leader()
            except IOFailure as e:
                logger.error('[HEARTBEAT] election failed: %s', e)
            except Exception:
                # Retried on the next beat
                logger.exception('[HEARTBEAT] election failed')

    # ---------------- Forwarding ----------------

    def _serve_loop(self):
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.outbox, zmq.POLLIN)
        while not self._stop.is_set():
            events = dict(poller.poll(POLL_INTERVAL))
            if self.outbox in events:
                self.socket.send_multipart(self.outbox.recv_multipart())
            if self.socket in events:
                frames = self.socket.recv_multipart()
                self.connection_pool.submit(self._handle, frames[:-1], frames[-1])

    def _handle(self, envelope, payload):
        try:
            self.clock.merge(parse_request(payload).lamport)
        except MalformedMessage as e:
            logger.warning('[FORWARD] malformed request: %s', e)
            self._reply(envelope, self._error(400, 'Bad Request', str(e)))
            return
        leader = self.leader
        try:
            reply = self.forward(leader, payload)
            self.clock.merge(parse_response(reply).lamport)
        except (IOFailure, MalformedMessage) as e:
            logger.warning('[FORWARD] leader %s failed: %s', leader, e)
            reply = self._error(500, 'Internal Server Error', 'Leader is unavailable')
        self._reply(envelope, reply)

    def _error(self, code, reason, message):
        response = json_response(code, error_body(code, reason, message))
        response.set_header(LAMPORT_HEADER, self.clock.tick())
        return response.to_bytes()

    def _reply(self, envelope, reply):
        try:
            self._pusher().send_multipart(envelope + [reply])
        except zmq.ZMQError as e:
            logger.warning('[FORWARD] dropped reply: %s', e)

    def forward(self, leader, payload):
        """Send raw request bytes to the leader and return its raw reply.

        A timeout raises IOFailure, but the leader may still have applied the
        request, so a retried PUT can come back as an update rather than a
        creation.
        """
        if leader is None:
            raise IOFailure('no leader')
        sock = self.context.socket(zmq.REQ)
        sock.setsockopt(zmq.LINGER, 0)
        sock.setsockopt(zmq.SNDTIMEO, self.forward_timeout)
        try:
            sock.connect(endpoint(leader.hostname, leader.port))
            sock.send(payload)
            if not sock.poll(self.forward_timeout, zmq.POLLIN):
                raise IOFailure(f'no reply from {leader.hostname}:{leader.port}')
            return sock.recv()
        except zmq.ZMQError as e:
            raise IOFailure(str(e)) from e
        finally:
            sock.close(linger=0)

    def _pusher(self):
        sock = getattr(self._local, 'pusher', None)
        if sock is None:
            sock = self.context.socket(zmq.PUSH)
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.SNDTIMEO, self.forward_timeout)
            sock.connect(OUTBOX)
            self._local.pusher = sock
            with self._pushers_lock:
                self._pushers.append(sock)
        return sock


def main(argv=None):
    parser = argparse.ArgumentParser(description='Weather aggregation load balancer')
    parser.add_argument('port', type=int, help='TCP port to bind')
    args = parser.parse_args(argv)
    configure_logging()
    try:
        balancer = LoadBalancer(args.port)
    except (zmq.ZMQError, IOFailure, CorruptSnapshot) as e:
        print(f'unable to start load balancer on port {args.port}: {e}', file=sys.stderr)
        return 1
    balancer.serve_forever()
    return 0


if __name__ == '__main__':
    sys.exit(main())
