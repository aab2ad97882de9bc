"""Aggregation server.

A ROUTER socket accepts requests from any number of peers. Each request is
stamped with a Lamport priority and queued on the priority scheduler; workers
run it against the station store and hand the response back to the I/O
thread through an inproc pipe.
"""

import argparse
import logging
import sys
import threading

import zmq

from .clock import LamportClock
from .config import Config, configure_logging
from .errors import CorruptSnapshot, MalformedMessage
from .message import LAMPORT_HEADER, json_response, parse_request
from .scheduler import PriorityScheduler
from .snapshot import Snapshot
from .store import RequestTask, StationStore, error_body

logger = logging.getLogger(__name__)

OUTBOX = 'inproc://outbox'
POLL_INTERVAL = 100  # ms
OUTBOX_TIMEOUT = 1000  # ms


def peer_address(frame):
    try:
        return frame.get('Peer-Address')
    except zmq.ZMQError:
        return 'unknown'


class AggregationServer:
    def __init__(self, port, config=None, host='*'):
        self.config = config or Config()
        self.port = port
        self.host = host
        self.clock = LamportClock()
        self.store = StationStore(self.config.get_int('FRESH_COUNT'))
        self.wait_time = self.config.get_int('WAIT_TIME')
        self.snapshot = Snapshot(self.config['databaseDir'], self.config['archiveDir'])

        self._local = threading.local()
        self._pushers = []
        self._pushers_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads = []
        self.scheduler = None

        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.ROUTER)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.outbox = None
        try:
            self.socket.bind(f'tcp://{host}:{port}')
            self.outbox = self.context.socket(zmq.PULL)
            self.outbox.setsockopt(zmq.LINGER, 0)
            self.outbox.bind(OUTBOX)
            self.load_snapshot()
        except Exception:
            if self.outbox is not None:
                self.outbox.close(linger=0)
            self.socket.close(linger=0)
            self.context.term()
            raise
        self.is_up = True
        logger.info('[START] aggregation server bound on port %s', port)

    # ---------------- State ----------------

    @property
    def database(self):
        return self.store.database

    @property
    def archive(self):
        return self.store.archive

    @property
    def update_queue(self):
        return self.store.update_queue

    def create_snapshot(self):
        database, archive = self.store.state()
        self.snapshot.save(database, archive)

    def load_snapshot(self):
        database, archive = self.snapshot.load()
        if database is None:
            return False
        self.store.restore(database, archive)
        self.clock.merge(self.store.max_timestamp())
        return True

    # ---------------- Lifecycle ----------------

    def start(self):
        self.scheduler = PriorityScheduler(self.config.get_int('WORKER_COUNT'), name=f'aggregator-{self.port}')
        self._spawn(self._serve_loop, 'serve')
        self._spawn(self._expiry_loop, 'expiry')
        if self.config.get_int('SNAPSHOT_SCHEDULE') > 0:
            self._spawn(self._snapshot_loop, 'snapshot')
        return self

    def _spawn(self, target, name):
        t = threading.Thread(target=target, name=f'aggregator-{self.port}-{name}', daemon=True)
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
        if self.scheduler is not None:
            self.scheduler.shutdown()
        with self._pushers_lock:
            for sock in self._pushers:
                sock.close(linger=0)
            self._pushers = []
        self.outbox.close(linger=0)
        self.socket.close(linger=0)
        self.context.term()
        logger.info('[STOP] aggregation server on port %s closed', self.port)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---------------- Request pipeline ----------------

    def _serve_loop(self):
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.outbox, zmq.POLLIN)
        while not self._stop.is_set():
            events = dict(poller.poll(POLL_INTERVAL))
            if self.outbox in events:
                self.socket.send_multipart(self.outbox.recv_multipart())
            if self.socket in events:
                self._dispatch(self.socket.recv_multipart(copy=False))

    def _dispatch(self, frames):
        envelope = [f.bytes for f in frames[:-1]]
        payload = frames[-1]
        remote_ip = peer_address(payload)
        try:
            request = parse_request(payload.bytes)
            observed = request.lamport
        except MalformedMessage as e:
            logger.warning('[REQUEST] malformed message from %s: %s', remote_ip, e)
            response = json_response(400, error_body(400, 'Bad Request', str(e)))
            response.set_header(LAMPORT_HEADER, self.clock.tick())
            self.socket.send_multipart(envelope + [response.to_bytes()])
            return
        self.clock.merge(observed)
        priority = self.clock.tick()
        task = RequestTask(request, remote_ip, priority)
        logger.debug('[REQUEST] queued %r', task)
        self.scheduler.submit(priority, self._execute, envelope, task)

    def _execute(self, envelope, task):
        try:
            response = self.store.handle(task)
        except Exception:
            logger.exception('[ERROR] %r failed', task)
            response = json_response(500, error_body(500, 'Internal Server Error',
                                                     'The server failed to process the request'))
        response.set_header(LAMPORT_HEADER, self.clock.tick())
        try:
            self._pusher().send_multipart(envelope + [response.to_bytes()])
        except zmq.Again:
            logger.warning('[REQUEST] dropped response to %r, server is closing', task)
        return response

    def _pusher(self):
        sock = getattr(self._local, 'pusher', None)
        if sock is None:
            sock = self.context.socket(zmq.PUSH)
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.SNDTIMEO, OUTBOX_TIMEOUT)
            sock.connect(OUTBOX)
            self._local.pusher = sock
            with self._pushers_lock:
                self._pushers.append(sock)
        return sock

    # ---------------- Background tasks ----------------

    def _expiry_loop(self):
        while not self._stop.wait(max(min(self.wait_time, 1000), 10) / 1000.0):
            popped = self.store.expire(self.wait_time)
            if popped:
                logger.debug('[EXPIRE] popped %d stale updates', popped)

    def _snapshot_loop(self):
        interval = self.config.get_int('SNAPSHOT_SCHEDULE') / 1000.0
        while not self._stop.wait(interval):
            self.create_snapshot()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Weather aggregation server')
    parser.add_argument('port', type=int, help='TCP port to bind')
    args = parser.parse_args(argv)
    configure_logging()
    try:
        server = AggregationServer(args.port)
    except zmq.ZMQError as e:
        print(f'unable to bind port {args.port}: {e}', file=sys.stderr)
        return 1
    except CorruptSnapshot as e:
        print(f'unable to restore state: {e}', file=sys.stderr)
        return 1
    server.serve_forever()
    return 0


if __name__ == '__main__':
    sys.exit(main())
