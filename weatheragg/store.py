"""Station database and the GET/PUT request pipeline of an aggregator."""

import json
import logging
import threading

from . import weather
from .errors import MalformedMessage, NotFound
from .freshness import FreshnessEngine
from .message import json_response

logger = logging.getLogger(__name__)


def error_body(code, reason, message):
    return json.dumps({str(code): reason, 'Message': message})


class RequestTask:
    def __init__(self, request, remote_ip, priority):
        self.request = request
        self.remote_ip = remote_ip
        self.priority = priority

    def __repr__(self):
        return f'RequestTask({self.request.method} {self.request.uri} from {self.remote_ip}, p={self.priority})'


class StationStore:
    """Station records plus the archive of recent PUTs, behind one lock."""

    def __init__(self, fresh_count=20):
        self.lock = threading.RLock()
        self._database = {}
        self.freshness = FreshnessEngine(fresh_count, lock=self.lock)

    @property
    def database(self):
        with self.lock:
            return dict(self._database)

    @property
    def archive(self):
        return self.freshness.archive()

    @property
    def update_queue(self):
        return self.freshness.queue()

    def lookup(self, station_id):
        with self.lock:
            try:
                return self._database[station_id]
            except KeyError:
                raise NotFound(station_id) from None

    def handle(self, task):
        method = task.request.method
        if method == 'GET':
            return self.handle_get(task)
        if method == 'PUT':
            return self.handle_put(task)
        logger.info('[REQUEST] unsupported method %s from %s', method, task.remote_ip)
        return json_response(400, error_body(400, 'Bad Request', 'Server only supports PUT/GET requests'))

    def handle_get(self, task):
        station_id = task.request.uri_endpoint()
        if station_id is None:
            return json_response(204, error_body(204, 'No Content', 'Please indicate stationID in GET request'))
        try:
            record = self.lookup(station_id)
        except NotFound:
            logger.info('[GET] station %s not found', station_id)
            return json_response(404, error_body(404, 'Not Found', 'The requested station ID is not on server'))
        return json_response(200, '{\n' + record + '\n}')

    def handle_put(self, task):
        request = task.request
        file_name = request.uri_endpoint()
        if file_name is None:
            return json_response(400, error_body(400, 'Bad Request', 'PUT requires a file name in the URI'))
        try:
            stations = weather.parse_body(request.body)
        except MalformedMessage as e:
            return json_response(400, error_body(400, 'Bad Request', str(e)))

        with self.lock:
            first = self.freshness.accept(task.remote_ip, file_name, task.priority, request.body)
            for station_id, record in stations:
                self._database[station_id] = record

        logger.info('[PUT] %s/%s ts=%s stations=%s', task.remote_ip, file_name, task.priority,
                    [s for s, _ in stations])
        return json_response(201 if first else 200, request.body)

    def expire(self, wait_time):
        return self.freshness.expire(wait_time)

    def state(self):
        """Copies of (database, archive) taken atomically."""
        with self.lock:
            return dict(self._database), self.freshness.archive()

    def restore(self, database, archive):
        with self.lock:
            self._database = dict(database)
            self.freshness.restore(archive)

    def max_timestamp(self):
        return self.freshness.max_timestamp()
