import logging

import zmq

from .clock import LamportClock
from .errors import InvalidArgument, IOFailure, MalformedMessage
from .message import LAMPORT_HEADER, Request, parse_response

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3000


def parse_address(text):
    """Split ``host:port`` into (host, port)."""
    host, sep, port = text.rpartition(':')
    if not sep or not host:
        raise InvalidArgument(f'address must be host:port, got {text!r}')
    try:
        port = int(port)
    except ValueError:
        raise InvalidArgument(f'port must be an integer, got {port!r}') from None
    if not 0 < port < 65536:
        raise InvalidArgument(f'port out of range: {port}')
    return host, port


def endpoint(host, port):
    return f'tcp://{host}:{port}'


class Connection:
    """One request/response channel to a server.

    Outgoing messages are stamped from the clock and incoming Lamport-Clock
    headers are merged into it.
    """

    def __init__(self, host, port, clock=None, timeout=DEFAULT_TIMEOUT, context=None):
        self.host = host
        self.port = port
        self.clock = clock or LamportClock()
        self.context = context or zmq.Context.instance()
        self.sent_messages = []
        self.received_messages = []
        self.socket = self.context.socket(zmq.REQ)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.setsockopt(zmq.RCVTIMEO, int(timeout))
        self.socket.setsockopt(zmq.SNDTIMEO, int(timeout))
        self.socket.connect(endpoint(host, port))
        self.is_up = True

    @property
    def address(self):
        return f'{self.host}:{self.port}'

    def send(self, message):
        if not self.is_up:
            raise IOFailure(f'connection to {self.address} is closed')
        message.set_header(LAMPORT_HEADER, self.clock.tick())
        text = message.encode()
        try:
            self.socket.send(text.encode('utf-8'))
        except zmq.ZMQError as e:
            self.close()
            raise IOFailure(f'unable to send to {self.address}: {e}') from e
        self.sent_messages.append(text)

    def receive(self):
        if not self.is_up:
            raise IOFailure(f'connection to {self.address} is closed')
        try:
            raw = self.socket.recv()
        except zmq.ZMQError as e:
            # A REQ socket is unusable after a missed reply
            self.close()
            raise IOFailure(f'no response from {self.address}: {e}') from e
        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessage(f'response from {self.address} is not UTF-8: {e}') from e
        self.received_messages.append(text)
        response = parse_response(text)
        self.clock.merge(response.lamport)
        return response

    def request(self, message):
        self.send(message)
        return self.receive()

    def close(self):
        if self.is_up:
            self.socket.close(linger=0)
            self.is_up = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def probe(host, port, timeout=1000, clock=None, context=None):
    """Send an empty GET and report whether a 2xx answer arrives in time."""
    context = context or zmq.Context.instance()
    clock = clock or LamportClock()
    sock = context.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    try:
        sock.connect(endpoint(host, port))
        request = Request('GET', '/')
        request.set_header('Host', f'{host}:{port}')
        request.set_header(LAMPORT_HEADER, clock.tick())
        sock.send(request.to_bytes())
        if not sock.poll(int(timeout), zmq.POLLIN):
            logger.info('[PROBE] no heartbeat from %s:%s', host, port)
            return False
        response = parse_response(sock.recv())
    except (zmq.ZMQError, MalformedMessage) as e:
        logger.info('[PROBE] %s:%s failed: %s', host, port, e)
        return False
    else:
        clock.merge(response.lamport)
        logger.info('[PROBE] %s:%s answered %s', host, port, response.status_code)
        return response.ok
    finally:
        sock.close(linger=0)
