"""Content producer: ``weatheragg-content host:port <file>``.

Sends an empty GET to synchronise the Lamport clock, then PUTs the weather
file once the server answers 204.
"""

import argparse
import logging
import sys

from . import weather
from .config import Config, configure_logging
from .errors import InvalidArgument, IOFailure, MalformedMessage
from .message import CONTENT_TYPE, JSON_TYPE, Request
from .transport import Connection, parse_address

logger = logging.getLogger(__name__)


class ContentClient:
    def __init__(self, host, port, file_name, clock=None, timeout=None):
        if timeout is None:
            timeout = Config().get_int('REQUEST_TIMEOUT')
        self.file_name = file_name
        self.connection = Connection(host, port, clock=clock, timeout=timeout)

    @property
    def sent_messages(self):
        return self.connection.sent_messages

    @property
    def received_messages(self):
        return self.connection.received_messages

    def build_get(self):
        request = Request('GET', '/')
        request.set_header('Host', self.connection.address)
        request.set_header('Accept', JSON_TYPE)
        return request

    def build_put(self):
        request = Request('PUT', '/' + self.file_name, body=weather.read_body(self.file_name))
        request.set_header('Host', self.connection.address)
        request.set_header('Accept', JSON_TYPE)
        request.set_header(CONTENT_TYPE, JSON_TYPE)
        return request

    def run(self):
        """Returns the last response received: the PUT ack, or the GET reply if it was not 204."""
        try:
            response = self.connection.request(self.build_get())
            if response.status_code != 204:
                logger.warning('[SYNC] expected 204 from %s, got %s', self.connection.address, response.status_code)
                return response
            return self.connection.request(self.build_put())
        finally:
            self.close()

    def close(self):
        self.connection.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Upload a weather file to the aggregation service')
    parser.add_argument('address', help='host:port of the aggregation server or load balancer')
    parser.add_argument('file', help='weather file of key:value lines')
    args = parser.parse_args(argv)
    configure_logging()
    try:
        host, port = parse_address(args.address)
        response = ContentClient(host, port, args.file).run()
    except (InvalidArgument, IOFailure, MalformedMessage, OSError) as e:
        print(f'error: {e}', file=sys.stderr)
        return 1
    print(response.encode())
    return 0 if response.ok else 1


if __name__ == '__main__':
    sys.exit(main())
