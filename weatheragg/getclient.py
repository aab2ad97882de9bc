"""Read-only client: ``weatheragg-get host:port [stationId]``."""

import argparse
import sys

from .config import Config, configure_logging
from .errors import InvalidArgument, IOFailure, MalformedMessage
from .message import JSON_TYPE, Request
from .transport import Connection, parse_address


class GetClient:
    def __init__(self, host, port, station_id=None, clock=None, timeout=None):
        if timeout is None:
            timeout = Config().get_int('REQUEST_TIMEOUT')
        self.station_id = station_id
        self.connection = Connection(host, port, clock=clock, timeout=timeout)

    @property
    def sent_messages(self):
        return self.connection.sent_messages

    @property
    def received_messages(self):
        return self.connection.received_messages

    @property
    def is_up(self):
        return self.connection.is_up

    def build_request(self):
        uri = '/' + self.station_id if self.station_id else '/'
        request = Request('GET', uri)
        request.set_header('Host', self.connection.address)
        request.set_header('Accept', JSON_TYPE)
        return request

    def run(self):
        """Send one GET, return the response and close."""
        try:
            return self.connection.request(self.build_request())
        finally:
            self.close()

    def close(self):
        self.connection.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Fetch the latest weather record of a station')
    parser.add_argument('address', help='host:port of the aggregation server or load balancer')
    parser.add_argument('station', nargs='?', help='station id, omit for an empty GET')
    args = parser.parse_args(argv)
    configure_logging()
    try:
        host, port = parse_address(args.address)
        response = GetClient(host, port, args.station).run()
    except (InvalidArgument, IOFailure, MalformedMessage) as e:
        print(f'error: {e}', file=sys.stderr)
        return 1
    print(response.encode())
    return 0 if response.ok else 1


if __name__ == '__main__':
    sys.exit(main())
