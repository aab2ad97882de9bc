"""Text codec for the HTTP-shaped messages exchanged between clients and servers.

A message is a start line, ``Name: Value`` header lines, a blank line and an
optional body, every line terminated by CRLF::

    PUT /Adelaide.txt HTTP/1.1\r\n
    Content-Length: 61\r\n
    Lamport-Clock: 5\r\n
    \r\n
    {...}

A body that is absent (the message ends at the blank line) is ``None`` and is
distinct from an empty body.
"""

from .errors import MalformedMessage

CRLF = '\r\n'
HEADER_SEP = ': '
VERSION = '1.1'

LAMPORT_HEADER = 'Lamport-Clock'
CONTENT_LENGTH = 'Content-Length'
CONTENT_TYPE = 'Content-Type'
JSON_TYPE = 'application/json'

REASONS = {
    200: 'OK',
    201: 'Created',
    204: 'No Content',
    400: 'Bad Request',
    404: 'Not Found',
    500: 'Internal Server Error',
}


class Message:
    def __init__(self, version=VERSION, headers=None, body=None):
        self.version = version
        self.headers = dict(headers or {})
        self.body = body

    def header(self, name, default=None):
        return self.headers.get(name, default)

    def set_header(self, name, value):
        self.headers[name] = str(value)
        return self

    @property
    def lamport(self):
        """Value of the Lamport-Clock header, 0 when absent."""
        value = self.headers.get(LAMPORT_HEADER)
        if value is None:
            return 0
        try:
            return int(value)
        except ValueError:
            raise MalformedMessage(f'invalid {LAMPORT_HEADER} header: {value!r}') from None

    def start_line(self):
        raise NotImplementedError

    def encode(self):
        headers = dict(self.headers)
        if self.body is not None:
            headers[CONTENT_LENGTH] = str(len(self.body.encode('utf-8')))
        lines = [self.start_line()]
        lines.extend(f'{name}{HEADER_SEP}{value}' for name, value in headers.items())
        text = CRLF.join(lines) + CRLF + CRLF
        if self.body is not None:
            text += self.body
        return text

    def to_bytes(self):
        return self.encode().encode('utf-8')

    def __str__(self):
        return self.encode()


class Request(Message):
    def __init__(self, method, uri, version=VERSION, headers=None, body=None):
        super().__init__(version, headers, body)
        self.method = method.upper()
        self.uri = uri

    def start_line(self):
        return f'{self.method} {self.uri} HTTP/{self.version}'

    def uri_endpoint(self):
        """Station id (GET) or file name (PUT) after the first '/', None for '/'."""
        index = self.uri.find('/')
        endpoint = self.uri[index + 1:]
        return endpoint or None

    def __repr__(self):
        return f'Request({self.method!r}, {self.uri!r})'


class Response(Message):
    def __init__(self, status_code, reason=None, version=VERSION, headers=None, body=None):
        super().__init__(version, headers, body)
        self.status_code = int(status_code)
        self.reason = reason if reason is not None else REASONS.get(self.status_code, '')

    def start_line(self):
        return f'HTTP/{self.version} {self.status_code} {self.reason}'

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def __repr__(self):
        return f'Response({self.status_code}, {self.reason!r})'


def json_response(status_code, body=None):
    response = Response(status_code)
    response.set_header(CONTENT_TYPE, JSON_TYPE)
    response.body = body
    return response


def _split(raw):
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessage(f'message is not valid UTF-8: {e}') from None
    head, sep, rest = raw.partition(CRLF + CRLF)
    body = rest if sep and rest else None
    lines = head.split(CRLF)
    if not lines[0].strip():
        raise MalformedMessage('empty start line')

    headers = {}
    for line in lines[1:]:
        # Split at the first separator only so values may contain ': '
        name, found, value = line.partition(HEADER_SEP)
        if not found or not name:
            raise MalformedMessage(f'invalid header line: {line!r}')
        if name in headers:
            raise MalformedMessage(f'duplicate header: {name}')
        headers[name] = value

    length = headers.get(CONTENT_LENGTH)
    if length is not None and body is not None:
        try:
            expected = int(length)
        except ValueError:
            raise MalformedMessage(f'invalid {CONTENT_LENGTH}: {length!r}') from None
        if expected != len(body.encode('utf-8')):
            raise MalformedMessage(f'{CONTENT_LENGTH} is {expected} but body has '
                                   f'{len(body.encode("utf-8"))} bytes')
    return lines[0], headers, body


def _version(token):
    protocol, sep, version = token.partition('/')
    if protocol != 'HTTP' or not sep or not version:
        raise MalformedMessage(f'invalid protocol version: {token!r}')
    return version


def parse_request(raw):
    start, headers, body = _split(raw)
    parts = start.split()
    if len(parts) < 3:
        raise MalformedMessage(f'request line needs method, uri and version: {start!r}')
    method, uri, version = parts[0], parts[1], _version(parts[2])
    return Request(method, uri, version, headers, body)


def parse_response(raw):
    start, headers, body = _split(raw)
    parts = start.split(' ', 2)
    if len(parts) < 3:
        raise MalformedMessage(f'status line needs version, code and reason: {start!r}')
    version = _version(parts[0])
    try:
        code = int(parts[1])
    except ValueError:
        raise MalformedMessage(f'invalid status code: {parts[1]!r}') from None
    return Response(code, parts[2], version, headers, body)
