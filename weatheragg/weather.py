"""Flat weather files.

A producer file holds ``key:value`` lines; each ``id`` line starts a new
station. On the wire the stations travel as one JSON-looking block::

    {
    "id": "A0",
    "lat": 10,
    "wind_spd_kt": "0x00f"
    }

Several stations are simply concatenated inside the braces.
"""

import re

from .errors import InvalidArgument, MalformedMessage

ID_KEY = 'id'
NUMBER = re.compile(r'^-?\d+(\.\d+)?$')


def parse_lines(lines):
    stations = []
    current = None
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        key, sep, value = line.partition(':')
        if not sep or not key.strip():
            raise InvalidArgument(f'line {lineno} is not key:value: {line!r}')
        key, value = key.strip(), value.strip()
        if key == ID_KEY or current is None:
            current = {}
            stations.append(current)
        current[key] = value
    return stations


def parse_file(path):
    with open(path, 'r', encoding='utf-8') as f:
        return parse_lines(f)


def format_value(value):
    if NUMBER.match(value):
        return value
    return f'"{value}"'


def format_record(fields):
    return ',\n'.join(f'"{key}": {format_value(value)}' for key, value in fields.items())


def serialize(stations):
    return '{\n' + ',\n'.join(format_record(s) for s in stations) + '\n}'


def read_body(path):
    """Wire body for a producer file."""
    return serialize(parse_file(path))


def _unquote(text):
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def parse_body(body):
    """Split a PUT body into ordered (station id, record) pairs.

    The record keeps the ``"key": value`` lines so a GET can wrap it in
    braces again.
    """
    if body is None:
        return []
    text = body.strip()
    if text.startswith('{'):
        text = text[1:]
    if text.endswith('}'):
        text = text[:-1]

    records = []
    current = None
    for line in text.split('\n'):
        line = line.strip().rstrip(',')
        if not line:
            continue
        key, sep, value = line.partition(':')
        if not sep:
            raise MalformedMessage(f'invalid weather line: {line!r}')
        if _unquote(key.strip()) == ID_KEY:
            current = [_unquote(value.strip()), []]
            records.append(current)
        if current is not None:
            current[1].append(line)
    return [(station_id, ',\n'.join(lines)) for station_id, lines in records]
