class WeatherAggError(Exception):
    """Base class for every error raised by the package."""


class MalformedMessage(WeatherAggError, ValueError):
    pass


class IOFailure(WeatherAggError, ConnectionError):
    pass


class NotFound(WeatherAggError, KeyError):
    pass


class InvalidArgument(WeatherAggError, ValueError):
    pass


class CorruptSnapshot(WeatherAggError, ValueError):
    """A snapshot file exists but cannot be decoded."""
