import threading


class LamportClock:
    """Logical clock shared by every thread of one process.

    Reading ticks the clock. Merging an observed value sets it to
    max(local, observed) + 1.
    """

    def __init__(self, start=0):
        self._time = int(start)
        self._lock = threading.Lock()

    def tick(self):
        with self._lock:
            self._time += 1
            return self._time

    def merge(self, observed):
        with self._lock:
            self._time = max(self._time, int(observed)) + 1
            return self._time

    @property
    def time(self):
        return self._time

    def __repr__(self):
        return f'LamportClock({self._time})'
