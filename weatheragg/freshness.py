"""Bounded per-producer archive of recently accepted PUTs.

The archive maps ``remote ip -> file name -> {"Value", "Timestamp"}``. Every
accepted PUT is also appended to the update queue. Entries leave the archive
when their queue entry is popped, either because the queue grew past
``fresh_count`` or because the entry is older than the wait time. A pop only
deletes the archive entry if it still carries the popped timestamp; a newer
PUT of the same file keeps its entry.
"""

import collections
import copy
import logging
import threading
import time

logger = logging.getLogger(__name__)

VALUE = 'Value'
TIMESTAMP = 'Timestamp'

UpdateEntry = collections.namedtuple('UpdateEntry', 'remote_ip file_name timestamp accepted_at')


class FreshnessEngine:
    def __init__(self, fresh_count=20, lock=None):
        self.fresh_count = fresh_count
        self.lock = lock or threading.RLock()
        self._archive = {}
        self._queue = collections.deque()

    def is_known(self, remote_ip):
        with self.lock:
            return remote_ip in self._archive

    def accept(self, remote_ip, file_name, timestamp, value, now=None):
        """Record an accepted PUT. Returns True if it is the first from remote_ip."""
        now = time.monotonic() if now is None else now
        with self.lock:
            first = remote_ip not in self._archive
            self._queue.append(UpdateEntry(remote_ip, file_name, timestamp, now))
            while len(self._queue) > self.fresh_count:
                self.evict(self._queue.popleft())
            self._archive.setdefault(remote_ip, {})[file_name] = {VALUE: value, TIMESTAMP: timestamp}
            return first

    def evict(self, entry):
        """Delete the archive entry for a popped queue entry if it was not overwritten."""
        with self.lock:
            files = self._archive.get(entry.remote_ip)
            if files is None or entry.file_name not in files:
                logger.debug('[EVICT] %s/%s already removed', entry.remote_ip, entry.file_name)
                return False
            stored = files[entry.file_name][TIMESTAMP]
            if stored != entry.timestamp:
                logger.debug('[EVICT] %s/%s was updated at %s, keeping it',
                             entry.remote_ip, entry.file_name, stored)
                return False
            # The producer submap stays even when it becomes empty
            del files[entry.file_name]
            logger.info('[EVICT] removed %s/%s (ts=%s)', entry.remote_ip, entry.file_name, entry.timestamp)
            return True

    def expire(self, wait_time_ms, now=None):
        """Pop every queue entry older than wait_time_ms. Returns how many were popped."""
        now = time.monotonic() if now is None else now
        limit = wait_time_ms / 1000.0
        popped = 0
        with self.lock:
            while self._queue and now - self._queue[0].accepted_at >= limit:
                self.evict(self._queue.popleft())
                popped += 1
        return popped

    def archive(self):
        with self.lock:
            return copy.deepcopy(self._archive)

    def queue(self):
        with self.lock:
            return list(self._queue)

    def restore(self, archive, now=None):
        """Replace the archive with a loaded one and rebuild the queue from its timestamps."""
        now = time.monotonic() if now is None else now
        with self.lock:
            self._archive = {ip: dict(files) for ip, files in archive.items()}
            entries = sorted(
                (entry[TIMESTAMP], ip, name)
                for ip, files in self._archive.items()
                for name, entry in files.items()
            )
            self._queue = collections.deque(UpdateEntry(ip, name, ts, now) for ts, ip, name in entries)
            while len(self._queue) > self.fresh_count:
                self.evict(self._queue.popleft())

    def max_timestamp(self):
        with self.lock:
            return max((e.timestamp for e in self._queue), default=0)

    def __len__(self):
        with self.lock:
            return len(self._queue)
