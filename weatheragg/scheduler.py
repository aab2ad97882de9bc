import concurrent.futures
import heapq
import itertools
import threading


class PriorityScheduler:
    """Fixed pool of worker threads draining a min-heap of tasks.

    Tasks with the lower priority value run first; equal priorities run in
    submission order.
    """

    def __init__(self, workers=4, name='scheduler'):
        self._heap = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._shutdown = False
        self._threads = []
        for i in range(workers):
            t = threading.Thread(target=self._work, name=f'{name}-{i}', daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, priority, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        with self._cond:
            if self._shutdown:
                raise RuntimeError('cannot submit after shutdown')
            heapq.heappush(self._heap, (priority, next(self._seq), future, fn, args, kwargs))
            self._cond.notify()
        return future

    def _next(self):
        with self._cond:
            while not self._heap and not self._shutdown:
                self._cond.wait()
            if self._shutdown:
                return None
            return heapq.heappop(self._heap)

    def _work(self):
        while True:
            item = self._next()
            if item is None:
                return
            _, _, future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def pending(self):
        with self._cond:
            return len(self._heap)

    def shutdown(self, wait=True):
        """Stop the workers. Tasks still queued are cancelled."""
        with self._cond:
            self._shutdown = True
            pending, self._heap = self._heap, []
            self._cond.notify_all()
        for item in pending:
            item[2].cancel()
        if wait:
            for t in self._threads:
                t.join()
