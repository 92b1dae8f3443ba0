import re
import threading
import time
from typing import Optional

from fabworld.errors import MarkerNotFoundError


class OutputBuffer:
    """ Thread-safe, append-only capture of a process or container stream.

    ``say()`` is the one primitive used to decide the outcome of an external
    tool from its free-text output: it waits until a pattern shows up after
    the current read position and then moves the position past the match, so
    consecutive ``say()`` calls assert markers in order.
    """

    def __init__(self):
        self._data = ""
        self._pos = 0
        self._closed = False
        self._cond = threading.Condition()

    def write(self, data):
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        with self._cond:
            self._data += data
            self._cond.notify_all()
        return len(data)

    def flush(self):
        pass

    def close(self):
        """ Mark the stream as finished; pending waiters give up once nothing can match anymore. """
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self):
        return self._closed

    def contents(self) -> str:
        with self._cond:
            return self._data

    def contains(self, pattern: str) -> bool:
        """ Returns True if the pattern (a regular expression) appears anywhere in the buffer. """
        return re.search(pattern, self.contents()) is not None

    def detect(self, pattern: str, timeout: Optional[float] = None) -> bool:
        """ Like ``say()`` but returns False instead of raising. """
        regex = re.compile(pattern)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                match = regex.search(self._data, self._pos)
                if match:
                    self._pos = match.end()
                    return True
                if self._closed:
                    return False
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)

    def say(self, pattern: str, timeout: Optional[float] = None):
        """ Wait up to ``timeout`` seconds for ``pattern`` to appear, raise MarkerNotFoundError otherwise. """
        if not self.detect(pattern, timeout):
            raise MarkerNotFoundError(pattern, self.contents())


class TeeWriter:
    """ Writes to several sinks at once, skipping the ones that are None. """

    def __init__(self, *sinks):
        self.sinks = [s for s in sinks if s is not None]

    def write(self, data):
        for s in self.sinks:
            s.write(data)
        return len(data)

    def flush(self):
        for s in self.sinks:
            if hasattr(s, "flush"):
                s.flush()
