"""Invoke/signal/wait on anything that can be run in the background.

A runner is any object with a ``run(signals, ready)`` method. ``run`` is
called on its own thread; it must set ``ready`` once the unit is usable and
then block until the unit ends, returning normally on success or raising the
terminal error. ``signals`` is a queue of signal numbers delivered through
``RunHandle.signal()``; it is the only way to cancel a running unit.

Both ManagedProcess (an OS process) and ContainerRunner (a docker container)
follow this contract, so the orchestration code treats them the same way.
"""
import queue
import signal
import threading
from typing import Optional

from fabworld.config import log
from fabworld.errors import StartupError, StartupTimeoutError


class RunHandle:
    """Live or completed state of one invoked runner."""

    def __init__(self, runner, name: str):
        self.runner = runner
        self.name = name
        self.ready = threading.Event()
        self.done = threading.Event()
        self.error: Optional[Exception] = None
        self._signals = queue.Queue()
        self._thread = None

    def signal(self, sig=signal.SIGTERM):
        """Deliver a signal to the unit. Signals sent after exit are dropped."""
        if not self.done.is_set():
            self._signals.put(sig)

    def wait(self, timeout: Optional[float] = None) -> Optional[Exception]:
        """Block until the unit ends and return its terminal error (None on success)."""
        if not self.done.wait(timeout):
            raise TimeoutError(f"{self.name} did not exit within {timeout}s")
        return self.error

    def wait_ready(self, timeout: Optional[float] = None):
        """Block until the unit is ready.

        Raises the unit's own error if it ended before becoming ready, and
        StartupTimeoutError if neither happened within ``timeout`` seconds.
        """
        if timeout is not None:
            deadline_hit = not _wait_any(self.ready, self.done, timeout)
            if deadline_hit:
                raise StartupTimeoutError(f"{self.name} was not ready within {timeout}s")
        else:
            _wait_any(self.ready, self.done, None)

        if self.ready.is_set():
            return
        if self.error is not None:
            raise self.error
        raise StartupError(f"{self.name} exited before it was ready")

    def is_running(self):
        return self._thread is not None and not self.done.is_set()

    def _run(self):
        try:
            self.runner.run(self._signals, self.ready)
        except Exception as e:
            log.debug("%s finished with error: %s", self.name, e)
            self.error = e
        finally:
            self.done.set()


def _wait_any(first: threading.Event, second: threading.Event, timeout: Optional[float]) -> bool:
    """Wait until one of two events is set. Returns False on timeout."""
    step = 0.05
    waited = 0.0
    while not (first.is_set() or second.is_set()):
        if timeout is not None and waited >= timeout:
            return False
        first.wait(step)
        waited += step
    return True


def invoke(runner, name: Optional[str] = None) -> RunHandle:
    """Start ``runner`` on a background thread and return its handle immediately."""
    if name is None:
        name = getattr(runner, "name", None) or type(runner).__name__
    handle = RunHandle(runner, name)
    handle._thread = threading.Thread(target=handle._run, name=f"run-{name}", daemon=True)
    handle._thread.start()
    return handle


def start(runner, timeout: Optional[float] = None) -> RunHandle:
    """Invoke ``runner`` and block until it is ready. Raises if it fails to start."""
    handle = invoke(runner)
    handle.wait_ready(timeout)
    return handle


def execute(runner, timeout: Optional[float] = None) -> Optional[Exception]:
    """Invoke ``runner`` and block until it ends. Returns its terminal error, if any."""
    handle = invoke(runner)
    return handle.wait(timeout)
