import queue
import signal

import pytest

from fabworld.errors import StartupTimeoutError
from fabworld.supervisor import execute, invoke, start


class UntilSignalled:
    name = "until-signalled"

    def __init__(self):
        self.received = []

    def run(self, signals, ready):
        ready.set()
        self.received.append(signals.get())


class NeverReady:
    name = "never-ready"

    def run(self, signals, ready):
        signals.get()


class Broken:
    def run(self, signals, ready):
        raise RuntimeError("boom")


def test_signal_ends_runner():
    runner = UntilSignalled()
    handle = start(runner, timeout=5)

    assert handle.is_running()
    handle.signal(signal.SIGINT)

    assert handle.wait(5) is None
    assert runner.received == [signal.SIGINT]
    assert handle.ready.is_set()


def test_error_before_ready_is_raised_by_wait_ready():
    handle = invoke(Broken())

    with pytest.raises(RuntimeError, match="boom"):
        handle.wait_ready(5)
    assert isinstance(handle.wait(5), RuntimeError)
    assert handle.name == "Broken"


def test_wait_ready_timeout():
    handle = invoke(NeverReady())
    try:
        with pytest.raises(StartupTimeoutError):
            handle.wait_ready(0.2)
    finally:
        handle.signal()
        handle.wait(5)


def test_wait_timeout():
    handle = invoke(NeverReady())
    try:
        with pytest.raises(TimeoutError):
            handle.wait(0.1)
    finally:
        handle.signal()


def test_execute_returns_terminal_error():
    assert isinstance(execute(Broken(), timeout=5), RuntimeError)


def test_signal_after_exit_is_dropped():
    handle = invoke(Broken())
    handle.wait(5)

    handle.signal()

    assert handle._signals.empty()
