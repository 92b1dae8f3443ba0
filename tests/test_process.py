import io
import signal

import pytest

from fabworld.errors import (ExecutableNotFoundError, PrematureExitError,
                             ProcessExitError)
from fabworld.process import ManagedProcess, ProcessSpec
from fabworld.supervisor import execute, invoke

SERVE_FOREVER = """
import sys, time
print("starting up", flush=True)
print("Beginning to serve requests", file=sys.stderr, flush=True)
time.sleep(60)
"""


def test_nonexistent_executable_never_ready():
    process = ManagedProcess(ProcessSpec(path="/nonexistent/fabworld-binary"))
    handle = invoke(process)

    err = handle.wait(5)

    assert isinstance(err, ExecutableNotFoundError)
    assert not handle.ready.is_set()
    with pytest.raises(ExecutableNotFoundError):
        handle.wait_ready(1)


def test_clean_exit_after_ready(make_script):
    path = make_script("hello.py", """
        print("hello", flush=True)
    """)
    process = ManagedProcess(ProcessSpec(path=path))
    handle = invoke(process)

    assert handle.wait(10) is None
    assert handle.ready.is_set()
    assert process.returncode == 0
    assert process.out.contents() == "hello\n"


def test_non_zero_exit(make_script):
    path = make_script("fail.py", """
        import sys
        sys.exit(3)
    """)
    process = ManagedProcess(ProcessSpec(path=path, name="failing"))

    err = execute(process, timeout=10)

    assert isinstance(err, ProcessExitError)
    assert err.returncode == 3
    assert err.signal is None
    assert "failing" in str(err)


def test_ready_marker_then_killed(make_script):
    path = make_script("serve.py", SERVE_FOREVER)
    process = ManagedProcess(ProcessSpec(path=path, ready_marker=r"Beginning to serve requests"))
    handle = invoke(process)

    handle.wait_ready(10)
    assert not handle.done.is_set()
    handle.signal(signal.SIGTERM)
    err = handle.wait(10)

    assert isinstance(err, ProcessExitError)
    assert err.signal == signal.SIGTERM
    assert process.buffer.contains("starting up")
    assert process.buffer.contains("Beginning to serve")


def test_marker_is_still_readable_after_ready(make_script):
    path = make_script("serve.py", SERVE_FOREVER)
    process = ManagedProcess(ProcessSpec(path=path, ready_marker=r"Beginning to serve requests"))
    handle = invoke(process)
    try:
        handle.wait_ready(10)
        process.err.say("Beginning to serve requests", timeout=1)
    finally:
        handle.signal(signal.SIGKILL)
        handle.wait(10)


def test_exit_before_marker_is_premature(make_script):
    path = make_script("quit.py", """
        print("nothing to see", flush=True)
    """)
    process = ManagedProcess(ProcessSpec(path=path, ready_marker=r"Started peer with ID"))
    handle = invoke(process)

    err = handle.wait(10)

    assert isinstance(err, PrematureExitError)
    assert not handle.ready.is_set()


def test_environment_overlay(make_script, monkeypatch):
    monkeypatch.setenv("FABWORLD_LEAK", "1")
    path = make_script("env.py", """
        import os
        print(os.environ.get("FOO"), os.environ.get("FABWORLD_LEAK"), flush=True)
    """)
    spec = ProcessSpec(path=path, env=(("FOO", "first"), ("FOO", "second")))
    process = ManagedProcess(spec)

    assert execute(process, timeout=10) is None
    assert process.out.contents().split() == ["second", "None"]


def test_environ_keeps_path():
    spec = ProcessSpec(path="x", env=(("A", 1),))

    env = spec.environ()

    assert env["A"] == "1"
    assert "PATH" in env
    assert spec.display_name() == "x"


def test_output_goes_to_sinks(make_script):
    path = make_script("talk.py", """
        import sys
        print("out line", flush=True)
        print("err line", file=sys.stderr, flush=True)
    """)
    stdout, stderr = io.StringIO(), io.StringIO()
    process = ManagedProcess(ProcessSpec(path=path), stdout=stdout, stderr=stderr)

    assert execute(process, timeout=10) is None
    assert stdout.getvalue() == "out line\n"
    assert stderr.getvalue() == "err line\n"
    assert process.err.contents() == "err line\n"
