import os
import queue
import re
import subprocess
import threading
from typing import Dict, NamedTuple, Optional, Tuple

from fabworld.config import log
from fabworld.errors import ExecutableNotFoundError, PrematureExitError, ProcessExitError
from fabworld.output import OutputBuffer, TeeWriter

# Variables inherited from the calling environment, everything else comes from the overlay
BASE_ENV_VARS = ("PATH", "HOME")


class ProcessSpec(NamedTuple):
    """ Immutable description of one external program invocation.

    :param path: Path of the executable
    :param args: Arguments passed to the executable
    :param cwd: Working directory, None for the current one
    :param env: Environment overlay as (name, value) pairs, later entries win
    :param name: Prefix used in logs and error messages
    :param ready_marker: Regular expression that marks the process as ready once it
        shows up on stdout or stderr. None means ready right after start.
    """
    path: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Tuple[Tuple[str, str], ...] = ()
    name: str = ""
    ready_marker: Optional[str] = None

    def environ(self) -> Dict[str, str]:
        env = {k: os.environ[k] for k in BASE_ENV_VARS if k in os.environ}
        for key, value in self.env:
            env[key] = str(value)
        return env

    def display_name(self) -> str:
        return self.name or os.path.basename(self.path)


class ManagedProcess:
    """ Runs a ProcessSpec as an OS process, following the supervisor run contract.

    stdout and stderr are pumped on reader threads into ``out``/``err`` (one
    buffer per stream), into ``buffer`` (both streams interleaved) and into the
    optional caller sinks.
    """

    def __init__(self, spec: ProcessSpec, stdout=None, stderr=None):
        self.spec = spec
        self.out = OutputBuffer()
        self.err = OutputBuffer()
        self.buffer = OutputBuffer()
        self._stdout_sink = TeeWriter(self.out, self.buffer, stdout)
        self._stderr_sink = TeeWriter(self.err, self.buffer, stderr)
        self._ready_re = re.compile(spec.ready_marker) if spec.ready_marker else None
        self.pid = None
        self.returncode = None

    @property
    def name(self):
        return self.spec.display_name()

    def run(self, signals: queue.Queue, ready: threading.Event):
        cmd = [self.spec.path] + list(self.spec.args)
        log.debug("%s: running %s", self.name, " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.spec.cwd,
                env=self.spec.environ(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutableNotFoundError(f"{self.name}: cannot execute {self.spec.path}: {e}") from e

        self.pid = proc.pid
        readers = [
            threading.Thread(target=self._pump, args=(proc.stdout, self._stdout_sink, self.out, ready), daemon=True),
            threading.Thread(target=self._pump, args=(proc.stderr, self._stderr_sink, self.err, ready), daemon=True),
        ]
        for r in readers:
            r.start()

        if self._ready_re is None:
            ready.set()

        try:
            while proc.poll() is None:
                try:
                    sig = signals.get(timeout=0.1)
                except queue.Empty:
                    continue
                log.debug("%s: delivering signal %s to pid %d", self.name, sig, proc.pid)
                proc.send_signal(sig)
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()
            for r in readers:
                r.join()
            self.buffer.close()

        self.returncode = proc.returncode
        if not ready.is_set():
            raise PrematureExitError(
                f"{self.name} exited with status {proc.returncode} before printing {self.spec.ready_marker!r}")
        if proc.returncode != 0:
            raise ProcessExitError(self.name, proc.returncode)

    def _pump(self, stream, sink, buffer: OutputBuffer, ready: threading.Event):
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace")
            sink.write(line)
            if self._ready_re is not None and not ready.is_set() and self._ready_re.search(line):
                ready.set()
        stream.close()
        sink.flush()
        buffer.close()
