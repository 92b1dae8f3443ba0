"""Errors raised by the runners, the artifact builder and the network world.

None of these are retried automatically; the caller decides based on which
operation failed. Teardown code is expected to tolerate AlreadyStoppedError.
"""


class HarnessError(Exception):
    """Base class for every error raised by fabworld."""


class StartupError(HarnessError):
    """A process or container did not reach its ready state."""


class StartupTimeoutError(StartupError):
    """The start timeout elapsed before the unit became ready."""


class PrematureExitError(StartupError):
    """The unit exited before it became ready."""


class ExecutableNotFoundError(StartupError):
    """The executable could not be started at all."""


class ProcessExitError(HarnessError):
    """A process exited with a non-zero status or was killed by a signal."""

    def __init__(self, name, returncode):
        self.name = name
        self.returncode = returncode
        if returncode < 0:
            msg = f"{name} terminated by signal {-returncode}"
        else:
            msg = f"{name} exited with status {returncode}"
        super().__init__(msg)

    @property
    def signal(self):
        """Number of the signal that killed the process, or None."""
        return -self.returncode if self.returncode < 0 else None


class ContainerExitError(HarnessError):
    """A container exited with a non-zero status."""

    def __init__(self, name, status_code):
        self.name = name
        self.status_code = status_code
        super().__init__(f"container {name} exited with status {status_code}")


class AlreadyStoppedError(HarnessError):
    """stop() was called on a container that is already stopped."""


class InvocationError(HarnessError):
    """An external tool invocation failed.

    A crash and a logical failure (e.g. an unknown configtxgen profile) look
    the same here; inspect ``result.stdout`` / ``result.stderr`` to tell them
    apart.
    """

    def __init__(self, message, result=None):
        self.result = result
        super().__init__(message)


class MarkerNotFoundError(HarnessError):
    """An expected marker did not show up in the captured output in time."""

    def __init__(self, pattern, contents=""):
        self.pattern = pattern
        self.contents = contents
        super().__init__(f"marker {pattern!r} not found in output")


class PollTimeoutError(HarnessError):
    """A bounded poll ran out of time before its condition held."""
