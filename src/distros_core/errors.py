"""
Exception classes for remote execution and convergence.

This module defines the error taxonomy shared by every layer:
- ConnectivityError: SSH dial or authentication failure (never retried)
- CommandError: remote command failed, carries exit status and stderr
- ActionValidationError: bad input, surfaced before any remote call
- RetryExhaustedError / RetryTimeoutError: terminal retry outcomes
- ProcessWaitError: snapshotted processes did not exit in time
- ReadinessTimeoutError / WatchClosedError: readiness watch outcomes

Timeout errors also inherit from TimeoutError so callers can tell
"never succeeded" apart from "ran out of time" with a plain except clause.
"""


class DistrosError(Exception):
    """Base class for all distros-core errors."""


class ConnectivityError(DistrosError):
    """
    Raised when an SSH connection cannot be established.

    Covers unreadable or unparsable private keys, authentication failures
    and network dial errors. The connection pool never retries these.

    Attributes:
        host: The host:port that was dialed
        reason: Underlying failure description
    """

    def __init__(self, host: str, reason: str) -> None:
        self.host = host
        self.reason = reason
        super().__init__(f"failed to connect to host {host}: {reason}")


class CommandError(DistrosError):
    """
    Raised when a remote command fails.

    Attributes:
        command: The shell command that was run
        host: Host the command ran on
        exit_status: Remote exit status, or None if the session ended
            without one (lost connection, signal)
        stderr: Captured standard error
        reason: Optional extra detail (e.g. session errors)
    """

    def __init__(
        self,
        command: str,
        host: str,
        exit_status: int | None,
        stderr: str = "",
        reason: str | None = None,
    ) -> None:
        self.command = command
        self.host = host
        self.exit_status = exit_status
        self.stderr = stderr
        self.reason = reason

        if exit_status is None:
            detail = "ended without exit status"
        else:
            detail = f"exited with status {exit_status}"
        if reason:
            detail += f": {reason}"
        if stderr:
            detail += f", stderr: {stderr}"
        # failure text without the command line, used for retry classification
        self.detail = detail
        super().__init__(f"command: {command} failed on {host}, {detail}")


class ActionValidationError(DistrosError, ValueError):
    """Raised for invalid input: bad action, unknown unit mapping, empty argument."""


class RetryExhaustedError(DistrosError):
    """
    Raised when a retry sequence ends without success.

    Either every attempt failed or a failure was classified as fatal.

    Attributes:
        attempts: Number of attempts actually made
        max_attempts: Configured attempt budget
        last_error: The final error returned by the action
    """

    def __init__(
        self, attempts: int, max_attempts: int, last_error: BaseException
    ) -> None:
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.last_error = last_error
        super().__init__(
            f"after {attempts} attempts (of {max_attempts}): {last_error}"
        )


class RetryTimeoutError(DistrosError, TimeoutError):
    """
    Raised when a retry sequence exceeds its global deadline.

    Attributes:
        timeout: The deadline in seconds
        attempts: Attempts started before the deadline hit
        last_error: Last action error seen, if any
    """

    def __init__(
        self, timeout: float, attempts: int, last_error: BaseException | None
    ) -> None:
        self.timeout = timeout
        self.attempts = attempts
        self.last_error = last_error
        message = f"retry timeout after {timeout:.1f}s ({attempts} attempts started)"
        if last_error is not None:
            message += f", last error: {last_error}"
        super().__init__(message)


class ServiceActionError(DistrosError):
    """
    Raised when a service action fails on a node.

    Attributes:
        action: The action that failed (stop, start, ...)
        unit: Unit name, or product name for certificate rotation
        host: Node address
    """

    def __init__(self, action: str, unit: str, host: str, reason: str) -> None:
        self.action = action
        self.unit = unit
        self.host = host
        super().__init__(f"action {action} on {unit} failed on {host}: {reason}")


class ProcessWaitError(DistrosError):
    """Raised when snapshotted processes are still running after all polls."""

    def __init__(self, pattern: str, host: str, reason: str) -> None:
        self.pattern = pattern
        self.host = host
        self.reason = reason
        super().__init__(
            f"timeout waiting for process '{pattern}' to complete on {host}: {reason}"
        )


class ReadinessTimeoutError(DistrosError, TimeoutError):
    """
    Raised when a readiness watch does not converge before its deadline.

    Attributes:
        kind: Entity kind being watched ("nodes" or "pods")
        ready: Ready count when the deadline hit
        threshold: Count that was required
        timeout: Deadline in seconds
    """

    def __init__(self, kind: str, ready: int, threshold: int, timeout: float) -> None:
        self.kind = kind
        self.ready = ready
        self.threshold = threshold
        self.timeout = timeout
        super().__init__(
            f"timed out after {timeout:.0f}s waiting for {kind} ready "
            f"({ready}/{threshold})"
        )


class ReadinessError(DistrosError):
    """Raised when a readiness watch fails (empty listing, bad event)."""


class WatchClosedError(ReadinessError):
    """Raised when a watch event stream ends before the threshold is met."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"{kind} watcher channel closed")
