"""Wait for remote processes to finish.

The set of PIDs is captured once. Polling checks exactly those PIDs, so a
new process matching the same pattern that starts mid-wait (a second
install script, a later upgrade) does not keep the wait alive.
"""

import logging

from distros_core.errors import (
    ActionValidationError,
    ProcessWaitError,
    RetryExhaustedError,
    RetryTimeoutError,
)
from distros_core.remote.runner import CommandRunner
from distros_core.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
COMPLETED_MARKER = "All processes have completed"


def snapshot_command(pattern: str) -> str:
    if not pattern:
        raise ActionValidationError("process pattern should not be empty")
    if "'" in pattern:
        raise ActionValidationError(f"process pattern must not contain quotes: {pattern}")
    return f"pgrep -f '{pattern}' 2>/dev/null || echo '{NOT_FOUND}'"


def parse_pids(output: str) -> tuple[int, ...]:
    """Parse whitespace-separated pgrep output into an ordered PID tuple."""
    output = output.strip()
    if not output or output == NOT_FOUND:
        return ()
    pids = []
    for token in output.split():
        if not token.isdigit():
            raise ActionValidationError(f"unexpected pgrep output: {output!r}")
        if int(token) not in pids:
            pids.append(int(token))
    return tuple(pids)


def liveness_command(pids: tuple[int, ...]) -> str:
    """Shell snippet that exits 1 while any of pids is alive, 0 once all exited."""
    pid_list = " ".join(str(pid) for pid in pids)
    return (
        "stillRunning=false; "
        f"for pid in {pid_list}; do "
        'if kill -0 "$pid" 2>/dev/null; then '
        'echo "Process PID $pid still running"; stillRunning=true; break; fi; '
        "done; "
        'if [ "$stillRunning" = "true" ]; then exit 1; '
        f'else echo "{COMPLETED_MARKER}"; exit 0; fi'
    )


async def await_completion(
    runner: CommandRunner,
    host: str,
    pattern: str,
    attempts: int,
    delay: float,
) -> None:
    """Wait until every process matching pattern at call time has exited.

    Args:
        runner: Command runner for the host
        host: Node address
        pattern: pgrep -f pattern, e.g. "install.sh" or ".*rke2.*"
        attempts: Maximum liveness polls
        delay: Seconds between polls

    Raises:
        ActionValidationError: For an empty or unsafe pattern
        ProcessWaitError: If the snapshotted processes are still alive
            after all polls
    """
    output = await runner.run(snapshot_command(pattern), host)
    pids = parse_pids(output)
    if not pids:
        logger.info("Process matching '%s' is not currently running on node %s", pattern, host)
        return

    logger.info(
        "Process '%s' is running on node %s (PIDs: %s), waiting for completion",
        pattern,
        host,
        " ".join(str(pid) for pid in pids),
    )

    cfg = RetryConfig(
        attempts=attempts,
        delay=delay,
        delay_multiplier=1.0,
        retryable_exit_codes=(0, 1),
        retryable_error_substrings=("connection", "timeout", "temporary"),
        non_retryable_error_substrings=(),
    )
    check = liveness_command(pids)
    try:
        result = await with_retry(
            lambda: runner.run(check, host),
            cfg,
            description=f"process '{pattern}' completion check on {host}",
        )
    except (RetryExhaustedError, RetryTimeoutError) as e:
        raise ProcessWaitError(pattern, host, str(e)) from e

    if COMPLETED_MARKER not in result:
        raise ProcessWaitError(pattern, host, f"unexpected result: {result}")

    logger.info("All processes matching '%s' have completed on node %s", pattern, host)
