"""
Bounded retry driver with failure classification.

This module provides RetryConfig and with_retry for re-running remote
actions whose failures may be transient (dropped SSH sessions, a service
that is still settling) while stopping immediately on failures that will
never succeed (bad credentials, invalid arguments).

Classification order for a failed attempt:
1. Any non-retryable substring in the error text -> stop
2. Any retryable substring in the error text -> retry
3. Error carries an exit status -> retry only for retryable exit codes
4. Anything else -> retry while attempts remain

Attempts are strictly sequential. The whole sequence is bounded by a
global deadline, see RetryConfig.deadline().
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from distros_core.errors import (
    ActionValidationError,
    RetryExhaustedError,
    RetryTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retrying a remote action.

    Attributes:
        attempts: Total number of attempts, including the first (default 3)
        delay: Seconds to wait before the first retry (default 2.0)
        delay_multiplier: Factor applied to the delay after each retry.
            1.0 gives a fixed delay, 2.0 doubles it every round.
        retryable_exit_codes: Remote exit statuses that may be retried
        retryable_error_substrings: Error text that MAY be retried
        non_retryable_error_substrings: Error text that MUST stop retrying
        attempt_timeout: Upper bound in seconds for a single attempt. An
            attempt that runs longer fails with "command timed out".
        timeout: Explicit global deadline in seconds. When None the
            deadline is derived from the schedule (see deadline()).

    Example:
        cfg = RetryConfig(attempts=5, delay=1.0, delay_multiplier=2.0)
        cfg.backoff_delays()  # [1.0, 2.0, 4.0, 8.0]
    """

    attempts: int = 3
    delay: float = 2.0
    delay_multiplier: float = 1.0
    retryable_exit_codes: tuple[int, ...] = (1, 255)
    retryable_error_substrings: tuple[str, ...] = (
        "exit status 1",
        "without exit status",
        "connection refused",
        "command timed out",
        "connection reset by peer",
        "operation timed out",
        "exit signal",
    )
    non_retryable_error_substrings: tuple[str, ...] = (
        "permission denied",
        "host key verification failed",
        "invalid argument",
        "authentication failed",
        "unable to read private key",
        "unable to parse private key",
    )
    attempt_timeout: float = 120.0
    timeout: float | None = None

    def backoff_delays(self) -> list[float]:
        """Delays slept before attempts 2..N, including multiplier growth."""
        delays = []
        delay = self.delay
        for _ in range(max(self.attempts - 1, 0)):
            delays.append(delay)
            delay *= self.delay_multiplier
        return delays

    def deadline(self) -> float:
        """
        Global deadline for a whole retry sequence in seconds.

        Explicit timeout wins. Otherwise it is the sum of the actual backoff
        delays plus one attempt_timeout per attempt, so a sequence that
        follows its schedule can never trip the deadline by construction.
        """
        if self.timeout is not None:
            return self.timeout
        return sum(self.backoff_delays()) + self.attempts * self.attempt_timeout

    def with_overrides(self, **changes) -> "RetryConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


DEFAULT_RETRY_CONFIG = RetryConfig()


def is_retryable(error: BaseException, cfg: RetryConfig) -> bool:
    """
    Decide whether a failed attempt may be retried.

    Validation errors are never retried. Substring matching is
    case-insensitive on both sides and ignores the command line of a
    CommandError, so command text cannot change the verdict.
    """
    if isinstance(error, ActionValidationError):
        return False

    message = getattr(error, "detail", None) or str(error)
    message = message.lower()

    for fatal in cfg.non_retryable_error_substrings:
        if fatal.lower() in message:
            logger.info("Fatal error: %s, not retrying (%s)", error, fatal)
            return False

    for transient in cfg.retryable_error_substrings:
        if transient.lower() in message:
            logger.debug("Retryable error: %s (%s)", error, transient)
            return True

    exit_status = getattr(error, "exit_status", None)
    if exit_status is not None:
        if exit_status in cfg.retryable_exit_codes:
            logger.debug("Retryable exit code: %d", exit_status)
            return True
        logger.info("Fatal exit code: %d, not retrying", exit_status)
        return False

    return True


async def _run_attempt(
    action: Callable[[], Awaitable[str]], budget: float
) -> tuple[bool, str]:
    """Run one attempt, returning (timed_out, output). Action errors propagate."""
    task = asyncio.ensure_future(action())
    try:
        done, _ = await asyncio.wait({task}, timeout=max(budget, 0.0))
    finally:
        if not task.done():
            task.cancel()
    if not done:
        return True, ""
    return False, task.result()


async def with_retry(
    action: Callable[[], Awaitable[str]],
    cfg: RetryConfig | None = None,
    *,
    description: str = "action",
) -> str:
    """
    Run action until it succeeds, fails fatally, or the budget runs out.

    Args:
        action: Zero-argument coroutine function returning output text
        cfg: Retry configuration, DEFAULT_RETRY_CONFIG if None
        description: Short label used in log lines

    Returns:
        The stripped output of the first successful attempt

    Raises:
        ActionValidationError: If cfg.attempts < 1
        RetryExhaustedError: All attempts failed or a failure was fatal
        RetryTimeoutError: The global deadline passed first
    """
    if cfg is None:
        cfg = DEFAULT_RETRY_CONFIG
    if cfg.attempts < 1:
        raise ActionValidationError(f"invalid attempts: {cfg.attempts}")

    loop = asyncio.get_running_loop()
    deadline = cfg.deadline()
    deadline_at = loop.time() + deadline
    delay = cfg.delay
    last_error: BaseException | None = None
    attempt = 0

    for attempt in range(1, cfg.attempts + 1):
        if attempt > 1:
            if loop.time() + delay > deadline_at:
                raise RetryTimeoutError(deadline, attempt - 1, last_error) from last_error
            logger.info(
                "Retrying %s, attempt %d/%d in %.1fs", description, attempt, cfg.attempts, delay
            )
            await asyncio.sleep(delay)
            delay *= cfg.delay_multiplier

        remaining = deadline_at - loop.time()
        if remaining <= 0:
            raise RetryTimeoutError(deadline, attempt - 1, last_error) from last_error
        budget = min(cfg.attempt_timeout, remaining)

        try:
            timed_out, output = await _run_attempt(action, budget)
        except Exception as e:
            last_error = e
        else:
            if not timed_out:
                return output.strip()
            if budget < cfg.attempt_timeout:
                raise RetryTimeoutError(deadline, attempt, last_error) from last_error
            last_error = TimeoutError(
                f"{description}: command timed out after {cfg.attempt_timeout:.1f}s"
            )

        logger.debug("%s failed on attempt %d/%d: %s", description, attempt, cfg.attempts, last_error)
        if not is_retryable(last_error, cfg):
            break

    raise RetryExhaustedError(attempt, cfg.attempts, last_error) from last_error
