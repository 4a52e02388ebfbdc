"""Remote command execution over pooled SSH connections.

Success is decided by the exit status alone: a command that exits 0 is
successful even if it wrote to stderr, and a non-zero exit is always a
CommandError. Callers that want the informational stderr of a successful
command ask for it explicitly (include_stderr=True or execute()).

This layer never retries; compose with distros_core.retry for that.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

import paramiko

from distros_core.errors import (
    ActionValidationError,
    CommandError,
    ConnectivityError,
    ReadinessTimeoutError,
)
from distros_core.remote.pool import ConnectionPool
from distros_core.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

READ_CHUNK = 32768
# Sleep between channel polls when neither stream has data
DRAIN_INTERVAL = 0.05


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single remote command.

    Attributes:
        command: The shell command that was run
        host: Target host
        stdout: Captured standard output, untrimmed
        stderr: Captured standard error, untrimmed
        exit_status: Remote exit status, None if the session ended without one
    """

    command: str
    host: str
    stdout: str
    stderr: str
    exit_status: int | None

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def informational_stderr(self) -> str:
        """Stderr written by a successful command, empty otherwise."""
        return self.stderr.strip() if self.ok else ""

    def raise_for_status(self) -> None:
        if not self.ok:
            raise CommandError(
                self.command, self.host, self.exit_status, self.stderr.strip()
            )


class CommandRunner:
    """Runs shell commands on remote hosts through a ConnectionPool.

    Example:
        runner = CommandRunner(ConnectionPool(credentials))
        version = await runner.run("k3s --version", "10.0.0.5")
    """

    def __init__(
        self,
        pool: ConnectionPool | None = None,
        *,
        command_timeout: float | None = None,
    ) -> None:
        """Initialize runner.

        Args:
            pool: Connection pool to use, a new one if None
            command_timeout: Seconds to wait for the command to finish output, None to wait forever
        """
        self.pool = pool if pool is not None else ConnectionPool()
        self.command_timeout = command_timeout

    async def execute(self, command: str, host: str, *, check: bool = True) -> CommandResult:
        """Run a command and return the full result.

        Args:
            command: Shell command to run
            host: Host address, optionally host:port
            check: Raise CommandError for a non-zero exit status

        Raises:
            ActionValidationError: If command or host is empty
            ConnectivityError: If no connection could be established
            CommandError: On session failure, or non-zero exit when check is set
        """
        if not command:
            raise ActionValidationError("cmd should not be empty")
        if not host:
            raise ActionValidationError("host address is empty")

        client = await self.pool.acquire(host)
        logger.debug("Running command on %s: %s", host, command)
        result = await asyncio.to_thread(self._exec, client, command, host)
        if check:
            result.raise_for_status()
        return result

    async def run(self, command: str, host: str, *, include_stderr: bool = False) -> str:
        """Run a command and return its trimmed stdout.

        Args:
            command: Shell command to run
            host: Host address
            include_stderr: Append informational stderr to the output

        Raises:
            CommandError: If the command exits non-zero
        """
        result = await self.execute(command, host)
        output = result.stdout.strip()
        if include_stderr and result.informational_stderr:
            output = "\n".join(part for part in (output, result.informational_stderr) if part)
        return output

    async def run_with_retry(
        self, command: str, host: str, cfg: RetryConfig | None = None
    ) -> str:
        """Run a command through the retry engine."""
        return await with_retry(
            lambda: self.run(command, host),
            cfg,
            description=f"'{command}' on {host}",
        )

    async def run_many(
        self, command: str, hosts: list[str]
    ) -> dict[str, str | BaseException]:
        """Run the same command on several hosts concurrently.

        Returns:
            Mapping of host to output, or to the exception it raised. No
            ordering between hosts is implied.
        """
        results = await asyncio.gather(
            *(self.run(command, host) for host in hosts),
            return_exceptions=True,
        )
        return dict(zip(hosts, results))

    async def wait_for_ssh_ready(
        self, host: str, interval: float = 10.0, timeout: float = 180.0
    ) -> None:
        """Poll a freshly booted node until SSH answers a command.

        Raises:
            ReadinessTimeoutError: If SSH is not usable within timeout
        """
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + timeout
        while True:
            try:
                if await self.run("ls -lrt", host):
                    return
            except (ConnectivityError, CommandError) as e:
                logger.warning("SSH not ready on %s: %s", host, e)
            if loop.time() + interval > deadline_at:
                raise ReadinessTimeoutError(f"ssh on {host}", 0, 1, timeout)
            await asyncio.sleep(interval)

    def _exec(self, client: paramiko.SSHClient, command: str, host: str) -> CommandResult:
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=self.command_timeout)
            stdin.close()
            out, err = self._drain(stdout, stderr)
            status = stdout.channel.recv_exit_status()
        except TimeoutError as e:
            raise CommandError(
                command, host, None, reason=f"command timed out after {self.command_timeout}s"
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise CommandError(command, host, None, reason=f"session failed: {e}") from e

        # paramiko reports -1 when the server sent no exit status
        return CommandResult(
            command=command,
            host=host,
            stdout=out,
            stderr=err,
            exit_status=None if status == -1 else status,
        )

    def _drain(
        self, stdout: paramiko.ChannelFile, stderr: paramiko.ChannelStderrFile
    ) -> tuple[str, str]:
        """Read stdout and stderr together until the server sends EOF.

        Both streams share one channel window; reading one to EOF first
        stalls a command that fills the other.
        """
        channel = stdout.channel
        deadline = None
        if self.command_timeout is not None:
            deadline = time.monotonic() + self.command_timeout
        out_chunks: list[bytes] = []
        err_chunks: list[bytes] = []

        while not (channel.eof_received or channel.closed):
            received = False
            if channel.recv_ready():
                out_chunks.append(channel.recv(READ_CHUNK))
                received = True
            if channel.recv_stderr_ready():
                err_chunks.append(channel.recv_stderr(READ_CHUNK))
                received = True
            if received:
                continue
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError("command did not exit in time")
            time.sleep(DRAIN_INTERVAL)

        # everything before EOF is already buffered
        out_chunks.append(stdout.read())
        err_chunks.append(stderr.read())
        return (
            b"".join(out_chunks).decode("utf-8", errors="replace"),
            b"".join(err_chunks).decode("utf-8", errors="replace"),
        )
