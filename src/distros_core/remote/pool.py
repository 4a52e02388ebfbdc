"""SSH connection pool keyed by host:port.

Keeps one live paramiko client per host. A cached client is probed with a
trivial command before reuse; a client that fails the probe is closed and
replaced. Dialing and probing run in the default executor because paramiko
is blocking; the cache lock only covers dictionary access.
"""

import asyncio
import logging
import threading
from pathlib import Path

import paramiko

from distros_core.config import SSHCredentials, get_settings
from distros_core.errors import ActionValidationError, ConnectivityError

logger = logging.getLogger(__name__)

PROBE_COMMAND = "echo ok"
PROBE_TIMEOUT = 10.0

# Key types tried in order when loading a private key file
_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
)


def load_private_key(path: Path) -> paramiko.PKey:
    """Load a private key of any supported type.

    Raises:
        ConnectivityError: If the file cannot be read or parsed
    """
    if not path.is_file():
        raise ConnectivityError(str(path), f"unable to read private key: {path} not found")

    errors = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except OSError as e:
            raise ConnectivityError(str(path), f"unable to read private key: {e}") from e
        except paramiko.SSHException as e:
            errors.append(f"{key_class.__name__}: {e}")

    raise ConnectivityError(
        str(path), f"unable to parse private key: {'; '.join(errors)}"
    )


class ConnectionPool:
    """Cache of authenticated SSH clients, at most one per host:port.

    Concurrent acquires for different hosts never wait on each other. Two
    concurrent acquires for the same uncached host may both dial; the last
    one wins the cache slot and the displaced client stays open until
    close_all() so its current user is not cut off.

    Example:
        async with ConnectionPool(SSHCredentials("ubuntu", Path("key.pem"))) as pool:
            client = await pool.acquire("10.0.0.5")
    """

    def __init__(
        self,
        credentials: SSHCredentials | None = None,
        *,
        port: int = 22,
        connect_timeout: float = 30.0,
    ) -> None:
        """Initialize an empty pool.

        Args:
            credentials: SSH user and key, resolved from Settings if None
            port: Default port for hosts given without one
            connect_timeout: TCP, banner and auth timeout in seconds
        """
        self._credentials = credentials
        self._port = port
        self._connect_timeout = connect_timeout
        self._clients: dict[str, paramiko.SSHClient] = {}
        self._displaced: list[paramiko.SSHClient] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close_all()

    def key_for(self, host: str) -> str:
        """Normalize a host or host:port into the cache key."""
        if not host:
            raise ActionValidationError("host address is empty")
        if host.count(":") == 1:
            return host
        if host.startswith("[") and "]:" in host:
            return host
        if ":" in host:
            # bare IPv6 address
            return f"[{host}]:{self._port}"
        return f"{host}:{self._port}"

    def cached_hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._clients)

    async def acquire(self, host: str) -> paramiko.SSHClient:
        """Return a healthy client for host, dialing if needed.

        Raises:
            ActionValidationError: If host is empty
            ConnectivityError: If dialing or authentication fails
        """
        key = self.key_for(host)

        with self._lock:
            client = self._clients.get(key)

        if client is not None:
            if await asyncio.to_thread(self._probe, client):
                return client
            logger.info("SSH connection to %s failed health probe, redialing", key)
            await self.evict(key, client)

        new_client = await asyncio.to_thread(self._dial, key)

        with self._lock:
            previous = self._clients.get(key)
            self._clients[key] = new_client
            if previous is not None and previous is not new_client:
                self._displaced.append(previous)

        logger.debug("SSH connection pool: %s", self.cached_hosts())
        return new_client

    async def evict(self, host: str, client: paramiko.SSHClient | None = None) -> None:
        """Close and drop the cached client for host.

        When client is given, the entry is only dropped if it is still that
        client, so a fresh connection cached by another caller survives.
        """
        key = self.key_for(host)
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None and (client is None or cached is client):
                del self._clients[key]
        target = client if client is not None else cached
        if target is not None:
            await asyncio.to_thread(target.close)

    async def close_all(self) -> None:
        """Close every cached and displaced client."""
        with self._lock:
            clients = list(self._clients.values()) + self._displaced
            self._clients.clear()
            self._displaced = []
        for client in clients:
            await asyncio.to_thread(client.close)

    def _resolve_credentials(self, key: str) -> SSHCredentials:
        credentials = self._credentials
        if credentials is None:
            credentials = get_settings().resolve_ssh_credentials()
            self._credentials = credentials
        if not credentials.user or credentials.key_path is None:
            raise ConnectivityError(key, "ssh user and private key path are required")
        return credentials

    def _dial(self, key: str) -> paramiko.SSHClient:
        credentials = self._resolve_credentials(key)
        pkey = load_private_key(credentials.key_path)
        hostname, _, port = key.rpartition(":")
        hostname = hostname.strip("[]")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=hostname,
                port=int(port),
                username=credentials.user,
                pkey=pkey,
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
                auth_timeout=self._connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectivityError(key, f"authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectivityError(key, f"failed to dial: {e}") from e

        logger.info("Opened SSH connection to %s as %s", key, credentials.user)
        return client

    @staticmethod
    def _probe(client: paramiko.SSHClient) -> bool:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            return False
        try:
            stdin, stdout, _ = client.exec_command(PROBE_COMMAND, timeout=PROBE_TIMEOUT)
            stdin.close()
            stdout.read()
            return stdout.channel.recv_exit_status() == 0
        except (paramiko.SSHException, OSError, EOFError):
            return False
