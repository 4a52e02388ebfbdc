"""Remote execution over SSH.

Provides ConnectionPool for per-host connection reuse, CommandRunner for
running commands with an exit-status result contract, and await_completion
for waiting on a snapshotted set of remote processes.
"""

from distros_core.remote.pool import ConnectionPool, load_private_key
from distros_core.remote.process import await_completion
from distros_core.remote.runner import CommandResult, CommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ConnectionPool",
    "await_completion",
    "load_private_key",
]
