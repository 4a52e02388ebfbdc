"""
Distros Core Library

Remote execution and convergence core for k3s/rke2 test clusters.
This package provides:

- Connection pool and command runner over SSH (paramiko)
- Retry engine with fatal/transient failure classification
- Service action executor for systemd units and certificate rotation
- Process completion and node/pod readiness watchers
- CLI infrastructure: Typer-based command structure
"""

__version__ = "0.1.0"

# Re-export public types for convenient imports
from distros_core.errors import (
    ActionValidationError,
    CommandError,
    ConnectivityError,
    DistrosError,
    ProcessWaitError,
    ReadinessError,
    ReadinessTimeoutError,
    RetryExhaustedError,
    RetryTimeoutError,
    ServiceActionError,
    WatchClosedError,
)
from distros_core.remote import CommandResult, CommandRunner, ConnectionPool, await_completion
from distros_core.retry import DEFAULT_RETRY_CONFIG, RetryConfig, is_retryable, with_retry
from distros_core.service import Action, NodeType, ServiceAction, ServiceManager

__all__ = [
    "__version__",
    # Remote execution
    "ConnectionPool",
    "CommandRunner",
    "CommandResult",
    "await_completion",
    # Retry
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "is_retryable",
    "with_retry",
    # Services
    "Action",
    "NodeType",
    "ServiceAction",
    "ServiceManager",
    # Errors
    "DistrosError",
    "ConnectivityError",
    "CommandError",
    "ActionValidationError",
    "RetryExhaustedError",
    "RetryTimeoutError",
    "ServiceActionError",
    "ProcessWaitError",
    "ReadinessError",
    "ReadinessTimeoutError",
    "WatchClosedError",
]
