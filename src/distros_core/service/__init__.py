"""Service management for k3s/rke2 nodes.

Provides ServiceManager for running declarative ServiceAction requests
(stop/start/restart/status/enable/rotate) against remote nodes, the
command types they translate to, and unit name validation.
"""

from distros_core.service.commands import (
    Action,
    CertRotateCommand,
    NodeType,
    SystemctlCommand,
    resolve_unit,
    systemctl_command,
)
from distros_core.service.manager import ServiceAction, ServiceManager, plan_action
from distros_core.service.validation import FORBIDDEN_UNITS, validate_unit_name

__all__ = [
    "Action",
    "CertRotateCommand",
    "FORBIDDEN_UNITS",
    "NodeType",
    "ServiceAction",
    "ServiceManager",
    "SystemctlCommand",
    "plan_action",
    "resolve_unit",
    "systemctl_command",
    "validate_unit_name",
]
