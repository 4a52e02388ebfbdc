"""Validation for service actions.

Checks unit names before they are interpolated into a remote command and
blocks units whose loss would cut the test harness off from the node.
"""

from typing import Set

from distros_core.errors import ActionValidationError
from distros_core.service.commands import Action, NodeType

# Stopping these would sever SSH access or take the node down with it
FORBIDDEN_UNITS: Set[str] = {
    "systemd",
    "dbus",
    "ssh",
    "sshd",
    "networking",
    "network-manager",
    "NetworkManager",
    "systemd-resolved",
    "systemd-networkd",
    "init",
}


def validate_unit_name(unit: str) -> None:
    """Validate a literal unit name.

    Raises:
        ActionValidationError: If empty, contains path separators, shell
            metacharacters or whitespace, or names a forbidden unit
    """
    if not unit:
        raise ActionValidationError("service name should not be empty")
    if "/" in unit:
        raise ActionValidationError(f"invalid service name {unit!r}: contains path separator '/'")
    if ".." in unit:
        raise ActionValidationError(f"invalid service name {unit!r}: contains path traversal '..'")
    if any(ch.isspace() or ch in ";&|`$<>'\"\\" for ch in unit):
        raise ActionValidationError(f"invalid service name {unit!r}: contains shell metacharacters")
    if unit.removesuffix(".service") in FORBIDDEN_UNITS:
        raise ActionValidationError(f"service {unit!r} cannot be managed")


def parse_action(value: Action | str) -> Action:
    try:
        return Action(value)
    except ValueError:
        valid = " | ".join(a.value for a in Action)
        raise ActionValidationError(f"invalid action {value!r}, should be: {valid}") from None


def parse_node_type(value: NodeType | str | None) -> NodeType | None:
    if value is None or value == "":
        return None
    try:
        return NodeType(value)
    except ValueError:
        raise ActionValidationError(
            f"invalid node type {value!r}, should be: server | agent"
        ) from None
