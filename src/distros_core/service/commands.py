"""
Service actions and the commands they translate to.

Each systemctl verb is its own command type, so a command object can only
be built for a verb that exists. Certificate rotation is a separate type
because it talks to the product binary instead of systemd.

Product unit names come from a fixed table keyed by (product, node type):

    k3s  + server -> k3s
    k3s  + agent  -> k3s-agent
    rke2 + server -> rke2-server
    rke2 + agent  -> rke2-agent
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from distros_core.errors import ActionValidationError

# Prefix that makes product binaries in /usr/local/bin reachable under sudo
PRODUCT_ENV = '-E env "PATH=$PATH:/usr/local/bin:/usr/bin"'


class Action(str, Enum):
    """Declarative service operations."""

    STOP = "stop"
    START = "start"
    RESTART = "restart"
    STATUS = "status"
    ENABLE = "enable"
    ROTATE = "rotate"
    """Rotate product certificates; does not touch systemd."""


class NodeType(str, Enum):
    SERVER = "server"
    AGENT = "agent"


PRODUCTS = frozenset({"k3s", "rke2"})

UNIT_NAMES: dict[tuple[str, NodeType], str] = {
    ("k3s", NodeType.SERVER): "k3s",
    ("k3s", NodeType.AGENT): "k3s-agent",
    ("rke2", NodeType.SERVER): "rke2-server",
    ("rke2", NodeType.AGENT): "rke2-agent",
}


def resolve_unit(product: str, node_type: NodeType | str | None) -> str:
    """
    Resolve the systemd unit for a product on a node type.

    Raises:
        ActionValidationError: If node_type is missing or the pair is unknown
    """
    if not node_type:
        raise ActionValidationError(f"nodeType required for {product} service")
    try:
        return UNIT_NAMES[(product, NodeType(node_type))]
    except (KeyError, ValueError):
        raise ActionValidationError(
            f"no unit for product {product!r} and node type {node_type!r}, "
            "nodeType needs to be one of: server | agent"
        ) from None


@dataclass(frozen=True)
class SystemctlCommand:
    """Non-blocking systemctl invocation for one unit."""

    unit: str
    verb: ClassVar[Action]

    def render(self) -> str:
        return f"sudo systemctl --no-block {self.verb.value} {self.unit}"


@dataclass(frozen=True)
class StopUnit(SystemctlCommand):
    verb: ClassVar[Action] = Action.STOP


@dataclass(frozen=True)
class StartUnit(SystemctlCommand):
    verb: ClassVar[Action] = Action.START


@dataclass(frozen=True)
class RestartUnit(SystemctlCommand):
    verb: ClassVar[Action] = Action.RESTART


@dataclass(frozen=True)
class UnitStatus(SystemctlCommand):
    verb: ClassVar[Action] = Action.STATUS


@dataclass(frozen=True)
class EnableUnit(SystemctlCommand):
    verb: ClassVar[Action] = Action.ENABLE


@dataclass(frozen=True)
class CertRotateCommand:
    """Certificate rotation through the product binary."""

    product: str

    def render(self) -> str:
        return f"sudo {PRODUCT_ENV} {self.product} certificate rotate"


SYSTEMCTL_COMMANDS: dict[Action, type[SystemctlCommand]] = {
    Action.STOP: StopUnit,
    Action.START: StartUnit,
    Action.RESTART: RestartUnit,
    Action.STATUS: UnitStatus,
    Action.ENABLE: EnableUnit,
}


def systemctl_command(action: Action, unit: str) -> SystemctlCommand:
    """Build the command for a systemd action.

    Raises:
        ActionValidationError: For rotate, which has no systemctl form
    """
    try:
        return SYSTEMCTL_COMMANDS[action](unit)
    except KeyError:
        raise ActionValidationError(
            "action value should be: start | stop | restart | status | enable"
        ) from None
