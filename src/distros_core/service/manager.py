"""Service action executor for k3s/rke2 nodes.

Translates ServiceAction requests into remote commands and runs them with
a per-action execution policy:

- start, restart: run exactly once. A failed start is inspected with a
  separate status call rather than blindly repeated.
- stop, status, enable: run through the retry engine with a fixed delay.
- rotate: certificate rotation through the product binary, run once.

All actions in a request are validated before any command is sent.
"""

import asyncio
import logging
from dataclasses import dataclass

from distros_core.errors import (
    ActionValidationError,
    CommandError,
    ConnectivityError,
    RetryExhaustedError,
    RetryTimeoutError,
    ServiceActionError,
)
from distros_core.remote.runner import CommandRunner
from distros_core.retry import DEFAULT_RETRY_CONFIG, with_retry
from distros_core.service.commands import (
    PRODUCTS,
    Action,
    CertRotateCommand,
    NodeType,
    SystemctlCommand,
    resolve_unit,
    systemctl_command,
)
from distros_core.service.validation import parse_action, parse_node_type, validate_unit_name

logger = logging.getLogger(__name__)

# Actions that must not be repeated automatically
_RUN_ONCE = frozenset({Action.START, Action.RESTART, Action.ROTATE})


@dataclass(frozen=True)
class ServiceAction:
    """
    A service operation to perform on one node.

    Attributes:
        service: Product name ("k3s", "rke2") or a literal unit name
        action: One of stop, start, restart, status, enable, rotate
        node_type: server or agent; required for product services
        explicit_delay: Seconds to wait before issuing the command
    """

    service: str
    action: Action | str
    node_type: NodeType | str | None = None
    explicit_delay: float = 0.0


@dataclass(frozen=True)
class _Step:
    request: ServiceAction
    action: Action
    command: SystemctlCommand | CertRotateCommand

    @property
    def target(self) -> str:
        if isinstance(self.command, CertRotateCommand):
            return self.command.product
        return self.command.unit


def plan_action(act: ServiceAction) -> _Step:
    """Validate one request and build its command.

    Raises:
        ActionValidationError: For an invalid action, node type or unit
    """
    action = parse_action(act.action)
    node_type = parse_node_type(act.node_type)

    if action is Action.ROTATE:
        if act.service not in PRODUCTS:
            raise ActionValidationError(
                f"certificate rotation needs a product (k3s | rke2), got {act.service!r}"
            )
        return _Step(act, action, CertRotateCommand(act.service))

    if act.service in PRODUCTS:
        unit = resolve_unit(act.service, node_type)
    else:
        unit = act.service
        validate_unit_name(unit)

    return _Step(act, action, systemctl_command(action, unit))


class ServiceManager:
    """Runs service actions on remote nodes.

    Example:
        manager = ServiceManager(runner, max_retries=10, retry_delay=5)
        await manager.manage("10.0.0.5", [
            ServiceAction("rke2", "stop", "server"),
            ServiceAction("rke2", "start", "server", explicit_delay=10),
        ])
    """

    def __init__(
        self,
        runner: CommandRunner,
        max_retries: int = 3,
        retry_delay: float = 5.0,
    ) -> None:
        """Initialize manager.

        Args:
            runner: Command runner used for every remote call
            max_retries: Attempts for retried actions (stop, status, enable)
            retry_delay: Fixed seconds between those attempts
        """
        self.runner = runner
        self.retry_config = DEFAULT_RETRY_CONFIG.with_overrides(
            attempts=max_retries,
            delay=retry_delay,
            delay_multiplier=1.0,
        )

    async def manage(self, host: str, actions: list[ServiceAction]) -> str:
        """Run a sequence of service actions on host.

        A status action ends the sequence and returns its output without
        interpreting it. Otherwise the output of the last action is returned.

        Raises:
            ActionValidationError: Before any command is sent, if any action
                in the list is invalid
            ServiceActionError: If an action fails on the node
        """
        if not host:
            raise ActionValidationError("ip address is empty")
        if not actions:
            raise ActionValidationError(f"no actions provided for {host}")

        steps = [plan_action(act) for act in actions]

        output = ""
        for step in steps:
            output = await self._execute(host, step)
            if step.action is Action.STATUS:
                return output
        return output

    async def run_action(self, host: str, act: ServiceAction) -> str:
        """Run a single service action."""
        return await self.manage(host, [act])

    async def enable_and_start(
        self, host: str, product: str, node_type: NodeType | str
    ) -> None:
        """Enable and start the product unit, then require it to be active.

        Raises:
            ServiceActionError: If any step fails or the unit is not active
        """
        output = await self.manage(
            host,
            [
                ServiceAction(product, Action.ENABLE, node_type),
                ServiceAction(product, Action.START, node_type),
                ServiceAction(product, Action.STATUS, node_type),
            ],
        )
        if "active " not in output:
            unit = resolve_unit(product, node_type) if product in PRODUCTS else product
            raise ServiceActionError(
                Action.STATUS.value,
                unit,
                host,
                f"unit not active, status output: {output}",
            )
        logger.info("%s-%s service successfully enabled on %s", product, node_type, host)

    async def _execute(self, host: str, step: _Step) -> str:
        delay = step.request.explicit_delay
        if delay > 0:
            logger.info(
                "Waiting %.1fs before %s %s on node %s", delay, step.action.value, step.target, host
            )
            await asyncio.sleep(delay)

        command = step.command.render()
        logger.info("Running %s %s on node %s", step.action.value, step.target, host)
        logger.debug("Command: %s on node %s", command, host)

        try:
            if step.action is Action.ROTATE:
                output = await self.runner.run(command, host, include_stderr=True)
            elif step.action in _RUN_ONCE:
                output = await self.runner.run(command, host)
            else:
                output = await with_retry(
                    lambda: self.runner.run(command, host),
                    self.retry_config,
                    description=f"{step.action.value} {step.target} on {host}",
                )
        except (CommandError, ConnectivityError, RetryExhaustedError, RetryTimeoutError) as e:
            logger.error("Error running %s on %s: %s", command, host, e)
            raise ServiceActionError(step.action.value, step.target, host, str(e)) from e

        if step.action is Action.STATUS:
            logger.debug("Service %s status output:\n%s", step.target, output)
        elif output:
            logger.warning("Output of %s %s: %s", step.action.value, step.target, output)
        logger.info("Finished %s %s on node %s", step.action.value, step.target, host)
        return output
