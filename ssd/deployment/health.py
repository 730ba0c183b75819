"""
Health polling and dependency wait conditions.

Polling is a plain sleep-between-polls loop against a deadline. The clock and
sleep are injected so tests can drive the loop without real time passing.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ssd.config.settings import ServiceConfig, WaitCondition
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.helpers import (
    compute_health_deadline,
    describe_state,
    exit_code,
    has_exited,
    is_ready,
    poll_interval,
)
from ssd.exceptions import DependencyError, RemoteExecutionError
from ssd.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]
StateProbe = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass
class PollResult:
    """Result of a polling loop."""

    ready: bool
    polls: int
    last_state: Optional[str] = None
    state: Optional[Dict[str, Any]] = None


class HealthPoller:
    """Polls container state until a predicate holds or the deadline passes."""

    def __init__(self, clock: Optional[Clock] = None, sleep: Optional[Sleep] = None) -> None:
        self.clock = clock or time.monotonic
        self.sleep = sleep or asyncio.sleep

    async def wait_until_ready(
        self,
        probe: StateProbe,
        has_healthcheck: bool,
        deadline: float,
        interval: float,
        name: str,
    ) -> PollResult:
        """
        Wait for a container to become healthy (or running, without a health check).

        A probe that raises RemoteExecutionError counts as a failed poll; the
        loop keeps going until the deadline.

        Args:
            probe: Returns the container's docker ``.State``
            has_healthcheck: Whether readiness means ``healthy`` or ``running``
            deadline: Seconds allowed from the first poll
            interval: Seconds between polls
            name: Container name for log lines

        Returns:
            PollResult with ``ready`` False when the deadline passed
        """
        return await self._poll(
            probe, lambda state: is_ready(state, has_healthcheck), deadline, interval, name
        )

    async def wait_until_exited(
        self, probe: StateProbe, deadline: float, interval: float, name: str
    ) -> PollResult:
        """Wait for a container to exit; the caller inspects the exit code."""
        return await self._poll(probe, has_exited, deadline, interval, name)

    async def _poll(
        self,
        probe: StateProbe,
        predicate: Callable[[Dict[str, Any]], bool],
        deadline: float,
        interval: float,
        name: str,
    ) -> PollResult:
        started = self.clock()
        polls = 0
        last_state: Optional[str] = None
        state: Optional[Dict[str, Any]] = None

        while True:
            polls += 1
            try:
                state = await probe()
                last_state = describe_state(state)
                if predicate(state):
                    logger.debug(f"{name} ready after {polls} poll(s): {last_state}")
                    return PollResult(True, polls, last_state, state)
                logger.debug(f"{name} poll {polls}: {last_state}")
            except RemoteExecutionError as e:
                last_state = "poll failed"
                logger.warning(f"{name} poll {polls} failed: {sanitize_for_log(e)}")

            elapsed = self.clock() - started
            if elapsed >= deadline:
                logger.warning(f"{name} not ready after {elapsed:g}s ({polls} polls)")
                return PollResult(False, polls, last_state, state)
            await self.sleep(min(interval, deadline - elapsed))


async def start_dependencies(
    containers: ContainerOperations,
    service: ServiceConfig,
    dependencies: Dict[str, ServiceConfig],
    poller: HealthPoller,
) -> None:
    """
    Start a service's direct dependencies that are not running yet.

    Each dependency that gets started is held to its wait condition before
    this returns.

    Args:
        containers: Docker operations for the stack
        service: The dependent service
        dependencies: Resolved descriptors of the direct dependencies
        poller: Poller used for ``healthy`` and ``completed`` conditions

    Raises:
        DependencyError: If a dependency is unknown or misses its condition
    """
    for spec in service.depends_on:
        dependency = dependencies.get(spec.name)
        if dependency is None:
            raise DependencyError(f"{service.name} depends on {spec.name}, which is not configured")

        if await containers.is_service_running(dependency.name):
            logger.debug(f"Dependency {dependency.name} already running")
            continue

        logger.info(f"Starting dependency {dependency.name} (waits for {spec.condition.value})")
        await containers.start_service(dependency.name)

        if spec.condition == WaitCondition.STARTED:
            continue
        elif spec.condition == WaitCondition.HEALTHY:
            await _wait_healthy(containers, dependency, poller)
        elif spec.condition == WaitCondition.COMPLETED:
            await _wait_completed(containers, dependency, poller)
        else:
            raise DependencyError(f"unsupported wait condition {spec.condition!r}")


async def _wait_healthy(
    containers: ContainerOperations, dependency: ServiceConfig, poller: HealthPoller
) -> None:
    deadline = compute_health_deadline(dependency.healthcheck)
    result = await poller.wait_until_ready(
        lambda: containers.service_state(dependency.name),
        dependency.healthcheck is not None,
        deadline,
        poll_interval(dependency.healthcheck),
        dependency.name,
    )
    if not result.ready:
        raise DependencyError(
            f"dependency {dependency.name} not healthy after {deadline:g}s "
            f"(last state: {result.last_state})"
        )


async def _wait_completed(
    containers: ContainerOperations, dependency: ServiceConfig, poller: HealthPoller
) -> None:
    deadline = compute_health_deadline(dependency.healthcheck)
    result = await poller.wait_until_exited(
        lambda: containers.service_state(dependency.name),
        deadline,
        poll_interval(dependency.healthcheck),
        dependency.name,
    )
    if not result.ready:
        raise DependencyError(f"dependency {dependency.name} did not complete after {deadline:g}s")

    code = exit_code(result.state or {})
    if code != 0:
        raise DependencyError(f"dependency {dependency.name} exited with code {code}")
