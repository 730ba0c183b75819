"""
Dependency scheduler.

Single-service deploys resolve the service's direct dependencies and hand
them to the state machine. Deploy-all is two-phase: every image is built
first (nothing starts mid-build), then each service is started in name order,
so the window where old and new versions are mixed is the start phase only.
"""

import logging
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional

from ssd.config.settings import DeployStrategy, RootConfig, ServiceConfig
from ssd.deployment.canary import CanaryDeployment
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.health import Clock, Sleep
from ssd.deployment.lock import acquire
from ssd.exceptions import ConcurrentDeployError, SSDError
from ssd.logging_config import log_deploy_operation
from ssd.models.deployment import DeployFailure, DeployOutcome, DeployStage, DeploySuccess
from ssd.remote.operations import RemoteOperations
from ssd.remote.ssh import SSHClient

logger = logging.getLogger(__name__)

RemoteFactory = Callable[[str], RemoteOperations]


class DependencyScheduler:
    """Orders deploys across the services of one ssd.yaml."""

    def __init__(
        self,
        config: RootConfig,
        remote_factory: Optional[RemoteFactory] = None,
        base_dir: Optional[str] = None,
        lock_dir: Optional[str] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            config: Parsed ssd.yaml
            remote_factory: Builds a transport for a server name (SSHClient by default)
            base_dir: Directory local build contexts are relative to
            lock_dir: Directory for lock files
            clock: Clock handed to every state machine
            sleep: Sleep handed to every state machine
        """
        self.config = config
        self.remote_factory = remote_factory or SSHClient
        self.base_dir = base_dir
        self.lock_dir = lock_dir
        self.clock = clock
        self.sleep = sleep
        self._remotes: Dict[str, RemoteOperations] = {}

    def remote_for(self, service: ServiceConfig) -> RemoteOperations:
        """One transport per server, reused across services."""
        if service.server not in self._remotes:
            self._remotes[service.server] = self.remote_factory(service.server)
        return self._remotes[service.server]

    def _deployment(self, service: ServiceConfig, **kwargs) -> CanaryDeployment:
        return CanaryDeployment(
            service,
            self.remote_for(service),
            base_dir=self.base_dir,
            lock_dir=self.lock_dir,
            clock=self.clock,
            sleep=self.sleep,
            **kwargs,
        )

    async def deploy_service(self, name: str) -> DeployOutcome:
        """
        Deploy one service, starting its dependencies first when needed.

        Args:
            name: Service name from ssd.yaml

        Returns:
            Outcome of the deploy attempt

        Raises:
            ConfigurationError: If the service or one of its siblings is invalid
        """
        service = self.config.get_service(name)
        siblings = self.config.all_services()
        dependencies = self.config.dependencies_of(name)
        logger.info(
            f"Deploying {name} to {service.server}:{service.stack_path}"
            + (f" (depends on {', '.join(sorted(dependencies))})" if dependencies else "")
        )
        deployment = self._deployment(service, siblings=siblings, dependencies=dependencies)
        return await deployment.run()

    async def deploy_all(self) -> List[DeployOutcome]:
        """
        Deploy every service: build all, then start all.

        The stack locks of every involved stack are held for both phases. A
        build failure stops the run before anything is started.

        Returns:
            One outcome per service reached, in name order
        """
        services = self.config.all_services()
        names = sorted(services)
        stacks = sorted({services[name].stack_path for name in names})
        logger.info(f"Deploying all services: {', '.join(names)}")

        with ExitStack() as locks:
            for stack in stacks:
                try:
                    locks.enter_context(acquire(stack, self.lock_dir))
                except ConcurrentDeployError as e:
                    first = next(n for n in names if services[n].stack_path == stack)
                    return [DeployFailure(first, DeployStage.LOCK, e)]

            built: Dict[str, Optional[int]] = {}
            outcomes: List[DeployOutcome] = []
            for name in names:
                deployment = self._deployment(
                    services[name],
                    siblings=services,
                    dependencies=self.config.dependencies_of(name),
                    build_only=True,
                    acquire_lock=False,
                )
                outcome = await deployment.run()
                if isinstance(outcome, DeployFailure):
                    logger.error(f"Build of {name} failed; no services will be started")
                    outcomes.append(outcome)
                    return outcomes
                built[name] = outcome.new_version

            for name in names:
                outcomes.append(await self._start(services[name], built[name]))

        return outcomes

    async def _start(self, service: ServiceConfig, version: Optional[int]) -> DeployOutcome:
        containers = ContainerOperations(self.remote_for(service), service.stack_path)
        rollout = service.deploy_strategy == DeployStrategy.ROLLOUT
        try:
            if rollout and await containers.is_service_running(service.name):
                await containers.rollout_service(service.name)
                strategy = DeployStrategy.ROLLOUT.value
            else:
                await containers.start_service(service.name)
                strategy = "direct"
        except SSDError as e:
            logger.error(f"Failed to start {service.name}: {e}")
            return DeployFailure(service.name, DeployStage.START, e, primary_touched=True)

        log_deploy_operation("started", service.name, {"version": version, "strategy": strategy})
        return DeploySuccess(service.name, version, strategy)
