"""
Canary deployment state machine.

Drives one service through build, an optional canary, promotion and
cleanup. The current state is an explicit attribute and every move goes
through the transition table, so the rollback and always-cleanup paths can
be checked on their own.

Safety property: on the canary path the primary container is only touched
after the canary has proven healthy. Any failure before that restores the
exact pre-deploy manifest text.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ssd.config.settings import ServiceConfig
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.health import Clock, HealthPoller, Sleep, start_dependencies
from ssd.deployment.helpers import (
    StartPath,
    choose_start_path,
    compute_health_deadline,
    is_canary_eligible,
    poll_interval,
)
from ssd.deployment.images import ImageBuilder
from ssd.deployment.lock import DeployLock, acquire
from ssd.exceptions import (
    CanaryHealthTimeoutError,
    ConcurrentDeployError,
    SSDError,
)
from ssd.logging_config import LogContext, log_deploy_operation
from ssd.manifest import (
    ManifestDocument,
    TRAEFIK_NETWORK,
    build_service_entry,
    canary_name,
    declare_volumes,
    generate_manifest,
    inject_canary,
    internal_network,
    parse,
    render,
    upsert_service,
)
from ssd.models.deployment import (
    CanaryOutcome,
    CanarySession,
    DeployFailure,
    DeployOutcome,
    DeployStage,
    DeploySuccess,
)
from ssd.remote.operations import RemoteOperations
from ssd.utils.log_sanitizer import sanitize_for_log
from ssd.version_resolver import resolve_version

logger = logging.getLogger(__name__)

BUILD_ONLY = "build-only"


class DeployState(str, Enum):
    """States of one deploy attempt."""

    IDLE = "idle"
    BUILDING = "building"
    CANARY_ELIGIBILITY = "canary_eligibility"
    CANARY_STARTING = "canary_starting"
    DIRECT_START = "direct_start"
    CANARY_HEALTH_CHECK = "canary_health_check"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling_back"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: Dict[DeployState, FrozenSet[DeployState]] = {
    DeployState.IDLE: frozenset({DeployState.BUILDING, DeployState.CLEANUP}),
    DeployState.BUILDING: frozenset({DeployState.CANARY_ELIGIBILITY, DeployState.CLEANUP}),
    DeployState.CANARY_ELIGIBILITY: frozenset(
        {DeployState.CANARY_STARTING, DeployState.DIRECT_START, DeployState.CLEANUP}
    ),
    DeployState.CANARY_STARTING: frozenset(
        {DeployState.CANARY_HEALTH_CHECK, DeployState.ROLLING_BACK}
    ),
    DeployState.CANARY_HEALTH_CHECK: frozenset(
        {DeployState.PROMOTING, DeployState.ROLLING_BACK}
    ),
    DeployState.PROMOTING: frozenset({DeployState.CLEANUP, DeployState.ROLLING_BACK}),
    DeployState.DIRECT_START: frozenset({DeployState.CLEANUP}),
    DeployState.ROLLING_BACK: frozenset({DeployState.CLEANUP}),
    DeployState.CLEANUP: frozenset({DeployState.DONE, DeployState.FAILED}),
    DeployState.DONE: frozenset(),
    DeployState.FAILED: frozenset(),
}


class InvalidTransitionError(SSDError):
    """The state machine was asked to make a move its table does not allow."""

    pass


class CanaryDeployment:
    """
    One deploy attempt for one service.

    Usage:
        deployment = CanaryDeployment(service, remote, siblings=all_services)
        outcome = await deployment.run()
    """

    def __init__(
        self,
        service: ServiceConfig,
        remote: RemoteOperations,
        siblings: Optional[Dict[str, ServiceConfig]] = None,
        dependencies: Optional[Dict[str, ServiceConfig]] = None,
        build_only: bool = False,
        acquire_lock: bool = True,
        containers: Optional[ContainerOperations] = None,
        builder: Optional[ImageBuilder] = None,
        base_dir: Optional[str] = None,
        lock_dir: Optional[str] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        """
        Initialize a deploy attempt.

        Args:
            service: Service to deploy
            remote: Transport to the service's server
            siblings: Every service sharing the stack; required for the canary
            dependencies: Resolved descriptors of the direct dependencies
            build_only: Produce the image and record the version, start nothing
            acquire_lock: Take the stack lock (False when the caller holds it)
            containers: Docker operations (built from remote when omitted)
            builder: Image builder (built from remote when omitted)
            base_dir: Directory local build contexts are relative to
            lock_dir: Directory for lock files
            clock: Monotonic clock for health deadlines
            sleep: Sleep used between health polls
        """
        self.service = service
        self.remote = remote
        self.siblings = siblings
        self.dependencies = dependencies or {}
        self.build_only = build_only
        self.acquire_lock = acquire_lock
        self.containers = containers or ContainerOperations(remote, service.stack_path)
        self.builder = builder or ImageBuilder(remote, self.containers, base_dir)
        self.lock_dir = lock_dir
        self.poller = HealthPoller(clock=clock, sleep=sleep)

        self.state = DeployState.IDLE
        self.history: List[DeployState] = [DeployState.IDLE]
        self.stage = DeployStage.BUILD
        self.start_path: Optional[StartPath] = None
        self.session: Optional[CanarySession] = None
        self.primary_touched = False
        self.version: Optional[int] = None
        self.image: Optional[str] = None
        self._canary_removed = False

    def _transition(self, new_state: DeployState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"invalid deploy transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"{self.service.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    async def run(self) -> DeployOutcome:
        """
        Run the deploy attempt to completion.

        Returns:
            DeploySuccess or DeployFailure; the failure names the stage and
            whether the primary container was touched

        Raises:
            asyncio.CancelledError: After rollback and cleanup, if cancelled
        """
        lock: Optional[DeployLock] = None
        if self.acquire_lock:
            try:
                lock = acquire(self.service.stack_path, self.lock_dir)
            except ConcurrentDeployError as e:
                logger.error(f"Deploy of {self.service.name} refused: {e}")
                return DeployFailure(self.service.name, DeployStage.LOCK, e)

        try:
            with LogContext(service=self.service.name, stack=self.service.stack_path):
                return await self._execute()
        finally:
            if lock is not None:
                lock.release()

    async def _execute(self) -> DeployOutcome:
        try:
            outcome = await self._drive()
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.warning(f"Deploy of {self.service.name} cancelled in state {self.state.value}")
            await self._abort()
            raise
        except SSDError as e:
            logger.error(
                f"Deploy of {self.service.name} failed at {self.stage.value}: {sanitize_for_log(e, 500)}"
            )
            details = await self._recover()
            await self._cleanup(failed=True)
            log_deploy_operation(
                "failed", self.service.name, {"stage": self.stage.value, "error": str(e)}, "ERROR"
            )
            return DeployFailure(
                service=self.service.name,
                stage=self.stage,
                cause=e,
                primary_touched=self.primary_touched,
                canary=self.session.outcome if self.session else None,
                details=details,
            )
        except Exception:
            logger.exception(f"Unexpected error deploying {self.service.name} in state {self.state.value}")
            await self._abort()
            raise

        await self._cleanup(failed=False)
        return outcome

    async def _abort(self) -> None:
        if self.session is not None and self.session.outcome is None:
            self.session.outcome = CanaryOutcome.ABORTED
        try:
            await self._recover()
        finally:
            await self._cleanup(failed=True)
        log_deploy_operation("aborted", self.service.name, {"state": self.state.value}, "WARNING")

    async def _drive(self) -> DeployOutcome:
        svc = self.service

        self._transition(DeployState.BUILDING)
        self.stage = DeployStage.BUILD
        manifest_text = await self.containers.read_manifest()
        if not svc.is_prebuilt:
            info = resolve_version(manifest_text, svc.name, svc.image_name)
            self.version = info.next
            logger.info(f"Deploying {svc.name}: version {info.current} -> {info.next}")
        self.image = await self.builder.resolve(svc, self.version)

        self._transition(DeployState.CANARY_ELIGIBILITY)
        bootstrapped = False
        if not manifest_text.strip():
            manifest_text = await self._bootstrap_stack()
            bootstrapped = True

        if self.build_only:
            if not bootstrapped:
                await self._write_service_manifest(parse(manifest_text))
            logger.info(f"Built {self.image} (not started)")
            return DeploySuccess(svc.name, self.version, BUILD_ONLY)

        self.stage = DeployStage.START
        primary_running = False if bootstrapped else await self.containers.is_service_running(svc.name)
        eligible = is_canary_eligible(primary_running, self.build_only, self.siblings)
        self.start_path = choose_start_path(svc.deploy_strategy, eligible)
        logger.info(
            f"{svc.name}: primary running={primary_running}, canary eligible={eligible}, "
            f"start path={self.start_path.value}"
        )

        if self.start_path == StartPath.CANARY:
            self._transition(DeployState.CANARY_STARTING)
            await self._run_canary(manifest_text)
        else:
            self._transition(DeployState.DIRECT_START)
            await self._direct_start(manifest_text, bootstrapped, primary_running)

        log_deploy_operation(
            "deployed",
            svc.name,
            {"version": self.version, "image": self.image, "path": self.start_path.value},
        )
        return DeploySuccess(
            svc.name,
            self.version,
            self.start_path.value,
            canary=self.session.outcome if self.session else None,
        )

    async def _run_canary(self, manifest_text: str) -> None:
        svc = self.service
        self.stage = DeployStage.CANARY_HEALTH
        self.session = CanarySession(
            service=svc.name,
            container=canary_name(svc.name),
            snapshot=manifest_text,
            deadline=compute_health_deadline(svc.healthcheck),
            image=self.image,
        )
        log_deploy_operation(
            "canary_start",
            svc.name,
            {"container": self.session.container, "deadline": self.session.deadline},
        )

        doc = self._with_dependencies(inject_canary(parse(manifest_text), svc, self.image))
        await self.containers.create_env_files(self._env_file_services())
        await self.containers.write_manifest(render(doc))
        self.stage = DeployStage.START
        await start_dependencies(self.containers, svc, self.dependencies, self.poller)
        self.stage = DeployStage.CANARY_HEALTH
        self.session.canary_started = True
        await self.containers.start_service(self.session.container, no_deps=True)

        self._transition(DeployState.CANARY_HEALTH_CHECK)
        container = self.session.container
        result = await self.poller.wait_until_ready(
            lambda: self.containers.container_state(container),
            svc.healthcheck is not None,
            self.session.deadline,
            poll_interval(svc.healthcheck),
            container,
        )
        self.session.polls = result.polls
        self.session.last_state = result.last_state
        if not result.ready:
            raise CanaryHealthTimeoutError(container, self.session.deadline, result.last_state)

        self._transition(DeployState.PROMOTING)
        self.stage = DeployStage.PROMOTE
        promoted = self._with_service(parse(self.session.snapshot))
        await self.containers.write_manifest(render(promoted))
        self.primary_touched = True
        await self.containers.recreate_service(svc.name)
        self.session.outcome = CanaryOutcome.PROMOTED
        log_deploy_operation("promote", svc.name, {"version": self.version})

    async def _direct_start(
        self, manifest_text: str, bootstrapped: bool, primary_running: bool
    ) -> None:
        svc = self.service
        if not bootstrapped:
            await self._write_service_manifest(parse(manifest_text))
        await start_dependencies(self.containers, svc, self.dependencies, self.poller)

        self.primary_touched = True
        if self.start_path == StartPath.ROLLOUT and primary_running:
            await self.containers.rollout_service(svc.name)
        elif self.start_path == StartPath.RECREATE:
            await self.containers.start_service(svc.name, force_recreate=True)
        else:
            await self.containers.start_service(svc.name)

    async def _bootstrap_stack(self) -> str:
        """Create a stack that has no manifest yet and return the manifest written."""
        svc = self.service
        services = self._stack_services()
        logger.info(f"Creating stack {svc.stack_path} with services: {', '.join(sorted(services))}")

        await self.containers.create_stack()
        await self.containers.create_env_files(sorted(services))
        versions = {svc.name: self.version} if self.version is not None else {}
        text = generate_manifest(services, svc.stack_path, versions)
        await self.containers.write_manifest(text)
        await self.containers.ensure_network(TRAEFIK_NETWORK)
        await self.containers.ensure_network(internal_network(svc.project))
        log_deploy_operation("stack_created", svc.name, {"stack": svc.stack_path})
        return text

    async def _write_service_manifest(self, doc: ManifestDocument) -> None:
        await self.containers.create_env_files(self._env_file_services())
        await self.containers.write_manifest(render(self._with_service(doc)))

    def _with_service(self, doc: ManifestDocument) -> ManifestDocument:
        """Upsert this service at the new version, plus any dependency entry the doc lacks."""
        doc = upsert_service(doc, self.service.name, build_service_entry(self.service, self.version))
        return self._with_dependencies(declare_volumes(doc, self.service))

    def _with_dependencies(self, doc: ManifestDocument) -> ManifestDocument:
        """Add an entry for every dependency the document does not have yet."""
        for name in self.service.dependency_names:
            if doc.has_service(name):
                continue
            dependency = self.dependencies.get(name) or (self.siblings or {}).get(name)
            if dependency is not None:
                doc = upsert_service(doc, name, build_service_entry(dependency, 0))
                doc = declare_volumes(doc, dependency)
        return doc

    def _stack_services(self) -> Dict[str, ServiceConfig]:
        services = {
            name: cfg
            for name, cfg in (self.siblings or {}).items()
            if cfg.stack_path == self.service.stack_path
        }
        services[self.service.name] = self.service
        return services

    def _env_file_services(self) -> List[str]:
        names = set(self._stack_services()) | set(self.service.dependency_names)
        return sorted(names)

    async def _recover(self) -> Dict[str, str]:
        """Undo a canary that never got promoted; the primary stays as it was."""
        details: Dict[str, str] = {}
        session = self.session
        if session is None or session.outcome == CanaryOutcome.PROMOTED:
            return details
        if self.primary_touched:
            # Promotion already recreated the primary; the snapshot no longer matches it
            return details

        self._transition(DeployState.ROLLING_BACK)
        log_deploy_operation("rollback", self.service.name, {"container": session.container}, "WARNING")
        try:
            if session.canary_started:
                error = await self._remove_canary()
                if error:
                    details["canary_remove_error"] = error
        finally:
            # The snapshot is restored even when removal failed or was cancelled
            try:
                await self.containers.write_manifest(session.snapshot, validate=False)
            except SSDError as e:
                logger.error(
                    f"Failed to restore compose.yaml for {self.service.name}: "
                    f"{sanitize_for_log(e, 500)}"
                )
                details["rollback_error"] = str(e)
        if session.outcome is None:
            session.outcome = CanaryOutcome.ROLLED_BACK
        return details

    async def _remove_canary(self) -> Optional[str]:
        """Remove the canary container; returns the error text when removal failed."""
        container = self.session.container
        try:
            await self.containers.remove_container(container)
        except SSDError as e:
            logger.error(f"Failed to remove canary {container}: {sanitize_for_log(e)}")
            return str(e)
        self._canary_removed = True
        return None

    async def _cleanup(self, failed: bool) -> None:
        self._transition(DeployState.CLEANUP)
        session = self.session
        if session is not None and session.canary_started and not self._canary_removed:
            await self._remove_canary()
        self._transition(DeployState.FAILED if failed else DeployState.DONE)
