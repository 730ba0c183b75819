"""
Tests for the canary deployment state machine.

Runs against FakeRemoteHost with an injected clock, so health deadlines
elapse without real time passing.
"""

import asyncio
import shlex

import pytest
import yaml

from conftest import STACK, exited_state, health_state
from ssd.config.settings import DeployStrategy
from ssd.deployment.canary import (
    CanaryDeployment,
    DeployState,
    InvalidTransitionError,
)
from ssd.deployment.helpers import StartPath
from ssd.deployment.lock import acquire
from ssd.exceptions import (
    CanaryHealthTimeoutError,
    DependencyError,
    RemoteExecutionError,
)
from ssd.manifest import generate_manifest
from ssd.models.deployment import (
    CanaryOutcome,
    DeployFailure,
    DeployStage,
    DeploySuccess,
)


def make_deployment(config, name, remote_host, fake_clock, lock_dir, service=None, **kwargs):
    kwargs.setdefault("siblings", config.all_services())
    kwargs.setdefault("dependencies", config.dependencies_of(name))
    return CanaryDeployment(
        service or config.get_service(name),
        remote_host,
        base_dir="/src/myapp",
        lock_dir=lock_dir,
        clock=fake_clock,
        sleep=fake_clock.sleep,
        **kwargs,
    )


def deploy_existing_stack(remote_host, config, versions):
    """Put a manifest and running containers on the fake host, as after earlier deploys."""
    remote_host.set_manifest(generate_manifest(config.all_services(), STACK, versions))
    for name in ("web", "db", "worker"):
        remote_host.running.add(name)
        remote_host.containers.add(name)


def manifest_services(remote_host):
    return yaml.safe_load(remote_host.manifest())["services"]


class TestFirstDeploy:
    """A service with no manifest on the server yet."""

    @pytest.mark.asyncio
    async def test_first_deploy_starts_directly_without_canary(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("db", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert outcome.new_version == 1
        assert outcome.strategy == "direct"
        assert outcome.canary is None
        assert deployment.start_path == StartPath.DIRECT
        assert deployment.session is None
        assert not remote_host.ran("web-canary")

    @pytest.mark.asyncio
    async def test_first_deploy_bootstraps_stack(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("db", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        services = manifest_services(remote_host)
        assert sorted(services) == ["db", "web", "worker"]
        assert services["web"]["image"] == "ssd-myapp-web:1"
        assert services["worker"]["image"] == "ssd-myapp-worker:0"
        assert services["db"]["image"] == "postgres:16"
        assert remote_host.networks == {"traefik_web", "myapp_internal"}
        assert remote_host.ran("mkdir -p /stacks/myapp")
        for name in ("web", "db", "worker"):
            assert f"{STACK}/{name}.env" in remote_host.files

    @pytest.mark.asyncio
    async def test_first_deploy_starts_dependency_before_service(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("db", health_state("starting"), health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        starts = [cmd for cmd in remote_host.interactive if "up -d" in cmd]
        assert starts == [
            "cd /stacks/myapp && docker compose up -d db",
            "cd /stacks/myapp && docker compose up -d web",
        ]
        # db polled at its own 5s interval
        assert fake_clock.sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_build_runs_in_temp_workspace(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("db", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        assert remote_host.synced == [("/src/myapp", "/tmp/tmp.ssd1")]
        assert remote_host.ran(
            "cd /tmp/tmp.ssd1 && docker build -t ssd-myapp-web:1 -f Dockerfile ."
        )
        assert remote_host.removed == ["/tmp/tmp.ssd1"]
        assert "ssd-myapp-web:1" in remote_host.images


class TestCanaryPromotion:
    """A running service gets a canary that is promoted once healthy."""

    @pytest.fixture
    def deployed(self, sample_config, remote_host):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        return remote_host.manifest()

    @pytest.mark.asyncio
    async def test_healthy_canary_is_promoted(
        self, deployed, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states(
            "web-canary", health_state("starting"), health_state("healthy")
        )
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert outcome.new_version == 2
        assert outcome.strategy == "canary"
        assert outcome.canary == CanaryOutcome.PROMOTED
        assert deployment.session.polls == 2

    @pytest.mark.asyncio
    async def test_polls_once_per_health_interval(
        self, deployed, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states(
            "web-canary", health_state("starting"), health_state("healthy")
        )
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        # First poll at t=0, second (healthy) at t=10
        assert fake_clock.sleeps == [10.0]
        assert fake_clock.now == 10.0

    @pytest.mark.asyncio
    async def test_promotion_leaves_no_canary_behind(
        self, deployed, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        services = manifest_services(remote_host)
        assert "web-canary" not in services
        assert services["web"]["image"] == "ssd-myapp-web:2"
        assert services["worker"]["image"] == "ssd-myapp-worker:1"
        assert "web-canary" not in remote_host.containers
        assert remote_host.ran("docker rm -f web-canary")

    @pytest.mark.asyncio
    async def test_canary_starts_without_dependencies_before_primary_recreate(
        self, deployed, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        canary_start = "cd /stacks/myapp && docker compose up -d --no-deps web-canary"
        recreate = "cd /stacks/myapp && docker compose up -d --no-deps --force-recreate web"
        assert canary_start in remote_host.interactive
        assert recreate in remote_host.interactive
        assert remote_host.interactive.index(canary_start) < remote_host.interactive.index(
            recreate
        )
        assert remote_host.ran("container_name: web-canary")

    @pytest.mark.asyncio
    async def test_state_history(
        self, deployed, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        assert deployment.history == [
            DeployState.IDLE,
            DeployState.BUILDING,
            DeployState.CANARY_ELIGIBILITY,
            DeployState.CANARY_STARTING,
            DeployState.CANARY_HEALTH_CHECK,
            DeployState.PROMOTING,
            DeployState.CLEANUP,
            DeployState.DONE,
        ]


def written_canary_entry(remote_host):
    """The web-canary entry of the manifest written to start the canary."""
    for cmd in remote_host.commands:
        if cmd.startswith("printf %s ") and "container_name: web-canary" in cmd:
            return yaml.safe_load(shlex.split(cmd)[2])["services"]["web-canary"]
    return None


class TestCanaryConfiguration:
    """The canary runs the configuration that promotion writes."""

    @pytest.fixture
    def deployed_without_healthcheck(self, sample_config, remote_host):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        data = yaml.safe_load(remote_host.manifest())
        del data["services"]["web"]["healthcheck"]
        data["services"]["web"]["labels"].append("traefik.http.routers.legacy.priority=5")
        remote_host.set_manifest(yaml.dump(data, sort_keys=False))

    @pytest.mark.asyncio
    async def test_added_healthcheck_is_on_canary(
        self, deployed_without_healthcheck, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert outcome.canary == CanaryOutcome.PROMOTED
        canary = written_canary_entry(remote_host)
        assert canary["healthcheck"]["test"] == [
            "CMD",
            "sh",
            "-c",
            "curl -f http://localhost:3000/health",
        ]
        assert canary["image"] == "ssd-myapp-web:2"
        assert manifest_services(remote_host)["web"]["healthcheck"] == canary["healthcheck"]

    @pytest.mark.asyncio
    async def test_canary_shares_primary_routing_labels(
        self, deployed_without_healthcheck, sample_config, remote_host, fake_clock, lock_dir
    ):
        primary_labels = manifest_services(remote_host)["web"]["labels"]
        remote_host.set_states("web-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        assert written_canary_entry(remote_host)["labels"] == primary_labels


class TestCanaryRollback:
    """Failures before promotion restore the exact pre-deploy manifest."""

    @pytest.fixture
    def snapshot(self, sample_config, remote_host):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        return remote_host.manifest()

    @pytest.mark.asyncio
    async def test_unhealthy_canary_rolls_back(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("starting"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert outcome.stage == DeployStage.CANARY_HEALTH
        assert isinstance(outcome.cause, CanaryHealthTimeoutError)
        assert outcome.primary_touched is False
        assert outcome.canary == CanaryOutcome.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_manifest_restored_byte_for_byte(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("unhealthy"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        assert remote_host.manifest() == snapshot

    @pytest.mark.asyncio
    async def test_deadline_is_retries_times_interval_plus_buffer(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("starting"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        # 2 retries * 10s + 30s
        assert deployment.session.deadline == 50.0
        assert fake_clock.now == 50.0
        assert deployment.session.polls == 6
        assert deployment.session.last_state == "running/starting"

    @pytest.mark.asyncio
    async def test_primary_never_touched(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("starting"))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        await deployment.run()

        assert not remote_host.ran("--force-recreate")
        assert "web" in remote_host.running
        assert remote_host.ran("docker rm -f web-canary")
        assert "web-canary" not in remote_host.running
        assert DeployState.ROLLING_BACK in deployment.history
        assert deployment.state == DeployState.FAILED

    @pytest.mark.asyncio
    async def test_invalid_canary_manifest_restores_snapshot(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.invalid_compose = True
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert isinstance(outcome.cause, RemoteExecutionError)
        assert outcome.primary_touched is False
        assert remote_host.manifest() == snapshot
        # Never started, so nothing to remove
        assert not remote_host.ran("docker rm -f web-canary")

    @pytest.mark.asyncio
    async def test_dependency_failure_reports_start_stage(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.running.discard("db")
        remote_host.set_states("db", exited_state(1))
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert outcome.stage == DeployStage.START
        assert isinstance(outcome.cause, DependencyError)
        assert outcome.primary_touched is False
        assert remote_host.manifest() == snapshot
        assert not remote_host.ran("up -d --no-deps web-canary")

    @pytest.mark.asyncio
    async def test_failed_canary_removal_still_restores_manifest(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("unhealthy"))
        remote_host.fail_on["docker rm -f web-canary"] = RemoteExecutionError(
            "transient daemon busy"
        )
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert isinstance(outcome.cause, CanaryHealthTimeoutError)
        assert remote_host.manifest() == snapshot
        assert outcome.details["canary_remove_error"] == "transient daemon busy"
        assert "rollback_error" not in outcome.details
        # Removal is tried again during cleanup
        removals = [cmd for cmd in remote_host.commands if cmd == "docker rm -f web-canary"]
        assert len(removals) == 2
        assert deployment.state == DeployState.FAILED

    @pytest.mark.asyncio
    async def test_failed_snapshot_write_is_reported(
        self, snapshot, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_states("web-canary", health_state("starting"))

        async def sleep_then_break_writes(seconds):
            remote_host.fail_on["compose.yaml"] = RemoteExecutionError("disk full")
            await fake_clock.sleep(seconds)

        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)
        deployment.poller.sleep = sleep_then_break_writes

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert isinstance(outcome.cause, CanaryHealthTimeoutError)
        assert outcome.details["rollback_error"] == "disk full"
        assert outcome.primary_touched is False
        assert "web-canary" not in remote_host.running
        assert deployment.state == DeployState.FAILED


class TestCancellation:
    """Interrupting a deploy still rolls back and cleans up."""

    @pytest.mark.asyncio
    async def test_cancel_during_health_check(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        snapshot = remote_host.manifest()
        remote_host.set_states("web-canary", health_state("starting"))

        async def cancelled_sleep(seconds):
            raise asyncio.CancelledError()

        deployment = CanaryDeployment(
            sample_config.get_service("web"),
            remote_host,
            siblings=sample_config.all_services(),
            dependencies=sample_config.dependencies_of("web"),
            lock_dir=lock_dir,
            clock=fake_clock,
            sleep=cancelled_sleep,
        )

        with pytest.raises(asyncio.CancelledError):
            await deployment.run()

        assert deployment.session.outcome == CanaryOutcome.ABORTED
        assert remote_host.manifest() == snapshot
        assert remote_host.ran("docker rm -f web-canary")
        assert deployment.state == DeployState.FAILED

        # Lock was released on the way out
        acquire(STACK, lock_dir).release()

    @pytest.mark.asyncio
    async def test_cancel_again_during_canary_removal(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        snapshot = remote_host.manifest()
        remote_host.set_states("web-canary", health_state("starting"))
        remote_host.fail_on["docker rm -f web-canary"] = asyncio.CancelledError()

        async def cancelled_sleep(seconds):
            raise asyncio.CancelledError()

        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)
        deployment.poller.sleep = cancelled_sleep

        with pytest.raises(asyncio.CancelledError):
            await deployment.run()

        assert remote_host.manifest() == snapshot
        assert "web-canary" not in manifest_services(remote_host)
        acquire(STACK, lock_dir).release()


class TestFailures:
    """Failures outside the canary path."""

    @pytest.mark.asyncio
    async def test_build_failure(self, sample_config, remote_host, fake_clock, lock_dir):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        snapshot = remote_host.manifest()
        remote_host.fail_on["docker build"] = RemoteExecutionError("build failed")
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert outcome.stage == DeployStage.BUILD
        assert outcome.primary_touched is False
        assert outcome.canary is None
        assert remote_host.manifest() == snapshot
        assert remote_host.removed == ["/tmp/tmp.ssd1"]
        assert "failed at stage build" in outcome.describe()

    @pytest.mark.asyncio
    async def test_malformed_image_tag_fails_build_stage(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_manifest("services:\n  web:\n    image: nginx:latest\n")
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert outcome.stage == DeployStage.BUILD
        assert not remote_host.ran("docker build")

    @pytest.mark.asyncio
    async def test_lock_conflict(self, sample_config, remote_host, fake_clock, lock_dir):
        deployment = make_deployment(sample_config, "web", remote_host, fake_clock, lock_dir)

        with acquire(STACK, lock_dir):
            outcome = await deployment.run()

        assert isinstance(outcome, DeployFailure)
        assert outcome.stage == DeployStage.LOCK
        assert remote_host.commands == []

    def test_invalid_transition_rejected(self, sample_config, remote_host, lock_dir):
        deployment = CanaryDeployment(sample_config.get_service("web"), remote_host)

        with pytest.raises(InvalidTransitionError):
            deployment._transition(DeployState.PROMOTING)
        assert deployment.state == DeployState.IDLE


class TestStartPaths:
    """Explicit strategies and the non-canary paths."""

    @pytest.mark.asyncio
    async def test_rollout_strategy_uses_docker_rollout(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 3})
        deployment = make_deployment(sample_config, "worker", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert outcome.strategy == "rollout"
        assert outcome.new_version == 4
        assert remote_host.ran("cd /stacks/myapp && docker rollout worker")
        assert not remote_host.ran("worker-canary")
        assert manifest_services(remote_host)["worker"]["image"] == "ssd-myapp-worker:4"

    @pytest.mark.asyncio
    async def test_rollout_strategy_first_start_uses_compose(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        remote_host.set_manifest(generate_manifest(sample_config.all_services(), STACK, {}))
        deployment = make_deployment(sample_config, "worker", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert not remote_host.ran("docker rollout")
        assert "cd /stacks/myapp && docker compose up -d worker" in remote_host.interactive

    @pytest.mark.asyncio
    async def test_recreate_strategy_skips_canary(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        service = sample_config.get_service("web").model_copy(
            update={"deploy_strategy": DeployStrategy.RECREATE}
        )
        deployment = make_deployment(
            sample_config, "web", remote_host, fake_clock, lock_dir, service=service
        )

        outcome = await deployment.run()

        assert outcome.strategy == "recreate"
        assert "cd /stacks/myapp && docker compose up -d --force-recreate web" in (
            remote_host.interactive
        )
        assert not remote_host.ran("web-canary")

    @pytest.mark.asyncio
    async def test_no_siblings_means_no_canary(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        deployment = make_deployment(
            sample_config, "web", remote_host, fake_clock, lock_dir, siblings=None
        )

        outcome = await deployment.run()

        assert outcome.strategy == "direct"
        assert outcome.new_version == 2
        assert not remote_host.ran("web-canary")

    @pytest.mark.asyncio
    async def test_build_only_starts_nothing(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        deployment = make_deployment(
            sample_config, "web", remote_host, fake_clock, lock_dir, build_only=True
        )

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert outcome.strategy == "build-only"
        assert outcome.new_version == 2
        assert not remote_host.ran("up -d")
        assert manifest_services(remote_host)["web"]["image"] == "ssd-myapp-web:2"

    @pytest.mark.asyncio
    async def test_prebuilt_service_is_pulled(
        self, sample_config, remote_host, fake_clock, lock_dir
    ):
        deploy_existing_stack(remote_host, sample_config, {"web": 1, "worker": 1})
        remote_host.set_states("db-canary", health_state("healthy"))
        deployment = make_deployment(sample_config, "db", remote_host, fake_clock, lock_dir)

        outcome = await deployment.run()

        assert isinstance(outcome, DeploySuccess)
        assert outcome.new_version is None
        assert "docker pull postgres:16" in remote_host.interactive
        assert not remote_host.ran("docker build")
        assert manifest_services(remote_host)["db"]["image"] == "postgres:16"
