"""
Tests for single-service and deploy-all scheduling.
"""

from unittest.mock import Mock

import pytest
import yaml

from conftest import STACK, health_state
from ssd.deployment.lock import acquire
from ssd.deployment.scheduler import DependencyScheduler
from ssd.exceptions import RemoteExecutionError
from ssd.models.deployment import DeployFailure, DeployStage, DeploySuccess


class TestDependencyScheduler:
    """Test deploy ordering across services."""

    @pytest.fixture
    def factory(self, remote_host):
        return Mock(return_value=remote_host)

    @pytest.fixture
    def scheduler(self, sample_config, factory, fake_clock, lock_dir):
        return DependencyScheduler(
            sample_config,
            remote_factory=factory,
            base_dir="/src/myapp",
            lock_dir=lock_dir,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

    def test_one_remote_per_server(self, scheduler, sample_config, factory):
        web = sample_config.get_service("web")
        db = sample_config.get_service("db")

        assert scheduler.remote_for(web) is scheduler.remote_for(db)
        factory.assert_called_once_with("myserver")

    @pytest.mark.asyncio
    async def test_deploy_service_starts_dependency(self, scheduler, remote_host):
        remote_host.set_states("db", health_state("healthy"))

        outcome = await scheduler.deploy_service("web")

        assert isinstance(outcome, DeploySuccess)
        assert outcome.new_version == 1
        assert "cd /stacks/myapp && docker compose up -d db" in remote_host.interactive

    @pytest.mark.asyncio
    async def test_deploy_all_builds_everything_before_starting(self, scheduler, remote_host):
        outcomes = await scheduler.deploy_all()

        assert [o.service for o in outcomes] == ["db", "web", "worker"]
        assert all(isinstance(o, DeploySuccess) for o in outcomes)
        assert [o.new_version for o in outcomes] == [None, 1, 1]

        first_start = next(
            i for i, cmd in enumerate(remote_host.commands) if "compose up -d" in cmd
        )
        last_build = max(
            i
            for i, cmd in enumerate(remote_host.commands)
            if "docker build" in cmd or "docker pull" in cmd
        )
        assert last_build < first_start

    @pytest.mark.asyncio
    async def test_deploy_all_starts_in_name_order(self, scheduler, remote_host):
        await scheduler.deploy_all()

        starts = [cmd for cmd in remote_host.interactive if "compose up -d" in cmd]
        assert starts == [
            "cd /stacks/myapp && docker compose up -d db",
            "cd /stacks/myapp && docker compose up -d web",
            "cd /stacks/myapp && docker compose up -d worker",
        ]

    @pytest.mark.asyncio
    async def test_deploy_all_records_versions(self, scheduler, remote_host):
        await scheduler.deploy_all()

        services = yaml.safe_load(remote_host.manifest())["services"]
        assert services["web"]["image"] == "ssd-myapp-web:1"
        assert services["worker"]["image"] == "ssd-myapp-worker:1"
        assert services["db"]["image"] == "postgres:16"

    @pytest.mark.asyncio
    async def test_deploy_all_rolls_out_running_service(self, scheduler, remote_host):
        await scheduler.deploy_all()
        remote_host.commands.clear()
        remote_host.interactive.clear()

        outcomes = await scheduler.deploy_all()

        worker = outcomes[-1]
        assert worker.strategy == "rollout"
        assert worker.new_version == 2
        assert remote_host.ran("cd /stacks/myapp && docker rollout worker")

    @pytest.mark.asyncio
    async def test_build_failure_starts_nothing(self, scheduler, remote_host):
        remote_host.fail_on["ssd-myapp-web:1"] = RemoteExecutionError("build failed")

        outcomes = await scheduler.deploy_all()

        assert len(outcomes) == 1
        assert isinstance(outcomes[0], DeployFailure)
        assert outcomes[0].service == "web"
        assert outcomes[0].stage == DeployStage.BUILD
        assert not remote_host.ran("compose up -d")
        assert not remote_host.ran("ssd-myapp-worker:1")

    @pytest.mark.asyncio
    async def test_start_failure_is_reported(self, scheduler, remote_host):
        remote_host.fail_on["compose up -d web"] = RemoteExecutionError("port in use")

        outcomes = await scheduler.deploy_all()

        web = outcomes[1]
        assert isinstance(web, DeployFailure)
        assert web.stage == DeployStage.START
        assert web.primary_touched is True
        assert isinstance(outcomes[2], DeploySuccess)

    @pytest.mark.asyncio
    async def test_deploy_all_refuses_when_stack_locked(self, scheduler, remote_host, lock_dir):
        with acquire(STACK, lock_dir):
            outcomes = await scheduler.deploy_all()

        assert len(outcomes) == 1
        assert outcomes[0].stage == DeployStage.LOCK
        assert remote_host.commands == []

    @pytest.mark.asyncio
    async def test_deploy_all_releases_locks(self, scheduler, lock_dir):
        await scheduler.deploy_all()

        acquire(STACK, lock_dir).release()
