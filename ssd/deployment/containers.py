"""
Container, image and stack operations on the remote host.

Everything here is a thin docker / docker compose command issued through a
RemoteOperations transport, scoped to one stack directory. Orchestration
decisions live in the canary state machine and the scheduler, not here.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from ssd.exceptions import RemoteExecutionError
from ssd.remote.operations import RemoteOperations
from ssd.utils.compose_command import (
    MANIFEST_FILENAME,
    compose_cmd,
    docker_cmd,
    join_commands,
    manifest_path,
    quote,
)
from ssd.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

# Workspaces are only ever created by mktemp -d
SAFE_CLEANUP_PREFIX = "/tmp/"


class ContainerOperations:
    """
    Handles docker operations for one stack directory.

    Provides manifest reads/writes, image pull/build, service start
    variants and container state inspection.
    """

    def __init__(self, remote: RemoteOperations, stack_path: str) -> None:
        """
        Initialize container operations.

        Args:
            remote: Transport to the server
            stack_path: Stack directory on the server
        """
        self.remote = remote
        self.stack_path = stack_path.rstrip("/") or "/"

    @property
    def manifest_path(self) -> str:
        return manifest_path(self.stack_path)

    def env_file_path(self, service: str) -> str:
        return f"{self.stack_path}/{service}.env"

    # Stack and manifest

    async def stack_exists(self) -> bool:
        """True when the stack directory already has a compose.yaml."""
        output = await self.remote.run_command(
            f"test -f {quote(self.manifest_path)} && echo yes || echo no"
        )
        return output.strip() == "yes"

    async def create_stack(self) -> None:
        await self.remote.run_command(f"mkdir -p {quote(self.stack_path)}")

    async def read_manifest(self) -> str:
        """Read compose.yaml; a missing file reads as empty text."""
        return await self.remote.run_command(
            f"cat {quote(self.manifest_path)} 2>/dev/null || true"
        )

    async def write_manifest(self, content: str, validate: bool = True) -> None:
        """
        Write compose.yaml atomically.

        Args:
            content: Exact manifest text to write
            validate: Run ``docker compose config -q`` on the temp file before
                moving it into place
        """
        await self.write_file(self.manifest_path, content, validate_compose=validate)

    async def write_file(self, path: str, content: str, validate_compose: bool = False) -> None:
        """Write a file via temp file + mv so readers never see a partial file."""
        tmp_path = f"{path}.tmp"
        steps = [f"printf %s {quote(content)} > {quote(tmp_path)}"]
        if validate_compose:
            steps.append(
                f"cd {quote(self.stack_path)} && docker compose -f {quote(tmp_path)} config -q"
            )
        steps.append(f"mv {quote(tmp_path)} {quote(path)}")

        try:
            await self.remote.run_command(join_commands(steps))
        except RemoteExecutionError:
            await self.remote.run_command(f"rm -f {quote(tmp_path)}")
            raise

    async def ensure_network(self, name: str) -> None:
        """Create a docker network unless it already exists."""
        await self.remote.run_command(
            f"{docker_cmd('network', 'inspect', name)} >/dev/null 2>&1 || "
            f"{docker_cmd('network', 'create', name)}"
        )

    async def create_env_files(self, services: Iterable[str]) -> None:
        """Create an empty ``{service}.env`` per service, never overwriting."""
        paths = " ".join(quote(self.env_file_path(s)) for s in services)
        if not paths:
            return
        await self.remote.run_command(f'for f in {paths}; do [ -f "$f" ] || touch "$f"; done')

    # Container state

    async def is_service_running(self, service: str) -> bool:
        """True when compose reports a running container for the service."""
        output = await self.remote.run_command(
            compose_cmd(self.stack_path, "ps", "--status", "running", "--services")
        )
        return service in [line.strip() for line in output.splitlines()]

    async def container_state(self, container: str) -> Dict[str, Any]:
        """``.State`` of a container by name, as reported by docker inspect."""
        output = await self.remote.run_command(
            docker_cmd("inspect", "--format", "{{json .State}}", container)
        )
        return _parse_state(output)

    async def service_state(self, service: str) -> Dict[str, Any]:
        """``.State`` of the compose-managed container of a service."""
        container_id = (
            await self.remote.run_command(compose_cmd(self.stack_path, "ps", "-a", "-q", service))
        ).strip()
        if not container_id:
            raise RemoteExecutionError(f"no container found for service {service}")
        return await self.container_state(container_id.splitlines()[0])

    async def image_exists(self, image: str) -> bool:
        output = await self.remote.run_command(
            f"{docker_cmd('image', 'inspect', image)} >/dev/null 2>&1 && echo yes || echo no"
        )
        return output.strip() == "yes"

    # Images

    async def pull_image(self, image: str) -> None:
        logger.info(f"Pulling image {image}")
        await self.remote.run_interactive(docker_cmd("pull", image))

    async def build_image(
        self, workspace: str, tag: str, dockerfile: str, target: Optional[str] = None
    ) -> None:
        """Build an image from a synchronized workspace."""
        if dockerfile.startswith("./"):
            dockerfile = dockerfile[2:]
        args = ["build", "-t", tag, "-f", dockerfile]
        if target:
            args.extend(["--target", target])
        args.append(".")
        logger.info(f"Building image {tag}")
        await self.remote.run_interactive(f"cd {quote(workspace)} && {docker_cmd(*args)}")

    # Service lifecycle

    async def start_service(
        self, service: str, no_deps: bool = False, force_recreate: bool = False
    ) -> None:
        """``docker compose up -d`` for one service."""
        args: List[str] = ["up", "-d"]
        if no_deps:
            args.append("--no-deps")
        if force_recreate:
            args.append("--force-recreate")
        args.append(service)
        await self.remote.run_interactive(compose_cmd(self.stack_path, *args))

    async def recreate_service(self, service: str) -> None:
        """Recreate only this service's container, leaving others alone."""
        await self.start_service(service, no_deps=True, force_recreate=True)

    async def rollout_service(self, service: str) -> None:
        """Hand the start to the docker rollout plugin."""
        await self.remote.run_interactive(
            f"cd {quote(self.stack_path)} && {docker_cmd('rollout', service)}"
        )

    async def remove_container(self, container: str) -> None:
        """Stop and remove a container by name; a missing container is not an error."""
        await self.remote.run_command(docker_cmd("rm", "-f", container))

    async def restart_service(self, service: str) -> None:
        await self.remote.run_interactive(compose_cmd(self.stack_path, "restart", service))

    # Workspaces

    async def make_temp_dir(self) -> str:
        output = await self.remote.run_command("mktemp -d")
        path = output.strip()
        if not path:
            raise RemoteExecutionError("mktemp -d returned no path")
        return path

    async def cleanup(self, path: str) -> None:
        """Remove a temp workspace; anything outside /tmp is refused."""
        if not path.startswith(SAFE_CLEANUP_PREFIX) or ".." in path:
            logger.warning(f"Refusing to remove {sanitize_for_log(path)}: not a temp workspace")
            return
        await self.remote.run_command(f"rm -rf {quote(path)}")

    # Inspection

    async def status(self) -> str:
        return await self.remote.run_command(compose_cmd(self.stack_path, "ps"))

    async def logs(self, service: str, follow: bool = False, tail: int = 100) -> None:
        args: List[str] = ["logs"]
        if follow:
            args.append("-f")
        if tail > 0:
            args.extend(["--tail", str(tail)])
        args.append(service)
        await self.remote.run_interactive(compose_cmd(self.stack_path, *args))

    # Environment files

    async def read_env_file(self, service: str) -> str:
        return await self.remote.run_command(
            f"cat {quote(self.env_file_path(service))} 2>/dev/null || true"
        )

    async def write_env_file(self, service: str, content: str) -> None:
        await self.create_stack()
        await self.write_file(self.env_file_path(service), content)


def _parse_state(output: str) -> Dict[str, Any]:
    try:
        state = json.loads(output.strip())
    except json.JSONDecodeError:
        raise RemoteExecutionError(
            f"unexpected docker inspect output: {sanitize_for_log(output)}"
        )
    if not isinstance(state, dict):
        raise RemoteExecutionError(
            f"unexpected docker inspect output: {sanitize_for_log(output)}"
        )
    return state


__all__ = ["ContainerOperations", "MANIFEST_FILENAME"]
