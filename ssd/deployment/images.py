"""
Image production on the remote host.

Built services are synced into a fresh ``mktemp -d`` workspace and built
there; pre-built services are pulled as-is. The workspace never outlives the
attempt.
"""

import logging
from pathlib import Path
from typing import Optional

from ssd.config.settings import ServiceConfig
from ssd.deployment.containers import ContainerOperations
from ssd.exceptions import RemoteExecutionError
from ssd.logging_config import log_deploy_operation
from ssd.remote.operations import RemoteOperations

logger = logging.getLogger(__name__)


class ImageBuilder:
    """Decides build-vs-pull and produces the image for one deploy."""

    def __init__(
        self,
        remote: RemoteOperations,
        containers: ContainerOperations,
        base_dir: Optional[str] = None,
    ) -> None:
        """
        Initialize the builder.

        Args:
            remote: Transport used to sync the build context
            containers: Docker operations for the target stack
            base_dir: Directory local build contexts are relative to
        """
        self.remote = remote
        self.containers = containers
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()

    def local_context(self, service: ServiceConfig) -> str:
        context = Path(service.context)
        if not context.is_absolute():
            context = self.base_dir / context
        return str(context)

    async def resolve(self, service: ServiceConfig, version: Optional[int]) -> str:
        """
        Produce the image for a deploy.

        Args:
            service: Service being deployed
            version: Version to tag a built image with (unused for pre-built)

        Returns:
            Image reference now present on the host

        Raises:
            RemoteExecutionError: If the pull, sync or build fails
        """
        if service.is_prebuilt:
            image = service.image_ref(None)
            await self.containers.pull_image(image)
            log_deploy_operation("pull", service.name, {"image": image})
            return image

        if version is None:
            raise ValueError(f"a version is required to build {service.name}")

        tag = service.image_ref(version)
        workspace = await self.containers.make_temp_dir()
        logger.debug(f"Created build workspace {workspace} for {service.name}")
        try:
            await self.remote.sync_tree(self.local_context(service), workspace)
            await self.containers.build_image(
                workspace, tag, service.dockerfile, service.target
            )
        finally:
            await self._remove_workspace(workspace)

        log_deploy_operation("build", service.name, {"image": tag})
        return tag

    async def _remove_workspace(self, workspace: str) -> None:
        try:
            await self.containers.cleanup(workspace)
        except RemoteExecutionError as e:
            # A failed removal must not mask the build result
            logger.warning(f"Failed to remove build workspace {workspace}: {e}")
