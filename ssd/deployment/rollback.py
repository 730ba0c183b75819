"""
Manual rollback to the previous version.

Distinct from the automatic canary rollback: this is an operator action that
moves a running service back one version and recreates its container.
"""

import logging
from typing import Optional

from ssd.config.settings import ServiceConfig
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.lock import acquire
from ssd.exceptions import NoPriorVersionError
from ssd.logging_config import log_deploy_operation
from ssd.manifest import parse, render, set_service_image
from ssd.remote.operations import RemoteOperations
from ssd.version_resolver import resolve_version

logger = logging.getLogger(__name__)


class RollbackController:
    """Reverts a service to the version before the one currently deployed."""

    def __init__(
        self,
        remote: RemoteOperations,
        containers: Optional[ContainerOperations] = None,
        lock_dir: Optional[str] = None,
    ) -> None:
        self.remote = remote
        self.containers = containers
        self.lock_dir = lock_dir

    def _containers_for(self, service: ServiceConfig) -> ContainerOperations:
        return self.containers or ContainerOperations(self.remote, service.stack_path)

    async def rollback(self, service: ServiceConfig) -> int:
        """
        Roll a service back one version.

        Args:
            service: Service to roll back

        Returns:
            The version now deployed

        Raises:
            NoPriorVersionError: If the service runs a pre-built image, the
                current version is 1 or lower, or the previous image is no
                longer on the host
            ConcurrentDeployError: If a deploy holds the stack lock
            RemoteExecutionError: If a remote command fails
        """
        if service.is_prebuilt:
            raise NoPriorVersionError(
                f"{service.name} uses pre-built image {service.image} and has no version "
                "history; change the image in ssd.yaml and deploy instead"
            )

        containers = self._containers_for(service)
        with acquire(service.stack_path, self.lock_dir):
            manifest_text = await containers.read_manifest()
            info = resolve_version(manifest_text, service.name, service.image_name)
            if info.current <= 1:
                raise NoPriorVersionError(
                    f"{service.name} is at version {info.current}; no previous version to roll back to"
                )

            previous = info.current - 1
            previous_image = service.image_ref(previous)
            if not await containers.image_exists(previous_image):
                raise NoPriorVersionError(
                    f"image {previous_image} for version {previous} is no longer on the server"
                )

            logger.info(f"Rolling back {service.name} from version {info.current} to {previous}")
            doc = set_service_image(parse(manifest_text), service.name, previous_image)
            await containers.write_manifest(render(doc))
            await containers.recreate_service(service.name)

        log_deploy_operation(
            "rollback", service.name, {"from": info.current, "to": previous}, "WARNING"
        )
        return previous
