"""
One-time server provisioning.

Installs docker when missing and runs Traefik in /stacks/traefik. Every step
is idempotent, so provisioning an already provisioned server is harmless.
"""

import logging
import re
from typing import Any, Dict

import yaml

from ssd.manifest import TRAEFIK_NETWORK
from ssd.remote.operations import RemoteOperations
from ssd.utils.compose_command import quote

logger = logging.getLogger(__name__)

TRAEFIK_STACK = "/stacks/traefik"
TRAEFIK_IMAGE = "traefik:3"

_EMAIL_RE = re.compile(r"^[^@\s'\"`$;|&<>\\]+@[^@\s'\"`$;|&<>\\]+\.[A-Za-z]{2,}$")


def generate_traefik_manifest(email: str) -> str:
    """
    Render the Traefik compose file.

    Traefik v3 on ports 80/443, docker provider limited to labelled
    containers, and a ``letsencrypt`` HTTP-challenge resolver.

    Args:
        email: ACME registration email

    Returns:
        compose.yaml text
    """
    data: Dict[str, Any] = {
        "services": {
            "traefik": {
                "image": TRAEFIK_IMAGE,
                "restart": "unless-stopped",
                "ports": ["80:80", "443:443"],
                "command": [
                    "--api.dashboard=true",
                    "--providers.docker=true",
                    "--providers.docker.exposedbydefault=false",
                    "--entrypoints.web.address=:80",
                    "--entrypoints.websecure.address=:443",
                    f"--certificatesresolvers.letsencrypt.acme.email={email}",
                    "--certificatesresolvers.letsencrypt.acme.storage=/acme.json",
                    "--certificatesresolvers.letsencrypt.acme.httpchallenge.entrypoint=web",
                ],
                "networks": [TRAEFIK_NETWORK],
                "volumes": [
                    "/var/run/docker.sock:/var/run/docker.sock:ro",
                    f"{TRAEFIK_STACK}/acme.json:/acme.json",
                ],
            }
        },
        "networks": {TRAEFIK_NETWORK: {"external": True}},
    }
    return yaml.dump(data, default_flow_style=False, sort_keys=False, width=4096)


class Provisioner:
    """Runs the provisioning steps against one server."""

    def __init__(self, remote: RemoteOperations) -> None:
        self.remote = remote

    async def provision(self, email: str) -> None:
        """
        Provision the server.

        Args:
            email: Email for Let's Encrypt registration

        Raises:
            ValueError: If the email is not a plain address
            RemoteExecutionError: If a step fails
        """
        if not email or not _EMAIL_RE.match(email):
            raise ValueError(f"invalid email address: {email!r}")

        logger.info("Step 1/6: checking docker")
        await self._install_docker()

        logger.info(f"Step 2/6: creating {TRAEFIK_NETWORK} network")
        await self.remote.run_command(f"docker network create {TRAEFIK_NETWORK} 2>/dev/null || true")

        logger.info(f"Step 3/6: creating {TRAEFIK_STACK}")
        await self.remote.run_command(f"mkdir -p {TRAEFIK_STACK}")

        logger.info("Step 4/6: creating acme.json")
        acme = f"{TRAEFIK_STACK}/acme.json"
        await self.remote.run_command(f"{{ test -f {acme} || touch {acme}; }} && chmod 600 {acme}")

        logger.info("Step 5/6: writing Traefik compose.yaml")
        await self._write_manifest(generate_traefik_manifest(email))

        logger.info("Step 6/6: starting Traefik")
        await self.remote.run_interactive(f"cd {TRAEFIK_STACK} && docker compose up -d")

    async def _install_docker(self) -> None:
        output = await self.remote.run_command("which docker || true")
        if output.strip():
            logger.info("docker already installed")
            return
        await self.remote.run_interactive("which docker || curl -fsSL https://get.docker.com | sh")

    async def _write_manifest(self, content: str) -> None:
        tmp_path = f"{TRAEFIK_STACK}/compose.yaml.tmp"
        final_path = f"{TRAEFIK_STACK}/compose.yaml"
        await self.remote.run_command(f"printf %s {quote(content)} > {tmp_path}")
        await self.remote.run_command(f"mv {tmp_path} {final_path}")
