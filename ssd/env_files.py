"""
Per-service environment files on the server.

Each service reads ``{stack}/{service}.env``. Edits keep every other line
(comments included) as it was and replace an existing key in place.
"""

import logging
import re
from typing import List, Tuple

from ssd.config.settings import ServiceConfig
from ssd.deployment.containers import ContainerOperations
from ssd.utils.log_sanitizer import mask_env_value

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_key(key: str) -> str:
    if not _KEY_RE.match(key):
        raise ValueError(f"invalid environment variable name: {key!r}")
    return key


def parse_assignment(assignment: str) -> Tuple[str, str]:
    """Split ``KEY=VALUE``; the value may itself contain ``=``."""
    if "=" not in assignment:
        raise ValueError(f"expected KEY=VALUE, got {assignment!r}")
    key, value = assignment.split("=", 1)
    if "\n" in value or "\r" in value:
        raise ValueError("environment values cannot contain newlines")
    return validate_key(key.strip()), value


def _line_key(line: str) -> str:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return ""
    key = stripped.split("=", 1)[0].strip()
    if key.startswith("export "):
        key = key[len("export "):].strip()
    return key


def set_variable(content: str, key: str, value: str) -> str:
    """Set a key, replacing its first occurrence or appending it."""
    lines = content.splitlines()
    replaced = False
    result: List[str] = []
    for line in lines:
        if _line_key(line) == key:
            if not replaced:
                result.append(f"{key}={value}")
                replaced = True
            continue
        result.append(line)
    if not replaced:
        result.append(f"{key}={value}")
    return "\n".join(result) + "\n"


def remove_variable(content: str, key: str) -> Tuple[str, bool]:
    """Remove every line setting ``key``; returns (content, whether anything was removed)."""
    lines = content.splitlines()
    kept = [line for line in lines if _line_key(line) != key]
    removed = len(kept) != len(lines)
    return ("\n".join(kept) + "\n") if kept else "", removed


def list_variables(content: str, reveal: bool = False) -> List[str]:
    """Assignment lines of an env file, masked unless ``reveal``."""
    lines = [line for line in content.splitlines() if _line_key(line)]
    if reveal:
        return lines
    return [mask_env_value(line) for line in lines]


class EnvFileManager:
    """Reads and edits the env file of one service."""

    def __init__(self, containers: ContainerOperations, service: ServiceConfig) -> None:
        self.containers = containers
        self.service = service

    async def list(self, reveal: bool = False) -> List[str]:
        content = await self.containers.read_env_file(self.service.name)
        return list_variables(content, reveal)

    async def set(self, key: str, value: str) -> None:
        validate_key(key)
        content = await self.containers.read_env_file(self.service.name)
        await self.containers.write_env_file(self.service.name, set_variable(content, key, value))
        logger.info(f"Set {key} for {self.service.name}")

    async def remove(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            False when the key was not set (the file is left alone)
        """
        validate_key(key)
        content = await self.containers.read_env_file(self.service.name)
        updated, removed = remove_variable(content, key)
        if not removed:
            logger.info(f"{key} not set for {self.service.name}")
            return False
        await self.containers.write_env_file(self.service.name, updated)
        logger.info(f"Removed {key} from {self.service.name}")
        return True
