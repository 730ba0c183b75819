"""
Builders for the remote docker and docker compose command lines.

Every value interpolated into a command is shell-quoted; the result is a
single string handed to the remote shell.
"""

import shlex
from typing import Iterable

MANIFEST_FILENAME = "compose.yaml"


def quote(value: str) -> str:
    """Shell-quote a single value."""
    return shlex.quote(str(value))


def compose_cmd(stack_path: str, *args: str) -> str:
    """
    Build a docker compose command that runs inside a stack directory.

    Example:
        compose_cmd("/stacks/app", "up", "-d", "web")
        Returns: "cd /stacks/app && docker compose up -d web"

    Args:
        stack_path: Remote stack directory holding compose.yaml
        *args: Arguments appended to ``docker compose``

    Returns:
        Complete command as a string
    """
    parts = ["docker", "compose"] + [quote(a) for a in args]
    return f"cd {quote(stack_path)} && {' '.join(parts)}"


def docker_cmd(*args: str) -> str:
    """
    Build a plain docker command.

    Args:
        *args: Arguments appended to ``docker``

    Returns:
        Complete command as a string
    """
    return " ".join(["docker"] + [quote(a) for a in args])


def join_commands(commands: Iterable[str]) -> str:
    """Chain commands so the sequence stops at the first failure."""
    return " && ".join(commands)


def manifest_path(stack_path: str) -> str:
    """Path of the manifest file inside a stack directory."""
    return f"{stack_path.rstrip('/')}/{MANIFEST_FILENAME}"
