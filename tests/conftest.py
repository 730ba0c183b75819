"""
Pytest configuration and fixtures for ssd tests.

FakeRemoteHost stands in for a server reached over ssh: it understands the
docker / compose / shell commands ContainerOperations issues and keeps the
resulting state (files, images, running services, container states) in memory.
"""

import json
import re
import shlex
from typing import Any, Dict, List, Optional

import pytest

from ssd.config.settings import RootConfig
from ssd.exceptions import RemoteExecutionError

STACK = "/stacks/myapp"


def running_state() -> Dict[str, Any]:
    return {"Status": "running", "Running": True, "ExitCode": 0}


def health_state(status: str) -> Dict[str, Any]:
    return {"Status": "running", "Running": True, "ExitCode": 0, "Health": {"Status": status}}


def exited_state(code: int) -> Dict[str, Any]:
    return {"Status": "exited", "Running": False, "ExitCode": code}


class FakeRemoteHost:
    """In-memory server implementing the RemoteOperations protocol."""

    def __init__(self) -> None:
        self.files: Dict[str, str] = {}
        self.images: set = set()
        self.networks: set = set()
        self.running: set = set()
        self.containers: set = set()
        self.states: Dict[str, List[Dict[str, Any]]] = {}
        self.commands: List[str] = []
        self.interactive: List[str] = []
        self.synced: List[tuple] = []
        self.removed: List[str] = []
        self.fail_on: Dict[str, Exception] = {}
        self.invalid_compose = False
        self._tmp_counter = 0

    # RemoteOperations

    async def run_command(self, cmd: str) -> str:
        self.commands.append(cmd)
        self._maybe_fail(cmd)
        return self._handle(cmd)

    async def run_interactive(self, cmd: str) -> None:
        self.commands.append(cmd)
        self.interactive.append(cmd)
        self._maybe_fail(cmd)
        self._handle(cmd)

    async def sync_tree(self, local_path: str, remote_path: str) -> None:
        self.synced.append((local_path, remote_path))
        self._maybe_fail(f"rsync {local_path} {remote_path}")

    # Helpers for tests

    def manifest(self, stack: str = STACK) -> Optional[str]:
        return self.files.get(f"{stack}/compose.yaml")

    def set_manifest(self, text: str, stack: str = STACK) -> None:
        self.files[f"{stack}/compose.yaml"] = text

    def set_states(self, container: str, *states: Dict[str, Any]) -> None:
        """Successive inspect results; the last one repeats."""
        self.states[container] = list(states)

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for cmd in self.commands)

    def _maybe_fail(self, cmd: str) -> None:
        for fragment, error in self.fail_on.items():
            if fragment in cmd:
                raise error

    def _state_of(self, container: str) -> Dict[str, Any]:
        states = self.states.get(container)
        if not states:
            if container in self.running:
                return running_state()
            raise RemoteExecutionError(f"No such object: {container}", stderr="No such object")
        if len(states) > 1:
            return states.pop(0)
        return states[0]

    def _handle(self, cmd: str) -> str:
        if cmd.startswith("printf %s "):
            return self._write(cmd)

        match = re.match(r"test -f (\S+) && echo yes \|\| echo no", cmd)
        if match:
            return "yes\n" if match.group(1) in self.files else "no\n"

        match = re.match(r"cat (\S+) 2>/dev/null \|\| true", cmd)
        if match:
            return self.files.get(match.group(1), "")

        match = re.match(r"for f in (.*?); do", cmd)
        if match:
            for path in shlex.split(match.group(1)):
                self.files.setdefault(path, "")
            return ""

        if cmd == "mktemp -d":
            self._tmp_counter += 1
            path = f"/tmp/tmp.ssd{self._tmp_counter}"
            self.files[path + "/"] = ""
            return path + "\n"

        match = re.match(r"rm -rf (\S+)", cmd)
        if match:
            self.removed.append(match.group(1))
            self.files.pop(match.group(1) + "/", None)
            return ""

        match = re.match(r"rm -f (\S+)", cmd)
        if match:
            self.files.pop(match.group(1), None)
            return ""

        if cmd.startswith("mkdir -p "):
            return ""

        match = re.match(r"docker network inspect (\S+) .*docker network create (\S+)", cmd)
        if match:
            self.networks.add(match.group(1))
            return ""

        match = re.match(r"docker image inspect (\S+) .*echo yes", cmd)
        if match:
            return "yes\n" if match.group(1) in self.images else "no\n"

        match = re.match(r"docker inspect --format '\{\{json \.State\}\}' (\S+)", cmd)
        if match:
            return json.dumps(self._state_of(match.group(1)))

        match = re.match(r"docker rm -f (\S+)", cmd)
        if match:
            self.running.discard(match.group(1))
            self.containers.discard(match.group(1))
            return ""

        match = re.match(r"docker pull (\S+)", cmd)
        if match:
            self.images.add(match.group(1))
            return ""

        match = re.search(r"docker build -t (\S+)", cmd)
        if match:
            self.images.add(match.group(1))
            return ""

        match = re.match(r"cd \S+ && docker compose (.*)", cmd)
        if match:
            return self._compose(shlex.split(match.group(1)))

        match = re.match(r"cd \S+ && docker rollout (\S+)", cmd)
        if match:
            self.running.add(match.group(1))
            return ""

        return ""

    def _compose(self, args: List[str]) -> str:
        if args[:4] == ["ps", "--status", "running", "--services"]:
            return "".join(f"{name}\n" for name in sorted(self.running))
        if args[:3] == ["ps", "-a", "-q"]:
            return f"{args[3]}\n" if args[3] in self.containers else ""
        if args and args[0] == "ps":
            return "".join(f"myapp-{name}-1\tUp\n" for name in sorted(self.running))
        if args[:2] == ["up", "-d"]:
            service = args[-1]
            self.running.add(service)
            self.containers.add(service)
            return ""
        return ""

    def _write(self, cmd: str) -> str:
        tokens = shlex.split(cmd)
        content = tokens[2]
        if "config" in tokens and self.invalid_compose:
            raise RemoteExecutionError("compose validation failed", stderr="invalid compose file")
        dest = tokens[tokens.index("mv") + 2]
        self.files[dest] = content
        return ""


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def remote_host():
    """Fresh in-memory server."""
    return FakeRemoteHost()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def lock_dir(tmp_path):
    """Isolated directory for deploy lock files."""
    path = tmp_path / "locks"
    path.mkdir()
    return str(path)


@pytest.fixture
def sample_config():
    """Three-service config sharing one stack."""
    return RootConfig.from_yaml(
        """
server: myserver
stack: /stacks/myapp

services:
  web:
    domain: example.com
    port: 3000
    healthcheck:
      cmd: curl -f http://localhost:3000/health
      interval: 10s
      retries: 2
    depends_on:
      db: {condition: healthy}
  db:
    image: postgres:16
    volumes:
      pgdata: /var/lib/postgresql/data
    healthcheck:
      cmd: pg_isready
      interval: 5s
      retries: 3
  worker:
    dockerfile: ./Dockerfile.worker
    deploy_strategy: rollout
"""
    )
