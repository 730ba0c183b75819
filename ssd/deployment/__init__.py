"""
Deployment orchestration for ssd.

This package contains:
- containers: docker / docker compose operations for one stack
- images: build-vs-pull and remote workspace lifecycle
- lock: per-stack deploy lock
- health: health polling and dependency wait conditions
- canary: the canary deployment state machine
- scheduler: single-service and deploy-all ordering
- rollback: manual rollback to the previous version
"""

from ssd.deployment.canary import CanaryDeployment, DeployState
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.images import ImageBuilder
from ssd.deployment.lock import DeployLock, acquire
from ssd.deployment.rollback import RollbackController
from ssd.deployment.scheduler import DependencyScheduler

__all__ = [
    "CanaryDeployment",
    "ContainerOperations",
    "DependencyScheduler",
    "DeployLock",
    "DeployState",
    "ImageBuilder",
    "RollbackController",
    "acquire",
]
