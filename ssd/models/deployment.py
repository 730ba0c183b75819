"""
Deployment-related data models.

These carry the result of one deploy attempt back to the caller. The caller
always learns the stage that failed and whether the primary container was
touched.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class DeployStage(str, Enum):
    """Stage of a deploy attempt at which a failure occurred."""

    LOCK = "lock"
    BUILD = "build"
    START = "start"
    CANARY_HEALTH = "canary-health"
    PROMOTE = "promote"
    ROLLBACK = "rollback"


class CanaryOutcome(str, Enum):
    """Terminal outcome of a canary session."""

    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


@dataclass(frozen=True)
class VersionInfo:
    """Currently deployed version and the one the next deploy will produce."""

    current: int
    next: int


@dataclass
class CanarySession:
    """
    State of one canary attempt.

    Created once eligibility is confirmed. ``snapshot`` is the exact manifest
    text read before the canary entry was injected; restoring it is the whole
    of the manifest rollback.
    """

    service: str
    container: str
    snapshot: str
    deadline: float
    image: str
    outcome: Optional[CanaryOutcome] = None
    polls: int = 0
    last_state: Optional[str] = None
    canary_started: bool = False


@dataclass
class DeploySuccess:
    """A deploy that finished; ``new_version`` is None for pre-built images."""

    service: str
    new_version: Optional[int]
    strategy: str
    canary: Optional[CanaryOutcome] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass
class DeployFailure:
    """A deploy that failed at ``stage`` with ``cause``."""

    service: str
    stage: DeployStage
    cause: BaseException
    primary_touched: bool = False
    canary: Optional[CanaryOutcome] = None
    details: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    def describe(self) -> str:
        touched = "primary touched" if self.primary_touched else "primary untouched"
        return f"deploy of {self.service} failed at stage {self.stage.value}: {self.cause} ({touched})"


DeployOutcome = Union[DeploySuccess, DeployFailure]

__all__ = [
    "CanaryOutcome",
    "CanarySession",
    "DeployFailure",
    "DeployOutcome",
    "DeployStage",
    "DeploySuccess",
    "VersionInfo",
]
