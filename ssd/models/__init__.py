"""
Data models for ssd deploy outcomes and canary sessions.
"""

from ssd.models.deployment import (
    CanaryOutcome,
    CanarySession,
    DeployFailure,
    DeployOutcome,
    DeployStage,
    DeploySuccess,
    VersionInfo,
)

__all__ = [
    "CanaryOutcome",
    "CanarySession",
    "DeployFailure",
    "DeployOutcome",
    "DeployStage",
    "DeploySuccess",
    "VersionInfo",
]
