"""
Pure decision functions for deployments.

Deadline arithmetic, canary eligibility, start path selection and container
state interpretation. No I/O here, so every rule is testable on its own.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ssd.config.settings import DeployStrategy, HealthCheckConfig

HEALTH_BUFFER_SECONDS = 30.0
MAX_HEALTH_DEADLINE_SECONDS = 300.0
NO_HEALTHCHECK_DEADLINE_SECONDS = 30.0
NO_HEALTHCHECK_POLL_SECONDS = 2.0


class StartPath(str, Enum):
    """How the new version gets started."""

    CANARY = "canary"
    DIRECT = "direct"
    RECREATE = "recreate"
    ROLLOUT = "rollout"


def compute_health_deadline(healthcheck: Optional[HealthCheckConfig]) -> float:
    """
    Seconds a new container has to become healthy.

    ``retries * interval + 30s``, capped at five minutes; a flat 30s when no
    health check is declared.
    """
    if healthcheck is None:
        return NO_HEALTHCHECK_DEADLINE_SECONDS
    deadline = healthcheck.retries * healthcheck.interval_seconds + HEALTH_BUFFER_SECONDS
    return min(deadline, MAX_HEALTH_DEADLINE_SECONDS)


def poll_interval(healthcheck: Optional[HealthCheckConfig]) -> float:
    if healthcheck is None:
        return NO_HEALTHCHECK_POLL_SECONDS
    return healthcheck.interval_seconds


def is_canary_eligible(
    primary_running: bool,
    build_only: bool,
    siblings: Optional[Mapping[str, Any]],
) -> bool:
    """All three must hold: a running primary, a start pass, and the sibling map."""
    return primary_running and not build_only and siblings is not None


def choose_start_path(strategy: DeployStrategy, eligible: bool) -> StartPath:
    """
    Pick the start path for a service.

    An explicit ``rollout`` or ``recreate`` strategy wins over eligibility;
    ``auto`` uses the canary whenever it is eligible.
    """
    if strategy == DeployStrategy.ROLLOUT:
        return StartPath.ROLLOUT
    if strategy == DeployStrategy.RECREATE:
        return StartPath.RECREATE
    return StartPath.CANARY if eligible else StartPath.DIRECT


def describe_state(state: Dict[str, Any]) -> str:
    """Short human form of a docker ``.State`` mapping, e.g. ``running/starting``."""
    status = str(state.get("Status", "unknown"))
    health = (state.get("Health") or {}).get("Status")
    return f"{status}/{health}" if health else status


def is_ready(state: Dict[str, Any], has_healthcheck: bool) -> bool:
    """
    Whether a container counts as up.

    With a health check the container must report ``healthy``; without one
    it only has to be running.
    """
    if has_healthcheck:
        return (state.get("Health") or {}).get("Status") == "healthy"
    return state.get("Status") == "running" or state.get("Running") is True


def has_exited(state: Dict[str, Any]) -> bool:
    return state.get("Status") in ("exited", "dead")


def exit_code(state: Dict[str, Any]) -> Optional[int]:
    code = state.get("ExitCode")
    return int(code) if code is not None else None
