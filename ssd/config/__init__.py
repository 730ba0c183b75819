"""
Configuration for ssd: ssd.yaml models and loading.
"""

from ssd.config.settings import (
    DEFAULT_CONFIG_FILE,
    DependencySpec,
    DeployStrategy,
    HealthCheckConfig,
    RootConfig,
    ServiceConfig,
    WaitCondition,
    load_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DependencySpec",
    "DeployStrategy",
    "HealthCheckConfig",
    "RootConfig",
    "ServiceConfig",
    "WaitCondition",
    "load_config",
]
