"""
Configuration models for ssd.

ssd.yaml describes one or more services sharing a remote stack directory.
Root-level ``server`` and ``stack`` are inherited by every service that does
not set its own. Everything handed to the deploy core has been validated
here, including shell safety of every value that ends up in a remote command.
"""

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ssd.exceptions import ConfigurationError
from ssd.utils.durations import parse_duration

DEFAULT_CONFIG_FILE = "ssd.yaml"
IMAGE_PREFIX = "ssd"

_SHELL_METACHARACTERS = set(";|&$`(){}[]<>\\\"'")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_SERVER_RE = re.compile(r"^[\w.-]+$")
_DOMAIN_RE = re.compile(r"^[A-Za-z0-9*]([A-Za-z0-9-]*[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?)*$")
_PATH_PREFIX_RE = re.compile(r"^/[A-Za-z0-9._~/-]*$")
_IMAGE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/:@-]*$")


class WaitCondition(str, Enum):
    """What a dependent service waits for before it is started."""

    STARTED = "started"
    HEALTHY = "healthy"
    COMPLETED = "completed"

    @property
    def compose_condition(self) -> str:
        """The matching docker compose ``depends_on`` condition."""
        return {
            WaitCondition.STARTED: "service_started",
            WaitCondition.HEALTHY: "service_healthy",
            WaitCondition.COMPLETED: "service_completed_successfully",
        }[self]


class DeployStrategy(str, Enum):
    """
    How a service's new version is started.

    auto: canary when the service is already running, direct start otherwise
    rollout: always hand the start to ``docker rollout``
    recreate: always force-recreate the container, never canary
    """

    AUTO = "auto"
    ROLLOUT = "rollout"
    RECREATE = "recreate"


class DependencySpec(BaseModel):
    """A direct dependency of a service."""

    name: str = Field(..., description="Name of the service depended on")
    condition: WaitCondition = Field(
        default=WaitCondition.STARTED, description="Condition to wait for before starting"
    )


class HealthCheckConfig(BaseModel):
    """Container health check, rendered into compose and used for canary gating."""

    cmd: str = Field(..., description="Shell command run inside the container")
    interval: str = Field(default="30s", description="Time between checks")
    timeout: str = Field(default="10s", description="Time before a single check fails")
    retries: int = Field(default=3, ge=1, description="Consecutive failures before unhealthy")

    @field_validator("cmd")
    @classmethod
    def validate_cmd(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("healthcheck cmd cannot be empty")
        return v

    @field_validator("interval", "timeout", mode="before")
    @classmethod
    def validate_duration(cls, v: Any) -> str:
        if isinstance(v, (int, float)):
            v = f"{v}s"
        parse_duration(v)
        return str(v)

    @property
    def interval_seconds(self) -> float:
        return parse_duration(self.interval)

    @property
    def timeout_seconds(self) -> float:
        return parse_duration(self.timeout)


class ServiceConfig(BaseModel):
    """
    Fully resolved service descriptor.

    This is what the deploy core consumes: defaults applied, root values
    inherited, every field validated.
    """

    name: str = Field(..., description="Service name (compose service key)")
    server: str = Field(..., description="SSH host, usually an entry of ~/.ssh/config")
    stack: str = Field(..., description="Absolute stack directory on the server")
    dockerfile: str = Field(default="./Dockerfile", description="Dockerfile path in context")
    context: str = Field(default=".", description="Local build context")
    target: Optional[str] = Field(None, description="Build target stage")
    image: Optional[str] = Field(None, description="Pre-built image; skips the build")
    domains: List[str] = Field(default_factory=list, description="Routed domains")
    redirect_to: Optional[str] = Field(
        None, description="Domain every other domain redirects to (defaults to the first)"
    )
    path: Optional[str] = Field(None, description="Path prefix routed to this service")
    https: bool = Field(default=True, description="Serve over HTTPS with Let's Encrypt")
    port: int = Field(default=80, ge=1, le=65535, description="Container port")
    depends_on: List[DependencySpec] = Field(default_factory=list)
    volumes: Dict[str, str] = Field(
        default_factory=dict, description="Named volume -> container mount path"
    )
    healthcheck: Optional[HealthCheckConfig] = None
    deploy_strategy: DeployStrategy = Field(default=DeployStrategy.AUTO)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name(v)

    @field_validator("server")
    @classmethod
    def validate_server(cls, v: str) -> str:
        return validate_server(v)

    @field_validator("stack")
    @classmethod
    def validate_stack(cls, v: str) -> str:
        return validate_stack_path(v)

    @field_validator("dockerfile", "context", "target")
    @classmethod
    def validate_build_fields(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _reject_metacharacters(v, "build setting")
        return v

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _IMAGE_RE.match(v):
            raise ValueError(f"invalid image reference: {v!r}")
        return v

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        seen = set()
        for domain in v:
            if not _DOMAIN_RE.match(domain) or len(domain) > 253:
                raise ValueError(f"invalid domain: {domain!r}")
            if domain in seen:
                raise ValueError(f"duplicate domain: {domain!r}")
            seen.add(domain)
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not _PATH_PREFIX_RE.match(v) or ".." in v:
            raise ValueError(f"path must start with / and contain only URL-safe characters: {v!r}")
        return v

    @field_validator("volumes")
    @classmethod
    def validate_volumes(cls, v: Dict[str, str]) -> Dict[str, str]:
        for volume, mount in v.items():
            validate_name(volume)
            if not mount.startswith("/"):
                raise ValueError(f"volume {volume} mount path must be absolute: {mount!r}")
            _reject_metacharacters(mount, "volume mount path")
        return v

    @model_validator(mode="after")
    def validate_redirect_target(self) -> "ServiceConfig":
        """A redirect target must be one of the service's domains."""
        if self.redirect_to and self.redirect_to not in self.domains:
            raise ValueError(
                f"redirect_to {self.redirect_to!r} must be one of the service domains"
            )
        names = [d.name for d in self.depends_on]
        if self.name in names:
            raise ValueError(f"service {self.name} cannot depend on itself")
        return self

    @property
    def stack_path(self) -> str:
        """Remote directory containing compose.yaml."""
        return self.stack

    @property
    def project(self) -> str:
        """Compose project name, derived from the stack directory."""
        return Path(self.stack.rstrip("/")).name

    @property
    def is_prebuilt(self) -> bool:
        return bool(self.image)

    @property
    def image_name(self) -> str:
        """Image name without tag; the reference itself for pre-built images."""
        if self.image:
            return self.image
        return f"{IMAGE_PREFIX}-{self.project}-{self.name}"

    def image_ref(self, version: Optional[int]) -> str:
        """Full image reference for a version (pre-built references are returned as-is)."""
        if self.image:
            return self.image
        return f"{self.image_name}:{version}"

    @property
    def primary_domain(self) -> Optional[str]:
        if not self.domains:
            return None
        return self.redirect_to or self.domains[0]

    @property
    def alias_domains(self) -> List[str]:
        primary = self.primary_domain
        return [d for d in self.domains if d != primary]

    @property
    def dependency_names(self) -> List[str]:
        return [d.name for d in self.depends_on]


class ServiceEntry(BaseModel):
    """A service as written in ssd.yaml, before inheritance and defaults."""

    server: Optional[str] = None
    stack: Optional[str] = None
    dockerfile: Optional[str] = None
    context: Optional[str] = None
    target: Optional[str] = None
    image: Optional[str] = None
    domain: Optional[str] = None
    domains: List[str] = Field(default_factory=list)
    redirect_to: Optional[str] = None
    path: Optional[str] = None
    https: Optional[bool] = None
    port: Optional[int] = None
    depends_on: List[DependencySpec] = Field(default_factory=list)
    volumes: Dict[str, str] = Field(default_factory=dict)
    healthcheck: Optional[HealthCheckConfig] = None
    deploy_strategy: Optional[DeployStrategy] = None

    model_config = {"extra": "forbid"}

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Any) -> Any:
        """
        Accept the three spellings of depends_on.

        - ``[db, cache]``
        - ``{db: {condition: healthy}}``
        - ``[{name: db, condition: healthy}]``
        """
        if v is None:
            return []
        if isinstance(v, dict):
            return [{"name": name, **(spec or {})} for name, spec in v.items()]
        if isinstance(v, list):
            return [{"name": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("volumes", mode="before")
    @classmethod
    def normalize_volumes(cls, v: Any) -> Any:
        if v is None:
            return {}
        return v


class RootConfig(BaseModel):
    """The ssd.yaml file structure."""

    server: Optional[str] = None
    stack: Optional[str] = None
    services: Dict[str, ServiceEntry] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("services", mode="before")
    @classmethod
    def normalize_services(cls, v: Any) -> Any:
        """A bare ``name:`` key declares a service with all defaults."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {name: entry if entry is not None else {} for name, entry in v.items()}
        return v

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> "RootConfig":
        """
        Load configuration from ssd.yaml.

        Args:
            path: Config file path; defaults to $SSD_CONFIG, then ./ssd.yaml

        Returns:
            Parsed root configuration

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        config_path = Path(path or os.environ.get("SSD_CONFIG") or DEFAULT_CONFIG_FILE)
        try:
            content = config_path.read_text()
        except FileNotFoundError:
            raise ConfigurationError(f"config file not found: {config_path}")
        except OSError as e:
            raise ConfigurationError(f"failed to read config file {config_path}: {e}")
        return cls.from_yaml(content)

    @classmethod
    def from_yaml(cls, content: str) -> "RootConfig":
        """Parse ssd.yaml content; never raises anything but ConfigurationError."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"failed to parse config: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("failed to parse config: top level must be a mapping")

        try:
            root = cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid config: {_format_validation_error(e)}")
        except TypeError as e:
            raise ConfigurationError(f"invalid config: {e}")

        for name, entry in root.services.items():
            for dep in entry.depends_on:
                if dep.name not in root.services:
                    raise ConfigurationError(
                        f"service {name} depends on unknown service {dep.name!r}"
                    )
        return root

    def list_services(self) -> List[str]:
        """Service names, sorted for deterministic ordering."""
        return sorted(self.services)

    def is_single_service(self) -> bool:
        return len(self.services) == 1

    def get_service(self, service_name: Optional[str] = None) -> ServiceConfig:
        """
        Resolve one service: inherit root values, apply defaults, validate.

        Args:
            service_name: Key under ``services:``

        Returns:
            Validated service descriptor

        Raises:
            ConfigurationError: If the service is unknown or invalid
        """
        if not self.services:
            raise ConfigurationError("services: is required")
        if not service_name:
            if not self.is_single_service():
                raise ConfigurationError(
                    "service name required for multi-service config. "
                    f"Available services: {', '.join(self.list_services())}"
                )
            service_name = self.list_services()[0]

        entry = self.services.get(service_name)
        if entry is None:
            raise ConfigurationError(
                f"service {service_name!r} not found. "
                f"Available services: {', '.join(self.list_services())}"
            )

        name = service_name
        server = entry.server or self.server
        if not server:
            raise ConfigurationError(f"service {service_name}: server is required")

        domains = list(entry.domains)
        if entry.domain and entry.domain not in domains:
            domains.insert(0, entry.domain)

        resolved: Dict[str, Any] = {
            "name": name,
            "server": server,
            "stack": entry.stack or self.stack or f"/stacks/{name}",
            "dockerfile": entry.dockerfile or "./Dockerfile",
            "context": entry.context or ".",
            "target": entry.target,
            "image": entry.image,
            "domains": domains,
            "redirect_to": entry.redirect_to,
            "path": entry.path,
            "https": True if entry.https is None else entry.https,
            "port": entry.port or 80,
            "depends_on": entry.depends_on,
            "volumes": entry.volumes,
            "healthcheck": entry.healthcheck,
            "deploy_strategy": entry.deploy_strategy or DeployStrategy.AUTO,
        }

        try:
            return ServiceConfig(**resolved)
        except ValidationError as e:
            raise ConfigurationError(
                f"invalid service {service_name}: {_format_validation_error(e)}"
            )

    def all_services(self) -> Dict[str, ServiceConfig]:
        """Every service resolved, keyed by service name."""
        return {name: self.get_service(name) for name in self.list_services()}

    def dependencies_of(self, service_name: str) -> Dict[str, ServiceConfig]:
        """Resolved descriptors of a service's direct dependencies."""
        cfg = self.get_service(service_name)
        return {dep: self.get_service(dep) for dep in cfg.dependency_names}


def load_config(path: Optional[str] = None) -> RootConfig:
    """Load and parse ssd.yaml."""
    return RootConfig.from_file(path)


def validate_name(name: str) -> str:
    """Service and volume names: alphanumeric, hyphen, underscore; max 128."""
    if not name:
        raise ValueError("name cannot be empty")
    if len(name) > 128:
        raise ValueError("name exceeds maximum length of 128 characters")
    if name.startswith("-") or name.startswith("."):
        raise ValueError("name cannot start with '-' or '.'")
    if not _NAME_RE.match(name):
        raise ValueError(
            f"name contains invalid characters: {name!r} "
            "(only alphanumeric, hyphens, and underscores allowed)"
        )
    return name


def validate_server(server: str) -> str:
    """SSH host: hostname characters only, max 253."""
    if not server:
        raise ValueError("server cannot be empty")
    if len(server) > 253:
        raise ValueError("server name exceeds maximum length of 253 characters")
    if not _SERVER_RE.match(server) or server.startswith("-"):
        raise ValueError(f"server name contains invalid characters: {server!r}")
    return server


def validate_stack_path(path: str) -> str:
    """Stack path: absolute, no traversal, no shell metacharacters or globs."""
    if not path:
        raise ValueError("stack path cannot be empty")
    if len(path) > 4096:
        raise ValueError("stack path exceeds maximum length of 4096 characters")
    if not path.startswith("/"):
        raise ValueError("stack path must be absolute (start with /)")
    if ".." in path:
        raise ValueError("stack path contains path traversal sequence (..)")
    _reject_metacharacters(path, "stack path", extra="*? ")
    return path


def _reject_metacharacters(value: str, what: str, extra: str = "") -> None:
    bad = _SHELL_METACHARACTERS | set(extra)
    for ch in value:
        if ch in bad or ord(ch) < 32:
            raise ValueError(f"{what} contains shell metacharacter: {ch!r}")


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        message = err.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)
