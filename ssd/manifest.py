"""
Manifest editor for the remote compose.yaml.

A ManifestDocument is a value: every edit returns a new document and leaves
the original untouched. A document that came straight from ``parse`` keeps
the text it was parsed from, and ``render`` returns that text unchanged, so
restoring a pre-deploy snapshot is byte-for-byte.
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ssd.config.settings import ServiceConfig
from ssd.exceptions import ManifestParseError
from ssd.routing import generate_labels, strip_healthcheck_labels

logger = logging.getLogger(__name__)

TRAEFIK_NETWORK = "traefik_web"
CANARY_SUFFIX = "-canary"


@dataclass(frozen=True)
class ManifestDocument:
    """Parsed compose.yaml plus the text it came from (None once edited)."""

    data: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    @property
    def services(self) -> Dict[str, Any]:
        return self.data.get("services") or {}

    def service_names(self) -> List[str]:
        return list(self.services)

    def has_service(self, name: str) -> bool:
        return name in self.services


def internal_network(project: str) -> str:
    return f"{project}_internal"


def canary_name(service: str) -> str:
    return f"{service}{CANARY_SUFFIX}"


def parse(text: Optional[str]) -> ManifestDocument:
    """
    Parse compose.yaml text.

    Args:
        text: Manifest content; empty or None gives an empty document

    Returns:
        Parsed document remembering its source text

    Raises:
        ManifestParseError: If the text is not YAML or not a mapping
    """
    if text is None or not text.strip():
        return ManifestDocument(data={}, source=text or "")

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestParseError(f"failed to parse compose.yaml: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestParseError("compose.yaml must be a mapping at the top level")

    services = data.get("services")
    if services is not None and not isinstance(services, dict):
        raise ManifestParseError("compose.yaml 'services' must be a mapping")
    for name, spec in (services or {}).items():
        if spec is not None and not isinstance(spec, dict):
            raise ManifestParseError(f"compose.yaml service {name!r} must be a mapping")

    return ManifestDocument(data=data, source=text)


def render(doc: ManifestDocument) -> str:
    """Render a document to YAML; unedited documents return their source text."""
    if doc.source is not None:
        return doc.source
    return yaml.dump(doc.data, default_flow_style=False, sort_keys=False, width=4096)


def get_service(doc: ManifestDocument, name: str) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    Look up a service entry.

    Returns:
        (copy of the entry, True) when present, (None, False) otherwise
    """
    services = doc.services
    if name not in services:
        return None, False
    return copy.deepcopy(services[name] or {}), True


def upsert_service(doc: ManifestDocument, name: str, spec: Dict[str, Any]) -> ManifestDocument:
    """Insert or replace a service entry; an existing entry keeps its position."""
    data = copy.deepcopy(doc.data)
    services = data.get("services")
    if not isinstance(services, dict):
        services = {}
        data["services"] = services
    services[name] = copy.deepcopy(spec)
    return ManifestDocument(data=data)


def remove_service(doc: ManifestDocument, name: str) -> ManifestDocument:
    """Remove a service entry; removing an absent entry is a no-op copy."""
    data = copy.deepcopy(doc.data)
    services = data.get("services")
    if isinstance(services, dict):
        services.pop(name, None)
    return ManifestDocument(data=data)


def set_service_image(doc: ManifestDocument, name: str, image: str) -> ManifestDocument:
    """Change only the image of an existing service entry."""
    spec, found = get_service(doc, name)
    if not found:
        raise ManifestParseError(f"service {name!r} not found in compose.yaml")
    spec["image"] = image
    return upsert_service(doc, name, spec)


def build_service_entry(service: ServiceConfig, version: Optional[int]) -> Dict[str, Any]:
    """
    Build the compose entry for a service.

    Args:
        service: Resolved service descriptor
        version: Image version for built services; ignored for pre-built images

    Returns:
        Compose service mapping
    """
    entry: Dict[str, Any] = {
        "image": service.image_ref(version),
        "restart": "unless-stopped",
        "env_file": f"./{service.name}.env",
        "networks": [TRAEFIK_NETWORK, internal_network(service.project)],
    }

    if service.volumes:
        entry["volumes"] = [f"{name}:{mount}" for name, mount in service.volumes.items()]

    if service.depends_on:
        entry["depends_on"] = {
            dep.name: {"condition": dep.condition.compose_condition} for dep in service.depends_on
        }

    if service.healthcheck:
        entry["healthcheck"] = {
            "test": ["CMD", "sh", "-c", service.healthcheck.cmd],
            "interval": service.healthcheck.interval,
            "timeout": service.healthcheck.timeout,
            "retries": service.healthcheck.retries,
        }

    labels = generate_labels(service)
    if labels:
        entry["labels"] = labels

    return entry


def declare_volumes(doc: ManifestDocument, service: ServiceConfig) -> ManifestDocument:
    """Add top-level declarations for any named volume of ``service`` the document lacks."""
    declared = doc.data.get("volumes") or {}
    missing = [name for name in service.volumes if name not in declared]
    if not missing:
        return doc
    data = copy.deepcopy(doc.data)
    volumes = data.get("volumes")
    if not isinstance(volumes, dict):
        volumes = {}
        data["volumes"] = volumes
    for name in missing:
        volumes[name] = None
    return ManifestDocument(data=data)


def inject_canary(doc: ManifestDocument, service: ServiceConfig, image: str) -> ManifestDocument:
    """
    Add a ``{service}-canary`` entry next to the primary.

    The entry is built from the service as configured now, so the canary
    runs exactly what promotion will write. Routing labels are taken from
    the primary entry when there is one, so Traefik balances across both
    containers. Load-balancer health-check labels are always dropped.
    """
    canary = build_service_entry(service, None if service.is_prebuilt else 0)
    canary["image"] = image
    canary["container_name"] = canary_name(service.name)

    primary, _ = get_service(doc, service.name)
    labels = (primary or {}).get("labels") or canary.get("labels")
    if isinstance(labels, list):
        canary["labels"] = strip_healthcheck_labels(labels)
    elif isinstance(labels, dict):
        kept = set(strip_healthcheck_labels(list(labels)))
        canary["labels"] = {k: v for k, v in labels.items() if k in kept}
    else:
        canary.pop("labels", None)

    logger.debug(f"Injecting canary entry {canary_name(service.name)} with image {image}")
    return declare_volumes(upsert_service(doc, canary_name(service.name), canary), service)


def generate_manifest(
    services: Dict[str, ServiceConfig], stack: str, versions: Dict[str, int]
) -> str:
    """
    Render a complete compose.yaml for a new stack.

    Args:
        services: Every service sharing the stack, keyed by name
        stack: Stack directory (its basename is the compose project)
        versions: Image version per built service

    Returns:
        Manifest text

    Raises:
        ValueError: If no services are given
    """
    if not services:
        raise ValueError("at least one service is required")

    project = Path(stack.rstrip("/")).name
    data: Dict[str, Any] = {"services": {}}
    volumes: List[str] = []

    for name in sorted(services):
        service = services[name]
        data["services"][name] = build_service_entry(service, versions.get(name, 0))
        for volume in service.volumes:
            if volume not in volumes:
                volumes.append(volume)

    data["networks"] = {
        TRAEFIK_NETWORK: {"external": True},
        internal_network(project): {"driver": "bridge"},
    }
    if volumes:
        data["volumes"] = {volume: None for volume in sorted(volumes)}

    return render(ManifestDocument(data=data))
