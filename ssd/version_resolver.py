"""
Version resolution from the remote manifest.

The deployed version of a built service lives only in its image tag,
``ssd-{project}-{service}:N``. Reading it back must never silently default:
a reset counter would overwrite images that rollback depends on.
"""

import re
from typing import Optional

from ssd.exceptions import ManifestParseError
from ssd.manifest import get_service, parse
from ssd.models.deployment import VersionInfo


def resolve_version(manifest_text: Optional[str], service: str, image_name: str) -> VersionInfo:
    """
    Get the current and next version of a service.

    Args:
        manifest_text: Content of compose.yaml (None or empty for a new stack)
        service: Service name in the manifest
        image_name: Expected image name without tag, e.g. ``ssd-myapp-web``

    Returns:
        VersionInfo with current (0 when the service has no entry) and next

    Raises:
        ManifestParseError: If the manifest is malformed or the service's image
            does not have the expected ``image_name:N`` shape
    """
    doc = parse(manifest_text)
    spec, found = get_service(doc, service)
    if not found:
        return VersionInfo(current=0, next=1)

    current = parse_image_version(spec.get("image"), image_name)
    return VersionInfo(current=current, next=current + 1)


def parse_image_version(image: Optional[str], image_name: str) -> int:
    """Extract N from ``image_name:N``."""
    if not isinstance(image, str) or not image:
        raise ManifestParseError(f"service image is missing, expected {image_name}:N")

    match = re.fullmatch(rf"{re.escape(image_name)}:(\d+)", image.strip())
    if not match:
        raise ManifestParseError(
            f"unexpected image reference {image!r}, expected {image_name}:N"
        )
    return int(match.group(1))
