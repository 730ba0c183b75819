"""
``ssd init``: write a starter ssd.yaml.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ssd.config.settings import (
    DEFAULT_CONFIG_FILE,
    validate_name,
    validate_server,
    validate_stack_path,
)
from ssd.exceptions import ConfigurationError


@dataclass
class ScaffoldOptions:
    """Values for the generated ssd.yaml; only ``server`` is required."""

    server: str
    stack: Optional[str] = None
    service: str = "app"
    domain: Optional[str] = None
    path: Optional[str] = None
    port: Optional[int] = None
    force: bool = False


def validate(options: ScaffoldOptions) -> None:
    """Raise ConfigurationError for values ssd.yaml would reject anyway."""
    try:
        validate_server(options.server)
        validate_name(options.service or "app")
        if options.stack:
            validate_stack_path(options.stack)
    except ValueError as e:
        raise ConfigurationError(str(e))
    if options.port is not None and not 1 <= options.port <= 65535:
        raise ConfigurationError("port must be between 1 and 65535")
    if options.path and not options.path.startswith("/"):
        raise ConfigurationError("path must start with /")


def generate(options: ScaffoldOptions) -> str:
    """Render ssd.yaml; unset options appear as commented hints."""
    lines: List[str] = [f"server: {options.server}"]
    if options.stack:
        lines.append(f"stack: {options.stack}")

    lines.extend(["", "services:", f"  {options.service or 'app'}:"])

    if options.domain:
        lines.append(f"    domain: {options.domain}")
    if options.path:
        lines.append(f"    path: {options.path}")
    if options.port:
        lines.append(f"    port: {options.port}")

    hints = []
    if not options.domain:
        hints.append("    # domain: example.com")
    if not options.port:
        hints.append("    # port: 3000")
    if hints:
        lines.append("    # Uncomment and configure as needed:")
        lines.extend(hints)

    return "\n".join(lines) + "\n"


def write_file(directory: str, options: ScaffoldOptions) -> Path:
    """
    Write ssd.yaml into ``directory``.

    Returns:
        Path of the written file

    Raises:
        ConfigurationError: If options are invalid or the file exists without force
    """
    validate(options)
    path = Path(directory) / DEFAULT_CONFIG_FILE
    if path.exists() and not options.force:
        raise ConfigurationError(f"{DEFAULT_CONFIG_FILE} already exists (use --force to overwrite)")
    path.write_text(generate(options))
    return path
