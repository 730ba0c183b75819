"""ssd - Agentless SSH deployment for Docker Compose stacks."""

__version__ = "1.4.0"

__all__ = ["__version__"]
