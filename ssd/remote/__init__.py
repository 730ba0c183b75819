"""
Remote host transport for ssd.
"""

from ssd.remote.operations import RemoteOperations
from ssd.remote.ssh import SSHClient

__all__ = ["RemoteOperations", "SSHClient"]
