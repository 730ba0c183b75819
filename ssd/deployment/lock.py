"""
Per-stack deploy lock.

A non-blocking exclusive flock on a file in the system temp directory, named
after a digest of the stack path. A second deploy against the same stack
fails immediately instead of queuing behind the first.
"""

import fcntl
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from ssd.exceptions import ConcurrentDeployError
from ssd.logging_config import log_deploy_operation

logger = logging.getLogger(__name__)


def lock_file_path(target_path: str, lock_dir: Optional[str] = None) -> Path:
    digest = hashlib.sha256(target_path.encode()).hexdigest()[:16]
    return Path(lock_dir or tempfile.gettempdir()) / f"ssd-lock-{digest}"


class DeployLock:
    """Handle for a held lock; ``release()`` is safe to call more than once."""

    def __init__(self, target_path: str, lock_path: Path, fd: int) -> None:
        self.target_path = target_path
        self.lock_path = lock_path
        self._fd: Optional[int] = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        """Release the lock. Only the first call does anything."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Released deploy lock for {self.target_path}")
        log_deploy_operation("lock_released", self.target_path)

    def __enter__(self) -> "DeployLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    async def __aenter__(self) -> "DeployLock":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def acquire(target_path: str, lock_dir: Optional[str] = None) -> DeployLock:
    """
    Take the deploy lock for a stack directory.

    Args:
        target_path: Remote stack directory the deploy will touch
        lock_dir: Directory for lock files (system temp dir by default)

    Returns:
        Held lock handle

    Raises:
        ConcurrentDeployError: If another deploy holds the lock
    """
    path = lock_file_path(target_path, lock_dir)
    fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        logger.warning(f"Deploy lock for {target_path} is already held")
        raise ConcurrentDeployError(target_path)
    except OSError:
        os.close(fd)
        raise

    logger.debug(f"Acquired deploy lock for {target_path} ({path})")
    log_deploy_operation("lock_acquired", target_path)
    return DeployLock(target_path, path, fd)
