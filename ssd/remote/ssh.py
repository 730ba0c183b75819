"""
SSH and rsync transport.

Runs the system ``ssh`` and ``rsync`` binaries, so host aliases, keys and
jump hosts come from the operator's ~/.ssh/config.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from ssd.exceptions import RemoteExecutionError
from ssd.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = [".git", "node_modules", ".next", ".DS_Store", "*.log"]


class SSHClient:
    """Remote operations against one server over ssh."""

    def __init__(
        self,
        server: str,
        ssh_binary: str = "ssh",
        rsync_binary: str = "rsync",
        excludes: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the client.

        Args:
            server: SSH host, usually an alias from ~/.ssh/config
            ssh_binary: ssh executable
            rsync_binary: rsync executable
            excludes: rsync exclude patterns for build context sync
        """
        self.server = server
        self.ssh_binary = ssh_binary
        self.rsync_binary = rsync_binary
        self.excludes = list(DEFAULT_EXCLUDES if excludes is None else excludes)

    def ssh_args(self, cmd: str) -> List[str]:
        return [self.ssh_binary, self.server, cmd]

    def rsync_args(self, local_path: str, remote_path: str) -> List[str]:
        """Build the rsync argument list; the trailing slash copies contents only."""
        args = [self.rsync_binary, "-avz", "--delete"]
        for pattern in self.excludes:
            args.extend(["--exclude", pattern])
        if not local_path.endswith("/"):
            local_path += "/"
        args.extend([local_path, f"{self.server}:{remote_path}"])
        return args

    async def run_command(self, cmd: str) -> str:
        """Run a command on the server and return its stdout."""
        logger.debug(f"[{self.server}] $ {sanitize_for_log(cmd)}")
        stdout, stderr, returncode = await self._exec(self.ssh_args(cmd), capture=True)
        if returncode != 0:
            raise RemoteExecutionError(
                f"ssh command failed with exit code {returncode}",
                command=cmd,
                stderr=stderr,
                returncode=returncode,
            )
        return stdout

    async def run_interactive(self, cmd: str) -> None:
        """Run a command on the server with output streamed to this terminal."""
        logger.debug(f"[{self.server}] $ {sanitize_for_log(cmd)} (interactive)")
        _, _, returncode = await self._exec(self.ssh_args(cmd), capture=False)
        if returncode != 0:
            raise RemoteExecutionError(
                f"ssh command failed with exit code {returncode}",
                command=cmd,
                returncode=returncode,
            )

    async def sync_tree(self, local_path: str, remote_path: str) -> None:
        """Mirror a local directory into a remote directory with rsync."""
        logger.info(f"Syncing {local_path} to {self.server}:{remote_path}")
        args = self.rsync_args(local_path, remote_path)
        _, stderr, returncode = await self._exec(args, capture=True)
        if returncode != 0:
            raise RemoteExecutionError(
                f"rsync failed with exit code {returncode}",
                command=" ".join(args),
                stderr=stderr,
                returncode=returncode,
            )

    async def _exec(self, args: List[str], capture: bool):
        pipe = asyncio.subprocess.PIPE if capture else None
        # Captured commands never read the terminal
        stdin = asyncio.subprocess.DEVNULL if capture else None
        try:
            process = await asyncio.create_subprocess_exec(
                *args, stdin=stdin, stdout=pipe, stderr=pipe
            )
        except FileNotFoundError as e:
            raise RemoteExecutionError(f"{args[0]} not found: {e}", command=" ".join(args))

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return (
            stdout.decode(errors="replace") if stdout else "",
            stderr.decode(errors="replace") if stderr else "",
            process.returncode,
        )
