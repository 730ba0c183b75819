"""
Contract between the deploy core and whatever reaches the remote host.

The core only ever talks to the server through these three calls, which is
what lets tests run whole deploys against an in-memory host.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class RemoteOperations(Protocol):
    """Protocol for executing commands on, and copying files to, one host."""

    async def run_command(self, cmd: str) -> str:
        """
        Run a shell command and capture its output.

        Promises:
        - Returns stdout on exit code 0
        - Raises RemoteExecutionError carrying stderr otherwise
        - Cancelling the awaiting task stops the command
        """
        ...

    async def run_interactive(self, cmd: str) -> None:
        """
        Run a long command with output streamed to the caller's terminal.

        Promises:
        - Raises RemoteExecutionError on a non-zero exit
        """
        ...

    async def sync_tree(self, local_path: str, remote_path: str) -> None:
        """
        Copy the contents of a local directory into a remote directory.

        Promises:
        - remote_path ends up mirroring local_path (deletions included)
        - Raises RemoteExecutionError on failure
        """
        ...
