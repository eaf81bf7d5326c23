"""
System ssh fallback tunnel.

When the in-process client cannot establish the remote forward, the same
forward is requested by running the system ``ssh`` command as a long-lived
child process. Only the child's exit is monitored; its protocol internals
are the ssh client's business.
"""

import asyncio
import shlex

from camrelay.exceptions import FallbackTransportFailed
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)


def build_ssh_command(
    ssh_path: str,
    key_path: str,
    user: str,
    host: str,
    port: int,
    remote_port: int,
    local_port: int,
    strict_host_key: bool = False,
    known_hosts: str | None = None,
) -> list[str]:
    """
    Build a non-interactive ``ssh -R`` command for the remote forward.

    Returns:
        Command list for subprocess execution.
    """
    cmd = [
        ssh_path,
        "-i",
        key_path,
        "-p",
        str(port),
        "-R",
        f"0.0.0.0:{remote_port}:localhost:{local_port}",
        "-N",
        "-o",
        "BatchMode=yes",
        "-o",
        "ServerAliveInterval=30",
        "-o",
        "ServerAliveCountMax=3",
        "-o",
        "ExitOnForwardFailure=yes",
    ]
    if strict_host_key:
        cmd.extend(["-o", "StrictHostKeyChecking=yes"])
        if known_hosts:
            cmd.extend(["-o", f"UserKnownHostsFile={known_hosts}"])
    else:
        cmd.extend(["-o", "StrictHostKeyChecking=no"])
    cmd.append(f"{user}@{host}")
    return cmd


class SystemSSHTunnel:
    """A running ``ssh -R`` child process."""

    def __init__(self, command: list[str], settle_seconds: float = 3.0):
        self.command = command
        self.settle_seconds = settle_seconds
        self.process: asyncio.subprocess.Process | None = None
        self._watch_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self) -> None:
        """
        Start the ssh process and wait for it to settle.

        Raises:
            FallbackTransportFailed: If the command cannot be started or
                exits during the settle period.
        """
        logger.info("Creating SSH tunnel using system ssh command...")
        logger.info(f"SSH command: {' '.join(shlex.quote(c) for c in self.command)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FallbackTransportFailed(f"Failed to start SSH command: {e}") from e

        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.settle_seconds)
        except asyncio.TimeoutError:
            # Still running after the settle period: forward is up
            pass
        except BaseException:
            # Cancelled while settling; the caller never gets this tunnel
            await self.stop()
            raise
        else:
            stderr = b""
            if self.process.stderr:
                stderr = await self.process.stderr.read()
            raise FallbackTransportFailed(
                f"SSH command exited with code {self.process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )

        logger.info(f"System SSH tunnel started with PID: {self.process.pid}")
        self._watch_task = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        """Forward the child's stderr to the log and report its exit."""
        if self.process.stderr:
            async for line in self.process.stderr:
                logger.debug(f"[ssh] {line.decode(errors='replace').rstrip()}")
        returncode = await self.process.wait()
        if self._stopping:
            logger.info(f"System SSH tunnel process exited with code {returncode}")
        else:
            logger.warning(f"System SSH tunnel process exited with code {returncode}")

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the ssh process; idempotent."""
        self._stopping = True
        if self.is_running():
            try:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"SSH process {self.pid} did not exit, killing")
                self.process.kill()
                await self.process.wait()

        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
        self._watch_task = None
