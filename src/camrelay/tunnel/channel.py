"""
SSH control channel backed by asyncssh.

Wraps one asyncssh client connection behind the small interface the tunnel
manager needs: bind a remote listener, check liveness, close.
"""

import asyncio
from typing import Callable

import asyncssh

from camrelay.exceptions import AuthFailed, DialFailed
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)


class _TunnelClient(asyncssh.SSHClient):
    """asyncssh client callbacks that record when the connection drops."""

    def __init__(self, lost: asyncio.Event):
        self._lost = lost

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            logger.warning(f"SSH connection lost: {exc}")
        else:
            logger.debug("SSH connection closed")
        self._lost.set()


class SSHControlChannel:
    """An authenticated SSH connection used to hold a remote port forward."""

    def __init__(self, conn: asyncssh.SSHClientConnection, lost: asyncio.Event, address: str):
        self._conn = conn
        self._lost = lost
        self.address = address

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        username: str,
        identities: list,
        known_hosts: str | None = None,
        timeout: float = 30.0,
        keepalive_interval: float = 10.0,
    ) -> "SSHControlChannel":
        """
        Open and authenticate an SSH connection.

        asyncssh sends keepalive@openssh.com requests on its own every
        keepalive_interval seconds and drops the connection after the first
        unanswered one; ``keepalive()`` reports that outcome.

        Args:
            host: Remote host.
            port: Remote SSH port.
            username: Remote user.
            identities: Signing identities from the credential resolver.
            known_hosts: Known hosts file, or None to skip host key checks.
            timeout: Connect and authentication timeout in seconds.
            keepalive_interval: Seconds between protocol keepalives.

        Raises:
            AuthFailed: If the server rejected every identity.
            DialFailed: On any transport-level failure.
        """
        address = f"{host}:{port}"
        lost = asyncio.Event()

        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    host,
                    port=port,
                    username=username,
                    client_keys=identities,
                    known_hosts=known_hosts,
                    agent_path=None,
                    preferred_auth="publickey",
                    client_factory=lambda: _TunnelClient(lost),
                    keepalive_interval=keepalive_interval,
                    keepalive_count_max=1,
                ),
                timeout=timeout,
            )
        except asyncssh.PermissionDenied as e:
            raise AuthFailed(f"SSH authentication to {address} failed: {e}") from e
        except asyncio.TimeoutError:
            raise DialFailed(address, f"timed out after {timeout:.0f}s") from None
        except (OSError, asyncssh.Error) as e:
            raise DialFailed(address, str(e)) from e

        return cls(conn, lost, address)

    async def listen(self, host: str, port: int, on_connection: Callable):
        """
        Request a remote-bound listener.

        Args:
            host: Remote bind address spelling ("0.0.0.0", "", "*").
            port: Remote port.
            on_connection: Called with (reader, writer) for every accepted
                connection.

        Returns:
            asyncssh.SSHListener

        Raises:
            asyncssh.Error, OSError: If the server refuses the forward.
        """

        def handler_factory(orig_host: str, orig_port: int):
            logger.debug(f"Remote connection from {orig_host}:{orig_port}")
            return on_connection

        return await self._conn.start_server(handler_factory, host, port)

    async def keepalive(self) -> None:
        """
        Check that the control channel is still alive.

        Raises:
            ConnectionError: If the connection has been lost.
        """
        if self._lost.is_set():
            raise ConnectionError(f"SSH connection to {self.address} lost")

    def close(self) -> None:
        """Close the connection; idempotent."""
        self._conn.close()

    async def wait_closed(self) -> None:
        """Wait for the connection to finish closing."""
        await self._conn.wait_closed()
