"""
Tunnel manager.

Owns the single tunnel session: opens the outbound SSH control channel,
binds the public port on the remote host, relays each accepted connection to
the local HTTP server, and keeps the tunnel alive.

Architecture:
    Viewer ──► VPS:vps_http_port ══SSH══► relay task ──► 127.0.0.1:local_http_port

Connect sequence:
    1. Resolve credentials (agent, then key file)
    2. Open the control channel (host key checking per settings)
    3. Request the remote listener, trying each bind spelling in order
    4. On any failure above, run the system ssh command instead

The keepalive monitor is the only task that triggers reconnection, so
connect attempts never overlap.
"""

import asyncio
from typing import Awaitable, Callable

import asyncssh

from camrelay.config import ServiceSettings, settings as default_settings
from camrelay.exceptions import (
    DialFailed,
    FallbackTransportFailed,
    RemoteBindFailed,
    TunnelError,
)
from camrelay.models.enums import TunnelState
from camrelay.models.sources import CameraConfig
from camrelay.tunnel.channel import SSHControlChannel
from camrelay.tunnel.credentials import CredentialResolver
from camrelay.tunnel.fallback import SystemSSHTunnel, build_ssh_command
from camrelay.tunnel.relay import close_writer, relay_streams
from camrelay.tunnel.session import TunnelSession
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

# Remote bind address spellings, tried in order; the first success is final
REMOTE_BIND_HOSTS = ("0.0.0.0", "", "*")

LOCAL_GATEWAY_HOST = "127.0.0.1"


class TunnelManager:
    """Keeps the local front door published on the remote host."""

    def __init__(
        self,
        config: CameraConfig,
        resolver: CredentialResolver | None = None,
        channel_factory: Callable[[list], Awaitable] | None = None,
        fallback_factory: Callable[[list[str]], SystemSSHTunnel] | None = None,
        settings: ServiceSettings | None = None,
    ):
        """
        Initialize the tunnel manager.

        Args:
            config: Configuration document.
            resolver: Credential resolver; built from the config if omitted.
            channel_factory: Coroutine taking identities and returning a
                connected control channel; defaults to asyncssh.
            fallback_factory: Builds the system ssh tunnel from a command.
            settings: Runtime settings; the global instance if omitted.
        """
        self.config = config
        self.settings = settings or default_settings
        self.session = TunnelSession()

        self.local_host = LOCAL_GATEWAY_HOST
        self.local_port = config.local_http_port
        self.remote_port = config.vps_http_port

        self._resolver = resolver or CredentialResolver(
            config.key_path(), config.ssh_passphrase
        )
        self._channel_factory = channel_factory or self._open_ssh_channel
        self._fallback_factory = fallback_factory or self._make_system_tunnel

        self._connect_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._monitor_task: asyncio.Task | None = None
        self._relay_tasks: set[asyncio.Task] = set()
        self._relay_counter = 0
        self._stopped = False

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> TunnelState:
        return self.session.state

    @property
    def active_relays(self) -> int:
        return len(self._relay_tasks)

    def public_url(self) -> str:
        return f"http://{self.config.vps_host}:{self.remote_port}"

    async def start(self) -> None:
        """
        Run the initial connect sequence and start liveness monitoring.

        Raises:
            FallbackTransportFailed: If both transports failed.
        """
        self.session.transition(TunnelState.CONNECTING)
        try:
            await self._establish()
        except FallbackTransportFailed as e:
            self.session.last_error = str(e)
            self.session.transition(TunnelState.FAILED)
            raise

        self.session.transition(TunnelState.ACTIVE)
        logger.info(f"Tunnel active ({self.session.transport.value})")
        logger.info(f"Multi-camera viewer should be accessible at: {self.public_url()}")

        self._monitor_task = asyncio.create_task(self._monitor())

    async def stop(self) -> None:
        """Stop monitoring, close the tunnel and all relays; idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        if self._monitor_task:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        await self._teardown()

        relays = list(self._relay_tasks)
        for task in relays:
            task.cancel()
        await asyncio.gather(*relays, return_exceptions=True)

        self.session.transition(TunnelState.IDLE)
        logger.info("Tunnel stopped")

    async def check_once(self) -> None:
        """
        Run one liveness check; reconnect if the tunnel is dead.

        Called by the monitor on every tick. A missing channel means a
        reconnect is being set up, so the tick is skipped.
        """
        state = self.session.state

        if state == TunnelState.FAILED:
            await self._reconnect("previous connect attempt failed")
            return
        if state != TunnelState.ACTIVE:
            return

        fallback = self.session.current_fallback()
        if fallback is not None:
            if not fallback.is_running():
                logger.warning("System SSH tunnel is no longer running")
                await self._reconnect("system ssh process exited")
            return

        channel = self.session.current_channel()
        if channel is None:
            return

        try:
            await asyncio.wait_for(
                channel.keepalive(), timeout=self.settings.KEEPALIVE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning("SSH tunnel keepalive timed out")
            await self._reconnect("keepalive timed out")
        except Exception as e:
            logger.warning(f"SSH tunnel disconnected: {e}")
            await self._reconnect(str(e))

    # =========================================================================
    # Connect sequence
    # =========================================================================

    async def _establish(self) -> None:
        """Connect with the SSH client, falling back to system ssh."""
        async with self._connect_lock:
            try:
                await self._connect_primary()
                return
            except TunnelError as e:
                primary_error = e
                logger.warning(f"SSH client failed: {e}")
                logger.info("Trying system SSH command as fallback...")

            try:
                await self._connect_fallback()
            except FallbackTransportFailed as e:
                raise FallbackTransportFailed(
                    f"Both SSH client and system SSH failed: {primary_error}; {e}"
                ) from e

    async def _connect_primary(self) -> None:
        """
        Open the control channel and bind the remote listener.

        Raises:
            AuthFailed, DialFailed, RemoteBindFailed
        """
        material = await self._resolver.resolve()
        logger.info(
            f"Connecting to SSH server: {self.config.vps_host}:{self.config.vps_port} "
            f"(identities from: {', '.join(material.sources)})"
        )
        try:
            channel = await self._channel_factory(material.identities)
        finally:
            material.close()
        logger.info("SSH connection established")

        try:
            listener = await self._bind_remote(channel)
        except BaseException:
            # Bind rejected or connect cancelled; the session never owns it
            await self._close_channel(channel)
            raise

        self.session.install_primary(channel, listener)

    async def _bind_remote(self, channel):
        """
        Request the remote listener, trying each bind spelling in order.

        Raises:
            RemoteBindFailed: If every spelling was rejected.
        """
        local_addr = f"{self.local_host}:{self.local_port}"
        attempts: list[str] = []

        for attempt, host in enumerate(REMOTE_BIND_HOSTS, start=1):
            remote_addr = f"{host}:{self.remote_port}"
            logger.info(
                f"Attempt {attempt}: Creating reverse tunnel {remote_addr} -> {local_addr}"
            )
            try:
                listener = await channel.listen(
                    host, self.remote_port, self._on_remote_connection
                )
            except (OSError, asyncssh.Error) as e:
                logger.warning(f"Attempt {attempt} failed: {e}")
                attempts.append(remote_addr)
                continue

            logger.info(f"Remote listener created with address format: {remote_addr}")
            return listener

        logger.error("All tunnel creation attempts failed")
        raise RemoteBindFailed(self.remote_port, attempts)

    async def _connect_fallback(self) -> None:
        """
        Start the system ssh tunnel.

        Raises:
            FallbackTransportFailed
        """
        command = build_ssh_command(
            ssh_path=self.settings.get_ssh_path(),
            key_path=self.config.key_path(),
            user=self.config.vps_user,
            host=self.config.vps_host,
            port=self.config.vps_port,
            remote_port=self.remote_port,
            local_port=self.local_port,
            strict_host_key=self.settings.STRICT_HOST_KEY_CHECKING,
            known_hosts=self.settings.get_known_hosts_path(),
        )
        tunnel = self._fallback_factory(command)
        await tunnel.start()
        self.session.install_fallback(tunnel)

    async def _open_ssh_channel(self, identities: list) -> SSHControlChannel:
        """Default channel factory: asyncssh connection to the VPS."""
        known_hosts = self.settings.get_known_hosts_path()
        if known_hosts is None:
            logger.warning("SSH host key verification is disabled")
        return await SSHControlChannel.connect(
            self.config.vps_host,
            self.config.vps_port,
            self.config.vps_user,
            identities,
            known_hosts=known_hosts,
            timeout=self.settings.SSH_CONNECT_TIMEOUT_SECONDS,
            keepalive_interval=self.settings.KEEPALIVE_INTERVAL_SECONDS,
        )

    def _make_system_tunnel(self, command: list[str]) -> SystemSSHTunnel:
        return SystemSSHTunnel(command, settle_seconds=self.settings.FALLBACK_SETTLE_SECONDS)

    # =========================================================================
    # Liveness monitoring
    # =========================================================================

    async def _monitor(self) -> None:
        """Check the tunnel every interval until stopped."""
        interval = self.settings.KEEPALIVE_INTERVAL_SECONDS
        while not self._stop_event.is_set():
            if await self._wait_for_stop(interval):
                break
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error in tunnel monitor: {e}")

    async def _reconnect(self, reason: str) -> None:
        """Close the old tunnel, back off, and re-run the connect sequence."""
        self.session.transition(TunnelState.RECONNECTING)
        self.session.last_error = reason
        logger.info("Attempting to reconnect...")

        await self._teardown()

        if await self._wait_for_stop(self.settings.RECONNECT_BACKOFF_SECONDS):
            return

        try:
            await self._establish()
        except TunnelError as e:
            self.session.last_error = str(e)
            self.session.transition(TunnelState.FAILED)
            logger.error(f"Failed to reconnect SSH tunnel: {e}")
            return
        except Exception as e:
            self.session.last_error = str(e)
            self.session.transition(TunnelState.FAILED)
            logger.exception(f"Unexpected error while reconnecting: {e}")
            return

        self.session.transition(TunnelState.ACTIVE)
        logger.info(f"SSH tunnel reconnected successfully ({self.session.transport.value})")

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to timeout; return True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _teardown(self) -> None:
        """Detach and close whatever handles the session holds."""
        channel, listener, fallback = self.session.detach()

        if listener is not None:
            listener.close()
        if channel is not None:
            await self._close_channel(channel)
        if fallback is not None:
            await fallback.stop(timeout=self.settings.PROCESS_TERMINATE_TIMEOUT_SECONDS)

    async def _close_channel(self, channel) -> None:
        channel.close()
        try:
            await asyncio.wait_for(channel.wait_closed(), timeout=5.0)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            logger.debug(f"Error while closing SSH channel: {e}")

    # =========================================================================
    # Inbound connections
    # =========================================================================

    def _on_remote_connection(self, reader, writer) -> None:
        """Spawn a relay task for a connection accepted on the remote port."""
        if self._stopped:
            writer.close()
            return

        self._relay_counter += 1
        task = asyncio.create_task(
            self._relay_inbound(reader, writer, self._relay_counter)
        )
        self._relay_tasks.add(task)
        task.add_done_callback(self._relay_tasks.discard)

    async def _relay_inbound(self, reader, writer, relay_id: int) -> None:
        """Dial the local front door and relay until either side closes."""
        log_prefix = f"Relay #{relay_id}"
        local_addr = f"{self.local_host}:{self.local_port}"
        logger.debug(f"[{log_prefix}] New tunnel connection -> {local_addr}")

        try:
            local_reader, local_writer = await asyncio.wait_for(
                asyncio.open_connection(self.local_host, self.local_port),
                timeout=self.settings.LOCAL_DIAL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            error = DialFailed(local_addr, "timed out")
            logger.warning(f"[{log_prefix}] {error}")
            await close_writer(writer)
            return
        except OSError as e:
            error = DialFailed(local_addr, str(e))
            logger.warning(f"[{log_prefix}] {error}")
            await close_writer(writer)
            return

        try:
            await relay_streams(
                (reader, writer), (local_reader, local_writer), label=log_prefix
            )
        except Exception as e:
            logger.warning(f"[{log_prefix}] Connection transfer error: {e}")
