"""Tests for the tunnel manager using fake control channels."""

import asyncio

import asyncssh
import pytest

from camrelay.exceptions import AuthFailed, DialFailed, FallbackTransportFailed
from camrelay.models.enums import TunnelState, TunnelTransport
from camrelay.tunnel import relay
from camrelay.tunnel.credentials import CredentialMaterial
from camrelay.tunnel.fallback import SystemSSHTunnel
from camrelay.tunnel.manager import TunnelManager
from tests.helpers import python_command, unused_port


class FakeListener:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeChannel:
    """Control channel stand-in with scriptable bind and liveness."""

    def __init__(self, reject_hosts=()):
        self.reject_hosts = set(reject_hosts)
        self.listen_calls: list[str] = []
        self.listeners: list[FakeListener] = []
        self.alive = True
        self.closed = False
        self.on_connection = None

    async def listen(self, host, port, on_connection):
        self.listen_calls.append(host)
        if host in self.reject_hosts:
            raise asyncssh.ChannelListenError("Port forwarding request denied")
        self.on_connection = on_connection
        listener = FakeListener()
        self.listeners.append(listener)
        return listener

    async def keepalive(self):
        if not self.alive:
            raise ConnectionError("SSH connection lost")

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class HangingChannel(FakeChannel):
    """Channel whose listen request never gets an answer."""

    def __init__(self):
        super().__init__()
        self.listening = asyncio.Event()

    async def listen(self, host, port, on_connection):
        self.listen_calls.append(host)
        self.listening.set()
        await asyncio.Event().wait()


class ChannelFactory:
    """Hands out prepared channels in order; an exception entry is raised."""

    def __init__(self, *channels):
        self.channels = list(channels)
        self.calls = 0

    async def __call__(self, identities):
        self.calls += 1
        item = self.channels.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeResolver:
    async def resolve(self):
        return CredentialMaterial(identities=["key"], sources=["key_file"])


class FakeFallback:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.running = False
        self.stopped = False

    async def start(self):
        if self.fail:
            raise FallbackTransportFailed("ssh exited with code 255")
        self.running = True

    def is_running(self):
        return self.running

    async def stop(self, timeout=5.0):
        self.running = False
        self.stopped = True


class FallbackFactory:
    def __init__(self, *tunnels):
        self.tunnels = list(tunnels)
        self.commands: list[list[str]] = []

    def __call__(self, command):
        self.commands.append(command)
        return self.tunnels.pop(0)


class SystemTunnelFactory:
    """Builds real system tunnels around a sleeping child, one settle time each."""

    def __init__(self, *settle_seconds):
        self.settle_seconds = list(settle_seconds)
        self.tunnels: list[SystemSSHTunnel] = []

    def __call__(self, command):
        tunnel = SystemSSHTunnel(
            python_command("import time; time.sleep(60)"),
            settle_seconds=self.settle_seconds.pop(0),
        )
        self.tunnels.append(tunnel)
        return tunnel


def make_manager(camera_config, settings, channels, fallbacks=None):
    return TunnelManager(
        camera_config,
        resolver=FakeResolver(),
        channel_factory=channels,
        fallback_factory=fallbacks or FallbackFactory(),
        settings=settings,
    )


class RecordingWriter:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class TestConnect:
    """Tests for the initial connect sequence."""

    async def test_binds_with_first_accepted_spelling(self, camera_config, fast_settings):
        """Should try bind spellings in order and stop at the first success."""
        channel = FakeChannel(reject_hosts={"0.0.0.0"})
        manager = make_manager(camera_config, fast_settings, ChannelFactory(channel))

        await manager.start()
        try:
            assert manager.state == TunnelState.ACTIVE
            assert manager.session.transport == TunnelTransport.SSH_CLIENT
            assert channel.listen_calls == ["0.0.0.0", ""]
        finally:
            await manager.stop()

    async def test_all_spellings_rejected_uses_fallback(self, camera_config, fast_settings):
        """Should close the channel and run system ssh when no bind succeeds."""
        channel = FakeChannel(reject_hosts={"0.0.0.0", "", "*"})
        fallback = FakeFallback()
        fallbacks = FallbackFactory(fallback)
        manager = make_manager(camera_config, fast_settings, ChannelFactory(channel), fallbacks)

        await manager.start()
        try:
            assert channel.listen_calls == ["0.0.0.0", "", "*"]
            assert channel.closed
            assert manager.session.transport == TunnelTransport.SYSTEM_SSH
            assert fallback.running

            command = fallbacks.commands[0]
            assert command[command.index("-R") + 1] == "0.0.0.0:18081:localhost:18080"
            assert command[-1] == "relay@vps.test"
        finally:
            await manager.stop()

        assert fallback.stopped

    async def test_both_transports_fail(self, camera_config, fast_settings):
        manager = make_manager(
            camera_config,
            fast_settings,
            ChannelFactory(AuthFailed("permission denied")),
            FallbackFactory(FakeFallback(fail=True)),
        )

        with pytest.raises(FallbackTransportFailed) as exc_info:
            await manager.start()

        assert manager.state == TunnelState.FAILED
        assert "permission denied" in str(exc_info.value)
        await manager.stop()
        assert manager.state == TunnelState.IDLE


class TestLiveness:
    """Tests for keepalive checks and reconnection."""

    async def test_healthy_channel_is_left_alone(self, camera_config, fast_settings):
        channels = ChannelFactory(FakeChannel())
        manager = make_manager(camera_config, fast_settings, channels)
        await manager.start()

        try:
            await manager.check_once()
            assert channels.calls == 1
            assert manager.session.reconnect_count == 0
        finally:
            await manager.stop()

    async def test_lost_channel_triggers_reconnect(self, camera_config, fast_settings):
        """Should close the old channel and listener, then connect again."""
        first, second = FakeChannel(), FakeChannel()
        channels = ChannelFactory(first, second)
        manager = make_manager(camera_config, fast_settings, channels)
        await manager.start()

        try:
            first.alive = False
            await manager.check_once()

            assert manager.state == TunnelState.ACTIVE
            assert manager.session.reconnect_count == 1
            assert channels.calls == 2
            assert first.closed
            assert first.listeners[0].closed
            assert manager.session.current_channel() is second
        finally:
            await manager.stop()

        assert second.closed

    async def test_failed_reconnect_is_retried(self, camera_config, fast_settings):
        """Should go FAILED, then recover on a later check."""
        first, third = FakeChannel(), FakeChannel()
        channels = ChannelFactory(first, DialFailed("vps.test:2222", "network unreachable"), third)
        fallbacks = FallbackFactory(FakeFallback(fail=True))
        manager = make_manager(camera_config, fast_settings, channels, fallbacks)
        await manager.start()

        try:
            first.alive = False
            await manager.check_once()
            assert manager.state == TunnelState.FAILED
            assert manager.session.last_error

            await manager.check_once()
            assert manager.state == TunnelState.ACTIVE
            assert manager.session.current_channel() is third
            assert manager.session.reconnect_count == 2
        finally:
            await manager.stop()

    async def test_exited_fallback_triggers_reconnect(self, camera_config, fast_settings):
        rejecting = FakeChannel(reject_hosts={"0.0.0.0", "", "*"})
        fallback = FakeFallback()
        channels = ChannelFactory(rejecting, FakeChannel())
        manager = make_manager(camera_config, fast_settings, channels, FallbackFactory(fallback))
        await manager.start()

        try:
            assert manager.session.transport == TunnelTransport.SYSTEM_SSH
            fallback.running = False

            await manager.check_once()

            assert manager.session.transport == TunnelTransport.SSH_CLIENT
            assert fallback.stopped
        finally:
            await manager.stop()

    async def test_monitor_reconnects_on_its_own(self, camera_config, fast_settings):
        fast_settings.KEEPALIVE_INTERVAL_SECONDS = 0.05
        first, second = FakeChannel(), FakeChannel()
        manager = make_manager(camera_config, fast_settings, ChannelFactory(first, second))
        await manager.start()

        try:
            first.alive = False
            for _ in range(100):
                if manager.session.current_channel() is second:
                    break
                await asyncio.sleep(0.02)
            assert manager.session.current_channel() is second
        finally:
            await manager.stop()

    async def test_stop_is_idempotent(self, camera_config, fast_settings):
        channel = FakeChannel()
        manager = make_manager(camera_config, fast_settings, ChannelFactory(channel))
        await manager.start()

        await manager.stop()
        await manager.stop()

        assert manager.state == TunnelState.IDLE
        assert channel.closed

    async def test_stop_during_reconnect_stops_new_ssh_process(
        self, camera_config, fast_settings
    ):
        """Should terminate a system ssh process that was still settling."""
        fast_settings.KEEPALIVE_INTERVAL_SECONDS = 0.05
        channels = ChannelFactory(
            DialFailed("vps.test:2222", "network unreachable"),
            DialFailed("vps.test:2222", "network unreachable"),
        )
        fallbacks = SystemTunnelFactory(0.2, 30.0)
        manager = make_manager(camera_config, fast_settings, channels, fallbacks)
        await manager.start()

        try:
            fallbacks.tunnels[0].process.kill()
            for _ in range(250):
                if len(fallbacks.tunnels) == 2 and fallbacks.tunnels[1].process:
                    break
                await asyncio.sleep(0.02)
            second = fallbacks.tunnels[1]
            assert second.process is not None
            assert second.process.returncode is None
        finally:
            await manager.stop()

        assert second.process.returncode is not None
        assert manager.state == TunnelState.IDLE

    async def test_cancelled_bind_closes_channel(self, camera_config, fast_settings):
        """Should close a channel whose remote listener was still pending."""
        channel = HangingChannel()
        manager = make_manager(camera_config, fast_settings, ChannelFactory(channel))

        starting = asyncio.create_task(manager.start())
        await asyncio.wait_for(channel.listening.wait(), timeout=5)
        starting.cancel()

        with pytest.raises(asyncio.CancelledError):
            await starting

        assert channel.closed
        assert manager.session.current_channel() is None


class TestInboundRelay:
    """Tests for connections accepted on the remote listener."""

    @pytest.fixture(autouse=True)
    def short_drain(self, monkeypatch):
        monkeypatch.setattr(relay, "RELAY_DRAIN_TIMEOUT", 0.05)

    async def test_connection_is_relayed_to_local_server(self, camera_config, fast_settings):
        async def local_http(reader, writer):
            await reader.read(1024)
            writer.write(b"HTTP/1.0 200 OK\r\n\r\nhello")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(local_http, "127.0.0.1", 0)
        camera_config.local_http_port = server.sockets[0].getsockname()[1]
        manager = make_manager(camera_config, fast_settings, ChannelFactory())

        remote_reader = asyncio.StreamReader()
        remote_reader.feed_data(b"GET / HTTP/1.0\r\n\r\n")
        remote_writer = RecordingWriter()

        try:
            manager._on_remote_connection(remote_reader, remote_writer)
            assert manager.active_relays == 1
            await asyncio.wait_for(
                asyncio.gather(*list(manager._relay_tasks)), timeout=5
            )
        finally:
            server.close()

        assert bytes(remote_writer.data) == b"HTTP/1.0 200 OK\r\n\r\nhello"
        assert remote_writer.closed
        assert manager.active_relays == 0

    async def test_dial_failure_closes_remote_side(self, camera_config, fast_settings):
        camera_config.local_http_port = unused_port()
        manager = make_manager(camera_config, fast_settings, ChannelFactory())

        remote_reader = asyncio.StreamReader()
        remote_writer = RecordingWriter()

        manager._on_remote_connection(remote_reader, remote_writer)
        await asyncio.wait_for(asyncio.gather(*list(manager._relay_tasks)), timeout=5)

        assert remote_writer.closed
        assert remote_writer.data == bytearray()
