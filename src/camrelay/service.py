"""
CamRelay service lifecycle.

Wires the front door, the transcode gateway and the tunnel manager together
and runs them in one event loop.

Startup order:
    1. ffmpeg check and camera probes
    2. Local HTTP server (uvicorn)
    3. Local HTTP self-test
    4. Tunnel (SSH client, then system ssh)

Shutdown runs the same pieces in reverse: the tunnel first so no new viewers
arrive, then every transcoder, then the HTTP server.
"""

import asyncio
import contextlib
import signal

import uvicorn

from camrelay.config import ServiceSettings, settings as default_settings
from camrelay.exceptions import StartupCheckFailed
from camrelay.gateway.probe import check_ffmpeg, check_local_http, probe_sources
from camrelay.gateway.transcode import TranscodeGateway
from camrelay.models.enums import LogLevel
from camrelay.models.sources import CameraConfig
from camrelay.server.app import create_app
from camrelay.tunnel.manager import TunnelManager
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

BANNER_WIDTH = 60

_UVICORN_LEVELS = {
    LogLevel.FULL: "debug",
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARNING: "warning",
}


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the service."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CamRelayService:
    """The whole relay: front door, gateway and tunnel."""

    def __init__(
        self,
        camera_config: CameraConfig,
        settings: ServiceSettings | None = None,
        gateway: TranscodeGateway | None = None,
        tunnel: TunnelManager | None = None,
    ):
        self.camera_config = camera_config
        self.settings = settings or default_settings
        self.gateway = gateway or TranscodeGateway(
            camera_config.sources(), settings=self.settings
        )
        self.tunnel = tunnel or TunnelManager(camera_config, settings=self.settings)
        self.app = create_app(camera_config, self.gateway, self.tunnel)

        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self._stopped = False

    # =========================================================================
    # Startup
    # =========================================================================

    async def start(self) -> None:
        """
        Run the startup checks, the HTTP server and the tunnel.

        Raises:
            StartupCheckFailed: ffmpeg missing, no camera reachable, or the
                local HTTP server not answering.
            FallbackTransportFailed: Neither tunnel transport came up.
        """
        self._log_banner()
        await self._run_checks()
        await self._start_http_server()

        logger.info(f"Testing local HTTP server on port {self.camera_config.local_http_port}")
        if not await check_local_http(self.camera_config.local_http_port):
            raise StartupCheckFailed("Local HTTP server is not responding")

        await self.tunnel.start()
        self._log_ready()

    async def _run_checks(self) -> None:
        ffmpeg_path = self.settings.get_ffmpeg_path()
        version = await check_ffmpeg(ffmpeg_path)
        if version is None:
            logger.error("FFmpeg not found. Please install FFmpeg.")
            logger.error("Ubuntu/Debian: sudo apt install ffmpeg")
            logger.error("macOS: brew install ffmpeg")
            raise StartupCheckFailed("FFmpeg not found")
        logger.info(f"FFmpeg found and working: {version}")

        sources = self.gateway.sources
        results = await probe_sources(
            sources, timeout=self.settings.SOURCE_PROBE_TIMEOUT_SECONDS
        )
        working = [r for r in results if r.reachable]
        logger.info(f"Found {len(working)} working cameras")

        if not working and self.settings.REQUIRE_REACHABLE_SOURCES:
            raise StartupCheckFailed("No cameras are accessible")

    async def _start_http_server(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.settings.HTTP_BIND_IP,
            port=self.camera_config.local_http_port,
            log_level=_UVICORN_LEVELS.get(self.settings.LOG_LEVEL, "info"),
            log_config=None,  # Disable uvicorn's default logging config (use loguru)
            timeout_graceful_shutdown=int(self.settings.HTTP_SHUTDOWN_GRACE_SECONDS),
        )
        self._server = _EmbeddedServer(config)
        self._server_task = asyncio.create_task(self._server.serve())

        logger.info(
            f"Starting HTTP server on {self.settings.HTTP_BIND_IP}:"
            f"{self.camera_config.local_http_port}"
        )
        while not self._server.started:
            if self._server_task.done():
                error = self._server_task.exception()
                raise StartupCheckFailed(f"Failed to start HTTP server: {error or 'exited'}")
            await asyncio.sleep(0.1)

    # =========================================================================
    # Running
    # =========================================================================

    async def run(self) -> None:
        """Start, then serve until SIGINT/SIGTERM or the HTTP server exits."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

        try:
            await self.start()

            stop_wait = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait(
                {stop_wait, self._server_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if not stop_wait.done():
                stop_wait.cancel()
                logger.warning("HTTP server exited unexpectedly")
            else:
                logger.info("Shutdown signal received")
        finally:
            await self.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(sig)

    async def stop(self) -> None:
        """Stop the tunnel, every transcoder and the HTTP server; idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._shutdown_event.set()
        logger.info("Stopping server...")

        await self.tunnel.stop()
        await self.gateway.shutdown()

        if self._server is not None and self._server_task is not None:
            self._server.should_exit = True
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._server_task),
                    timeout=self.settings.HTTP_SHUTDOWN_GRACE_SECONDS + 5,
                )
            except asyncio.TimeoutError:
                logger.warning("HTTP server did not stop in time, cancelling")
                self._server_task.cancel()
                await asyncio.gather(self._server_task, return_exceptions=True)
            except Exception as e:
                logger.error(f"HTTP server stopped with error: {e}")

        logger.info("Server stopped")

    # =========================================================================
    # Banner
    # =========================================================================

    def _log_banner(self) -> None:
        config = self.camera_config
        logger.info("Starting Multi-Camera HTTP Streaming SSH Tunnel Service")
        logger.info(f"Cameras configured: {len(config.cameras)}")
        for source in self.gateway.sources.values():
            logger.info(f"  - {source.name}: {source.description}")
        logger.info(f"Local HTTP: localhost:{config.local_http_port}")
        logger.info(f"VPS: {config.vps_user}@{config.vps_host}:{config.vps_port}")
        logger.info(f"Public access: {self.tunnel.public_url()}")

    def _log_ready(self) -> None:
        public_url = self.tunnel.public_url()
        logger.info("=" * BANNER_WIDTH)
        logger.info("MULTI-CAMERA SYSTEM READY!")
        logger.info("=" * BANNER_WIDTH)
        logger.info(f"Main viewer: {public_url}")
        logger.info(f"API endpoint: {public_url}/api/cameras")
        logger.info("")
        logger.info("Individual camera streams:")
        for source in self.gateway.sources.values():
            logger.info(f"  {source.name}: {public_url}/stream/{source.id}")
        logger.info("=" * BANNER_WIDTH)
