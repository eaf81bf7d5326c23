"""
Transcode gateway.

Turns a camera source into an HTTP byte stream: every stream request gets its
own ffmpeg process whose fragmented MP4 output is written straight into the
response body. The process lives exactly as long as the request; it is
terminated (then killed if it lingers) when the client goes away, when it
finishes on its own, or when the server shuts down.
"""

import asyncio
import collections
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Mapping

from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from camrelay.config import ServiceSettings, settings as default_settings
from camrelay.exceptions import ProcessStartFailed, SourceNotFound, StreamCapacityExceeded
from camrelay.models.sources import SourceDescriptor
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

STREAM_MEDIA_TYPE = "video/mp4"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Accept-Ranges": "none",
    "Connection": "close",
}

# Lines of ffmpeg stderr kept for the exit log
STDERR_TAIL_LINES = 20


def build_ffmpeg_command(ffmpeg_path: str, rtsp_url: str) -> list[str]:
    """
    Build the fixed-parameter transcoding invocation for one source.

    Output is fragmented MP4 on stdout so a player can start rendering
    before the stream ends.
    """
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-rtsp_transport", "tcp",
        "-i", rtsp_url,
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-crf", "28",
        "-maxrate", "2M",
        "-bufsize", "4M",
        "-g", "30",
        "-c:a", "aac",
        "-b:a", "128k",
        "-f", "mp4",
        "-movflags", "frag_keyframe+empty_moov+faststart",
        "-reset_timestamps", "1",
        "-avoid_negative_ts", "make_zero",
        "-fflags", "+genpts",
        "-r", "15",
        "pipe:1",
    ]  # fmt: skip


@dataclass
class StreamSession:
    """One client request bound to one transcoding process."""

    session_id: int
    source: SourceDescriptor
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.monotonic)
    bytes_sent: int = 0
    client_disconnected: bool = False
    released: bool = False
    stderr_tail: collections.deque = field(
        default_factory=lambda: collections.deque(maxlen=STDERR_TAIL_LINES)
    )
    stderr_task: asyncio.Task | None = None

    @property
    def label(self) -> str:
        return f"Stream {self.source.id}#{self.session_id}"


class TranscodeStreamResponse(StreamingResponse):
    """Streaming response that releases its session however the request ends."""

    def __init__(self, gateway: "TranscodeGateway", session: StreamSession):
        super().__init__(
            gateway.stream(session),
            media_type=STREAM_MEDIA_TYPE,
            headers=STREAM_HEADERS,
        )
        self.gateway = gateway
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except ClientDisconnect:
            self.session.client_disconnected = True
            logger.info(f"[{self.session.label}] Client disconnected")
        finally:
            self.gateway.release(self.session)


class TranscodeGateway:
    """Spawns and supervises one transcoding process per stream request."""

    def __init__(
        self,
        sources: Mapping[str, SourceDescriptor],
        settings: ServiceSettings | None = None,
        command_builder: Callable[[SourceDescriptor], list[str]] | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            sources: Read-only source table.
            settings: Runtime settings; the global instance if omitted.
            command_builder: Builds the process command for a source;
                defaults to the ffmpeg invocation.
        """
        self.sources = sources
        self.settings = settings or default_settings
        self._command_builder = command_builder or self._ffmpeg_command
        self._sessions: dict[int, StreamSession] = {}
        self._reapers: set[asyncio.Task] = set()
        self._counter = 0
        self._pending = 0
        self._shut_down = False

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[StreamSession]:
        return list(self._sessions.values())

    def get_source(self, source_id: str) -> SourceDescriptor:
        """
        Look up a source.

        Raises:
            SourceNotFound: If the id is not in the source table.
        """
        source = self.sources.get(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        return source

    async def handle(self, source_id: str) -> TranscodeStreamResponse:
        """
        Start a stream for a source and return the response that carries it.

        Raises:
            SourceNotFound: Unknown id; no process is spawned.
            StreamCapacityExceeded: Concurrent stream ceiling reached.
            ProcessStartFailed: The transcoder could not be launched.
        """
        session = await self.open(source_id)
        return TranscodeStreamResponse(self, session)

    async def open(self, source_id: str) -> StreamSession:
        """Resolve the source and spawn its transcoding process."""
        source = self.get_source(source_id)

        if self._shut_down:
            raise ProcessStartFailed(source_id, "server is shutting down")

        # Spawns in flight hold a slot until they are registered or fail
        limit = self.settings.MAX_CONCURRENT_STREAMS
        if limit and len(self._sessions) + self._pending >= limit:
            logger.warning(f"Rejecting stream for {source_id}: {limit} streams active")
            raise StreamCapacityExceeded(limit)

        command = self._command_builder(source)
        self._pending += 1
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to start transcoder for {source_id}: {e}")
            raise ProcessStartFailed(source_id, str(e)) from e
        finally:
            self._pending -= 1

        self._counter += 1
        session = StreamSession(session_id=self._counter, source=source, process=process)
        session.stderr_task = asyncio.create_task(self._drain_stderr(session))
        self._sessions[session.session_id] = session

        if self._shut_down:
            # Shutdown ran while the process was starting
            self.release(session)
            raise ProcessStartFailed(source_id, "server is shutting down")

        logger.info(
            f"[{session.label}] Starting stream for {source.name} "
            f"({source.redacted_url()}), pid {process.pid}"
        )
        return session

    async def stream(self, session: StreamSession) -> AsyncIterator[bytes]:
        """
        Yield the process output until it ends.

        Bytes already in the pipe when the process exits are still delivered.
        A non-zero exit only ends the stream; the response is already
        committed.
        """
        stdout = session.process.stdout
        chunk_size = self.settings.STREAM_CHUNK_SIZE
        try:
            while True:
                chunk = await stdout.read(chunk_size)
                if not chunk:
                    break
                session.bytes_sent += len(chunk)
                yield chunk
        except asyncio.CancelledError:
            session.client_disconnected = True
            logger.info(f"[{session.label}] Client disconnected")
            raise

        if session.released:
            return

        try:
            returncode = await asyncio.wait_for(
                session.process.wait(),
                timeout=self.settings.PROCESS_TERMINATE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{session.label}] Output closed but process still running")
            return

        if returncode != 0:
            tail = " | ".join(session.stderr_tail)
            logger.warning(
                f"[{session.label}] Transcoder exited early with code {returncode}"
                + (f": {tail}" if tail else "")
            )
        else:
            logger.info(f"[{session.label}] Transcoder finished")

    def release(self, session: StreamSession) -> None:
        """
        End a session: signal its process and schedule reaping.

        Synchronous so it is safe to call from a cancelled request task.
        Idempotent.
        """
        if session.released:
            return
        session.released = True
        self._sessions.pop(session.session_id, None)

        if session.process.returncode is None:
            try:
                session.process.terminate()
            except ProcessLookupError:
                pass

        task = asyncio.create_task(self._reap(session))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, session: StreamSession) -> None:
        """Wait for a terminated process, killing it after the timeout."""
        process = session.process
        try:
            await asyncio.wait_for(
                process.wait(), timeout=self.settings.PROCESS_TERMINATE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{session.label}] Process {process.pid} ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

        if session.stderr_task is not None:
            await asyncio.gather(session.stderr_task, return_exceptions=True)

        duration = time.monotonic() - session.started_at
        logger.info(
            f"[{session.label}] Stream ended after {duration:.1f}s, "
            f"{session.bytes_sent} bytes sent, exit code {process.returncode}"
        )

    async def _drain_stderr(self, session: StreamSession) -> None:
        """Keep the last lines of the process's stderr."""
        stderr = session.process.stderr
        if stderr is None:
            return
        async for line in stderr:
            text = line.decode(errors="replace").rstrip()
            if text:
                session.stderr_tail.append(text)
                logger.debug(f"[{session.label}] ffmpeg: {text}")

    async def shutdown(self) -> None:
        """Terminate every active process and wait for all of them; idempotent."""
        self._shut_down = True
        for session in list(self._sessions.values()):
            self.release(session)
        if self._reapers:
            logger.info(f"Waiting for {len(self._reapers)} transcoder(s) to exit")
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    def _ffmpeg_command(self, source: SourceDescriptor) -> list[str]:
        return build_ffmpeg_command(self.settings.get_ffmpeg_path(), source.rtsp_url)
