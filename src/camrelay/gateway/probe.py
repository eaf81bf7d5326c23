"""
Startup checks for the gateway's external dependencies.

None of these run per request: they only tell the operator, before the
tunnel is opened, whether ffmpeg is installed, which cameras answer on
their RTSP port, and whether the local front door is serving.
"""

import asyncio
from dataclasses import dataclass
from typing import Mapping

import httpx

from camrelay.models.sources import SourceDescriptor
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ProbeResult:
    """Reachability of one source."""

    source: SourceDescriptor
    reachable: bool
    detail: str = ""


async def check_ffmpeg(ffmpeg_path: str) -> str | None:
    """
    Run ``ffmpeg -version``.

    Returns:
        The first line of the version output, or None if ffmpeg is missing
        or exits with an error.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.error(f"ffmpeg not found at '{ffmpeg_path}': {e}")
        return None

    stdout, _ = await process.communicate()
    if process.returncode != 0:
        logger.error(f"ffmpeg -version exited with code {process.returncode}")
        return None

    first_line = stdout.decode(errors="replace").splitlines()[:1]
    return first_line[0] if first_line else ffmpeg_path


async def probe_source(source: SourceDescriptor, timeout: float = 3.0) -> ProbeResult:
    """Attempt a TCP connect to the source's RTSP endpoint."""
    endpoint = source.endpoint()
    if endpoint is None:
        return ProbeResult(source, False, "could not parse host from URL")

    host, port = endpoint
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except asyncio.TimeoutError:
        return ProbeResult(source, False, f"{host}:{port} timed out")
    except OSError as e:
        return ProbeResult(source, False, f"{host}:{port} {e.strerror or e}")

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return ProbeResult(source, True, f"{host}:{port}")


async def probe_sources(
    sources: Mapping[str, SourceDescriptor], timeout: float = 3.0
) -> list[ProbeResult]:
    """
    Probe every source concurrently and log the outcome per camera.

    Returns:
        Results in source-table order.
    """
    logger.info("Testing camera connections...")
    results = await asyncio.gather(
        *(probe_source(source, timeout) for source in sources.values())
    )
    for result in results:
        if result.reachable:
            logger.info(f"✓ Camera {result.source.id} ({result.source.name}) is accessible")
        else:
            logger.warning(
                f"✗ Camera {result.source.id} ({result.source.name}) "
                f"is not accessible: {result.detail}"
            )
    return list(results)


async def check_local_http(port: int, timeout: float = 5.0) -> bool:
    """
    GET the local front door's root page.

    Any HTTP response counts as success; only a transport failure does not.
    """
    url = f"http://127.0.0.1:{port}/"
    try:
        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"Local HTTP server test failed: {e}")
        return False

    logger.info(f"Local HTTP server responding with status: {response.status_code}")
    return True
