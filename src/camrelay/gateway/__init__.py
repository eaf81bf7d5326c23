"""
Transcode gateway: one ffmpeg process per stream request.
"""

from camrelay.gateway.probe import check_ffmpeg, check_local_http, probe_sources
from camrelay.gateway.transcode import (
    StreamSession,
    TranscodeGateway,
    TranscodeStreamResponse,
    build_ffmpeg_command,
)

__all__ = [
    "StreamSession",
    "TranscodeGateway",
    "TranscodeStreamResponse",
    "build_ffmpeg_command",
    "check_ffmpeg",
    "check_local_http",
    "probe_sources",
]
