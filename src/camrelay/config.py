"""
Runtime settings for CamRelay.

This module defines the settings dataclass for the relay service. Unlike the
configuration document (see camrelay.models.sources), these values are not
persisted; they carry timing constants and operator switches that the CLI
may override before the service starts.

Usage:
    from camrelay.config import settings

    # Modify settings before starting
    settings.MAX_CONCURRENT_STREAMS = 8
    settings.LOG_LEVEL = LogLevel.DEBUG
"""

import os
import shutil
from dataclasses import dataclass

from camrelay.models.enums import LogLevel


# =============================================================================
# Settings Dataclass
# =============================================================================


@dataclass
class ServiceSettings:
    """
    Relay service settings.

    Attributes:
        CONFIG_FILE: Path of the JSON configuration document.
        KEEPALIVE_INTERVAL_SECONDS: Tunnel liveness check interval.
        RECONNECT_BACKOFF_SECONDS: Pause between closing a dead channel and
            reconnecting.
        MAX_CONCURRENT_STREAMS: Transcoder ceiling (0 = unlimited).
        STRICT_HOST_KEY_CHECKING: Verify the remote host key.
        LOG_LEVEL: Logging verbosity level.
    """

    # -------------------------------------------------------------------------
    # Path Configuration
    # -------------------------------------------------------------------------

    CONFIG_FILE: str = "camera_config.json"
    FFMPEG_PATH: str = ""  # Empty = look up 'ffmpeg' on PATH
    SSH_PATH: str = ""  # Empty = look up 'ssh' on PATH
    KNOWN_HOSTS_PATH: str = "~/.ssh/known_hosts"
    LOG_FILE: str = ""  # Empty = console only

    # -------------------------------------------------------------------------
    # Tunnel Timing
    # -------------------------------------------------------------------------

    SSH_CONNECT_TIMEOUT_SECONDS: float = 30.0
    KEEPALIVE_INTERVAL_SECONDS: float = 10.0
    KEEPALIVE_TIMEOUT_SECONDS: float = 10.0
    RECONNECT_BACKOFF_SECONDS: float = 5.0
    LOCAL_DIAL_TIMEOUT_SECONDS: float = 10.0
    FALLBACK_SETTLE_SECONDS: float = 3.0

    # -------------------------------------------------------------------------
    # Gateway Configuration
    # -------------------------------------------------------------------------

    MAX_CONCURRENT_STREAMS: int = 0
    STREAM_CHUNK_SIZE: int = 64 * 1024
    PROCESS_TERMINATE_TIMEOUT_SECONDS: float = 5.0

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------

    HTTP_BIND_IP: str = "0.0.0.0"
    HTTP_SHUTDOWN_GRACE_SECONDS: float = 10.0
    SOURCE_PROBE_TIMEOUT_SECONDS: float = 3.0
    REQUIRE_REACHABLE_SOURCES: bool = True

    # -------------------------------------------------------------------------
    # Security
    # -------------------------------------------------------------------------

    # Host key verification is off unless explicitly enabled
    STRICT_HOST_KEY_CHECKING: bool = False

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO

    def get_ffmpeg_path(self) -> str:
        """Get the ffmpeg executable path."""
        if self.FFMPEG_PATH:
            return self.FFMPEG_PATH
        return shutil.which("ffmpeg") or "ffmpeg"

    def get_ssh_path(self) -> str:
        """Get the system ssh executable path."""
        if self.SSH_PATH:
            return self.SSH_PATH
        return shutil.which("ssh") or "ssh"

    def get_known_hosts_path(self) -> str | None:
        """Known hosts file used when host key checking is enabled."""
        if not self.STRICT_HOST_KEY_CHECKING:
            return None
        return os.path.expanduser(self.KNOWN_HOSTS_PATH)


# Global settings instance
settings = ServiceSettings()
