"""
Enumeration types for CamRelay.

This module defines the enumeration types used for tunnel state tracking,
transport selection and configuration options.
"""

from enum import Enum


# =============================================================================
# Tunnel-Related Enums
# =============================================================================


class TunnelState(str, Enum):
    """
    Lifecycle state of the process-wide tunnel session.

    State transitions:
        IDLE -> CONNECTING -> ACTIVE or FAILED
        ACTIVE -> RECONNECTING -> ACTIVE or FAILED
        FAILED -> RECONNECTING (retried on the next monitor tick)
        Any -> IDLE (tunnel stopped)
    """

    IDLE = "idle"  # No tunnel requested yet, or tunnel stopped
    CONNECTING = "connecting"  # Initial connect sequence running
    ACTIVE = "active"  # Remote listener bound and accepting
    RECONNECTING = "reconnecting"  # Liveness check failed, re-running connect
    FAILED = "failed"  # Both transports exhausted


class TunnelTransport(str, Enum):
    """
    Which strategy currently holds the tunnel open.

    - SSH_CLIENT: In-process asyncssh control channel with our own relays
    - SYSTEM_SSH: External `ssh -R` child process (fallback)
    """

    NONE = "none"
    SSH_CLIENT = "ssh_client"
    SYSTEM_SSH = "system_ssh"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels for CamRelay.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
