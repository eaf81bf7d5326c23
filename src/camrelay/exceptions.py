"""CamRelay exception classes."""


class CamRelayError(Exception):
    """Base exception for CamRelay."""

    pass


class ConfigError(CamRelayError):
    """Configuration document missing or invalid."""

    pass


class StartupCheckFailed(CamRelayError):
    """A dependency check run before the tunnel opens failed."""

    pass


# =============================================================================
# Tunnel Errors
# =============================================================================


class TunnelError(CamRelayError):
    """Base exception for tunnel establishment."""

    pass


class AuthFailed(TunnelError):
    """No usable credential, or the remote host rejected every identity."""

    pass


class NoUsableCredentials(AuthFailed):
    """Credential resolution produced zero signing identities."""

    def __init__(self, reasons: list[str]):
        self.reasons = reasons
        detail = "; ".join(reasons) if reasons else "no identity sources available"
        super().__init__(f"No usable SSH credentials: {detail}")


class DialFailed(TunnelError):
    """Transport-level connect to the remote host failed."""

    def __init__(self, address: str, reason: str):
        self.address = address
        super().__init__(f"Failed to connect to {address}: {reason}")


class RemoteBindFailed(TunnelError):
    """Every remote bind address spelling was rejected."""

    def __init__(self, port: int, attempts: list[str]):
        self.port = port
        self.attempts = attempts
        super().__init__(
            f"Failed to create remote listener on port {port} "
            f"(tried: {', '.join(attempts)})"
        )


class FallbackTransportFailed(TunnelError):
    """Both the in-process SSH client and the system ssh command failed."""

    pass


class InvalidTransition(CamRelayError):
    """Tunnel session asked to make a transition its state machine forbids."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid tunnel state transition: {current} -> {target}")


# =============================================================================
# Gateway Errors
# =============================================================================


class GatewayError(CamRelayError):
    """Base exception for the transcode gateway."""

    pass


class SourceNotFound(GatewayError):
    """Requested source id is not in the source table."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Camera '{source_id}' not found")


class ProcessStartFailed(GatewayError):
    """Transcoding process could not be launched."""

    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        super().__init__(f"Failed to start transcoder for '{source_id}': {reason}")


class StreamCapacityExceeded(GatewayError):
    """Concurrent stream ceiling reached."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Stream limit reached ({limit} active streams)")
