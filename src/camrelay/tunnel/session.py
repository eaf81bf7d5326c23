"""
Tunnel session state.

A TunnelSession owns the state enum and the handles of the current tunnel:
the control channel and remote listener for the in-process client, or the
child process for the system ssh fallback. Only the tunnel manager's connect
sequence installs or clears handles; readers such as the keepalive monitor
use ``current_channel()`` and must treat None as "skip this tick".
"""

from camrelay.exceptions import InvalidTransition
from camrelay.models.enums import TunnelState, TunnelTransport
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

# Allowed transitions; stopping (-> IDLE) is allowed from anywhere
_TRANSITIONS: dict[TunnelState, set[TunnelState]] = {
    TunnelState.IDLE: {TunnelState.CONNECTING},
    TunnelState.CONNECTING: {TunnelState.ACTIVE, TunnelState.FAILED},
    TunnelState.ACTIVE: {TunnelState.RECONNECTING},
    TunnelState.RECONNECTING: {TunnelState.ACTIVE, TunnelState.FAILED},
    TunnelState.FAILED: {TunnelState.RECONNECTING},
}


class TunnelSession:
    """State and handles of the single process-wide tunnel."""

    def __init__(self):
        self.state = TunnelState.IDLE
        self.transport = TunnelTransport.NONE
        self.reconnect_count = 0
        self.last_error: str | None = None
        self._channel = None
        self._listener = None
        self._fallback = None

    @staticmethod
    def can_transition(current: TunnelState, target: TunnelState) -> bool:
        """Check whether a transition is allowed."""
        if target == TunnelState.IDLE:
            return True
        return target in _TRANSITIONS.get(current, set())

    def transition(self, target: TunnelState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidTransition: If the state machine forbids the move.
        """
        if not self.can_transition(self.state, target):
            raise InvalidTransition(self.state.value, target.value)
        logger.debug(f"Tunnel state: {self.state.value} -> {target.value}")
        if target == TunnelState.RECONNECTING:
            self.reconnect_count += 1
        self.state = target

    # -------------------------------------------------------------------------
    # Handle access
    # -------------------------------------------------------------------------

    def current_channel(self):
        """Current control channel, or None while (re)connecting."""
        return self._channel

    def current_listener(self):
        """Current remote listener, or None."""
        return self._listener

    def current_fallback(self):
        """Current system ssh tunnel, or None."""
        return self._fallback

    def install_primary(self, channel, listener) -> None:
        """Record the in-process channel and its remote listener."""
        self._channel = channel
        self._listener = listener
        self._fallback = None
        self.transport = TunnelTransport.SSH_CLIENT
        self.last_error = None

    def install_fallback(self, fallback) -> None:
        """Record the system ssh tunnel process."""
        self._channel = None
        self._listener = None
        self._fallback = fallback
        self.transport = TunnelTransport.SYSTEM_SSH
        self.last_error = None

    def detach(self) -> tuple:
        """
        Clear all handles and hand them to the caller for closing.

        Returns:
            (channel, listener, fallback), any of which may be None.
        """
        handles = (self._channel, self._listener, self._fallback)
        self._channel = None
        self._listener = None
        self._fallback = None
        self.transport = TunnelTransport.NONE
        return handles

    def snapshot(self) -> dict:
        """Plain-dict view for status endpoints."""
        return {
            "state": self.state.value,
            "transport": self.transport.value,
            "reconnect_count": self.reconnect_count,
            "last_error": self.last_error,
        }
