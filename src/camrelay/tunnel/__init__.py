"""
Outbound SSH tunnel for publishing the local HTTP front door.

The tunnel manager keeps one control channel to the remote host, binds a
listening port there, and relays every accepted connection to the local
HTTP server. If the in-process client cannot bind, the system ssh command
is used instead.
"""

from camrelay.tunnel.credentials import CredentialResolver
from camrelay.tunnel.manager import TunnelManager
from camrelay.tunnel.relay import bind_reader_writer, relay_streams
from camrelay.tunnel.session import TunnelSession

__all__ = [
    "CredentialResolver",
    "TunnelManager",
    "TunnelSession",
    "bind_reader_writer",
    "relay_streams",
]
