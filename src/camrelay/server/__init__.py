"""HTTP front door."""

from camrelay.server.app import create_app

__all__ = ["create_app"]
