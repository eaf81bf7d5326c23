"""Helpers shared by test modules."""

import socket
import sys


def python_command(script: str) -> list[str]:
    """Command that runs a short Python script; stands in for ffmpeg/ssh."""
    return [sys.executable, "-c", script]


def unused_port() -> int:
    """A local TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
