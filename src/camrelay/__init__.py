"""CamRelay: publish local camera streams through an outbound SSH tunnel."""

__version__ = "0.3.0"
