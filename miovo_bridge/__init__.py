"""WebSocket bridge between browser clients and local voice backends."""

__version__ = "1.0.0"
