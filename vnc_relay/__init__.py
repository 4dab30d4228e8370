"""WebSocket to TCP relay for browser VNC clients."""

__version__ = "0.1.0"
