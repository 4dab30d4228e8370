class RelayError(Exception):
    """Base class for relay failures."""


class InvalidTarget(RelayError):
    """Connect parameters missing or malformed; nothing was dialed."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransportError(RelayError):
    """Stream side failed: refused connect, reset or other I/O error."""


class IdleTimeout(TransportError):
    """No traffic on the stream side within the idle timeout."""


class FramedTransportError(RelayError):
    """WebSocket side closed abnormally."""


class ShutdownDrainError(RelayError):
    def __init__(self, connection_id: str, cause: BaseException):
        super().__init__(f"failed to close {connection_id}: {cause}")
        self.connection_id = connection_id
        self.cause = cause
