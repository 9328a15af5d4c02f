"""
Error types for the feed aggregator.

Transport failures are never raised past a connection; they are turned into
status transitions. The classes here cover configuration problems and the
internal decode failures that the decoders catch at their own boundary.
"""

from typing import Optional


class AggregatorError(Exception):
    """Base class for all feed aggregator errors."""
    pass


class ConfigurationError(AggregatorError):
    """Configuration-related error."""
    pass


class DecodeError(AggregatorError):
    """A unit of input (line, frame, document) could not be decoded."""
    pass


class InvalidFrameTypeError(DecodeError):
    """Beast frame with an unknown type byte."""

    def __init__(self, frame_type: int):
        self.frame_type = frame_type
        super().__init__(f"Unknown frame type: 0x{frame_type:02X}")


class ConnectionFailedError(AggregatorError):
    """Connection to a feed could not be established or was lost."""

    def __init__(self, host: str, port: int, reason: Optional[str] = None):
        self.host = host
        self.port = port
        self.reason = reason
        message = f"Failed to connect to {host}:{port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
