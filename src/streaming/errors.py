"""
Streaming errors.
"""


class StreamError(Exception):
    """Base class for stream management errors."""


class PortExhaustedError(StreamError):
    """No broadcast port left in the configured range."""


class PortInUseError(StreamError):
    """An explicit broadcast port is already assigned to another stream."""


class StreamLimitError(StreamError):
    """The configured maximum number of streams is registered."""
