"""
Streaming module: transcoder supervision and live stream delivery.
"""

from .config import StreamingConfig
from .definition import StreamDefinition
from .errors import PortExhaustedError, PortInUseError, StreamError, StreamLimitError
from .logs import TranscoderLogManager, log_manager
from .manager import StreamManager

__all__ = [
    "StreamManager",
    "StreamingConfig",
    "StreamDefinition",
    "StreamError",
    "PortExhaustedError",
    "PortInUseError",
    "StreamLimitError",
    "TranscoderLogManager",
    "log_manager",
]
