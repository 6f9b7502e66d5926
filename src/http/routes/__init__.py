"""
HTTP routes for the relay API.
"""

from .admin import AdminController
from .streams import StreamsController
from .logs import LogsController
from .hls import HLSController

__all__ = [
    "AdminController",
    "StreamsController",
    "LogsController",
    "HLSController",
]
