"""
HTTP front door for stream control and HLS delivery.
"""

from .app import create_app

__all__ = ["create_app"]
