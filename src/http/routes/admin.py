"""
Admin routes for host status.
"""

import platform
import time

import psutil
from litestar import Controller, get

from ...streaming import StreamManager


class AdminController(Controller):
    """Host and relay status."""

    path = "/api"

    @get("/status")
    async def get_status(self, stream_manager: StreamManager) -> dict:
        """Get host resource usage and stream totals."""
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        uptime_seconds = time.time() - psutil.boot_time()
        stats = stream_manager.get_stats()

        return {
            "status": "online",
            "hostname": platform.node(),
            "uptime_seconds": int(uptime_seconds),
            "cpu_percent": cpu_percent,
            "memory": {
                "total_mb": memory.total // (1024 * 1024),
                "used_mb": memory.used // (1024 * 1024),
                "percent": memory.percent,
            },
            "disk": {
                "total_gb": disk.total // (1024 * 1024 * 1024),
                "used_gb": disk.used // (1024 * 1024 * 1024),
                "percent": disk.percent,
            },
            "streams": {
                "total": stats["total_streams"],
                "running": stats["running_streams"],
                "failed": stats["failed_streams"],
                "clients": stats["active_connections"],
            },
        }
