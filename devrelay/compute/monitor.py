"""Monitor — compute worker resource metrics via psutil."""

from __future__ import annotations

import os
import platform
import time

import psutil

_GIB = 1024**3


class Monitor:
    """Collects host metrics for ``/system/info`` and ``/health``.

    Disk usage is reported for the projects root so an operator can see
    when checkouts are about to fill the volume.
    """

    def __init__(self, projects_root: str = "/tmp") -> None:
        self.projects_root = projects_root

    def snapshot(self) -> dict:
        """Take a snapshot of current system resources.

        Returns:
            Dict with ram_*_gb, ram_percent, cpu_percent, cpu_count,
            load_average, disk_*_gb for the projects root, uptime_seconds.
        """
        mem = psutil.virtual_memory()
        cpu_pct = psutil.cpu_percent(interval=0.1)
        disk_path = self.projects_root if os.path.isdir(self.projects_root) else "/"
        disk = psutil.disk_usage(disk_path)

        return {
            "hostname": platform.node(),
            "platform": platform.platform(),
            "ram_total_gb": round(mem.total / _GIB, 2),
            "ram_used_gb": round(mem.used / _GIB, 2),
            "ram_available_gb": round(mem.available / _GIB, 2),
            "ram_percent": mem.percent,
            "cpu_percent": cpu_pct,
            "cpu_count": psutil.cpu_count(),
            "load_average": [round(x, 2) for x in psutil.getloadavg()],
            "disk_path": disk_path,
            "disk_total_gb": round(disk.total / _GIB, 2),
            "disk_free_gb": round(disk.free / _GIB, 2),
            "disk_percent": disk.percent,
            "uptime_seconds": round(time.time() - psutil.boot_time()),
        }
