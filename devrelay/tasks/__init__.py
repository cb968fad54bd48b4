"""devrelay background sweeps.

Public surface
--------------
``Sweeper``       — owns the session-eviction, preview-cleanup and preview-health loops
``PeriodicTask``  — one perpetual asyncio loop
"""

from .sweeper import PeriodicTask, Sweeper

__all__ = ["PeriodicTask", "Sweeper"]
