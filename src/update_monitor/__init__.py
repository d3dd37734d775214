"""
Update Ingestion Monitor

Reliable, ordered, resumable consumption of a chat bot's update stream for a
single account, via long polling or webhook push.
"""

__version__ = "0.1.0"

from .config import Settings
from .exceptions import UpdateMonitorError
from .models import UpdateRecord
from .monitor import UpdateMonitor, monitor_updates
from .state import OffsetStoreFactory

__all__ = [
    "Settings",
    "UpdateMonitor",
    "UpdateRecord",
    "UpdateMonitorError",
    "OffsetStoreFactory",
    "monitor_updates",
]
