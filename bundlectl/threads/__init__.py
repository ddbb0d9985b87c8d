"""
Background threads used by the controller
"""

# Local
from .base import ThreadBase
from .timer import TimerEvent, TimerThread
from .watch import WatchThread
