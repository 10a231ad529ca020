"""
Sprint Watch

Change tracking for Rally sprint stories: polls the live story list and the
Lookback snapshot feed per tracker, keeps a deduplicated change history and
notifies when stories become ready for testing.
"""

__version__ = "0.1.0"

from .config import Settings
from .exceptions import AuthenticationError, SprintWatchError
from .polling.orchestrator import PollingOrchestrator
from .rally_client import RallyClient

__all__ = [
    "Settings",
    "RallyClient",
    "PollingOrchestrator",
    "SprintWatchError",
    "AuthenticationError",
]
