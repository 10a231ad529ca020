"""
Polling system for Sprint Watch.

This package contains the change extraction, classification and scheduling
components that turn Rally queries into per-tracker change history.
"""

from .change_extractor import ChangeExtractor, StoryChangeFetcher
from .classifier import diff_classification
from .metrics import MetricsCollector
from .orchestrator import PollingOrchestrator, TrackerPhase

__all__ = [
    "ChangeExtractor",
    "StoryChangeFetcher",
    "MetricsCollector",
    "PollingOrchestrator",
    "TrackerPhase",
    "diff_classification",
]
