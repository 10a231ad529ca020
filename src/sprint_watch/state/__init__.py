"""
State management for Sprint Watch.

This package provides the persisted state document with pluggable storage
backends and the per-tracker state store built on top of it.
"""

from .manager import (
    InMemoryStateBackend,
    JsonFileStateBackend,
    StateBackend,
    StateBackendFactory,
)
from .tracker_state import TrackerStateStore

__all__ = [
    "StateBackend",
    "StateBackendFactory",
    "InMemoryStateBackend",
    "JsonFileStateBackend",
    "TrackerStateStore",
]
