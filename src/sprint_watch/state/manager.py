"""
State persistence backends for Sprint Watch.

Provides pluggable backends for the single persisted state document:
- memory: In-process only, used by tests and throwaway runs
- file: JSON document on local disk, written wholesale after every cycle
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from ..exceptions import StateError

logger = structlog.get_logger(__name__)


class StateBackend(ABC):
    """Abstract base class for persisted state storage."""

    @abstractmethod
    async def read_document(self) -> dict[str, Any] | None:
        """
        Read the persisted document.

        Returns:
            Parsed document, or None if nothing has been stored yet

        Raises:
            StateError: If stored content exists but cannot be parsed
        """
        pass

    @abstractmethod
    async def write_document(self, document: dict[str, Any]) -> None:
        """
        Replace the persisted document.

        Args:
            document: Complete document to store
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is usable.

        Returns:
            True if healthy, False otherwise
        """
        pass


class InMemoryStateBackend(StateBackend):
    """In-memory state storage."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self._serialized: str | None = (
            json.dumps(document) if document is not None else None
        )

    async def read_document(self) -> dict[str, Any] | None:
        if self._serialized is None:
            return None
        return json.loads(self._serialized)

    async def write_document(self, document: dict[str, Any]) -> None:
        # Round-trip through JSON so callers never share references with storage
        self._serialized = json.dumps(document)

    async def health_check(self) -> bool:
        """Check if in-memory state is healthy (always true for memory)."""
        return True


class JsonFileStateBackend(StateBackend):
    """
    JSON file state storage.

    Reads and writes are synchronous on purpose: persisting never yields to
    other tasks, so a write is atomic relative to concurrent polls.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def read_document(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {self.path}: {e}") from e
        if not content.strip():
            return None
        try:
            document = json.loads(content)
        except ValueError as e:
            raise StateError(f"State file {self.path} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise StateError(f"State file {self.path} does not hold an object")
        return document

    async def write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateError(f"Failed to write state file {self.path}: {e}") from e

    async def health_check(self) -> bool:
        directory = self.path.parent
        return directory.exists() and os.access(directory, os.W_OK)


class StateBackendFactory:
    """Factory for creating the state backend configured by ``state_backend``."""

    @staticmethod
    def create_backend(mode: str, path: str | Path | None = None) -> StateBackend:
        """
        Create a state backend.

        Args:
            mode: Backend name ('memory' or 'file')
            path: Document path, required for 'file'

        Returns:
            StateBackend instance

        Raises:
            ValueError: If mode is not supported or a file path is missing
        """
        mode = mode.lower()

        if mode == "memory":
            logger.info("Creating in-memory state backend")
            return InMemoryStateBackend()
        elif mode == "file":
            if not path:
                raise ValueError("A state file path is required for the file backend")
            logger.info("Creating JSON file state backend", path=str(path))
            return JsonFileStateBackend(path)
        else:
            raise ValueError(
                f"Unknown state backend: {mode}. Supported backends: 'memory', 'file'"
            )

    @staticmethod
    def get_supported_backends() -> list[str]:
        return ["memory", "file"]
