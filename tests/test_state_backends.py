"""
Tests for state persistence backends.
"""

import json

import pytest

from sprint_watch.exceptions import StateError
from sprint_watch.state import (
    InMemoryStateBackend,
    JsonFileStateBackend,
    StateBackendFactory,
)


class TestInMemoryStateBackend:
    @pytest.mark.asyncio
    async def test_read_write(self):
        backend = InMemoryStateBackend()
        assert await backend.read_document() is None

        document = {"trackers": {"trk_1": {"cursor": "c"}}}
        await backend.write_document(document)
        document["trackers"]["trk_1"]["cursor"] = "mutated"

        assert await backend.read_document() == {"trackers": {"trk_1": {"cursor": "c"}}}
        assert await backend.health_check() is True


class TestJsonFileStateBackend:
    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        backend = JsonFileStateBackend(path)

        await backend.write_document({"activeTrackerId": "trk_1", "trackers": {}})

        assert json.loads(path.read_text()) == {"activeTrackerId": "trk_1", "trackers": {}}
        assert await backend.read_document() == {
            "activeTrackerId": "trk_1",
            "trackers": {},
        }
        assert [p.name for p in path.parent.iterdir()] == ["state.json"]

    @pytest.mark.asyncio
    async def test_missing_or_empty_file(self, tmp_path):
        path = tmp_path / "state.json"
        backend = JsonFileStateBackend(path)
        assert await backend.read_document() is None

        path.write_text("   ")
        assert await backend.read_document() is None

    @pytest.mark.asyncio
    async def test_invalid_content_raises(self, tmp_path):
        path = tmp_path / "state.json"
        backend = JsonFileStateBackend(path)

        path.write_text("{broken")
        with pytest.raises(StateError):
            await backend.read_document()

        path.write_text("[1, 2]")
        with pytest.raises(StateError):
            await backend.read_document()

    @pytest.mark.asyncio
    async def test_health_check(self, tmp_path):
        assert await JsonFileStateBackend(tmp_path / "state.json").health_check()
        assert not await JsonFileStateBackend(
            tmp_path / "missing" / "state.json"
        ).health_check()


class TestStateBackendFactory:
    def test_create_memory_backend(self):
        backend = StateBackendFactory.create_backend("MEMORY")
        assert isinstance(backend, InMemoryStateBackend)

    def test_create_file_backend(self, tmp_path):
        backend = StateBackendFactory.create_backend("file", tmp_path / "s.json")
        assert isinstance(backend, JsonFileStateBackend)

    def test_file_backend_requires_path(self):
        with pytest.raises(ValueError, match="path is required"):
            StateBackendFactory.create_backend("file")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown state backend"):
            StateBackendFactory.create_backend("redis")

    def test_supported_backends(self):
        assert StateBackendFactory.get_supported_backends() == ["memory", "file"]
