"""
Tests for connection presets and recent connections
"""

import json
import os

import pytest

from awpa_metrics.connection_registry import ConnectionRegistry
from awpa_metrics.storage_interface import StorageError


@pytest.fixture
def registry_path(temp_dir):
    return os.path.join(temp_dir, "registry", "connections.json")


@pytest.fixture
def registry(registry_path, clock):
    return ConnectionRegistry(registry_path, clock=clock)


class TestRecentConnections:
    """Test the capped recent connection list"""

    def test_cap_keeps_newest_first(self, registry, clock):
        for i in range(11):
            clock.advance(1)
            registry.add_recent(f"device-{i}", f"Device {i}", "webview_devtools_remote_1")

        recents = registry.list_recents()

        assert len(recents) == 10
        assert recents[0].device_id == "device-10"
        assert recents[-1].device_id == "device-1"
        assert [r.last_connected_at for r in recents] == sorted(
            (r.last_connected_at for r in recents), reverse=True
        )

    def test_reconnect_moves_entry_to_front(self, registry):
        registry.add_recent("a", "A", "sock")
        registry.add_recent("b", "B", "sock")
        registry.add_recent("a", "A", "sock", target_title="Checkout")

        recents = registry.list_recents()

        assert [r.device_id for r in recents] == ["a", "b"]
        assert recents[0].target_title == "Checkout"

    def test_same_device_different_socket_is_separate(self, registry):
        registry.add_recent("a", "A", "sock-1")
        registry.add_recent("a", "A", "sock-2")
        assert len(registry.list_recents()) == 2

    def test_clear(self, registry_path, registry):
        registry.add_recent("a", "A", "sock")
        registry.clear_recents()

        assert registry.list_recents() == []
        assert ConnectionRegistry(registry_path).list_recents() == []


class TestPresets:
    """Test saved presets"""

    def test_add_rename_remove(self, registry, clock):
        preset = registry.add_preset("  Test phone ", "R58M", "Galaxy", "chrome_devtools_remote")

        assert preset.name == "Test phone"
        assert preset.created_at == clock()
        assert registry.get_preset(preset.id) is preset

        assert registry.rename_preset(preset.id, "Lab phone") is True
        assert registry.get_preset(preset.id).name == "Lab phone"

        assert registry.remove_preset(preset.id) is True
        assert registry.remove_preset(preset.id) is False
        assert registry.list_presets() == []

    def test_empty_name_is_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.add_preset("  ", "R58M", "Galaxy", "sock")

    def test_mark_used(self, registry, clock):
        preset = registry.add_preset("Phone", "R58M", "Galaxy", "sock")
        clock.advance(5_000)

        assert registry.mark_preset_used(preset.id) is True
        assert registry.get_preset(preset.id).last_used_at == clock()
        assert registry.mark_preset_used("missing") is False

    def test_match(self, registry):
        preset = registry.add_preset("Phone", "R58M", "Galaxy", "sock")
        registry.add_recent("R58M", "Galaxy", "sock")

        match = registry.match("R58M", "sock")
        assert match.preset.id == preset.id
        assert match.recent.device_id == "R58M"

        miss = registry.match("R58M", "other")
        assert miss.preset is None and miss.recent is None


class TestPersistence:
    """Test the JSON document on disk"""

    def test_reload_from_disk(self, registry_path, registry):
        preset = registry.add_preset("Phone", "R58M", "Galaxy", "sock", package_name="com.example")
        registry.add_recent("R58M", "Galaxy", "sock")

        reloaded = ConnectionRegistry(registry_path)

        assert reloaded.get_preset(preset.id) == preset
        assert [r.device_id for r in reloaded.list_recents()] == ["R58M"]

    def test_document_layout(self, registry_path, registry):
        registry.add_recent("R58M", "Galaxy", "sock")

        with open(registry_path, encoding="utf-8") as f:
            document = json.load(f)

        assert document["version"] == 1
        assert document["presets"] == []
        assert document["recent_connections"][0]["socket_name"] == "sock"
        assert os.listdir(os.path.dirname(registry_path)) == ["connections.json"]

    def test_failed_write_keeps_previous_document(self, registry_path, registry, monkeypatch):
        registry.add_recent("R58M", "Galaxy", "sock")

        def refuse(*args):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(OSError):
            registry.add_recent("other", "Other", "sock")
        monkeypatch.undo()

        assert os.listdir(os.path.dirname(registry_path)) == ["connections.json"]
        reloaded = ConnectionRegistry(registry_path)
        assert [r.device_id for r in reloaded.list_recents()] == ["R58M"]

    def test_invalid_json(self, registry_path):
        os.makedirs(os.path.dirname(registry_path))
        with open(registry_path, "w", encoding="utf-8") as f:
            f.write("{not json")

        with pytest.raises(StorageError):
            ConnectionRegistry(registry_path)

    def test_newer_version_is_refused(self, registry_path):
        os.makedirs(os.path.dirname(registry_path))
        with open(registry_path, "w", encoding="utf-8") as f:
            json.dump({"version": 2, "presets": []}, f)

        with pytest.raises(StorageError):
            ConnectionRegistry(registry_path)

    def test_in_memory_registry(self, temp_dir):
        registry = ConnectionRegistry(None)
        registry.add_recent("a", "A", "sock")

        assert len(registry.list_recents()) == 1
        assert os.listdir(temp_dir) == []
