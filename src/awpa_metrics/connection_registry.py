"""
Saved connection presets and recent connections.

Persisted as a small JSON document next to, but separate from, the session
store, so deleting sessions never touches it.
"""

import json
import logging
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .storage_interface import StorageError, StorageOperation, now_ms


logger = logging.getLogger(__name__)


REGISTRY_VERSION = 1
DEFAULT_MAX_RECENT = 10


@dataclass
class ConnectionPreset:
    """A saved (favourite) device + WebView socket pair."""
    id: str
    name: str
    device_id: str
    device_name: str
    socket_name: str
    package_name: Optional[str] = None
    created_at: int = 0
    last_used_at: int = 0


@dataclass
class RecentConnection:
    id: str
    device_id: str
    device_name: str
    socket_name: str
    package_name: Optional[str] = None
    target_title: Optional[str] = None
    target_url: Optional[str] = None
    target_id: Optional[str] = None
    last_connected_at: int = 0


@dataclass
class ConnectionMatch:
    preset: Optional[ConnectionPreset] = None
    recent: Optional[RecentConnection] = None


def _from_dict(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in data.items() if key in known})


def write_registry_document(path: Path, document: Dict[str, Any]) -> None:
    """
    Replace the registry file in one step.

    The document is written and flushed to disk under a hidden sibling name,
    then renamed over ``path``; readers see either the old or the new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


class ConnectionRegistry:
    """Presets and a capped, newest-first list of recent connections."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        max_recent: int = DEFAULT_MAX_RECENT,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            path: JSON file to persist to; ``None`` keeps the registry in memory
            max_recent: Number of recent connections kept
            clock: Epoch-millisecond time source
        """
        if max_recent < 1:
            raise ValueError("max_recent must be positive")
        self.path = Path(path) if path is not None else None
        self.max_recent = max_recent
        self.clock = clock
        self._presets: List[ConnectionPreset] = []
        self._recents: List[RecentConnection] = []
        self.load()

    # ============================================================
    # Persistence
    # ============================================================

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid connection registry {self.path}: {e}")
            raise StorageError(f"Invalid JSON in {self.path}: {e}", StorageOperation.READ)

        version = document.get("version", REGISTRY_VERSION)
        if version > REGISTRY_VERSION:
            raise StorageError(
                f"Connection registry version {version} is newer than {REGISTRY_VERSION}",
                StorageOperation.READ,
            )
        self._presets = [_from_dict(ConnectionPreset, p) for p in document.get("presets", [])]
        self._recents = [
            _from_dict(RecentConnection, r) for r in document.get("recent_connections", [])
        ][: self.max_recent]
        logger.debug(
            f"Loaded {len(self._presets)} presets and {len(self._recents)} recent connections"
        )

    def save(self) -> None:
        if self.path is None:
            return
        write_registry_document(
            self.path,
            {
                "version": REGISTRY_VERSION,
                "presets": [asdict(p) for p in self._presets],
                "recent_connections": [asdict(r) for r in self._recents],
            },
        )

    # ============================================================
    # Presets
    # ============================================================

    def list_presets(self) -> List[ConnectionPreset]:
        return list(self._presets)

    def get_preset(self, preset_id: str) -> Optional[ConnectionPreset]:
        for preset in self._presets:
            if preset.id == preset_id:
                return preset
        return None

    def add_preset(
        self,
        name: str,
        device_id: str,
        device_name: str,
        socket_name: str,
        package_name: Optional[str] = None,
    ) -> ConnectionPreset:
        if not name or not name.strip():
            raise ValueError("Preset name must not be empty")
        now = self.clock()
        preset = ConnectionPreset(
            id=str(uuid.uuid4()),
            name=name.strip(),
            device_id=device_id,
            device_name=device_name,
            socket_name=socket_name,
            package_name=package_name,
            created_at=now,
            last_used_at=now,
        )
        self._presets.append(preset)
        self.save()
        logger.info(f"Saved connection preset '{preset.name}' ({device_id}/{socket_name})")
        return preset

    def remove_preset(self, preset_id: str) -> bool:
        before = len(self._presets)
        self._presets = [p for p in self._presets if p.id != preset_id]
        removed = len(self._presets) != before
        if removed:
            self.save()
        return removed

    def rename_preset(self, preset_id: str, name: str) -> bool:
        if not name or not name.strip():
            raise ValueError("Preset name must not be empty")
        preset = self.get_preset(preset_id)
        if preset is None:
            return False
        preset.name = name.strip()
        self.save()
        return True

    def mark_preset_used(self, preset_id: str) -> bool:
        preset = self.get_preset(preset_id)
        if preset is None:
            return False
        preset.last_used_at = self.clock()
        self.save()
        return True

    # ============================================================
    # Recent connections
    # ============================================================

    def list_recents(self) -> List[RecentConnection]:
        """Recent connections, most recent first."""
        return list(self._recents)

    def add_recent(
        self,
        device_id: str,
        device_name: str,
        socket_name: str,
        package_name: Optional[str] = None,
        target_title: Optional[str] = None,
        target_url: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> RecentConnection:
        """Record a connection at the front, replacing any entry for the same device and socket."""
        recent = RecentConnection(
            id=str(uuid.uuid4()),
            device_id=device_id,
            device_name=device_name,
            socket_name=socket_name,
            package_name=package_name,
            target_title=target_title,
            target_url=target_url,
            target_id=target_id,
            last_connected_at=self.clock(),
        )
        remaining = [
            r for r in self._recents
            if not (r.device_id == device_id and r.socket_name == socket_name)
        ]
        self._recents = [recent, *remaining][: self.max_recent]
        self.save()
        return recent

    def clear_recents(self) -> None:
        self._recents = []
        self.save()

    def match(self, device_id: str, socket_name: str) -> ConnectionMatch:
        """The preset and recent entry for a device and socket, if any."""
        preset = next(
            (p for p in self._presets if p.device_id == device_id and p.socket_name == socket_name),
            None,
        )
        recent = next(
            (r for r in self._recents if r.device_id == device_id and r.socket_name == socket_name),
            None,
        )
        return ConnectionMatch(preset=preset, recent=recent)
