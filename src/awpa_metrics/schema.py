"""
Schema management for the AWPA metrics store.

Owns the versioned table layout of a store file and the versioned layout of
export envelopes. Store migrations are ordered steps with up and down
statements applied inside one explicit transaction; envelope upgrades rewrite
older export documents into the current format before validation.
"""

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .storage_interface import (
    MalformedExport,
    SchemaTooNew,
    UnsupportedVersion,
)


logger = logging.getLogger(__name__)


CURRENT_SCHEMA_VERSION = 2
CURRENT_FORMAT_VERSION = 2

REQUIRED_TABLES = ("sessions", "metrics", "network_requests")


@dataclass(frozen=True)
class MigrationStep:
    """One schema version: the statements to reach it and to leave it."""
    version: int
    description: str
    upgrade: Sequence[str]
    downgrade: Sequence[str]


_PAYLOAD_REWRITES = (
    "UPDATE metrics SET metric_type = 'webvitals' WHERE metric_type = 'cwv'",
    """
    UPDATE metrics
    SET data = json_object(
        'js_heap_used_size', json_extract(data, '$.jsHeapUsedSize'),
        'js_heap_total_size', json_extract(data, '$.jsHeapTotalSize'),
        'dom_nodes', json_extract(data, '$.domNodes')
    )
    WHERE metric_type = 'memory'
      AND json_extract(data, '$.jsHeapUsedSize') IS NOT NULL
    """,
    """
    UPDATE metrics
    SET data = json_object(
        'request_count', json_extract(data, '$.requestCount'),
        'total_size', json_extract(data, '$.totalSize'),
        'avg_response_time', json_extract(data, '$.avgResponseTime')
    )
    WHERE metric_type = 'network'
      AND json_extract(data, '$.requestCount') IS NOT NULL
    """,
)

_REQUESTS_TABLE_V2 = """
    CREATE TABLE network_requests_v2 (
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        id TEXT NOT NULL,
        url TEXT NOT NULL,
        method TEXT,
        status_code INTEGER,
        request_time INTEGER NOT NULL,
        response_time INTEGER,
        duration_ms REAL,
        size_bytes REAL,
        headers TEXT,
        PRIMARY KEY (session_id, id)
    )
"""

_V2_INDEXES = (
    """
    CREATE INDEX IF NOT EXISTS idx_network_session_time
    ON network_requests(session_id, request_time)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sessions_started
    ON sessions(started_at DESC)
    """,
)

# Desktop app databases carry the version 2 columns without a version stamp.
# Columns the app added late are filled in before the file is stamped.
_UNSTAMPED_SESSION_COLUMNS = (
    ("target_title", "TEXT"),
    ("display_name", "TEXT"),
    ("tags", "TEXT NOT NULL DEFAULT '[]'"),
)


MIGRATIONS: List[MigrationStep] = [
    MigrationStep(
        version=1,
        description="Portable layout: sessions, metrics, network requests",
        upgrade=(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                device_id TEXT NOT NULL,
                device_name TEXT,
                webview_url TEXT,
                package_name TEXT,
                started_at INTEGER NOT NULL,
                ended_at INTEGER,
                metadata TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                timestamp INTEGER NOT NULL,
                metric_type TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_metrics_session_time
            ON metrics(session_id, timestamp)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_metrics_type
            ON metrics(metric_type)
            """,
            """
            CREATE TABLE IF NOT EXISTS network_requests (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                url TEXT NOT NULL,
                method TEXT,
                status_code INTEGER,
                request_time INTEGER,
                response_time INTEGER,
                size INTEGER,
                headers TEXT
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_network_session
            ON network_requests(session_id)
            """,
        ),
        downgrade=(
            "DROP TABLE IF EXISTS network_requests",
            "DROP TABLE IF EXISTS metrics",
            "DROP TABLE IF EXISTS sessions",
        ),
    ),
    MigrationStep(
        version=2,
        description="Session status, titles and tags; per-session request keys",
        upgrade=(
            "ALTER TABLE sessions ADD COLUMN target_title TEXT",
            "ALTER TABLE sessions ADD COLUMN status TEXT NOT NULL DEFAULT 'active'",
            "ALTER TABLE sessions ADD COLUMN display_name TEXT",
            "ALTER TABLE sessions ADD COLUMN tags TEXT NOT NULL DEFAULT '[]'",
            """
            UPDATE sessions
            SET status = CASE WHEN ended_at IS NULL THEN 'active' ELSE 'completed' END
            """,
            *_PAYLOAD_REWRITES,
            _REQUESTS_TABLE_V2,
            """
            INSERT INTO network_requests_v2 (
                session_id, id, url, method, status_code, request_time,
                response_time, duration_ms, size_bytes, headers
            )
            SELECT
                session_id, id, url, method, status_code,
                COALESCE(request_time, response_time, 0),
                response_time,
                CASE
                    WHEN response_time IS NOT NULL
                    THEN response_time - COALESCE(request_time, response_time)
                END,
                size, headers
            FROM network_requests
            ORDER BY rowid
            """,
            "DROP TABLE network_requests",
            "ALTER TABLE network_requests_v2 RENAME TO network_requests",
            *_V2_INDEXES,
        ),
        downgrade=(
            "DROP INDEX IF EXISTS idx_sessions_started",
            "UPDATE metrics SET metric_type = 'cwv' WHERE metric_type = 'webvitals'",
            """
            CREATE TABLE network_requests_v1 (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                url TEXT NOT NULL,
                method TEXT,
                status_code INTEGER,
                request_time INTEGER,
                response_time INTEGER,
                size INTEGER,
                headers TEXT
            )
            """,
            """
            INSERT OR REPLACE INTO network_requests_v1 (
                id, session_id, url, method, status_code, request_time,
                response_time, size, headers
            )
            SELECT id, session_id, url, method, status_code, request_time,
                   response_time, CAST(size_bytes AS INTEGER), headers
            FROM network_requests
            ORDER BY rowid
            """,
            "DROP TABLE network_requests",
            "ALTER TABLE network_requests_v1 RENAME TO network_requests",
            """
            CREATE INDEX IF NOT EXISTS idx_network_session
            ON network_requests(session_id)
            """,
            "ALTER TABLE sessions DROP COLUMN tags",
            "ALTER TABLE sessions DROP COLUMN display_name",
            "ALTER TABLE sessions DROP COLUMN status",
            "ALTER TABLE sessions DROP COLUMN target_title",
        ),
    ),
]


def check_table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    """Check if a table exists in the connected database."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table_name,)
    ).fetchone()
    return row is not None


def missing_tables(conn: sqlite3.Connection) -> List[str]:
    return [name for name in REQUIRED_TABLES if not check_table_exists(conn, name)]


def table_columns(conn: sqlite3.Connection, table_name: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table_name})")]


def primary_key_columns(conn: sqlite3.Connection, table_name: str) -> List[str]:
    rows = [row for row in conn.execute(f"PRAGMA table_info({table_name})") if row[5]]
    return [row[1] for row in sorted(rows, key=lambda row: row[5])]


class SchemaManager:
    """Creates, upgrades and downgrades the store layout on a connection."""

    def __init__(self, migrations: Sequence[MigrationStep] = MIGRATIONS):
        self.migrations = sorted(migrations, key=lambda step: step.version)
        self.latest_version = self.migrations[-1].version if self.migrations else 0

    def current_version(self, conn: sqlite3.Connection) -> Optional[int]:
        """
        Version stamped in the store, or ``None`` for an empty file.

        A file holding the entity tables but no version stamp predates
        versioning. Its layout decides the version: sessions with a
        ``status`` column were written by the desktop app and match
        version 2, anything older is version 1.
        """
        stamped = self.stamped_version(conn)
        if stamped is not None:
            return stamped
        if check_table_exists(conn, "sessions"):
            return 2 if "status" in table_columns(conn, "sessions") else 1
        return None

    def stamped_version(self, conn: sqlite3.Connection) -> Optional[int]:
        if check_table_exists(conn, "schema_version"):
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            if row is not None and row[0] is not None:
                return int(row[0])
        return None

    def ensure_schema(
        self, conn: sqlite3.Connection, target: int = CURRENT_SCHEMA_VERSION
    ) -> int:
        """
        Bring the store up to ``target`` and return the resulting version.

        A store stamped with a newer version than ``target`` is refused with
        :class:`SchemaTooNew`; it is never downgraded implicitly.
        """
        if target < 1 or target > self.latest_version:
            raise ValueError(f"Unknown schema version {target}")

        conn.execute("BEGIN IMMEDIATE")
        try:
            found = self.current_version(conn)
            if found is not None and found > target:
                raise SchemaTooNew(found, target)

            adopt = found == 2 and self.stamped_version(conn) is None
            pending = [
                step for step in self.migrations
                if (found or 0) < step.version <= target
            ]
            if adopt:
                self._adopt_unstamped(conn)
            if pending:
                self._create_version_table(conn)
                for step in pending:
                    for statement in step.upgrade:
                        conn.execute(statement)
                    logger.info(f"Applied schema migration {step.version}: {step.description}")
            if pending or adopt:
                self._stamp(conn, target)
            conn.execute("COMMIT")
        except Exception as e:
            conn.execute("ROLLBACK")
            if not isinstance(e, SchemaTooNew):
                logger.error(f"Schema migration failed, rolled back: {e}")
            raise

        return target if pending else found

    def downgrade(self, conn: sqlite3.Connection, target: int) -> int:
        """Apply down scripts in reverse order until the store is at ``target``."""
        if target < 0:
            raise ValueError(f"Unknown schema version {target}")

        conn.execute("BEGIN IMMEDIATE")
        try:
            found = self.current_version(conn) or 0
            if target > found:
                raise ValueError(
                    f"Cannot downgrade from version {found} to newer version {target}"
                )
            for step in reversed(self.migrations):
                if target < step.version <= found:
                    for statement in step.downgrade:
                        conn.execute(statement)
                    logger.info(f"Reverted schema migration {step.version}: {step.description}")
            if target == 0:
                conn.execute("DROP TABLE IF EXISTS schema_version")
            else:
                self._stamp(conn, target)
            conn.execute("COMMIT")
        except Exception as e:
            conn.execute("ROLLBACK")
            logger.error(f"Schema downgrade failed, rolled back: {e}")
            raise

        return target

    def _adopt_unstamped(self, conn: sqlite3.Connection) -> None:
        """Bring an unstamped desktop app file in line with version 2."""
        present = set(table_columns(conn, "sessions"))
        for name, definition in _UNSTAMPED_SESSION_COLUMNS:
            if name not in present:
                conn.execute(f"ALTER TABLE sessions ADD COLUMN {name} {definition}")
        conn.execute("UPDATE sessions SET tags = '[]' WHERE tags IS NULL")

        for statement in _PAYLOAD_REWRITES:
            conn.execute(statement)

        if primary_key_columns(conn, "network_requests") != ["session_id", "id"]:
            conn.execute(_REQUESTS_TABLE_V2)
            conn.execute(
                """
                INSERT OR IGNORE INTO network_requests_v2 (
                    session_id, id, url, method, status_code, request_time,
                    response_time, duration_ms, size_bytes, headers
                )
                SELECT session_id, id, url, method, status_code, request_time,
                       response_time, duration_ms, size_bytes, headers
                FROM network_requests
                ORDER BY rowid
                """
            )
            conn.execute("DROP TABLE network_requests")
            conn.execute("ALTER TABLE network_requests_v2 RENAME TO network_requests")

        for statement in _V2_INDEXES:
            conn.execute(statement)
        logger.info("Adopted unversioned desktop app store as schema version 2")

    def _create_version_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            )
            """
        )

    def _stamp(self, conn: sqlite3.Connection, version: int) -> None:
        self._create_version_table(conn)
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))


# ============================================================
# Export envelope upgrades
# ============================================================

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# metrics-io era discriminants
_LEGACY_METRIC_TYPES = {"cwv": "webvitals"}


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def envelope_format_version(document: Dict[str, Any]) -> int:
    """Read the format version of an envelope document."""
    version = document.get("formatVersion", document.get("version"))
    if version is None:
        raise MalformedExport("missing 'formatVersion'")
    if isinstance(version, bool) or not isinstance(version, int):
        raise MalformedExport(f"'formatVersion' must be an integer, got {version!r}")
    return version


def _parse_exported_at(value: Any) -> int:
    if isinstance(value, bool):
        raise MalformedExport(f"invalid 'exportedAt': {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedExport(f"invalid 'exportedAt' timestamp: {value!r}")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise MalformedExport(f"invalid 'exportedAt': {value!r}")


def _decode_json_field(value: Any, field_name: str) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise MalformedExport(f"'{field_name}' is not valid JSON: {e}")
    return value


def _pick(record: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in record:
            return record[name]
    return None


def _upgrade_envelope_v1(document: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy snake_case export with ISO timestamps and JSON-string payloads."""
    session = document.get("session")
    if not isinstance(session, dict):
        raise MalformedExport("missing 'session' object")
    metrics = document.get("metrics") or []
    requests = document.get("networkRequests") or []
    if not isinstance(metrics, list) or not isinstance(requests, list):
        raise MalformedExport("'metrics' and 'networkRequests' must be arrays")

    upgraded_metrics = []
    for index, metric in enumerate(metrics):
        if not isinstance(metric, dict):
            raise MalformedExport(f"metrics[{index}] must be an object")
        metric_type = _pick(metric, "metric_type", "metricType")
        data = _decode_json_field(metric.get("data"), f"metrics[{index}].data")
        if isinstance(data, dict):
            data = {camel_to_snake(key): value for key, value in data.items()}
        upgraded_metrics.append(
            {
                "id": metric.get("id"),
                "timestamp": metric.get("timestamp"),
                "metricType": _LEGACY_METRIC_TYPES.get(metric_type, metric_type),
                "data": data,
            }
        )

    upgraded_requests = []
    for index, request in enumerate(requests):
        if not isinstance(request, dict):
            raise MalformedExport(f"networkRequests[{index}] must be an object")
        request_time = _pick(request, "request_time", "requestTime")
        response_time = _pick(request, "response_time", "responseTime")
        duration = _pick(request, "duration_ms", "durationMs")
        if duration is None and response_time is not None and request_time is not None:
            duration = response_time - request_time
        upgraded_requests.append(
            {
                "id": request.get("id"),
                "url": request.get("url"),
                "method": request.get("method"),
                "statusCode": _pick(request, "status_code", "statusCode"),
                "requestTime": request_time if request_time is not None else response_time,
                "responseTime": response_time,
                "durationMs": duration,
                "sizeBytes": _pick(request, "size_bytes", "sizeBytes", "size"),
                "headers": _decode_json_field(request.get("headers"), f"networkRequests[{index}].headers"),
            }
        )

    tags = _decode_json_field(session.get("tags"), "session.tags")
    return {
        "formatVersion": 2,
        "exportedAt": _parse_exported_at(document.get("exportedAt", 0)),
        "session": {
            "id": session.get("id"),
            "deviceId": _pick(session, "device_id", "deviceId"),
            "deviceName": _pick(session, "device_name", "deviceName"),
            "webviewUrl": _pick(session, "webview_url", "webviewUrl"),
            "packageName": _pick(session, "package_name", "packageName"),
            "targetTitle": _pick(session, "target_title", "targetTitle"),
            "displayName": _pick(session, "display_name", "displayName"),
            "tags": tags or [],
            "status": session.get("status") or (
                "completed" if _pick(session, "ended_at", "endedAt") is not None else "aborted"
            ),
            "startedAt": _pick(session, "started_at", "startedAt"),
            "endedAt": _pick(session, "ended_at", "endedAt"),
            "metadata": _decode_json_field(session.get("metadata"), "session.metadata"),
        },
        "metrics": upgraded_metrics,
        "networkRequests": upgraded_requests,
    }


ENVELOPE_UPGRADES: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _upgrade_envelope_v1,
}


def upgrade_envelope(document: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rewrite an export document of any supported format to the current format.

    The input document is not modified. Newer formats raise
    :class:`UnsupportedVersion`.
    """
    if not isinstance(document, dict):
        raise MalformedExport("export document must be a JSON object")

    version = envelope_format_version(document)
    if version > CURRENT_FORMAT_VERSION:
        raise UnsupportedVersion(version, CURRENT_FORMAT_VERSION)
    if version < 1:
        raise MalformedExport(f"invalid format version {version}")

    upgraded = document
    while version < CURRENT_FORMAT_VERSION:
        step = ENVELOPE_UPGRADES.get(version)
        if step is None:
            raise UnsupportedVersion(version, CURRENT_FORMAT_VERSION)
        upgraded = step(upgraded)
        new_version = envelope_format_version(upgraded)
        logger.info(f"Upgraded export envelope from format {version} to {new_version}")
        version = new_version
    return upgraded
