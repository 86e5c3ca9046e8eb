"""
Tests for store schema migrations and export envelope upgrades
"""

import copy
import json
import os
import sqlite3

import pytest

from awpa_metrics.schema import (
    CURRENT_FORMAT_VERSION,
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS,
    MigrationStep,
    SchemaManager,
    check_table_exists,
    primary_key_columns,
    upgrade_envelope,
)
from awpa_metrics.sqlite_storage import SQLiteSessionStore
from awpa_metrics.storage_interface import (
    MalformedExport,
    SchemaTooNew,
    SessionStatus,
    UnsupportedVersion,
)

from conftest import DESKTOP_APP_SCHEMA


@pytest.fixture
def conn():
    conn = sqlite3.connect(":memory:", isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    yield conn
    conn.close()


def columns(conn, table):
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


def legacy_store(conn):
    """A version 1 store holding one finished session in metrics-io layout."""
    SchemaManager().ensure_schema(conn, target=1)
    conn.execute(
        "INSERT INTO sessions (id, device_id, device_name, started_at, ended_at) "
        "VALUES ('s1', 'dev', 'Pixel', 1000, 5000)"
    )
    conn.execute(
        "INSERT INTO sessions (id, device_id, started_at) VALUES ('s2', 'dev', 6000)"
    )
    conn.execute(
        "INSERT INTO metrics (session_id, timestamp, metric_type, data) VALUES (?, ?, ?, ?)",
        ("s1", 1100, "memory", json.dumps({"jsHeapUsedSize": 10, "jsHeapTotalSize": 20})),
    )
    conn.execute(
        "INSERT INTO metrics (session_id, timestamp, metric_type, data) VALUES (?, ?, ?, ?)",
        ("s1", 1200, "cwv", json.dumps({"lcp": 1800})),
    )
    conn.execute(
        "INSERT INTO network_requests (id, session_id, url, method, status_code, "
        "request_time, response_time, size) "
        "VALUES ('r1', 's1', 'https://a/x', 'GET', 200, 1000, 1250, 512)"
    )
    conn.execute(
        "INSERT INTO network_requests (id, session_id, url, request_time) "
        "VALUES ('r2', 's1', 'https://a/y', 1300)"
    )


class TestSchemaManager:
    """Test store creation and migration"""

    def test_fresh_store_is_created_at_current_version(self, conn):
        manager = SchemaManager()
        assert manager.current_version(conn) is None

        version = manager.ensure_schema(conn)

        assert version == CURRENT_SCHEMA_VERSION
        assert manager.current_version(conn) == CURRENT_SCHEMA_VERSION
        for table in ("sessions", "metrics", "network_requests", "schema_version"):
            assert check_table_exists(conn, table)
        assert {"status", "tags", "display_name", "target_title"} <= set(columns(conn, "sessions"))
        assert {"duration_ms", "size_bytes"} <= set(columns(conn, "network_requests"))

    def test_ensure_schema_is_idempotent(self, conn):
        manager = SchemaManager()
        manager.ensure_schema(conn)
        assert manager.ensure_schema(conn) == CURRENT_SCHEMA_VERSION
        assert conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1

    def test_version_one_store_is_upgraded_in_place(self, conn):
        legacy_store(conn)
        manager = SchemaManager()
        assert manager.current_version(conn) == 1

        assert manager.ensure_schema(conn) == 2

        statuses = dict(conn.execute("SELECT id, status FROM sessions").fetchall())
        assert statuses == {"s1": "completed", "s2": "active"}

        resolved = conn.execute(
            "SELECT * FROM network_requests WHERE id = 'r1'"
        ).fetchone()
        assert resolved["duration_ms"] == 250
        assert resolved["size_bytes"] == 512
        pending = conn.execute(
            "SELECT * FROM network_requests WHERE id = 'r2'"
        ).fetchone()
        assert pending["response_time"] is None
        assert pending["duration_ms"] is None

        rows = conn.execute("SELECT metric_type, data FROM metrics ORDER BY id").fetchall()
        assert rows[0]["metric_type"] == "memory"
        assert json.loads(rows[0]["data"])["js_heap_used_size"] == 10
        assert rows[1]["metric_type"] == "webvitals"

    def test_requests_are_keyed_per_session_after_upgrade(self, conn):
        SchemaManager().ensure_schema(conn)
        conn.execute("INSERT INTO sessions (id, device_id, started_at) VALUES ('a', 'd', 1)")
        conn.execute("INSERT INTO sessions (id, device_id, started_at) VALUES ('b', 'd', 2)")
        for session_id in ("a", "b"):
            conn.execute(
                "INSERT INTO network_requests (session_id, id, url, request_time) "
                "VALUES (?, 'same-id', 'https://x', 1)",
                (session_id,),
            )
        assert conn.execute("SELECT COUNT(*) FROM network_requests").fetchone()[0] == 2

    def test_unstamped_legacy_file_is_treated_as_version_one(self, conn):
        for statement in MIGRATIONS[0].upgrade:
            conn.execute(statement)
        assert SchemaManager().current_version(conn) == 1
        assert SchemaManager().ensure_schema(conn) == 2

    def test_desktop_app_file_is_stamped_without_migrating(self, conn):
        for statement in DESKTOP_APP_SCHEMA:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO sessions (id, device_id, started_at, ended_at, status, tags) "
            "VALUES ('s1', 'dev', 1, 5, 'completed', NULL)"
        )
        conn.execute(
            "INSERT INTO network_requests (id, session_id, url, request_time, duration_ms) "
            "VALUES ('r1', 's1', 'https://x', 1, 40)"
        )
        manager = SchemaManager()
        assert manager.current_version(conn) == 2

        assert manager.ensure_schema(conn) == 2

        assert manager.stamped_version(conn) == 2
        row = conn.execute("SELECT status, tags FROM sessions").fetchone()
        assert (row["status"], row["tags"]) == ("completed", "[]")
        assert primary_key_columns(conn, "network_requests") == ["session_id", "id"]
        assert conn.execute("SELECT duration_ms FROM network_requests").fetchone()[0] == 40

    def test_older_desktop_app_file_gains_late_columns(self, conn):
        conn.execute(
            "CREATE TABLE sessions (id TEXT PRIMARY KEY, device_id TEXT NOT NULL, "
            "device_name TEXT, webview_url TEXT, package_name TEXT, started_at INTEGER NOT NULL, "
            "ended_at INTEGER, status TEXT NOT NULL DEFAULT 'active', metadata TEXT)"
        )
        for statement in DESKTOP_APP_SCHEMA[1:]:
            conn.execute(statement)

        assert SchemaManager().ensure_schema(conn) == 2

        assert {"target_title", "display_name", "tags"} <= set(columns(conn, "sessions"))

    async def test_store_opens_desktop_app_file(self, temp_dir):
        path = os.path.join(temp_dir, "app.db")
        app_db = sqlite3.connect(path, isolation_level=None)
        try:
            for statement in DESKTOP_APP_SCHEMA:
                app_db.execute(statement)
            app_db.execute(
                "INSERT INTO sessions (id, device_id, started_at, ended_at, status) "
                "VALUES ('s1', 'dev', 1, 5, 'completed')"
            )
        finally:
            app_db.close()

        store = SQLiteSessionStore(path)
        await store.initialize()
        try:
            session = await store.get_session("s1")
            assert session.status is SessionStatus.COMPLETED
            assert await store.schema_version() == 2
        finally:
            await store.shutdown()

    def test_newer_store_is_refused_and_left_untouched(self, conn):
        manager = SchemaManager()
        manager.ensure_schema(conn)
        conn.execute("UPDATE schema_version SET version = 99")

        with pytest.raises(SchemaTooNew) as exc_info:
            manager.ensure_schema(conn)

        assert exc_info.value.found_version == 99
        assert "schema-too-new" in str(exc_info.value)
        assert manager.current_version(conn) == 99
        assert not conn.in_transaction

    def test_failed_migration_rolls_back_everything(self, conn):
        broken = SchemaManager(
            [
                MIGRATIONS[0],
                MigrationStep(
                    version=2,
                    description="broken",
                    upgrade=("CREATE TABLE half_done (a INTEGER)", "THIS IS NOT SQL"),
                    downgrade=(),
                ),
            ]
        )

        with pytest.raises(sqlite3.OperationalError):
            broken.ensure_schema(conn, target=2)

        assert broken.current_version(conn) is None
        assert not check_table_exists(conn, "sessions")
        assert not check_table_exists(conn, "half_done")

    def test_downgrade_and_upgrade_again(self, conn):
        manager = SchemaManager()
        manager.ensure_schema(conn)
        conn.execute("INSERT INTO sessions (id, device_id, started_at, tags) VALUES ('s', 'd', 1, '[]')")
        conn.execute(
            "INSERT INTO network_requests (session_id, id, url, request_time, size_bytes) "
            "VALUES ('s', 'r', 'https://x', 1, 64)"
        )

        assert manager.downgrade(conn, 1) == 1
        assert manager.current_version(conn) == 1
        assert "status" not in columns(conn, "sessions")
        assert conn.execute("SELECT size FROM network_requests").fetchone()[0] == 64

        manager.ensure_schema(conn)
        assert manager.current_version(conn) == 2
        assert conn.execute("SELECT status FROM sessions").fetchone()[0] == "active"

    def test_downgrade_to_zero_drops_everything(self, conn):
        manager = SchemaManager()
        manager.ensure_schema(conn)
        manager.downgrade(conn, 0)
        assert manager.current_version(conn) is None
        assert not check_table_exists(conn, "schema_version")


class TestEnvelopeUpgrade:
    """Test rewriting of older export documents"""

    def legacy_document(self):
        return {
            "version": 1,
            "exportedAt": "2024-05-01T12:00:00.000Z",
            "session": {
                "id": "old-session",
                "device_id": "emulator-5554",
                "device_name": "Pixel",
                "webview_url": "https://shop.example",
                "package_name": "com.example.shop",
                "target_title": "Shop",
                "started_at": 1000,
                "ended_at": 9000,
                "status": "completed",
            },
            "metrics": [
                {
                    "id": 1,
                    "session_id": "old-session",
                    "timestamp": 1500,
                    "metric_type": "performance",
                    "data": json.dumps({"timestamp": 1500, "js_heap_used_size": 100, "dom_nodes": 40}),
                }
            ],
            "networkRequests": [
                {
                    "id": "r1",
                    "session_id": "old-session",
                    "url": "https://shop.example/api",
                    "method": "GET",
                    "status_code": 200,
                    "request_time": 2000,
                    "response_time": 2100,
                    "duration_ms": None,
                    "size_bytes": 10,
                    "headers": json.dumps({"accept": "*/*"}),
                }
            ],
        }

    def test_legacy_document_is_rewritten_to_current_format(self):
        upgraded = upgrade_envelope(self.legacy_document())

        assert upgraded["formatVersion"] == CURRENT_FORMAT_VERSION
        assert upgraded["exportedAt"] == 1714564800000
        assert upgraded["session"]["deviceId"] == "emulator-5554"
        assert upgraded["metrics"][0]["metricType"] == "performance"
        assert upgraded["metrics"][0]["data"]["js_heap_used_size"] == 100
        request = upgraded["networkRequests"][0]
        assert request["durationMs"] == 100
        assert request["headers"] == {"accept": "*/*"}

    def test_upgrade_does_not_modify_input(self):
        document = self.legacy_document()
        snapshot = copy.deepcopy(document)
        upgrade_envelope(document)
        assert document == snapshot

    def test_current_document_passes_through(self):
        document = {"formatVersion": CURRENT_FORMAT_VERSION, "session": {}}
        assert upgrade_envelope(document) is document

    def test_newer_format_is_unsupported(self):
        with pytest.raises(UnsupportedVersion) as exc_info:
            upgrade_envelope({"formatVersion": CURRENT_FORMAT_VERSION + 1, "session": {}})
        assert exc_info.value.stage == "version"

    def test_missing_version_is_malformed(self):
        with pytest.raises(MalformedExport) as exc_info:
            upgrade_envelope({"session": {}})
        assert exc_info.value.stage == "structure"
