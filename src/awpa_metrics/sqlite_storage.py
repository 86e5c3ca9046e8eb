"""
SQLite storage implementation for recorded performance sessions.

Provides persistent storage for sessions, time-series metrics and network
request records on a single connection in autocommit mode with explicit
transactions, WAL journaling and enforced foreign keys.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from .query import SessionFilter, register_sql_functions
from .schema import CURRENT_SCHEMA_VERSION, SchemaManager
from .storage_interface import (
    DeleteResult,
    Metric,
    MetricType,
    NetworkRequest,
    Session,
    SessionNotFound,
    SessionStatus,
    SessionStorage,
    StorageError,
    StorageOperation,
    decode_payload,
    normalize_tags,
    parse_metric_type,
)


logger = logging.getLogger(__name__)


MEMORY_DB = ":memory:"
SQLITE_HEADER = b"SQLite format 3\x00"


def rollback_journal_image(image: bytes) -> bytes:
    """
    Return a database image that opens without a WAL file.

    Bytes 18 and 19 of the header record the journal format; a WAL image
    cannot be deserialized into memory until they are reset to legacy mode.
    """
    if len(image) >= 20 and (image[18] == 2 or image[19] == 2):
        patched = bytearray(image)
        patched[18] = 1
        patched[19] = 1
        return bytes(patched)
    return image


class SQLiteSessionStore(SessionStorage):
    """SQLite-based entity store for sessions, metrics and network requests."""

    def __init__(
        self,
        db_path: str,
        enable_wal: bool = True,
        busy_timeout_ms: int = 5000,
        schema_manager: Optional[SchemaManager] = None,
    ):
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
            enable_wal: Enable WAL mode for concurrent readers
            busy_timeout_ms: How long to wait on a locked database file
        """
        self.db_path = db_path
        self.enable_wal = enable_wal and db_path != MEMORY_DB
        self.busy_timeout_ms = busy_timeout_ms
        self.schema_manager = schema_manager or SchemaManager()
        self._lock = asyncio.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._initialized = False

    # ============================================================
    # Connection management
    # ============================================================

    def _open_connection(self) -> sqlite3.Connection:
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,
            check_same_thread=False,
            timeout=self.busy_timeout_ms / 1000,
        )
        conn.row_factory = sqlite3.Row
        register_sql_functions(conn)

        if self.enable_wal:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Store is not initialized", StorageOperation.READ)
        return self._conn

    async def initialize(self) -> None:
        """Open the database and migrate it to the current schema."""
        async with self._lock:
            if self._initialized:
                return

            conn = self._open_connection()
            try:
                version = self.schema_manager.ensure_schema(conn, CURRENT_SCHEMA_VERSION)
            except Exception as e:
                conn.close()
                logger.error(f"Failed to initialize SQLite store at {self.db_path}: {e}")
                raise

            self._conn = conn
            self._initialized = True
            logger.info(f"SQLite store initialized at {self.db_path} (schema v{version})")

    async def shutdown(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection: {e}")
            self._conn = None
            self._initialized = False
        logger.info("SQLite store shutdown completed")

    async def schema_version(self) -> Optional[int]:
        return self.schema_manager.current_version(self.connection)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """
        Hold the write lock and one ``BEGIN IMMEDIATE`` transaction.

        The body must not await: readers share this connection and would
        otherwise observe uncommitted rows. Any exception, cancellation
        included, rolls the transaction back.
        """
        async with self._lock:
            conn = self.connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ============================================================
    # Row mapping
    # ============================================================

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            device_id=row["device_id"],
            device_name=row["device_name"],
            webview_url=row["webview_url"],
            package_name=row["package_name"],
            target_title=row["target_title"],
            display_name=row["display_name"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            status=SessionStatus(row["status"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    @staticmethod
    def _row_to_metric(row: sqlite3.Row) -> Metric:
        return Metric(
            id=row["id"],
            session_id=row["session_id"],
            timestamp=row["timestamp"],
            payload=decode_payload(row["metric_type"], json.loads(row["data"])),
        )

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> NetworkRequest:
        return NetworkRequest(
            id=row["id"],
            session_id=row["session_id"],
            url=row["url"],
            method=row["method"],
            status_code=row["status_code"],
            request_time=row["request_time"],
            response_time=row["response_time"],
            duration_ms=row["duration_ms"],
            size_bytes=row["size_bytes"],
            headers=json.loads(row["headers"]) if row["headers"] else None,
        )

    # ============================================================
    # Row writers (called inside transaction())
    # ============================================================

    def _ensure_session_exists(
        self, conn: sqlite3.Connection, session_id: str, operation: StorageOperation
    ) -> None:
        row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise SessionNotFound(session_id, operation)

    def insert_session_row(self, conn: sqlite3.Connection, session: Session) -> None:
        if not session.device_id:
            raise StorageError("Session device_id is required", StorageOperation.CREATE)
        conn.execute(
            """
            INSERT INTO sessions (
                id, device_id, device_name, webview_url, package_name,
                target_title, display_name, tags, status, started_at,
                ended_at, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.device_id,
                session.device_name,
                session.webview_url,
                session.package_name,
                session.target_title,
                session.display_name,
                json.dumps(normalize_tags(session.tags)),
                session.status.value,
                session.started_at,
                session.ended_at,
                json.dumps(session.metadata) if session.metadata is not None else None,
            ),
        )

    def insert_metric_row(self, conn: sqlite3.Connection, metric: Metric) -> int:
        cursor = conn.execute(
            """
            INSERT INTO metrics (session_id, timestamp, metric_type, data)
            VALUES (?, ?, ?, ?)
            """,
            (
                metric.session_id,
                metric.timestamp,
                metric.metric_type.value,
                json.dumps(metric.payload.to_dict()),
            ),
        )
        return cursor.lastrowid

    def insert_request_row(self, conn: sqlite3.Connection, request: NetworkRequest) -> None:
        request = request.normalized()
        conn.execute(
            """
            INSERT INTO network_requests (
                session_id, id, url, method, status_code, request_time,
                response_time, duration_ms, size_bytes, headers
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.session_id,
                request.id,
                request.url,
                request.method,
                request.status_code,
                request.request_time,
                request.response_time,
                request.duration_ms,
                request.size_bytes,
                json.dumps(request.headers) if request.headers is not None else None,
            ),
        )

    # ============================================================
    # Sessions
    # ============================================================

    async def create_session(self, session: Session) -> Session:
        session.tags = normalize_tags(session.tags)
        async with self.transaction() as conn:
            self.insert_session_row(conn, session)
        logger.debug(f"Created session {session.id} for device {session.device_id}")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = self.connection.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    async def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        """All sessions, newest first."""
        sql = "SELECT * FROM sessions ORDER BY started_at DESC, rowid DESC"
        params: List[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.connection.execute(sql, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def find_sessions_by_status(self, status: SessionStatus) -> List[Session]:
        rows = self.connection.execute(
            "SELECT * FROM sessions WHERE status = ? ORDER BY started_at DESC, rowid DESC",
            (status.value,),
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def search_sessions(
        self, session_filter: SessionFilter, limit: Optional[int] = None
    ) -> List[Session]:
        where, params = session_filter.to_sql()
        sql = f"SELECT * FROM sessions WHERE {where} ORDER BY started_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.connection.execute(sql, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def count_sessions(self) -> int:
        return self.connection.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    async def _update_session(self, session_id: str, assignments: str, params: Sequence[Any]) -> None:
        async with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE sessions SET {assignments} WHERE id = ?", (*params, session_id)
            )
            if cursor.rowcount == 0:
                raise SessionNotFound(session_id, StorageOperation.UPDATE)

    async def update_session_status(
        self, session_id: str, status: SessionStatus, ended_at: Optional[int]
    ) -> None:
        await self._update_session(
            session_id, "status = ?, ended_at = ?", (status.value, ended_at)
        )
        logger.debug(f"Session {session_id} status -> {status.value}")

    async def update_session_name(self, session_id: str, name: Optional[str]) -> None:
        name = name.strip() if name else None
        await self._update_session(session_id, "display_name = ?", (name or None,))

    async def update_session_tags(self, session_id: str, tags: Sequence[str]) -> List[str]:
        normalized = normalize_tags(tags)
        await self._update_session(session_id, "tags = ?", (json.dumps(normalized),))
        return normalized

    async def delete_session(self, session_id: str) -> DeleteResult:
        """Delete a session; metrics and requests go with it."""
        async with self.transaction() as conn:
            self._ensure_session_exists(conn, session_id, StorageOperation.DELETE)
            metrics_deleted = conn.execute(
                "SELECT COUNT(*) FROM metrics WHERE session_id = ?", (session_id,)
            ).fetchone()[0]
            requests_deleted = conn.execute(
                "SELECT COUNT(*) FROM network_requests WHERE session_id = ?", (session_id,)
            ).fetchone()[0]
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

        logger.debug(
            f"Deleted session {session_id} "
            f"({metrics_deleted} metrics, {requests_deleted} requests)"
        )
        return DeleteResult(
            session_id=session_id,
            metrics_deleted=metrics_deleted,
            requests_deleted=requests_deleted,
        )

    # ============================================================
    # Metrics
    # ============================================================

    async def append_metric(self, metric: Metric) -> int:
        async with self.transaction() as conn:
            self._ensure_session_exists(conn, metric.session_id, StorageOperation.CREATE)
            metric_id = self.insert_metric_row(conn, metric)
        metric.id = metric_id
        return metric_id

    async def append_metrics(self, metrics: Sequence[Metric]) -> List[int]:
        """Append a batch in one transaction; all rows or none."""
        ids = []
        async with self.transaction() as conn:
            for session_id in {metric.session_id for metric in metrics}:
                self._ensure_session_exists(conn, session_id, StorageOperation.CREATE)
            for metric in metrics:
                ids.append(self.insert_metric_row(conn, metric))
        for metric, metric_id in zip(metrics, ids):
            metric.id = metric_id
        return ids

    async def get_metrics(
        self,
        session_id: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        metric_types: Optional[Sequence[MetricType]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Metric]:
        """Metrics ordered by timestamp, ties in insertion order."""
        sql = "SELECT * FROM metrics WHERE session_id = ?"
        params: List[Any] = [session_id]

        if start_time is not None:
            sql += " AND timestamp >= ?"
            params.append(start_time)
        if end_time is not None:
            sql += " AND timestamp <= ?"
            params.append(end_time)
        if metric_types:
            types = [parse_metric_type(t).value for t in metric_types]
            sql += f" AND metric_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)

        sql += " ORDER BY timestamp ASC, id ASC"
        sql, params = self._paginate(sql, params, limit, offset)

        rows = self.connection.execute(sql, params).fetchall()
        return [self._row_to_metric(row) for row in rows]

    async def count_metrics(self, session_id: str) -> int:
        return self.connection.execute(
            "SELECT COUNT(*) FROM metrics WHERE session_id = ?", (session_id,)
        ).fetchone()[0]

    @staticmethod
    def _paginate(sql: str, params: List[Any], limit: Optional[int], offset: Optional[int]):
        if limit is not None or offset is not None:
            sql += " LIMIT ?"
            params.append(limit if limit is not None else -1)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        return sql, params

    # ============================================================
    # Network requests
    # ============================================================

    async def upsert_network_request(self, request: NetworkRequest) -> bool:
        """
        Record the first observation of a request or resolve a pending one.

        Returns False without writing when the stored row already has a
        response; a request is resolved at most once.
        """
        request = request.normalized()
        async with self.transaction() as conn:
            self._ensure_session_exists(conn, request.session_id, StorageOperation.CREATE)
            row = conn.execute(
                "SELECT response_time FROM network_requests WHERE session_id = ? AND id = ?",
                (request.session_id, request.id),
            ).fetchone()

            if row is None:
                self.insert_request_row(conn, request)
                logger.debug(f"Recorded request {request.id} in session {request.session_id}")
                return True

            if row["response_time"] is not None:
                logger.warning(
                    f"Ignoring update to resolved request {request.id} "
                    f"in session {request.session_id}"
                )
                return False

            conn.execute(
                """
                UPDATE network_requests
                SET url = ?,
                    method = COALESCE(?, method),
                    status_code = COALESCE(?, status_code),
                    response_time = ?,
                    duration_ms = ?,
                    size_bytes = COALESCE(?, size_bytes),
                    headers = COALESCE(?, headers)
                WHERE session_id = ? AND id = ?
                """,
                (
                    request.url,
                    request.method,
                    request.status_code,
                    request.response_time,
                    request.duration_ms,
                    request.size_bytes,
                    json.dumps(request.headers) if request.headers is not None else None,
                    request.session_id,
                    request.id,
                ),
            )
            logger.debug(f"Updated request {request.id} in session {request.session_id}")
            return True

    async def get_network_requests(
        self,
        session_id: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        failed_only: bool = False,
    ) -> List[NetworkRequest]:
        """Requests ordered by request time, ties in first-seen order."""
        sql = "SELECT * FROM network_requests WHERE session_id = ?"
        params: List[Any] = [session_id]

        if start_time is not None:
            sql += " AND request_time >= ?"
            params.append(start_time)
        if end_time is not None:
            sql += " AND request_time <= ?"
            params.append(end_time)
        if failed_only:
            sql += " AND status_code >= 400"

        sql += " ORDER BY request_time ASC, rowid ASC"
        sql, params = self._paginate(sql, params, limit, offset)

        rows = self.connection.execute(sql, params).fetchall()
        return [self._row_to_request(row) for row in rows]

    async def count_network_requests(self, session_id: str) -> int:
        return self.connection.execute(
            "SELECT COUNT(*) FROM network_requests WHERE session_id = ?", (session_id,)
        ).fetchone()[0]

    # ============================================================
    # Snapshots, statistics and maintenance
    # ============================================================

    async def snapshot(self) -> sqlite3.Connection:
        """A private in-memory copy of the whole store."""
        async with self._lock:
            copy = sqlite3.connect(MEMORY_DB, isolation_level=None)
            self.connection.backup(copy)
        copy.row_factory = sqlite3.Row
        register_sql_functions(copy)
        copy.execute("PRAGMA foreign_keys=ON")
        return copy

    async def get_storage_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        conn = self.connection
        stats: Dict[str, Any] = {
            "db_path": self.db_path,
            "schema_version": self.schema_manager.current_version(conn),
            "sessions": conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0],
            "metrics": conn.execute("SELECT COUNT(*) FROM metrics").fetchone()[0],
            "network_requests": conn.execute(
                "SELECT COUNT(*) FROM network_requests"
            ).fetchone()[0],
        }

        by_status = {status.value: 0 for status in SessionStatus}
        for row in conn.execute("SELECT status, COUNT(*) AS n FROM sessions GROUP BY status"):
            by_status[row["status"]] = row["n"]
        stats["sessions_by_status"] = by_status

        page_count = conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        stats["db_size_bytes"] = page_count * page_size
        return stats

    async def optimize_storage(self) -> None:
        """Refresh planner statistics and reclaim free pages."""
        async with self._lock:
            conn = self.connection
            conn.execute("ANALYZE")
            conn.execute("VACUUM")
        logger.info(f"Optimized SQLite store at {self.db_path}")
