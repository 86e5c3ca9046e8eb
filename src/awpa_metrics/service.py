"""
Performance session service.

Wires the store, lifecycle controller, query layer, exporter, importer,
live history cache and connection registry behind one object, which is the
surface the live producer and the HTTP layer talk to.
"""

import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from .comparison import SessionComparison, SessionSummary, compare, summarize
from .config import StorageConfig
from .connection_registry import ConnectionMatch, ConnectionRegistry, RecentConnection
from .exporter import StreamingExporter, suggested_filename
from .history_cache import BoundedHistoryCache, HistoryView
from .importer import ImportResult, SessionImporter
from .lifecycle import EndReason, SessionLifecycleController
from .query import MetricQuery, QueryLayer, RequestQuery, SessionFilter
from .sqlite_storage import SQLITE_HEADER, SQLiteSessionStore
from .storage_interface import (
    DeleteResult,
    Metric,
    MetricPayload,
    MetricType,
    NetworkRequest,
    Session,
    SessionDescriptor,
    SessionNotActive,
    SessionNotFound,
    StorageOperation,
    decode_payload,
    now_ms,
)


logger = logging.getLogger(__name__)


class PerformanceSessionService:
    """Facade over every session-data component of one store."""

    def __init__(self, config: Optional[StorageConfig] = None, clock: Callable[[], int] = now_ms):
        self.config = config or StorageConfig()
        self.clock = clock

        self.store = SQLiteSessionStore(
            self.config.db_path,
            enable_wal=self.config.wal_mode,
            busy_timeout_ms=self.config.busy_timeout_ms,
        )
        self.controller = SessionLifecycleController(self.store, clock)
        self.queries = QueryLayer(self.store, clock)
        self.exporter = StreamingExporter(self.store, self.config.export_batch_size, clock)
        self.importer = SessionImporter(
            self.store, device_prefix=self.config.imported_device_prefix, clock=clock
        )
        self.cache = BoundedHistoryCache(
            self.config.max_history_points, self.config.max_network_requests
        )
        self.view = HistoryView(self.cache, clock)
        self.registry = ConnectionRegistry(
            self.config.registry_path or None,
            max_recent=self.config.max_recent_connections,
            clock=clock,
        )

    async def initialize(self) -> None:
        await self.store.initialize()
        recovered = await self.controller.recover()
        if recovered:
            logger.warning(f"Recovered {len(recovered)} sessions left active by a previous run")
        logger.info("Performance session service initialized")

    async def shutdown(self) -> None:
        await self.store.shutdown()

    # ============================================================
    # Lifecycle
    # ============================================================

    async def begin_session(self, descriptor: SessionDescriptor) -> Session:
        session_id = await self.controller.begin(descriptor)
        self.cache.clear()
        self.view.reset()
        return await self.store.get_session(session_id)

    async def end_session(
        self, session_id: Optional[str] = None, reason: EndReason = EndReason.NORMAL
    ) -> Session:
        """End ``session_id``, or the current session when omitted."""
        session_id = session_id or self.controller.current
        if session_id is None:
            raise SessionNotActive("<none>", None)
        return await self.controller.end(session_id, reason)

    async def delete_session(self, session_id: str) -> DeleteResult:
        return await self.controller.delete(session_id)

    async def rename_session(self, session_id: str, name: Optional[str]) -> Session:
        await self.controller.rename(session_id, name)
        return await self.get_session(session_id)

    async def set_session_tags(self, session_id: str, tags: Sequence[str]) -> Session:
        await self.controller.set_tags(session_id, tags)
        return await self.get_session(session_id)

    @property
    def current_session_id(self) -> Optional[str]:
        return self.controller.current

    # ============================================================
    # Live producer
    # ============================================================

    async def record_metric(
        self,
        session_id: str,
        timestamp: int,
        metric_type: Union[str, MetricType],
        payload: Union[Dict[str, Any], MetricPayload],
    ) -> Metric:
        """Validate, cache (for the live session) and persist one metric."""
        if not isinstance(payload, MetricPayload):
            payload = decode_payload(metric_type, payload)
        metric = Metric(session_id=session_id, timestamp=timestamp, payload=payload)

        if session_id == self.controller.current:
            self.cache.push_metric(metric)
        await self.store.append_metric(metric)
        return metric

    async def record_network_request(self, request: NetworkRequest) -> bool:
        request = request.normalized()
        if request.session_id == self.controller.current:
            self.cache.push_request(request)
        return await self.store.upsert_network_request(request)

    # ============================================================
    # Reads
    # ============================================================

    async def get_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id, StorageOperation.READ)
        return session

    async def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        return await self.store.list_sessions(limit)

    async def query(self, session_id: str, query: Optional[MetricQuery] = None) -> List[Metric]:
        return await self.queries.query(session_id, query)

    async def query_network_requests(
        self, session_id: str, query: Optional[RequestQuery] = None
    ) -> List[NetworkRequest]:
        return await self.queries.query_network_requests(session_id, query)

    async def search_sessions(
        self, session_filter: Optional[SessionFilter] = None, limit: Optional[int] = None
    ) -> List[Session]:
        return await self.queries.search_sessions(session_filter, limit)

    async def summarize_session(self, session_id: str) -> SessionSummary:
        session = await self.get_session(session_id)
        metrics = [m async for m in self.exporter.stream_metrics(session_id)]
        requests = [r async for r in self.exporter.stream_network_requests(session_id)]
        return summarize(session, metrics, requests)

    async def compare_sessions(self, baseline_id: str, candidate_id: str) -> SessionComparison:
        baseline = await self.summarize_session(baseline_id)
        candidate = await self.summarize_session(candidate_id)
        return compare(baseline, candidate)

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.get_storage_stats()
        stats["current_session_id"] = self.controller.current
        stats["cached_metrics"] = len(self.cache)
        return stats

    # ============================================================
    # Export / import
    # ============================================================

    def stream_export(self, session_id: str, batch_size: Optional[int] = None) -> AsyncIterator[bytes]:
        return self.exporter.stream_envelope(session_id, batch_size)

    async def export_envelope(self, session_id: str) -> bytes:
        return await self.exporter.export_envelope(session_id)

    async def export_buffer(self, session_id: Optional[str] = None) -> bytes:
        return await self.exporter.export_buffer(session_id)

    async def export_filename(self, session_id: str) -> str:
        return suggested_filename(await self.get_session(session_id), self.clock())

    async def import_data(self, data: Union[bytes, str, Dict[str, Any]]) -> List[ImportResult]:
        """Import a SQLite image or a JSON envelope, whichever ``data`` is."""
        if isinstance(data, (bytes, bytearray)) and bytes(data[:16]) == SQLITE_HEADER:
            return await self.importer.import_buffer(data)
        return [await self.importer.import_envelope(data)]

    # ============================================================
    # Connections
    # ============================================================

    def register_recent_connection(
        self,
        device_id: str,
        device_name: str,
        socket_name: str,
        package_name: Optional[str] = None,
        target_title: Optional[str] = None,
        target_url: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> RecentConnection:
        return self.registry.add_recent(
            device_id,
            device_name,
            socket_name,
            package_name=package_name,
            target_title=target_title,
            target_url=target_url,
            target_id=target_id,
        )

    def match_preset(self, device_id: str, socket_name: str) -> ConnectionMatch:
        return self.registry.match(device_id, socket_name)
