"""
Windowed and filtered queries over recorded sessions.

Time windows are inclusive on both ends. A named range ("last 5 minutes")
is resolved against the clock when the query runs, so two identical queries
issued a minute apart may return different rows.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from .storage_interface import (
    IMPORTED_DEVICE_PREFIX,
    Metric,
    MetricType,
    NetworkRequest,
    Session,
    SessionNotFound,
    SessionStatus,
    StorageOperation,
    normalize_tags,
    now_ms,
    parse_metric_type,
)

if TYPE_CHECKING:
    from .sqlite_storage import SQLiteSessionStore


logger = logging.getLogger(__name__)


class NamedRange(Enum):
    """Relative time ranges offered to the history views."""
    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    THIRTY_MINUTES = "30m"
    ALL = "all"
    CUSTOM = "custom"

    @property
    def duration_ms(self) -> Optional[int]:
        return _RANGE_DURATIONS_MS.get(self)


_RANGE_DURATIONS_MS = {
    NamedRange.ONE_MINUTE: 60_000,
    NamedRange.FIVE_MINUTES: 5 * 60_000,
    NamedRange.FIFTEEN_MINUTES: 15 * 60_000,
    NamedRange.THIRTY_MINUTES: 30 * 60_000,
}


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive ``[start, end]`` window in epoch milliseconds."""
    start: int
    end: int

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end


def resolve_window(
    time_range: Optional[TimeWindow],
    named_range: NamedRange,
    now: int,
) -> Tuple[Optional[int], Optional[int]]:
    """
    Resolve the effective ``(start, end)`` bounds of a query.

    An explicit window always wins. ``ALL`` is unbounded, and ``CUSTOM``
    without an explicit window is rejected.
    """
    if time_range is not None:
        return time_range.start, time_range.end
    if named_range is NamedRange.ALL:
        return None, None
    if named_range is NamedRange.CUSTOM:
        raise ValueError("Named range 'custom' requires an explicit time_range")
    return now - named_range.duration_ms, now


@dataclass
class MetricQuery:
    time_range: Optional[TimeWindow] = None
    named_range: NamedRange = NamedRange.ALL
    metric_types: Optional[Sequence[MetricType]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def __post_init__(self):
        if self.metric_types is not None:
            self.metric_types = [parse_metric_type(t) for t in self.metric_types]
        _check_page(self.limit, self.offset)


@dataclass
class RequestQuery:
    time_range: Optional[TimeWindow] = None
    named_range: NamedRange = NamedRange.ALL
    failed_only: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None

    def __post_init__(self):
        _check_page(self.limit, self.offset)


def _check_page(limit: Optional[int], offset: Optional[int]) -> None:
    if limit is not None and limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    if offset is not None and offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")


def fold_case(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def register_sql_functions(conn: sqlite3.Connection) -> None:
    """Expose the case folding used by in-memory matching to SQL as ``fold_case``."""
    conn.create_function("fold_case", 1, fold_case, deterministic=True)


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{fold_case(escaped)}%"


@dataclass
class SessionFilter:
    """
    Criteria for session search.

    Criteria combine with AND; tags match if the session carries any of the
    requested tags. An empty criterion matches everything.
    """
    search_text: Optional[str] = None
    device_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    tags: Sequence[str] = field(default_factory=list)
    include_imported: bool = True

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = SessionStatus(self.status)
        self.tags = normalize_tags(self.tags)
        if self.search_text is not None and not self.search_text.strip():
            self.search_text = None

    def is_empty(self) -> bool:
        return (
            self.search_text is None
            and not self.device_id
            and self.status is None
            and not self.tags
            and self.include_imported
        )

    def matches(self, session: Session) -> bool:
        if self.search_text is not None:
            needle = fold_case(self.search_text.strip())
            haystack = [
                session.display_name,
                session.target_title,
                session.package_name,
                session.device_name,
                *session.tags,
            ]
            if not any(value and needle in fold_case(value) for value in haystack):
                return False
        if self.device_id and session.device_id != self.device_id:
            return False
        if self.status is not None and session.status != self.status:
            return False
        if self.tags and not set(self.tags) & set(session.tags):
            return False
        if not self.include_imported and session.is_imported:
            return False
        return True

    def to_sql(self) -> Tuple[str, List[Any]]:
        """Translate to a ``WHERE`` fragment over the ``sessions`` table."""
        clauses = ["1=1"]
        params: List[Any] = []

        if self.search_text is not None:
            pattern = _like_pattern(self.search_text.strip())
            columns = ["display_name", "target_title", "package_name", "device_name"]
            text_clauses = [
                f"fold_case(COALESCE({column}, '')) LIKE ? ESCAPE '\\'" for column in columns
            ]
            text_clauses.append(
                "EXISTS (SELECT 1 FROM json_each(sessions.tags) "
                "WHERE fold_case(json_each.value) LIKE ? ESCAPE '\\')"
            )
            clauses.append("(" + " OR ".join(text_clauses) + ")")
            params.extend([pattern] * len(text_clauses))

        if self.device_id:
            clauses.append("device_id = ?")
            params.append(self.device_id)

        if self.status is not None:
            clauses.append("status = ?")
            params.append(self.status.value)

        if self.tags:
            placeholders = ", ".join("?" for _ in self.tags)
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(sessions.tags) "
                f"WHERE json_each.value IN ({placeholders}))"
            )
            params.extend(self.tags)

        if not self.include_imported:
            clauses.append("substr(device_id, 1, ?) != ?")
            params.extend([len(IMPORTED_DEVICE_PREFIX), IMPORTED_DEVICE_PREFIX])

        return " AND ".join(clauses), params


def all_tags(sessions: Iterable[Session]) -> List[str]:
    """Every tag used by any of the sessions, sorted."""
    tags = set()
    for session in sessions:
        tags.update(session.tags)
    return sorted(tags)


def unique_devices(sessions: Iterable[Session]) -> List[Tuple[str, Optional[str]]]:
    """Distinct ``(device_id, device_name)`` pairs, first name seen wins."""
    devices = {}
    for session in sessions:
        if session.device_id not in devices or devices[session.device_id] is None:
            devices[session.device_id] = session.device_name
    return sorted(devices.items())


class QueryLayer:
    """Read-only query surface over the entity store."""

    def __init__(
        self,
        store: "SQLiteSessionStore",
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.clock = clock

    async def _require_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id, StorageOperation.READ)
        return session

    async def query(self, session_id: str, query: Optional[MetricQuery] = None) -> List[Metric]:
        """Metrics of a session in ``(timestamp, id)`` order."""
        query = query or MetricQuery()
        await self._require_session(session_id)
        start, end = resolve_window(query.time_range, query.named_range, self.clock())
        return await self.store.get_metrics(
            session_id,
            start_time=start,
            end_time=end,
            metric_types=query.metric_types,
            limit=query.limit,
            offset=query.offset,
        )

    async def query_network_requests(
        self, session_id: str, query: Optional[RequestQuery] = None
    ) -> List[NetworkRequest]:
        """Requests of a session in ``request_time`` order."""
        query = query or RequestQuery()
        await self._require_session(session_id)
        start, end = resolve_window(query.time_range, query.named_range, self.clock())
        return await self.store.get_network_requests(
            session_id,
            start_time=start,
            end_time=end,
            limit=query.limit,
            offset=query.offset,
            failed_only=query.failed_only,
        )

    async def search_sessions(
        self, session_filter: Optional[SessionFilter] = None, limit: Optional[int] = None
    ) -> List[Session]:
        return await self.store.search_sessions(session_filter or SessionFilter(), limit)
