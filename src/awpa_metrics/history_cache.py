"""
Bounded in-memory history of the live session.

A non-owning copy of the most recent rows, fed by the live producer and
read by dashboards. The entity store stays the source of truth; the cache
can always be rebuilt from it.
"""

import logging
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, List, Optional, Tuple

from .query import NamedRange, TimeWindow
from .storage_interface import Metric, MetricType, NetworkRequest, now_ms

if TYPE_CHECKING:
    from .sqlite_storage import SQLiteSessionStore


logger = logging.getLogger(__name__)


DEFAULT_MAX_METRICS = 300  # 5 minutes at 1 sample per second
DEFAULT_MAX_REQUESTS = 100


class BoundedHistoryCache:
    """
    Fixed-capacity metric and request history.

    Metrics are kept oldest-first and the oldest is evicted on overflow.
    Requests are kept newest-first; a push at the front drops the oldest
    from the tail.
    """

    def __init__(
        self,
        max_metrics: int = DEFAULT_MAX_METRICS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
    ):
        if max_metrics < 1 or max_requests < 1:
            raise ValueError("Cache capacities must be positive")
        self.max_metrics = max_metrics
        self.max_requests = max_requests
        self._metrics: Deque[Metric] = deque(maxlen=max_metrics)
        self._requests: Deque[NetworkRequest] = deque(maxlen=max_requests)

    def push_metric(self, metric: Metric) -> None:
        self._metrics.append(metric)

    def push_request(self, request: NetworkRequest) -> bool:
        """
        Add a request at the front, or replace the cached copy in place.

        Like the store, a cached request that already has a response is
        not replaced; returns False in that case.
        """
        for index, cached in enumerate(self._requests):
            if cached.id == request.id and cached.session_id == request.session_id:
                if cached.resolved:
                    return False
                self._requests[index] = request
                return True
        self._requests.appendleft(request)
        return True

    def metrics(self) -> List[Metric]:
        return list(self._metrics)

    def requests(self) -> List[NetworkRequest]:
        return list(self._requests)

    def latest_metric(self, metric_type: Optional[MetricType] = None) -> Optional[Metric]:
        for metric in reversed(self._metrics):
            if metric_type is None or metric.metric_type is metric_type:
                return metric
        return None

    def clear(self) -> None:
        self._metrics.clear()
        self._requests.clear()

    async def rebuild(self, store: "SQLiteSessionStore", session_id: str) -> None:
        """Reload the most recent rows of a session from the store."""
        self.clear()

        metric_count = await store.count_metrics(session_id)
        for metric in await store.get_metrics(
            session_id, offset=max(0, metric_count - self.max_metrics)
        ):
            self._metrics.append(metric)

        request_count = await store.count_network_requests(session_id)
        for request in await store.get_network_requests(
            session_id, offset=max(0, request_count - self.max_requests)
        ):
            self._requests.appendleft(request)

        logger.debug(
            f"Rebuilt history cache for session {session_id}: "
            f"{len(self._metrics)} metrics, {len(self._requests)} requests"
        )

    def __len__(self) -> int:
        return len(self._metrics)


class HistoryView:
    """
    The slice of cached metrics a dashboard shows.

    A zoom selection, when set, wins: it picks an inclusive index span of the
    full cached history. Without one the time range applies, a custom window
    when the named range is ``custom``, otherwise the named range relative to
    now. Changing the named range clears the zoom.
    """

    def __init__(self, cache: BoundedHistoryCache, clock: Callable[[], int] = now_ms):
        self.cache = cache
        self.clock = clock
        self.named_range = NamedRange.ALL
        self.custom_range: Optional[TimeWindow] = None
        self.zoom: Optional[Tuple[int, int]] = None

    def set_named_range(self, named_range: NamedRange) -> None:
        self.named_range = named_range
        self.zoom = None

    def set_custom_range(self, window: Optional[TimeWindow]) -> None:
        self.custom_range = window

    def set_zoom(self, start_index: int, end_index: int) -> None:
        if start_index < 0 or end_index < start_index:
            raise ValueError(f"Invalid zoom selection [{start_index}, {end_index}]")
        self.zoom = (start_index, end_index)

    def clear_zoom(self) -> None:
        self.zoom = None

    def reset(self) -> None:
        self.named_range = NamedRange.ALL
        self.custom_range = None
        self.zoom = None

    def _in_range(self) -> List[Metric]:
        metrics = self.cache.metrics()
        if self.named_range is NamedRange.ALL:
            return metrics
        if self.named_range is NamedRange.CUSTOM:
            if self.custom_range is None:
                return metrics
            return [m for m in metrics if self.custom_range.contains(m.timestamp)]
        cutoff = self.clock() - self.named_range.duration_ms
        return [m for m in metrics if m.timestamp >= cutoff]

    def visible(self) -> List[Metric]:
        if self.zoom is not None:
            start_index, end_index = self.zoom
            return self.cache.metrics()[start_index:end_index + 1]
        return self._in_range()

    def range_ms(self) -> Optional[int]:
        """Width of the selected range; ``None`` for an unbounded range."""
        if self.named_range is NamedRange.CUSTOM:
            if self.custom_range is None:
                return None
            return self.custom_range.end - self.custom_range.start
        return self.named_range.duration_ms

    def series(self, field_name: str, default: float = 0) -> List[float]:
        """One value per visible metric whose payload carries ``field_name``."""
        values = []
        for metric in self.visible():
            if hasattr(metric.payload, field_name):
                value = getattr(metric.payload, field_name)
                values.append(default if value is None else value)
        return values
