"""
Storage interface abstraction layer for the AWPA metrics store.

Defines the core storage contracts and data models for recorded
performance sessions: sessions, time-series metrics with typed payloads,
and network request records.
"""

import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Type, Union


IMPORTED_DEVICE_PREFIX = "imported:"


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_tags(tags: Optional[Sequence[str]]) -> List[str]:
    """Tags are a set: stripped, de-duplicated, sorted, blanks dropped."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]
    return sorted({str(tag).strip() for tag in tags if str(tag).strip()})


class SessionStatus(Enum):
    """Lifecycle status of a recording session."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class MetricType(Enum):
    """Discriminant for metric payloads."""
    PERFORMANCE = "performance"
    MEMORY = "memory"
    CPU = "cpu"
    NETWORK = "network"
    WEBVITALS = "webvitals"


class StorageOperation(Enum):
    """Types of storage operations for error reporting."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"
    MIGRATE = "migrate"
    EXPORT = "export"
    IMPORT = "import"


# ============================================================
# Errors
# ============================================================


class StorageError(Exception):
    """Base exception for storage operations."""
    def __init__(self, message: str, operation: Optional[StorageOperation] = None):
        self.message = message
        self.operation = operation
        super().__init__(self.message)


class SessionNotFound(StorageError):
    """Raised when a session id does not exist in the store."""
    def __init__(self, session_id: str, operation: Optional[StorageOperation] = None):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}", operation)


class InvariantViolation(StorageError):
    """A request was rejected before any mutation because it breaks an invariant."""
    invariant = "invariant"

    def __init__(self, message: str, operation: Optional[StorageOperation] = None):
        super().__init__(f"[{self.invariant}] {message}", operation)


class SessionAlreadyActive(InvariantViolation):
    invariant = "single-active-session"

    def __init__(self, active_session_id: str):
        self.active_session_id = active_session_id
        super().__init__(
            f"session {active_session_id} is still active; end it before beginning another",
            StorageOperation.CREATE,
        )


class SessionNotActive(InvariantViolation):
    invariant = "end-requires-current-session"

    def __init__(self, session_id: str, current_session_id: Optional[str]):
        self.session_id = session_id
        self.current_session_id = current_session_id
        super().__init__(
            f"session {session_id} is not the current session (current: {current_session_id})",
            StorageOperation.UPDATE,
        )


class CannotDeleteActiveSession(InvariantViolation):
    invariant = "cannot-delete-active-session"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"session {session_id} is active; end it before deleting",
            StorageOperation.DELETE,
        )


class SchemaTooNew(InvariantViolation):
    invariant = "schema-too-new"

    def __init__(self, found_version: int, supported_version: int):
        self.found_version = found_version
        self.supported_version = supported_version
        super().__init__(
            f"store schema version {found_version} is newer than supported version {supported_version}",
            StorageOperation.MIGRATE,
        )


class InvalidTransition(InvariantViolation):
    invariant = "sequential-steps"


class DataValidationError(StorageError):
    """Untrusted input failed validation at a named stage."""
    def __init__(self, stage: str, message: str, operation: Optional[StorageOperation] = None):
        self.stage = stage
        super().__init__(f"{stage} validation failed: {message}", operation)


class MalformedExport(DataValidationError):
    def __init__(self, message: str):
        super().__init__("structure", message, StorageOperation.IMPORT)


class UnsupportedVersion(DataValidationError):
    def __init__(self, found_version: int, supported_version: int):
        self.found_version = found_version
        self.supported_version = supported_version
        super().__init__(
            "version",
            f"format version {found_version} is newer than supported version {supported_version}",
            StorageOperation.IMPORT,
        )


class InvalidPayload(DataValidationError):
    def __init__(self, message: str):
        super().__init__("payload", message, StorageOperation.CREATE)


# ============================================================
# Metric payloads (tagged union keyed by MetricType)
# ============================================================


def _check_number(name: str, value: Any, required: bool) -> Optional[float]:
    if value is None:
        if required:
            raise InvalidPayload(f"field '{name}' is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidPayload(f"field '{name}' must be a number, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidPayload(f"field '{name}' must be a finite number, got {value!r}")
    return value


@dataclass(frozen=True)
class MetricPayload:
    """Base class for typed metric payloads."""
    metric_type: ClassVar[MetricType]
    required_fields: ClassVar[Sequence[str]] = ()

    def __post_init__(self):
        for f in fields(self):
            _check_number(f.name, getattr(self, f.name), f.name in self.required_fields)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricPayload":
        if not isinstance(data, dict):
            raise InvalidPayload(
                f"{cls.metric_type.value} payload must be an object, got {type(data).__name__}"
            )
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass(frozen=True)
class PerformancePayload(MetricPayload):
    """Snapshot of the DevTools Performance domain counters."""
    metric_type: ClassVar[MetricType] = MetricType.PERFORMANCE

    js_heap_used_size: Optional[float] = None
    js_heap_total_size: Optional[float] = None
    dom_nodes: Optional[float] = None
    layout_count: Optional[float] = None
    script_duration: Optional[float] = None
    task_duration: Optional[float] = None


@dataclass(frozen=True)
class MemoryPayload(MetricPayload):
    metric_type: ClassVar[MetricType] = MetricType.MEMORY
    required_fields: ClassVar[Sequence[str]] = ("js_heap_used_size", "js_heap_total_size")

    js_heap_used_size: float = 0
    js_heap_total_size: float = 0
    dom_nodes: Optional[float] = None


@dataclass(frozen=True)
class CpuPayload(MetricPayload):
    metric_type: ClassVar[MetricType] = MetricType.CPU
    required_fields: ClassVar[Sequence[str]] = ("usage",)

    usage: float = 0


@dataclass(frozen=True)
class NetworkSummaryPayload(MetricPayload):
    metric_type: ClassVar[MetricType] = MetricType.NETWORK
    required_fields: ClassVar[Sequence[str]] = (
        "request_count",
        "total_size",
        "avg_response_time",
    )

    request_count: float = 0
    total_size: float = 0
    avg_response_time: float = 0


@dataclass(frozen=True)
class WebVitalsPayload(MetricPayload):
    """Core Web Vitals; every vital is optional until the page reports it."""
    metric_type: ClassVar[MetricType] = MetricType.WEBVITALS

    lcp: Optional[float] = None
    fid: Optional[float] = None
    cls: Optional[float] = None
    fcp: Optional[float] = None
    ttfb: Optional[float] = None


PAYLOAD_TYPES: Dict[MetricType, Type[MetricPayload]] = {
    payload_cls.metric_type: payload_cls
    for payload_cls in (
        PerformancePayload,
        MemoryPayload,
        CpuPayload,
        NetworkSummaryPayload,
        WebVitalsPayload,
    )
}


def parse_metric_type(value: Union[str, MetricType]) -> MetricType:
    """Resolve a discriminant string, rejecting unknown tags."""
    if isinstance(value, MetricType):
        return value
    try:
        return MetricType(value)
    except ValueError:
        raise InvalidPayload(f"unknown metric type '{value}'")


def decode_payload(metric_type: Union[str, MetricType], data: Dict[str, Any]) -> MetricPayload:
    """Build the payload dataclass registered for ``metric_type``."""
    return PAYLOAD_TYPES[parse_metric_type(metric_type)].from_dict(data)


# ============================================================
# Entities
# ============================================================


@dataclass
class Session:
    """A bounded recording of performance data for one target."""
    device_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    device_name: Optional[str] = None
    webview_url: Optional[str] = None
    package_name: Optional[str] = None
    target_title: Optional[str] = None
    display_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: int = field(default_factory=now_ms)
    ended_at: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    @property
    def is_imported(self) -> bool:
        return self.device_id.startswith(IMPORTED_DEVICE_PREFIX)


@dataclass
class SessionDescriptor:
    """Caller-supplied description of a recording target."""
    device_id: str
    device_name: Optional[str] = None
    package_name: Optional[str] = None
    target_title: Optional[str] = None
    webview_url: Optional[str] = None
    display_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class Metric:
    """One timestamped, typed observation belonging to a session."""
    session_id: str
    timestamp: int
    payload: MetricPayload
    id: Optional[int] = None

    @property
    def metric_type(self) -> MetricType:
        return self.payload.metric_type


@dataclass
class NetworkRequest:
    """One tracked network transaction belonging to a session."""
    id: str
    session_id: str
    url: str
    request_time: int
    method: Optional[str] = None
    status_code: Optional[int] = None
    response_time: Optional[int] = None
    duration_ms: Optional[float] = None
    size_bytes: Optional[float] = None
    headers: Optional[Dict[str, str]] = None

    @property
    def resolved(self) -> bool:
        return self.response_time is not None

    @property
    def failed(self) -> bool:
        return self.status_code is not None and self.status_code >= 400

    def normalized(self) -> "NetworkRequest":
        """
        Return a copy with the response group made consistent.

        ``duration_ms`` is derived from the response time when missing; a
        duration without a response time is rejected.
        """
        if not self.id:
            raise InvalidPayload("network request id is required")
        if not self.url:
            raise InvalidPayload(f"network request {self.id} has no url")
        if self.response_time is None:
            if self.duration_ms is not None:
                raise InvalidPayload(
                    f"network request {self.id} has a duration but no response time"
                )
            return self
        if self.response_time < self.request_time:
            raise InvalidPayload(
                f"network request {self.id} responded before it was sent"
            )
        duration = self.duration_ms
        if duration is None:
            duration = float(self.response_time - self.request_time)
        return NetworkRequest(
            id=self.id,
            session_id=self.session_id,
            url=self.url,
            request_time=self.request_time,
            method=self.method,
            status_code=self.status_code,
            response_time=self.response_time,
            duration_ms=duration,
            size_bytes=self.size_bytes,
            headers=self.headers,
        )


@dataclass
class DeleteResult:
    """Counts removed by a cascading session delete."""
    session_id: str
    metrics_deleted: int = 0
    requests_deleted: int = 0


# ============================================================
# Storage contract
# ============================================================


class SessionStorage(ABC):
    """Abstract interface for session data storage."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize storage and bring the schema up to date."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Release storage resources."""
        pass

    # Sessions

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    async def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        pass

    @abstractmethod
    async def update_session_status(
        self, session_id: str, status: SessionStatus, ended_at: Optional[int]
    ) -> None:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> DeleteResult:
        pass

    # Time series

    @abstractmethod
    async def append_metric(self, metric: Metric) -> int:
        pass

    @abstractmethod
    async def get_metrics(
        self,
        session_id: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        metric_types: Optional[Sequence[MetricType]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Metric]:
        pass

    @abstractmethod
    async def upsert_network_request(self, request: NetworkRequest) -> bool:
        pass

    @abstractmethod
    async def get_network_requests(
        self,
        session_id: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        failed_only: bool = False,
    ) -> List[NetworkRequest]:
        pass

    # Statistics and maintenance

    @abstractmethod
    async def get_storage_stats(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def optimize_storage(self) -> None:
        pass
