"""
Export envelope models.

The envelope is the portable JSON form of one session: camelCase keys,
integer epoch-millisecond timestamps and nullable numeric fields. Metric
``data`` objects use the payload field names of their metric type.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .storage_interface import (
    InvalidPayload,
    Metric,
    MetricType,
    NetworkRequest,
    Session,
    SessionStatus,
    decode_payload,
    normalize_tags,
)


class EnvelopeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionRecord(EnvelopeModel):
    """Session fields as exported."""

    id: str = Field(..., min_length=1, description="Session id in the source store")
    device_id: str = Field(..., min_length=1)
    device_name: Optional[str] = None
    webview_url: Optional[str] = None
    package_name: Optional[str] = None
    target_title: Optional[str] = None
    display_name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.COMPLETED
    started_at: int = Field(..., description="Epoch milliseconds")
    ended_at: Optional[int] = Field(None, description="Epoch milliseconds")
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: List[str]) -> List[str]:
        return normalize_tags(value)

    @model_validator(mode="after")
    def _check_times(self) -> "SessionRecord":
        if self.ended_at is not None and self.ended_at < self.started_at:
            raise ValueError("endedAt is before startedAt")
        return self

    @classmethod
    def from_session(cls, session: Session) -> "SessionRecord":
        return cls(
            id=session.id,
            device_id=session.device_id,
            device_name=session.device_name,
            webview_url=session.webview_url,
            package_name=session.package_name,
            target_title=session.target_title,
            display_name=session.display_name,
            tags=list(session.tags),
            status=session.status,
            started_at=session.started_at,
            ended_at=session.ended_at,
            metadata=session.metadata,
        )


class MetricRecord(EnvelopeModel):
    id: Optional[int] = None
    timestamp: int
    metric_type: MetricType
    data: Dict[str, Any]

    @model_validator(mode="after")
    def _check_payload(self) -> "MetricRecord":
        try:
            decode_payload(self.metric_type, self.data)
        except InvalidPayload as e:
            raise ValueError(e.message)
        return self

    @classmethod
    def from_metric(cls, metric: Metric) -> "MetricRecord":
        return cls(
            id=metric.id,
            timestamp=metric.timestamp,
            metric_type=metric.metric_type,
            data=metric.payload.to_dict(),
        )

    def to_metric(self, session_id: str) -> Metric:
        return Metric(
            session_id=session_id,
            timestamp=self.timestamp,
            payload=decode_payload(self.metric_type, self.data),
        )


class NetworkRequestRecord(EnvelopeModel):
    id: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    method: Optional[str] = None
    status_code: Optional[int] = None
    request_time: int
    response_time: Optional[int] = None
    duration_ms: Optional[float] = None
    size_bytes: Optional[float] = None
    headers: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def _check_response_group(self) -> "NetworkRequestRecord":
        if self.response_time is None and self.duration_ms is not None:
            raise ValueError(f"request {self.id} has durationMs without responseTime")
        if self.response_time is not None and self.response_time < self.request_time:
            raise ValueError(f"request {self.id} responded before it was sent")
        return self

    @classmethod
    def from_request(cls, request: NetworkRequest) -> "NetworkRequestRecord":
        return cls(
            id=request.id,
            url=request.url,
            method=request.method,
            status_code=request.status_code,
            request_time=request.request_time,
            response_time=request.response_time,
            duration_ms=request.duration_ms,
            size_bytes=request.size_bytes,
            headers=request.headers,
        )

    def to_request(self, session_id: str) -> NetworkRequest:
        return NetworkRequest(
            id=self.id,
            session_id=session_id,
            url=self.url,
            method=self.method,
            status_code=self.status_code,
            request_time=self.request_time,
            response_time=self.response_time,
            duration_ms=self.duration_ms,
            size_bytes=self.size_bytes,
            headers=self.headers,
        ).normalized()


class ExportEnvelope(EnvelopeModel):
    """One exported session with its metrics and network requests."""

    format_version: int
    exported_at: int = Field(..., description="Epoch milliseconds")
    session: SessionRecord
    metrics: List[MetricRecord] = Field(default_factory=list)
    network_requests: List[NetworkRequestRecord] = Field(default_factory=list)

    @field_validator("network_requests")
    @classmethod
    def _unique_request_ids(cls, value: List[NetworkRequestRecord]) -> List[NetworkRequestRecord]:
        seen = set()
        for record in value:
            if record.id in seen:
                raise ValueError(f"duplicate network request id '{record.id}'")
            seen.add(record.id)
        return value

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
