"""
Importer and merger for exported sessions.

Untrusted input passes three stages before anything is written:

1. structure: the document parses and every field validates
   (:class:`MalformedExport`);
2. version: newer formats are refused (:class:`UnsupportedVersion`) and
   older ones are upgraded;
3. identity: every imported session gets a fresh id and an ``imported:``
   device id, so imports never collide with local sessions.

Each import is written in one transaction. The source document or buffer
is never modified.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

import pydantic

from .envelope import ExportEnvelope, MetricRecord, NetworkRequestRecord, SessionRecord
from .schema import (
    CURRENT_FORMAT_VERSION,
    CURRENT_SCHEMA_VERSION,
    SchemaManager,
    envelope_format_version,
    missing_tables,
    upgrade_envelope,
)
from .sqlite_storage import SQLITE_HEADER, SQLiteSessionStore, rollback_journal_image
from .storage_interface import (
    IMPORTED_DEVICE_PREFIX,
    DataValidationError,
    MalformedExport,
    Session,
    SessionStatus,
    UnsupportedVersion,
    now_ms,
)

if TYPE_CHECKING:
    from .storage_interface import Metric, NetworkRequest


logger = logging.getLogger(__name__)


EnvelopeSource = Union[Dict[str, Any], str, bytes, bytearray]


@dataclass
class ImportResult:
    session_id: str
    source_session_id: str
    metrics_imported: int
    requests_imported: int
    source_format_version: int


def _describe_validation_error(error: pydantic.ValidationError) -> str:
    problems = []
    for item in error.errors()[:5]:
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        problems.append(f"{location}: {item['msg']}")
    more = error.error_count() - len(problems)
    if more > 0:
        problems.append(f"... and {more} more")
    return "; ".join(problems)


class SessionImporter:
    """Validates exported sessions and merges them into a store."""

    def __init__(
        self,
        store: SQLiteSessionStore,
        schema_manager: Optional[SchemaManager] = None,
        device_prefix: str = IMPORTED_DEVICE_PREFIX,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.schema_manager = schema_manager or SchemaManager()
        self.device_prefix = device_prefix
        self.clock = clock

    # ============================================================
    # Validation
    # ============================================================

    def parse_envelope(self, source: EnvelopeSource) -> Tuple[ExportEnvelope, int]:
        """Run the structure and version stages; return the envelope and its source format."""
        document = source
        if isinstance(document, (bytes, bytearray)):
            try:
                document = bytes(document).decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedExport(f"export is not UTF-8 text: {e}")
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise MalformedExport(f"export is not valid JSON: {e}")
        if not isinstance(document, dict):
            raise MalformedExport("export document must be a JSON object")
        if not isinstance(document.get("session"), dict):
            raise MalformedExport("missing 'session' object")

        source_version = envelope_format_version(document)
        if source_version > CURRENT_FORMAT_VERSION:
            raise UnsupportedVersion(source_version, CURRENT_FORMAT_VERSION)

        upgraded = upgrade_envelope(document)
        try:
            envelope = ExportEnvelope.model_validate(upgraded)
        except pydantic.ValidationError as e:
            raise MalformedExport(_describe_validation_error(e))
        return envelope, source_version

    # ============================================================
    # Identity
    # ============================================================

    def _imported_session(self, record: SessionRecord, exported_at: Optional[int]) -> Session:
        device_id = record.device_id
        if not device_id.startswith(self.device_prefix):
            device_id = f"{self.device_prefix}{device_id}"

        metadata = dict(record.metadata or {})
        metadata["imported_from"] = {
            "session_id": record.id,
            "device_id": record.device_id,
            "exported_at": exported_at,
            "imported_at": self.clock(),
        }

        status = record.status
        ended_at = record.ended_at
        if status is SessionStatus.ACTIVE:
            # an imported session is never the live one
            status = SessionStatus.ABORTED
            ended_at = ended_at if ended_at is not None else record.started_at

        return Session(
            id=str(uuid.uuid4()),
            device_id=device_id,
            device_name=record.device_name,
            webview_url=record.webview_url,
            package_name=record.package_name,
            target_title=record.target_title,
            display_name=record.display_name,
            tags=list(record.tags),
            status=status,
            started_at=record.started_at,
            ended_at=ended_at,
            metadata=metadata,
        )

    def _prepare(
        self, envelope: ExportEnvelope
    ) -> Tuple[Session, List["Metric"], List["NetworkRequest"]]:
        session = self._imported_session(envelope.session, envelope.exported_at)
        ordered = sorted(
            enumerate(envelope.metrics),
            key=lambda item: (item[1].timestamp, item[1].id if item[1].id is not None else -1, item[0]),
        )
        metrics = [record.to_metric(session.id) for _, record in ordered]
        requests = [record.to_request(session.id) for record in envelope.network_requests]
        return session, metrics, requests

    async def _write(
        self, prepared: List[Tuple[Session, List["Metric"], List["NetworkRequest"]]]
    ) -> None:
        async with self.store.transaction() as conn:
            for session, metrics, requests in prepared:
                self.store.insert_session_row(conn, session)
                for metric in metrics:
                    metric.id = self.store.insert_metric_row(conn, metric)
                for request in requests:
                    self.store.insert_request_row(conn, request)

    # ============================================================
    # Entry points
    # ============================================================

    async def import_envelope(self, source: EnvelopeSource) -> ImportResult:
        """Import one exported session document."""
        envelope, source_version = self.parse_envelope(source)
        session, metrics, requests = self._prepare(envelope)
        await self._write([(session, metrics, requests)])

        logger.info(
            f"Imported session {envelope.session.id} as {session.id}: "
            f"{len(metrics)} metrics, {len(requests)} requests"
        )
        return ImportResult(
            session_id=session.id,
            source_session_id=envelope.session.id,
            metrics_imported=len(metrics),
            requests_imported=len(requests),
            source_format_version=source_version,
        )

    async def import_stream(self, chunks: AsyncIterable[Union[bytes, str]]) -> ImportResult:
        """Import an envelope delivered in pieces; nothing is written until it is complete."""
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
        return await self.import_envelope(bytes(buffer))

    async def import_buffer(self, buffer: bytes) -> List[ImportResult]:
        """Import every session of a SQLite database image."""
        if not isinstance(buffer, (bytes, bytearray, memoryview)):
            raise MalformedExport("database image must be bytes")
        image = bytes(buffer)
        if not image.startswith(SQLITE_HEADER):
            raise MalformedExport("not a SQLite database image")

        source = sqlite3.connect(":memory:", isolation_level=None)
        try:
            envelopes = self._read_image(source, image)
        finally:
            source.close()

        prepared = [self._prepare(envelope) for envelope, _ in envelopes]
        await self._write(prepared)

        results = []
        for (envelope, version), (session, metrics, requests) in zip(envelopes, prepared):
            results.append(
                ImportResult(
                    session_id=session.id,
                    source_session_id=envelope.session.id,
                    metrics_imported=len(metrics),
                    requests_imported=len(requests),
                    source_format_version=version,
                )
            )
        logger.info(f"Imported {len(results)} sessions from database image")
        return results

    def _read_image(
        self, source: sqlite3.Connection, image: bytes
    ) -> List[Tuple[ExportEnvelope, int]]:
        try:
            source.deserialize(rollback_journal_image(image))
            source.row_factory = sqlite3.Row
            missing = missing_tables(source)
        except sqlite3.DatabaseError as e:
            raise MalformedExport(f"unreadable database image: {e}")
        if missing:
            raise MalformedExport(f"database image is missing tables: {missing}")

        version = self.schema_manager.current_version(source)
        if version > CURRENT_SCHEMA_VERSION:
            raise UnsupportedVersion(version, CURRENT_SCHEMA_VERSION)

        envelopes = []
        try:
            # migrates the private in-memory copy only
            self.schema_manager.ensure_schema(source, CURRENT_SCHEMA_VERSION)
            for row in source.execute("SELECT * FROM sessions ORDER BY started_at, rowid"):
                session = SQLiteSessionStore._row_to_session(row)
                metrics = [
                    MetricRecord.from_metric(SQLiteSessionStore._row_to_metric(metric_row))
                    for metric_row in source.execute(
                        "SELECT * FROM metrics WHERE session_id = ? ORDER BY timestamp, id",
                        (session.id,),
                    )
                ]
                requests = [
                    NetworkRequestRecord.from_request(
                        SQLiteSessionStore._row_to_request(request_row)
                    )
                    for request_row in source.execute(
                        "SELECT * FROM network_requests WHERE session_id = ? "
                        "ORDER BY request_time, rowid",
                        (session.id,),
                    )
                ]
                envelope = ExportEnvelope(
                    format_version=CURRENT_FORMAT_VERSION,
                    exported_at=self.clock(),
                    session=SessionRecord.from_session(session),
                    metrics=metrics,
                    network_requests=requests,
                )
                envelopes.append((envelope, version))
        except (sqlite3.DatabaseError, ValueError, DataValidationError) as e:
            raise MalformedExport(f"invalid row in database image: {e}")
        return envelopes
