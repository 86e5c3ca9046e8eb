"""
Streaming exporter.

Reads only from the entity store. Row streams page through the store by
limit and offset so memory stays bounded by the batch size; abandoning a
stream part way leaves the store untouched.
"""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional

from .envelope import ExportEnvelope, MetricRecord, NetworkRequestRecord, SessionRecord
from .schema import CURRENT_FORMAT_VERSION
from .sqlite_storage import rollback_journal_image
from .storage_interface import (
    Metric,
    NetworkRequest,
    Session,
    SessionNotFound,
    StorageOperation,
    now_ms,
)

if TYPE_CHECKING:
    from .sqlite_storage import SQLiteSessionStore


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 100


def suggested_filename(session: Session, now: Optional[int] = None) -> str:
    """File name offered when saving an envelope, e.g. ``awpa-session-1a2b3c4d-2024-05-01.json``."""
    moment = datetime.fromtimestamp((now if now is not None else now_ms()) / 1000, tz=timezone.utc)
    return f"awpa-session-{session.id[:8]}-{moment.strftime('%Y-%m-%d')}.json"


def _check_batch_size(batch_size: int) -> int:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
    return batch_size


class StreamingExporter:
    """Exports sessions as SQLite images or JSON envelopes."""

    def __init__(
        self,
        store: "SQLiteSessionStore",
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.batch_size = _check_batch_size(batch_size)
        self.clock = clock

    def _batch_size(self, batch_size: Optional[int]) -> int:
        return self.batch_size if batch_size is None else _check_batch_size(batch_size)

    async def _require_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id, StorageOperation.EXPORT)
        return session

    async def export_buffer(self, session_id: Optional[str] = None) -> bytes:
        """
        A complete SQLite database image of the store, or of one session.

        The image carries the current schema version stamp and opens
        without a WAL file.
        """
        if session_id is not None:
            await self._require_session(session_id)

        copy = await self.store.snapshot()
        try:
            if session_id is not None:
                copy.execute("DELETE FROM sessions WHERE id != ?", (session_id,))
            copy.execute("VACUUM")
            image = copy.serialize()
        finally:
            copy.close()

        logger.info(
            f"Exported {'session ' + session_id if session_id else 'store'} "
            f"as {len(image)} byte database image"
        )
        return rollback_journal_image(image)

    async def stream_metrics(
        self, session_id: str, batch_size: Optional[int] = None
    ) -> AsyncIterator[Metric]:
        """Yield every metric of a session in order, one page at a time."""
        batch_size = self._batch_size(batch_size)
        offset = 0
        while True:
            batch = await self.store.get_metrics(session_id, limit=batch_size, offset=offset)
            if not batch:
                break
            for metric in batch:
                yield metric
            if len(batch) < batch_size:
                break
            offset += batch_size

    async def stream_network_requests(
        self, session_id: str, batch_size: Optional[int] = None
    ) -> AsyncIterator[NetworkRequest]:
        batch_size = self._batch_size(batch_size)
        offset = 0
        while True:
            batch = await self.store.get_network_requests(
                session_id, limit=batch_size, offset=offset
            )
            if not batch:
                break
            for request in batch:
                yield request
            if len(batch) < batch_size:
                break
            offset += batch_size

    async def build_envelope(self, session_id: str) -> ExportEnvelope:
        session = await self._require_session(session_id)
        metrics = [MetricRecord.from_metric(m) async for m in self.stream_metrics(session_id)]
        requests = [
            NetworkRequestRecord.from_request(r)
            async for r in self.stream_network_requests(session_id)
        ]
        return ExportEnvelope(
            format_version=CURRENT_FORMAT_VERSION,
            exported_at=self.clock(),
            session=SessionRecord.from_session(session),
            metrics=metrics,
            network_requests=requests,
        )

    async def export_envelope(self, session_id: str, indent: Optional[int] = None) -> bytes:
        envelope = await self.build_envelope(session_id)
        data = envelope.model_dump_json(by_alias=True, indent=indent).encode("utf-8")
        logger.info(
            f"Exported session {session_id}: {len(envelope.metrics)} metrics, "
            f"{len(envelope.network_requests)} requests"
        )
        return data

    async def stream_envelope(
        self, session_id: str, batch_size: Optional[int] = None
    ) -> AsyncIterator[bytes]:
        """
        Yield one envelope document as JSON byte chunks.

        Rows are serialized a batch at a time; the concatenated chunks parse
        to the same document ``export_envelope`` returns.
        """
        batch_size = self._batch_size(batch_size)
        session = await self._require_session(session_id)

        header = {
            "formatVersion": CURRENT_FORMAT_VERSION,
            "exportedAt": self.clock(),
            "session": SessionRecord.from_session(session).model_dump(by_alias=True, mode="json"),
        }
        yield (json.dumps(header)[:-1] + ', "metrics": [').encode("utf-8")

        first = True
        chunk = []
        async for metric in self.stream_metrics(session_id, batch_size):
            record = MetricRecord.from_metric(metric).model_dump_json(by_alias=True)
            chunk.append(record if first else "," + record)
            first = False
            if len(chunk) >= batch_size:
                yield "".join(chunk).encode("utf-8")
                chunk = []
        chunk.append('], "networkRequests": [')
        yield "".join(chunk).encode("utf-8")

        first = True
        chunk = []
        async for request in self.stream_network_requests(session_id, batch_size):
            record = NetworkRequestRecord.from_request(request).model_dump_json(by_alias=True)
            chunk.append(record if first else "," + record)
            first = False
            if len(chunk) >= batch_size:
                yield "".join(chunk).encode("utf-8")
                chunk = []
        chunk.append("]}")
        yield "".join(chunk).encode("utf-8")
