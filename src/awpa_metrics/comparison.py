"""
Session summaries and side-by-side comparison.
"""

from dataclasses import asdict, dataclass, fields
from typing import Dict, List, Optional, Sequence

import numpy as np

from .storage_interface import Metric, NetworkRequest, Session


@dataclass
class SessionSummary:
    session_id: str
    duration_ms: Optional[int]
    metric_count: int
    avg_heap_used: Optional[float]
    max_heap_used: Optional[float]
    p95_heap_used: Optional[float]
    avg_dom_nodes: Optional[float]
    total_requests: int
    failed_requests: int
    avg_response_time: Optional[float]
    p95_response_time: Optional[float]
    total_bytes: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class FieldDelta:
    baseline: Optional[float]
    candidate: Optional[float]
    absolute: Optional[float]
    relative: Optional[float]


@dataclass
class SessionComparison:
    baseline_id: str
    candidate_id: str
    deltas: Dict[str, FieldDelta]

    def regressions(self, threshold: float = 0.1) -> List[str]:
        """Fields whose value grew by more than ``threshold`` (relative)."""
        return [
            name for name, delta in self.deltas.items()
            if delta.relative is not None and delta.relative > threshold
        ]


def _values(items: Sequence[Optional[float]]) -> np.ndarray:
    return np.array([v for v in items if v is not None], dtype=float)


def _mean(values: np.ndarray) -> Optional[float]:
    return float(np.mean(values)) if values.size else None


def _max(values: np.ndarray) -> Optional[float]:
    return float(np.max(values)) if values.size else None


def _p95(values: np.ndarray) -> Optional[float]:
    return float(np.percentile(values, 95)) if values.size else None


def summarize(
    session: Session,
    metrics: Sequence[Metric],
    requests: Sequence[NetworkRequest],
) -> SessionSummary:
    """Aggregate heap, DOM and network figures; missing values are skipped."""
    heap = _values([getattr(m.payload, "js_heap_used_size", None) for m in metrics])
    dom_nodes = _values([getattr(m.payload, "dom_nodes", None) for m in metrics])
    response_times = _values([r.duration_ms for r in requests])
    sizes = _values([r.size_bytes for r in requests])

    return SessionSummary(
        session_id=session.id,
        duration_ms=session.duration_ms,
        metric_count=len(metrics),
        avg_heap_used=_mean(heap),
        max_heap_used=_max(heap),
        p95_heap_used=_p95(heap),
        avg_dom_nodes=_mean(dom_nodes),
        total_requests=len(requests),
        failed_requests=sum(1 for r in requests if r.failed),
        avg_response_time=_mean(response_times),
        p95_response_time=_p95(response_times),
        total_bytes=float(np.sum(sizes)) if sizes.size else 0.0,
    )


def compare(baseline: SessionSummary, candidate: SessionSummary) -> SessionComparison:
    deltas = {}
    for f in fields(SessionSummary):
        if f.name == "session_id":
            continue
        before = getattr(baseline, f.name)
        after = getattr(candidate, f.name)
        absolute = None
        relative = None
        if before is not None and after is not None:
            absolute = float(after - before)
            if before != 0:
                relative = absolute / abs(before)
        deltas[f.name] = FieldDelta(
            baseline=before, candidate=after, absolute=absolute, relative=relative
        )
    return SessionComparison(
        baseline_id=baseline.session_id,
        candidate_id=candidate.session_id,
        deltas=deltas,
    )
