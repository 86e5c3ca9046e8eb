"""
Tests for windowed queries and session search
"""

import pytest

from awpa_metrics.query import (
    MetricQuery,
    NamedRange,
    QueryLayer,
    RequestQuery,
    SessionFilter,
    TimeWindow,
    all_tags,
    resolve_window,
    unique_devices,
)
from awpa_metrics.storage_interface import (
    CpuPayload,
    MemoryPayload,
    Metric,
    MetricType,
    NetworkRequest,
    Session,
    SessionNotFound,
    SessionStatus,
)

from conftest import START_MS


class TestWindows:
    """Test time window resolution"""

    def test_window_rejects_inverted_bounds(self):
        with pytest.raises(ValueError):
            TimeWindow(start=10, end=5)

    def test_window_contains_both_ends(self):
        window = TimeWindow(start=100, end=200)
        assert window.contains(100)
        assert window.contains(200)
        assert not window.contains(201)

    def test_explicit_window_wins_over_named_range(self):
        window = TimeWindow(start=1, end=2)
        assert resolve_window(window, NamedRange.FIVE_MINUTES, 10_000_000) == (1, 2)

    def test_named_ranges(self):
        now = 10_000_000
        assert resolve_window(None, NamedRange.ALL, now) == (None, None)
        assert resolve_window(None, NamedRange.ONE_MINUTE, now) == (now - 60_000, now)
        assert resolve_window(None, NamedRange.THIRTY_MINUTES, now) == (now - 1_800_000, now)

    def test_custom_requires_window(self):
        with pytest.raises(ValueError):
            resolve_window(None, NamedRange.CUSTOM, 0)

    def test_negative_pagination_is_rejected(self):
        with pytest.raises(ValueError):
            MetricQuery(limit=-1)
        with pytest.raises(ValueError):
            RequestQuery(offset=-5)

    def test_metric_types_accept_strings(self):
        assert MetricQuery(metric_types=["cpu"]).metric_types == [MetricType.CPU]


class TestQueryLayer:
    """Test queries against a populated store"""

    @pytest.fixture
    def queries(self, store, clock):
        return QueryLayer(store, clock=clock)

    async def test_window_returns_inclusive_subset(self, queries, make_session):
        session = await make_session()
        for ts in (100, 200, 300, 400):
            await queries.store.append_metric(
                Metric(session_id=session.id, timestamp=ts, payload=CpuPayload(usage=ts / 10))
            )

        metrics = await queries.query(
            session.id, MetricQuery(time_range=TimeWindow(start=150, end=350))
        )

        assert [m.timestamp for m in metrics] == [200, 300]

    async def test_named_range_is_resolved_when_the_query_runs(self, queries, make_session, clock):
        session = await make_session()
        now = clock()
        for ts in (now - 400_000, now - 200_000, now):
            await queries.store.append_metric(
                Metric(session_id=session.id, timestamp=ts, payload=CpuPayload(usage=1))
            )
        query = MetricQuery(named_range=NamedRange.FIVE_MINUTES)

        assert len(await queries.query(session.id, query)) == 2

        clock.advance(250_000)
        assert len(await queries.query(session.id, query)) == 1

    async def test_type_filter_and_pagination(self, queries, make_session):
        session = await make_session()
        for i in range(6):
            payload = (
                CpuPayload(usage=i)
                if i % 2
                else MemoryPayload(js_heap_used_size=i, js_heap_total_size=10)
            )
            await queries.store.append_metric(
                Metric(session_id=session.id, timestamp=START_MS + i, payload=payload)
            )

        cpu = await queries.query(session.id, MetricQuery(metric_types=[MetricType.CPU]))
        assert [m.payload.usage for m in cpu] == [1, 3, 5]

        page = await queries.query(
            session.id, MetricQuery(metric_types=[MetricType.CPU], limit=1, offset=1)
        )
        assert [m.payload.usage for m in page] == [3]

    async def test_unknown_session_raises(self, queries):
        with pytest.raises(SessionNotFound):
            await queries.query("missing")
        with pytest.raises(SessionNotFound):
            await queries.query_network_requests("missing")

    async def test_network_request_query(self, queries, make_session):
        session = await make_session()
        for i, status in enumerate((200, 500)):
            await queries.store.upsert_network_request(
                NetworkRequest(
                    id=f"r{i}", session_id=session.id, url="https://x",
                    request_time=START_MS + i, status_code=status,
                    response_time=START_MS + i + 5,
                )
            )

        everything = await queries.query_network_requests(session.id)
        failed = await queries.query_network_requests(session.id, RequestQuery(failed_only=True))

        assert [r.id for r in everything] == ["r0", "r1"]
        assert [r.id for r in failed] == ["r1"]


class TestSessionFilter:
    """Test that SQL search and in-memory matching agree"""

    def sessions(self):
        return [
            Session(device_id="emulator-5554", device_name="Pixel 7", target_title="Shop Home",
                    tags=["checkout"], status=SessionStatus.COMPLETED, started_at=1, ended_at=2),
            Session(device_id="emulator-5554", device_name="Pixel 7", package_name="com.example.news",
                    display_name="Morning run", tags=["smoke", "news"], status=SessionStatus.ABORTED,
                    started_at=3, ended_at=4),
            Session(device_id="imported:R58M", device_name="Galaxy", target_title="Shop Cart",
                    tags=["checkout"], status=SessionStatus.COMPLETED, started_at=5, ended_at=6),
            Session(device_id="R58M", device_name="Galaxy", status=SessionStatus.ACTIVE, started_at=7),
            Session(device_id="emulator-5554", device_name="Pixel 7", display_name="ÉCRAN Accueil",
                    tags=["news"], status=SessionStatus.COMPLETED, started_at=8, ended_at=9),
        ]

    FILTERS = [
        SessionFilter(),
        SessionFilter(search_text="shop"),
        SessionFilter(search_text="MORNING"),
        SessionFilter(search_text="news"),
        SessionFilter(search_text="galaxy", include_imported=False),
        SessionFilter(device_id="emulator-5554"),
        SessionFilter(status=SessionStatus.COMPLETED),
        SessionFilter(status="aborted"),
        SessionFilter(tags=["checkout", "smoke"]),
        SessionFilter(tags=["checkout"], include_imported=False),
        SessionFilter(search_text="  "),
        SessionFilter(search_text="écran"),
        SessionFilter(search_text="Écran ACCUEIL"),
    ]

    @pytest.mark.parametrize("session_filter", FILTERS)
    async def test_sql_matches_in_memory(self, store, session_filter):
        sessions = self.sessions()
        for session in sessions:
            await store.create_session(session)

        expected = {s.id for s in sessions if session_filter.matches(s)}
        found = {s.id for s in await store.search_sessions(session_filter)}

        assert found == expected

    def test_blank_filter_is_empty(self):
        assert SessionFilter(search_text="   ").is_empty()
        assert not SessionFilter(include_imported=False).is_empty()

    def test_helpers(self):
        sessions = self.sessions()
        assert all_tags(sessions) == ["checkout", "news", "smoke"]
        assert unique_devices(sessions) == [
            ("R58M", "Galaxy"),
            ("emulator-5554", "Pixel 7"),
            ("imported:R58M", "Galaxy"),
        ]
