"""
Tests for the session lifecycle controller
"""

import pytest

from awpa_metrics.lifecycle import EndReason, SessionLifecycleController
from awpa_metrics.storage_interface import (
    CannotDeleteActiveSession,
    CpuPayload,
    Metric,
    Session,
    SessionAlreadyActive,
    SessionDescriptor,
    SessionNotActive,
    SessionNotFound,
    SessionStatus,
    StorageError,
)


@pytest.fixture
def controller(store, clock):
    return SessionLifecycleController(store, clock=clock)


def descriptor(**overrides):
    values = dict(device_id="emulator-5554", device_name="Pixel 7", target_title="Shop Home")
    values.update(overrides)
    return SessionDescriptor(**values)


class TestBegin:
    """Test starting sessions"""

    async def test_begin_creates_active_session(self, controller, store, clock):
        session_id = await controller.begin(descriptor(tags=["b", "a"]))

        session = await store.get_session(session_id)
        assert controller.current == session_id
        assert session.status is SessionStatus.ACTIVE
        assert session.started_at == clock()
        assert session.ended_at is None
        assert session.tags == ["a", "b"]

    async def test_second_begin_is_refused_without_writing(self, controller, store):
        first = await controller.begin(descriptor())

        with pytest.raises(SessionAlreadyActive) as exc_info:
            await controller.begin(descriptor(device_id="other"))

        assert exc_info.value.active_session_id == first
        assert exc_info.value.invariant == "single-active-session"
        assert await store.count_sessions() == 1
        assert controller.current == first

    async def test_begin_refused_while_store_holds_active_session(self, controller, store):
        stale = await store.create_session(Session(device_id="dev"))

        with pytest.raises(SessionAlreadyActive):
            await controller.begin(descriptor())

        assert await store.count_sessions() == 1
        assert (await store.get_session(stale.id)).status is SessionStatus.ACTIVE

    async def test_begin_requires_device(self, controller):
        with pytest.raises(StorageError):
            await controller.begin(descriptor(device_id=""))


class TestEnd:
    """Test ending sessions"""

    @pytest.mark.parametrize(
        "reason, status",
        [
            (EndReason.NORMAL, SessionStatus.COMPLETED),
            (EndReason.ERROR, SessionStatus.ABORTED),
            (EndReason.DISCONNECT, SessionStatus.ABORTED),
        ],
    )
    async def test_end_sets_terminal_status(self, controller, store, clock, reason, status):
        session_id = await controller.begin(descriptor())
        clock.advance(5_000)

        ended = await controller.end(session_id, reason)

        stored = await store.get_session(session_id)
        assert ended.status is status
        assert stored.status is status
        assert stored.ended_at == clock()
        assert stored.duration_ms == 5_000
        assert controller.current is None

    async def test_end_twice_is_a_no_op(self, controller, store, clock):
        session_id = await controller.begin(descriptor())
        clock.advance(1_000)
        first = await controller.end(session_id)
        clock.advance(1_000)

        second = await controller.end(session_id, EndReason.ERROR)

        assert second.status is SessionStatus.COMPLETED
        assert second.ended_at == first.ended_at
        assert (await store.get_session(session_id)).ended_at == first.ended_at

    async def test_end_unknown_session(self, controller):
        with pytest.raises(SessionNotFound):
            await controller.end("missing")

    async def test_end_active_session_that_is_not_current(self, controller, store):
        orphan = await store.create_session(Session(device_id="dev"))

        with pytest.raises(SessionNotActive) as exc_info:
            await controller.end(orphan.id)

        assert exc_info.value.current_session_id is None
        assert (await store.get_session(orphan.id)).status is SessionStatus.ACTIVE

    async def test_begin_after_end(self, controller):
        first = await controller.begin(descriptor())
        await controller.end(first)

        second = await controller.begin(descriptor())

        assert second != first
        assert controller.current == second


class TestDelete:
    """Test deleting sessions"""

    async def test_current_session_cannot_be_deleted(self, controller, store):
        session_id = await controller.begin(descriptor())

        with pytest.raises(CannotDeleteActiveSession):
            await controller.delete(session_id)

        assert await store.get_session(session_id) is not None

    async def test_stored_active_session_cannot_be_deleted(self, controller, store):
        orphan = await store.create_session(Session(device_id="dev"))
        with pytest.raises(CannotDeleteActiveSession):
            await controller.delete(orphan.id)

    async def test_delete_ended_session(self, controller, store, clock):
        session_id = await controller.begin(descriptor())
        await store.append_metric(
            Metric(session_id=session_id, timestamp=clock(), payload=CpuPayload(usage=3))
        )
        await controller.end(session_id)

        result = await controller.delete(session_id)

        assert result.metrics_deleted == 1
        assert await store.get_session(session_id) is None

    async def test_delete_unknown_session(self, controller):
        with pytest.raises(SessionNotFound):
            await controller.delete("missing")


class TestRecover:
    """Test cleanup of sessions left active by a crashed process"""

    async def test_recover_aborts_orphans(self, controller, store, clock):
        orphan = await store.create_session(Session(device_id="dev", started_at=clock() - 10))
        future = await store.create_session(Session(device_id="dev", started_at=clock() + 500))

        recovered = await controller.recover()

        assert set(recovered) == {orphan.id, future.id}
        stored = await store.get_session(orphan.id)
        assert stored.status is SessionStatus.ABORTED
        assert stored.ended_at == clock()
        assert (await store.get_session(future.id)).ended_at == clock() + 500

    async def test_recover_leaves_current_session(self, controller, store):
        session_id = await controller.begin(descriptor())

        assert await controller.recover() == []
        assert (await store.get_session(session_id)).status is SessionStatus.ACTIVE

    async def test_rename_and_tag(self, controller, store):
        session_id = await controller.begin(descriptor())

        await controller.rename(session_id, "Checkout")
        tags = await controller.set_tags(session_id, ["z", "a"])

        session = await store.get_session(session_id)
        assert session.display_name == "Checkout"
        assert tags == ["a", "z"]
