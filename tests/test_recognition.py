"""
Tests for recognition sessions and the paired restart coordinator.
"""

import asyncio

import pytest

from src.assist.errors import RecognitionError
from src.assist.recognition import (
    RESTART_MESSAGE,
    RecognitionEventKind,
    RecognitionSession,
    SessionRestartCoordinator,
    SessionStatus,
)
from src.assist.roles import Role


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestRecognitionSession:

    @pytest.mark.asyncio
    async def test_start_write_end(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(Role.OPERATOR, stream_factory, events, generation=1)

        await session.start()
        assert session.status == SessionStatus.ACTIVE

        assert await session.write(b"\x00\x01")
        assert stream_factory.latest(Role.OPERATOR).sent == [b"\x00\x01"]

        await session.end()
        assert session.status == SessionStatus.CLOSED
        assert stream_factory.latest(Role.OPERATOR).finished

    @pytest.mark.asyncio
    async def test_write_when_not_active_is_dropped(self, stream_factory):
        session = RecognitionSession(Role.OPERATOR, stream_factory, asyncio.Queue())

        assert not await session.write(b"\x00\x01")
        assert not await session.write(b"\x00\x01")
        assert session.dropped_writes == 2

    @pytest.mark.asyncio
    async def test_connect_failure_sets_failed(self, stream_factory):
        stream_factory.fail_connect = True
        session = RecognitionSession(Role.COUNTERPARTY, stream_factory, asyncio.Queue())

        with pytest.raises(RecognitionError):
            await session.start()
        assert session.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_transcripts_become_events(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(Role.COUNTERPARTY, stream_factory, events, generation=3)
        await session.start()

        await stream_factory.latest(Role.COUNTERPARTY).say("we need three units")

        (event,) = _drain(events)
        assert event.kind == RecognitionEventKind.TRANSCRIPT
        assert event.role is Role.COUNTERPARTY
        assert event.generation == 3
        assert event.result.text == "we need three units"

    @pytest.mark.asyncio
    async def test_non_limit_error_fails_session(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(Role.OPERATOR, stream_factory, events)
        await session.start()

        await stream_factory.latest(Role.OPERATOR).on_error(RecognitionError("socket reset"))

        assert session.status == SessionStatus.FAILED
        (event,) = _drain(events)
        assert event.kind == RecognitionEventKind.ERROR
        assert event.error.message == "socket reset"

    @pytest.mark.asyncio
    async def test_duration_limit_signals_limit(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(Role.OPERATOR, stream_factory, events)
        await session.start()

        await stream_factory.latest(Role.OPERATOR).hit_duration_limit()

        (event,) = _drain(events)
        assert event.kind == RecognitionEventKind.LIMIT
        assert session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_errors_after_close_are_ignored(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(Role.OPERATOR, stream_factory, events)
        await session.start()
        await session.end()

        await stream_factory.latest(Role.OPERATOR).on_error(RecognitionError("late"))

        assert events.empty()
        assert session.status == SessionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_lifetime_timer_signals_limit(self, stream_factory):
        events = asyncio.Queue()
        session = RecognitionSession(
            Role.OPERATOR, stream_factory, events, max_lifetime_seconds=0.01
        )
        await session.start()

        event = await asyncio.wait_for(events.get(), timeout=1.0)
        assert event.kind == RecognitionEventKind.LIMIT
        await session.end()


class TestRestartCoordinator:

    @pytest.fixture
    def restarted(self):
        return []

    @pytest.fixture
    def coordinator(self, stream_factory, restarted):
        async def on_restarted(payload):
            restarted.append(payload)

        return SessionRestartCoordinator(
            stream_factory,
            asyncio.Queue(),
            restart_delay_seconds=0.01,
            on_restarted=on_restarted,
        )

    @pytest.mark.asyncio
    async def test_start_opens_both_roles(self, coordinator, stream_factory):
        await coordinator.start()

        assert coordinator.generation == 1
        assert {s.role for s in stream_factory.created} == {Role.OPERATOR, Role.COUNTERPARTY}
        assert coordinator.session(Role.OPERATOR).is_active
        assert coordinator.session(Role.COUNTERPARTY).is_active
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_write_routes_by_role(self, coordinator, stream_factory):
        await coordinator.start()

        await coordinator.write(Role.OPERATOR, b"op")
        await coordinator.write(Role.COUNTERPARTY, b"cp")

        assert stream_factory.latest(Role.OPERATOR).sent == [b"op"]
        assert stream_factory.latest(Role.COUNTERPARTY).sent == [b"cp"]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_both_limits_cause_one_restart(self, coordinator, stream_factory, restarted):
        await coordinator.start()

        results = await asyncio.gather(
            coordinator.handle_limit(Role.OPERATOR, 1),
            coordinator.handle_limit(Role.COUNTERPARTY, 1),
        )

        assert sorted(results) == [False, True]
        assert coordinator.restart_count == 1
        assert coordinator.generation == 2
        assert len(stream_factory.created) == 4
        assert coordinator.session(Role.OPERATOR).is_active
        assert coordinator.session(Role.COUNTERPARTY).is_active
        assert coordinator.session(Role.OPERATOR).generation == 2
        assert restarted == [{"streamType": "both", "message": RESTART_MESSAGE}]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stale_generation_is_ignored(self, coordinator):
        await coordinator.start()
        assert await coordinator.handle_limit(Role.OPERATOR, 1)

        assert not await coordinator.handle_limit(Role.COUNTERPARTY, 1)
        assert coordinator.restart_count == 1
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_writes_during_restart_are_dropped(self, stream_factory):
        coordinator = SessionRestartCoordinator(
            stream_factory, asyncio.Queue(), restart_delay_seconds=0.05
        )
        await coordinator.start()
        old_operator = stream_factory.latest(Role.OPERATOR)

        restart = asyncio.create_task(coordinator.handle_limit(Role.OPERATOR, 1))
        await asyncio.sleep(0.01)
        assert coordinator.is_restarting
        assert not await coordinator.write(Role.OPERATOR, b"lost")
        await restart

        assert coordinator.dropped_writes == 1
        assert b"lost" not in old_operator.sent
        assert b"lost" not in stream_factory.latest(Role.OPERATOR).sent

        assert await coordinator.write(Role.OPERATOR, b"kept")
        assert stream_factory.latest(Role.OPERATOR).sent == [b"kept"]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_limit_after_stop_is_ignored(self, coordinator, stream_factory):
        await coordinator.start()
        await coordinator.stop()

        assert not await coordinator.handle_limit(Role.OPERATOR, 1)
        assert len(stream_factory.created) == 2
        assert not await coordinator.write(Role.OPERATOR, b"x")

    @pytest.mark.asyncio
    async def test_failed_restart_is_reported(self, stream_factory):
        failures = []

        async def on_failed(error):
            failures.append(error)

        coordinator = SessionRestartCoordinator(
            stream_factory,
            asyncio.Queue(),
            restart_delay_seconds=0.0,
            on_restart_failed=on_failed,
        )
        await coordinator.start()
        stream_factory.fail_connect = True

        assert not await coordinator.handle_limit(Role.COUNTERPARTY, 1)
        assert not coordinator.is_restarting
        assert len(failures) == 1
        assert failures[0].code == "RESTART_FAILED"
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_failure_closes_sessions(self, stream_factory):
        stream_factory.fail_connect = True
        coordinator = SessionRestartCoordinator(stream_factory, asyncio.Queue())

        with pytest.raises(RecognitionError):
            await coordinator.start()
        assert not coordinator.is_running
