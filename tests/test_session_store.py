# tests/test_session_store.py
"""Tests for the intake session registry: conflicts, timeouts and cancellation."""

import asyncio
from datetime import datetime, timedelta

import pytest

from app.core.exceptions import NoActiveSession, SessionCancelled, SessionConflict, SessionExpired
from app.flow.states import SessionStage
from app.services.session_store import SessionStore, SessionTimer

SHORT = timedelta(milliseconds=50)


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now


def to_stage(stage, **values):
    async def step(draft):
        for key, value in values.items():
            setattr(draft.fields, key, value)
        return stage
    return step


def recorder():
    expired = []

    async def on_expire(session):
        expired.append(session)

    return expired, on_expire


# ---------------------------------------------------------------------------
# begin
# ---------------------------------------------------------------------------

def test_begin_starts_at_first_question(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        session = await store.begin(7)
        await store.close()
        return session

    session = event_loop.run_until_complete(run())
    assert session.stage == SessionStage.AWAITING_NAME
    assert session.chat_id == 7
    assert session.fields.as_dict() == {"name": None, "email": None, "phone": None}
    assert session.expires_at - session.started_at == timedelta(minutes=5)


def test_second_begin_conflicts(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        await store.begin(7)
        with pytest.raises(SessionConflict):
            await store.begin(7)
        count = store.active_count()
        await store.close()
        return count

    assert event_loop.run_until_complete(run()) == 1


def test_concurrent_begins_create_one_session(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        results = await asyncio.gather(*(store.begin(7) for _ in range(5)), return_exceptions=True)
        await store.close()
        return results

    results = event_loop.run_until_complete(run())
    conflicts = [r for r in results if isinstance(r, SessionConflict)]
    assert len(conflicts) == 4
    assert len(results) - len(conflicts) == 1


def test_begin_after_cancel_starts_fresh(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        await store.begin(7)
        await store.cancel(7)
        session = await store.begin(7)
        # Input goes to the new session, not the cancelled one
        advanced = await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="Ana"))
        await store.close()
        return session, advanced

    session, advanced = event_loop.run_until_complete(run())
    assert session.stage == SessionStage.AWAITING_NAME
    assert advanced.stage == SessionStage.AWAITING_EMAIL


# ---------------------------------------------------------------------------
# advance
# ---------------------------------------------------------------------------

def test_advance_commits_fields_and_stage(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        await store.begin(7)
        session = await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="Ana"))
        current = store.get(7)
        await store.close()
        return session, current

    session, current = event_loop.run_until_complete(run())
    assert session.stage == SessionStage.AWAITING_EMAIL
    assert current.fields.name == "Ana"


def test_failed_step_commits_nothing(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def broken(draft):
        draft.fields.name = "half written"
        raise RuntimeError("boom")

    async def run():
        await store.begin(7)
        with pytest.raises(RuntimeError):
            await store.advance(7, broken)
        current = store.get(7)
        await store.close()
        return current

    current = event_loop.run_until_complete(run())
    assert current.stage == SessionStage.AWAITING_NAME
    assert current.fields.name is None


def test_completion_releases_session(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        await store.begin(7)
        await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="Ana"))
        await store.advance(7, to_stage(SessionStage.AWAITING_PHONE, email="ana@example.com"))
        done = await store.advance(7, to_stage(SessionStage.COMPLETED, phone="+5511912345678"))
        with pytest.raises(NoActiveSession):
            await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL))
        return done

    done = event_loop.run_until_complete(run())
    assert done.stage == SessionStage.COMPLETED
    assert done.fields.as_dict() == {"name": "Ana", "email": "ana@example.com", "phone": "+5511912345678"}
    assert store.active_count() == 0


def test_skipping_a_stage_is_refused(event_loop):
    store = SessionStore(timedelta(minutes=5))

    async def run():
        await store.begin(7)
        with pytest.raises(ValueError):
            await store.advance(7, to_stage(SessionStage.COMPLETED))
        current = store.get(7)
        await store.close()
        return current

    assert event_loop.run_until_complete(run()).stage == SessionStage.AWAITING_NAME


def test_advance_without_session(event_loop):
    store = SessionStore(timedelta(minutes=5))

    with pytest.raises(NoActiveSession):
        event_loop.run_until_complete(store.advance(7, to_stage(SessionStage.AWAITING_EMAIL)))


def test_users_do_not_block_each_other(event_loop):
    store = SessionStore(timedelta(minutes=5))
    gate = {}

    async def slow(draft):
        await gate["release"].wait()
        return SessionStage.AWAITING_EMAIL

    async def run():
        release = gate["release"] = asyncio.Event()
        await store.begin(1)
        await store.begin(2)
        blocked = asyncio.ensure_future(store.advance(1, slow))
        await asyncio.sleep(0)
        other = await store.advance(2, to_stage(SessionStage.AWAITING_EMAIL, name="Bia"))
        still_waiting = not blocked.done()
        release.set()
        first = await blocked
        await store.close()
        return other, still_waiting, first

    other, still_waiting, first = event_loop.run_until_complete(run())
    assert other.stage == SessionStage.AWAITING_EMAIL
    assert still_waiting
    assert first.stage == SessionStage.AWAITING_EMAIL


# ---------------------------------------------------------------------------
# expiry
# ---------------------------------------------------------------------------

def test_timer_expires_idle_session(event_loop):
    expired, on_expire = recorder()
    store = SessionStore(SHORT, on_expire=on_expire)

    async def run():
        await store.begin(7)
        await asyncio.sleep(0.2)
        with pytest.raises(SessionExpired):
            await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="late"))

    event_loop.run_until_complete(run())
    assert len(expired) == 1
    assert expired[0].stage == SessionStage.EXPIRED
    assert store.get(7) is None


def test_accepted_input_rearms_timer(event_loop):
    expired, on_expire = recorder()
    store = SessionStore(timedelta(milliseconds=300), on_expire=on_expire)

    async def run():
        await store.begin(7)
        await asyncio.sleep(0.2)
        await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="Ana"))
        await asyncio.sleep(0.2)
        alive = store.get(7) is not None
        await store.close()
        return alive

    assert event_loop.run_until_complete(run())
    assert expired == []


def test_due_session_expires_before_step_runs(event_loop):
    clock = Clock()
    expired, on_expire = recorder()
    store = SessionStore(timedelta(minutes=5), on_expire=on_expire, clock=clock)
    calls = []

    async def step(draft):
        calls.append(draft)
        return SessionStage.AWAITING_EMAIL

    async def run():
        await store.begin(7)
        clock.now += timedelta(minutes=6)
        with pytest.raises(SessionExpired):
            await store.advance(7, step)

    event_loop.run_until_complete(run())
    assert calls == []
    assert len(expired) == 1


def test_begin_replaces_due_session(event_loop):
    clock = Clock()
    expired, on_expire = recorder()
    store = SessionStore(timedelta(minutes=5), on_expire=on_expire, clock=clock)

    async def run():
        await store.begin(7)
        clock.now += timedelta(minutes=6)
        session = await store.begin(7)
        await store.close()
        return session

    session = event_loop.run_until_complete(run())
    assert session.started_at == clock.now
    assert len(expired) == 1


def test_completion_holding_the_lock_beats_the_timer(event_loop):
    expired, on_expire = recorder()
    store = SessionStore(SHORT, on_expire=on_expire)

    async def slow_finish(draft):
        # The timer fires while this step holds the user's lock
        await asyncio.sleep(0.15)
        draft.fields.phone = "+5511912345678"
        return SessionStage.COMPLETED

    async def run():
        await store.begin(7)
        await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL, name="Ana"))
        await store.advance(7, to_stage(SessionStage.AWAITING_PHONE, email="ana@example.com"))
        done = await store.advance(7, slow_finish)
        await asyncio.sleep(0.1)
        # Completed, not expired: later input finds no session at all
        with pytest.raises(NoActiveSession):
            await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL))
        return done

    done = event_loop.run_until_complete(run())
    assert done.stage == SessionStage.COMPLETED
    assert expired == []


def test_failing_expiry_handler_is_contained(event_loop):
    async def on_expire(session):
        raise RuntimeError("chat unreachable")

    store = SessionStore(SHORT, on_expire=on_expire)

    async def run():
        await store.begin(7)
        await asyncio.sleep(0.2)
        with pytest.raises(SessionExpired):
            await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL))

    event_loop.run_until_complete(run())
    assert store.get(7) is None


# ---------------------------------------------------------------------------
# cancel / close
# ---------------------------------------------------------------------------

def test_cancel_stops_timer_and_rejects_late_input(event_loop):
    expired, on_expire = recorder()
    store = SessionStore(SHORT, on_expire=on_expire)

    async def run():
        await store.begin(7)
        cancelled = await store.cancel(7)
        await asyncio.sleep(0.15)
        with pytest.raises(SessionCancelled):
            await store.advance(7, to_stage(SessionStage.AWAITING_EMAIL))
        return cancelled

    cancelled = event_loop.run_until_complete(run())
    assert cancelled.stage == SessionStage.CANCELLED
    assert expired == []


def test_cancel_without_session(event_loop):
    store = SessionStore(timedelta(minutes=5))

    with pytest.raises(NoActiveSession):
        event_loop.run_until_complete(store.cancel(7))


def test_close_cancels_pending_timers(event_loop):
    expired, on_expire = recorder()
    store = SessionStore(SHORT, on_expire=on_expire)

    async def run():
        await store.begin(1)
        await store.begin(2)
        await store.close()
        await asyncio.sleep(0.15)

    event_loop.run_until_complete(run())
    assert expired == []
    assert store.active_count() == 0


def test_timer_cancel_is_idempotent_and_final(event_loop):
    fired = []

    async def callback():
        fired.append(True)

    async def run():
        timer = SessionTimer(callback)
        timer.schedule(0.02)
        timer.cancel()
        timer.cancel()
        timer.schedule(0.02)
        await asyncio.sleep(0.08)
        return timer

    timer = event_loop.run_until_complete(run())
    assert timer.cancelled
    assert fired == []


def test_ended_sessions_are_forgotten_after_ttl(event_loop):
    clock = Clock()
    store = SessionStore(timedelta(minutes=5), clock=clock, ended_ttl=timedelta(minutes=10))

    async def run():
        for user_id in range(1000):
            await store.begin(user_id)
            await store.cancel(user_id)

        # Still within the window: late input is rejected as cancelled
        with pytest.raises(SessionCancelled):
            await store.advance(0, to_stage(SessionStage.AWAITING_EMAIL))

        clock.now += timedelta(minutes=11)
        await store.begin(5000)
        await store.cancel(5000)

        with pytest.raises(NoActiveSession):
            await store.advance(0, to_stage(SessionStage.AWAITING_EMAIL))

    event_loop.run_until_complete(run())
    assert store.active_count() == 0
    assert len(store._ended) == 1
