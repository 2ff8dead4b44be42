from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from amp_relay.replay import ReplayGuard


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_admit_is_once_per_id(services):
    guard = services.replay_guard
    assert await guard.admit("msg_1")
    assert not await guard.admit("msg_1")
    assert await guard.seen("msg_1")
    assert await guard.admit("msg_2")


@pytest.mark.asyncio
async def test_record_is_idempotent(services):
    guard = services.replay_guard
    await guard.record("msg_dup")
    await guard.record("msg_dup")
    assert await guard.seen("msg_dup")


@pytest.mark.asyncio
async def test_survives_new_guard_instance(services):
    assert await services.replay_guard.admit("msg_durable")
    fresh = ReplayGuard()
    assert not await fresh.admit("msg_durable")


@pytest.mark.asyncio
async def test_window_expiry_and_lazy_sweep(services):
    clock = _Clock()
    guard = ReplayGuard(window_seconds=86400, sweep_interval_seconds=3600, clock=clock)
    assert await guard.admit("msg_old")
    first_sweep = guard.schedule.last_swept_at
    assert first_sweep == clock.now

    clock.now += timedelta(minutes=30)
    assert await guard.seen("msg_old")
    assert guard.schedule.last_swept_at == first_sweep

    clock.now += timedelta(hours=25)
    assert not await guard.seen("msg_old")
    assert guard.schedule.last_swept_at == clock.now
    assert await guard.admit("msg_old")


@pytest.mark.asyncio
async def test_explicit_sweep_removes_stale_records(services):
    clock = _Clock()
    guard = ReplayGuard(window_seconds=60, clock=clock)
    await guard.record("a")
    await guard.record("b")
    clock.now += timedelta(seconds=120)
    assert await guard.sweep() == 2


def _broken_session():
    raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))


@pytest.mark.asyncio
async def test_storage_failure_fails_open(isolated_env, caplog):
    """An unreadable, unwritable guard admits messages instead of blocking delivery."""
    guard = ReplayGuard(session_factory=_broken_session)
    with caplog.at_level("WARNING"):
        assert await guard.admit("msg_x")
        assert await guard.admit("msg_x")
    events = {record.getMessage() for record in caplog.records}
    assert "replay.check_failed" in events
    assert "replay.record_failed" in events
