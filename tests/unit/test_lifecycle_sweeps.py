from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ops_worker.scheduler import Scheduler
from ops_worker.workers import alert_lifecycle_worker as sweeps
from shared.errors import SweepIncomplete

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeConn:
    def __init__(self, devices=None, affected=None, fail_for=()):
        self.devices = devices or []
        self.affected = affected or {}
        self.fail_for = set(fail_for)
        self.fetch_calls = []
        self.execute_calls = []

    async def fetch(self, query, *args):
        self.fetch_calls.append((query, args))
        return self.devices

    async def execute(self, query, *args):
        self.execute_calls.append((query, args))
        if args and args[0] in self.fail_for:
            raise RuntimeError("connection reset")
        if query.strip().startswith("DELETE"):
            return f"DELETE {self.affected.get('purge', 0)}"
        return f"UPDATE {self.affected.get(args[0], 0)}"


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def device_row(device_id, intervals=None):
    configurations = {"logging": {"alertIntervals": intervals}} if intervals is not None else {}
    return {"device_id": device_id, "label": device_id.upper(), "configurations": configurations}


@pytest.fixture
def audit(monkeypatch):
    audit = MagicMock()
    monkeypatch.setattr(sweeps, "get_audit_logger", lambda: audit)
    return audit


async def test_clear_back_to_normal_uses_per_device_seconds(audit):
    conn = FakeConn(
        devices=[device_row("dev-1", {"activeToRecent": 60}), device_row("dev-2")],
        affected={"dev-1": 2},
    )

    count = await sweeps.clear_back_to_normal(FakePool(conn), now=NOW)

    assert count == 2
    (q1, a1), (q2, a2) = conn.execute_calls
    assert "is_back_to_normal" in q1 and "status = 'Cleared'" in q1
    assert a1 == ("dev-1", NOW - timedelta(seconds=60), NOW)
    assert a2 == ("dev-2", NOW - timedelta(seconds=30), NOW)
    audit.alerts_transitioned.assert_called_once_with("dev-1", 2, "cleared from Active to Recent")


async def test_archive_recent_measures_from_entering_recent(audit):
    conn = FakeConn(devices=[device_row("dev-1", {"recentToHistory": 15})], affected={"dev-1": 1})

    count = await sweeps.archive_recent(FakePool(conn), now=NOW)

    assert count == 1
    query, args = conn.execute_calls[0]
    assert "lifecycle = 'History'" in query
    assert "lifecycle_changed_at <= $2" in query
    assert "status" not in query
    assert args == ("dev-1", NOW - timedelta(minutes=15), NOW)


async def test_expire_stale_active_defaults_to_server_timeout(audit):
    conn = FakeConn(devices=[device_row("dev-1"), device_row("dev-2", {"staleActiveToRecent": 20})])

    await sweeps.expire_stale_active(FakePool(conn), now=NOW)

    (query, a1), (_, a2) = conn.execute_calls
    assert "status = 'Expired'" in query
    assert "is_back_to_normal = TRUE" in query
    assert "NOT is_back_to_normal" in query
    assert a1[1] == NOW - timedelta(minutes=sweeps.STALE_ACTIVE_MINUTES)
    assert a2[1] == NOW - timedelta(minutes=20)
    audit.alerts_transitioned.assert_not_called()


async def test_invalid_intervals_fall_back_to_defaults(audit):
    conn = FakeConn(devices=[device_row("dev-1", {"activeToRecent": "soon"})])

    await sweeps.clear_back_to_normal(FakePool(conn), now=NOW)

    _, args = conn.execute_calls[0]
    assert args[1] == NOW - timedelta(seconds=30)


async def test_one_device_failure_does_not_stop_the_sweep(audit):
    conn = FakeConn(
        devices=[device_row("dev-1"), device_row("dev-2"), device_row("dev-3")],
        affected={"dev-1": 1, "dev-3": 4},
        fail_for={"dev-2"},
    )

    with pytest.raises(SweepIncomplete) as exc:
        await sweeps.expire_stale_active(FakePool(conn), now=NOW)

    assert exc.value.failed == ["dev-2"]
    assert [args[0] for _, args in conn.execute_calls] == ["dev-1", "dev-2", "dev-3"]
    assert audit.alerts_transitioned.call_count == 2


async def test_listing_failure_propagates_for_retry():
    class BrokenConn(FakeConn):
        async def fetch(self, query, *args):
            raise OSError("database unavailable")

    with pytest.raises(OSError):
        await sweeps.archive_recent(FakePool(BrokenConn()), now=NOW)


async def test_sweeps_are_idempotent(audit):
    conn = FakeConn(devices=[device_row("dev-1")], affected={"dev-1": 3})
    assert await sweeps.clear_back_to_normal(FakePool(conn), now=NOW) == 3
    conn.affected = {}
    assert await sweeps.clear_back_to_normal(FakePool(conn), now=NOW) == 0
    assert audit.alerts_transitioned.call_count == 1


async def test_purge_deleted_after_grace_period(audit):
    conn = FakeConn(affected={"purge": 4})

    count = await sweeps.purge_deleted(FakePool(conn), now=NOW)

    assert count == 4
    query, args = conn.execute_calls[0]
    assert "DELETE FROM alerts" in query
    assert "is_deleted" in query
    assert args == (NOW - timedelta(seconds=sweeps.PURGE_GRACE_SECONDS),)
    audit.alerts_transitioned.assert_called_once_with(None, 4, "purged after soft delete")


async def test_purge_with_nothing_due_is_quiet(audit):
    conn = FakeConn()
    assert await sweeps.purge_deleted(FakePool(conn), now=NOW) == 0
    audit.alerts_transitioned.assert_not_called()


async def test_transient_device_failure_is_retried_by_scheduler(audit):
    class FlakyConn(FakeConn):
        async def execute(self, query, *args):
            self.execute_calls.append((query, args))
            if len(self.execute_calls) == 1:
                raise ConnectionResetError("connection reset by peer")
            return "UPDATE 2"

    conn = FlakyConn(devices=[device_row("dev-1")])
    scheduler = Scheduler(FakePool(conn))
    task = scheduler.add("expire_flaky_device", sweeps.expire_stale_active, interval=60, retry_delay=0)

    assert await scheduler.run_once(task) is True

    assert len(conn.execute_calls) == 2
    audit.alerts_transitioned.assert_called_once_with("dev-1", 2, "expired from Active to Recent")
