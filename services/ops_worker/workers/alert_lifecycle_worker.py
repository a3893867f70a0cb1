"""
Time-driven alert lifecycle sweeps.

Per-device intervals come from each device's configuration, so the clear,
archive and expire sweeps walk the device list and update one device at a
time. A failure on one device is logged and the sweep moves on to the next;
once every device has been tried the sweep raises SweepIncomplete so the
scheduler retries it. Each UPDATE is idempotent, so a retry only redoes the
devices that still have due alerts.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from shared.audit import get_audit_logger
from shared.config import PURGE_GRACE_SECONDS, STALE_ACTIVE_MINUTES
from shared.errors import SweepIncomplete
from shared.ingest_core import utcnow
from shared.logging import log_exception
from shared.metrics import alert_transitions_total, alerts_purged_total
from shared.models import AlertIntervals, AlertStatus, Lifecycle, LoggingSettings

logger = logging.getLogger(__name__)


def _affected(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def alert_intervals(row) -> AlertIntervals:
    """The device's alert intervals, falling back to defaults on an unusable document."""
    logging_doc = ((row["configurations"] or {}).get("logging")) or {}
    try:
        return LoggingSettings.model_validate(logging_doc).alert_intervals
    except ValidationError:
        logger.warning("invalid alert intervals, using defaults", extra={"device_id": row["device_id"]})
        return AlertIntervals()


async def _list_devices(conn):
    return await conn.fetch("SELECT device_id, label, configurations FROM devices ORDER BY device_id")


async def _sweep_devices(
    pool,
    sweep: str,
    transition_sql: str,
    cutoff_for,
    describe: str,
    to_lifecycle: str,
    to_status: str,
    now: datetime,
) -> int:
    """Run ``transition_sql`` once per device with ($1=device_id, $2=cutoff, $3=now)."""
    total = 0
    failed: list[str] = []
    async with pool.acquire() as conn:
        devices = await _list_devices(conn)
        for row in devices:
            device_id = row["device_id"]
            try:
                cutoff = cutoff_for(alert_intervals(row), now)
                count = _affected(await conn.execute(transition_sql, device_id, cutoff, now))
            except Exception as exc:
                log_exception(logger, "sweep failed for device", exc, {"sweep": sweep, "device_id": device_id})
                failed.append(device_id)
                continue
            if count:
                total += count
                alert_transitions_total.labels(to_lifecycle=to_lifecycle, status=to_status).inc(count)
                audit = get_audit_logger()
                if audit:
                    audit.alerts_transitioned(device_id, count, describe)
    if total:
        logger.info("alerts transitioned", extra={"sweep": sweep, "count": total})
    if failed:
        raise SweepIncomplete(sweep, failed)
    return total


CLEAR_BACK_TO_NORMAL_SQL = """
    UPDATE alerts
    SET lifecycle = 'Recent', status = 'Cleared', lifecycle_changed_at = $3
    WHERE device_id = $1
      AND lifecycle = 'Active'
      AND is_back_to_normal
      AND date_time <= $2
"""

ARCHIVE_RECENT_SQL = """
    UPDATE alerts
    SET lifecycle = 'History', lifecycle_changed_at = $3
    WHERE device_id = $1
      AND lifecycle = 'Recent'
      AND lifecycle_changed_at <= $2
"""

EXPIRE_STALE_ACTIVE_SQL = """
    UPDATE alerts
    SET lifecycle = 'Recent', status = 'Expired', is_back_to_normal = TRUE,
        lifecycle_changed_at = $3
    WHERE device_id = $1
      AND lifecycle = 'Active'
      AND NOT is_back_to_normal
      AND date_time <= $2
"""


def stale_active_minutes(intervals: AlertIntervals) -> float:
    if intervals.stale_active_to_recent:
        return intervals.stale_active_to_recent
    return STALE_ACTIVE_MINUTES


async def clear_back_to_normal(pool, now: Optional[datetime] = None) -> int:
    """Active back-to-normal notifications older than activeToRecent seconds -> Recent/Cleared."""
    return await _sweep_devices(
        pool,
        "clear_back_to_normal",
        CLEAR_BACK_TO_NORMAL_SQL,
        lambda intervals, ts: ts - timedelta(seconds=intervals.active_to_recent),
        "cleared from Active to Recent",
        Lifecycle.RECENT.value,
        AlertStatus.CLEARED.value,
        now or utcnow(),
    )


async def archive_recent(pool, now: Optional[datetime] = None) -> int:
    """Recent alerts older than recentToHistory minutes (since entering Recent) -> History."""
    return await _sweep_devices(
        pool,
        "archive_recent",
        ARCHIVE_RECENT_SQL,
        lambda intervals, ts: ts - timedelta(minutes=intervals.recent_to_history),
        "archived from Recent to History",
        Lifecycle.HISTORY.value,
        "unchanged",
        now or utcnow(),
    )


async def expire_stale_active(pool, now: Optional[datetime] = None) -> int:
    """Active alerts nobody resolved within the stale timeout -> Recent/Expired."""
    return await _sweep_devices(
        pool,
        "expire_stale_active",
        EXPIRE_STALE_ACTIVE_SQL,
        lambda intervals, ts: ts - timedelta(minutes=stale_active_minutes(intervals)),
        "expired from Active to Recent",
        Lifecycle.RECENT.value,
        AlertStatus.EXPIRED.value,
        now or utcnow(),
    )


async def purge_deleted(pool, now: Optional[datetime] = None) -> int:
    """Permanently remove soft-deleted alerts once the undo window has passed."""
    cutoff = (now or utcnow()) - timedelta(seconds=PURGE_GRACE_SECONDS)
    async with pool.acquire() as conn:
        status = await conn.execute(
            "DELETE FROM alerts WHERE is_deleted AND deleted_at <= $1",
            cutoff,
        )
    count = _affected(status)
    if count:
        alerts_purged_total.inc(count)
        logger.info("soft-deleted alerts purged", extra={"count": count})
        audit = get_audit_logger()
        if audit:
            audit.alerts_transitioned(None, count, "purged after soft delete")
    return count
