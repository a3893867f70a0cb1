"""
Alert lifecycle: reconcile evaluations against the Active alert per
(device, parameter), plus the operator actions on alert records.

An alert moves Active -> Recent -> History. Leaving Active always stamps
lifecycle_changed_at, which the archive sweep measures from.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

import asyncpg

from shared.audit import get_audit_logger
from shared.errors import AlertNotFound, InvalidRequest
from shared.ingest_core import parse_ts, utcnow
from shared.metrics import alert_transitions_total, alerts_created_total
from shared.models import AlertStatus, Device, Lifecycle, Severity
from shared.thresholds import Evaluation

logger = logging.getLogger(__name__)

ALERT_COLUMNS = """
    id, device_id, originator, parameter, type, value, severity, note,
    lifecycle, status, is_back_to_normal, acknowledged, acknowledged_by,
    acknowledged_at, date_time, lifecycle_changed_at, is_deleted, deleted_at
"""

RESTORABLE_FIELDS = (
    "id", "device_id", "originator", "parameter", "type", "value", "severity", "note",
    "lifecycle", "status", "is_back_to_normal", "acknowledged", "acknowledged_by",
    "acknowledged_at", "date_time", "lifecycle_changed_at",
)

# camelCase spellings accepted on restore payloads
_RECORD_ALIASES = {
    "_id": "id",
    "deviceId": "device_id",
    "isBackToNormal": "is_back_to_normal",
    "acknowledgedBy": "acknowledged_by",
    "acknowledgedAt": "acknowledged_at",
    "dateTime": "date_time",
    "lifecycleChangedAt": "lifecycle_changed_at",
}


@dataclass
class NewAlert:
    severity: Severity
    message: str
    value: float
    note: Optional[str] = None
    is_back_to_normal: bool = False


@dataclass
class AlertAction:
    """What to do with the current Active alert, and what to create in its place."""

    close_status: Optional[AlertStatus] = None
    create: Optional[NewAlert] = None

    @property
    def is_noop(self) -> bool:
        return self.close_status is None and self.create is None

    def describe(self, parameter: str) -> list[str]:
        actions = []
        if self.close_status == AlertStatus.ESCALATED:
            actions.append(f"Escalated existing '{parameter}' alert.")
        elif self.close_status == AlertStatus.RESOLVED:
            actions.append(f"Resolved existing '{parameter}' alert.")
        if self.create is not None:
            if self.create.is_back_to_normal:
                actions.append("Created 'Back to Normal' notification.")
            elif self.close_status == AlertStatus.ESCALATED:
                actions.append(f"Created new escalated '{parameter}' alert.")
            else:
                actions.append(f"Created new '{parameter}' alert.")
        return actions


def back_to_normal_message(parameter: str) -> str:
    return f"{parameter} is back to normal"


def plan_alert_action(existing: Optional[Mapping[str, Any]], evaluation: Evaluation) -> AlertAction:
    """
    Decide the transition for one parameter given its current Active alert (or None).

    A back-to-normal notification is closed as Escalated when the parameter
    turns abnormal again, so the new alert can take the Active slot.
    """
    abnormal = not evaluation.is_normal
    new_alert = NewAlert(
        severity=evaluation.severity,
        message=evaluation.message,
        value=evaluation.value,
        note=evaluation.note,
    )

    if existing is None:
        return AlertAction(create=new_alert) if abnormal else AlertAction()

    if existing["is_back_to_normal"]:
        if abnormal:
            return AlertAction(close_status=AlertStatus.ESCALATED, create=new_alert)
        return AlertAction()

    if abnormal:
        if existing["severity"] == evaluation.severity.value:
            return AlertAction()
        return AlertAction(close_status=AlertStatus.ESCALATED, create=new_alert)

    return AlertAction(
        close_status=AlertStatus.RESOLVED,
        create=NewAlert(
            severity=Severity.NORMAL,
            message=back_to_normal_message(evaluation.parameter),
            value=evaluation.value,
            note=evaluation.note,
            is_back_to_normal=True,
        ),
    )


async def fetch_active_alert(conn, device_id: str, parameter: str):
    return await conn.fetchrow(
        f"""
        SELECT {ALERT_COLUMNS}
        FROM alerts
        WHERE device_id = $1 AND parameter = $2 AND lifecycle = 'Active'
        ORDER BY date_time DESC
        LIMIT 1
        """,
        device_id,
        parameter,
    )


async def _close_alert(conn, alert_id, status: AlertStatus, now: datetime) -> None:
    await conn.execute(
        """
        UPDATE alerts
        SET lifecycle = 'Recent', status = $2, lifecycle_changed_at = $3
        WHERE id = $1 AND lifecycle = 'Active'
        """,
        alert_id,
        status.value,
        now,
    )
    alert_transitions_total.labels(to_lifecycle=Lifecycle.RECENT.value, status=status.value).inc()


async def _insert_alert(conn, device: Device, parameter: str, alert: NewAlert, now: datetime) -> bool:
    """Insert a new Active alert; False when another Active alert already holds the slot."""
    try:
        # Savepoint so a unique violation does not abort the caller's transaction.
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO alerts (
                    device_id, originator, parameter, type, value, severity, note,
                    lifecycle, status, is_back_to_normal, date_time, lifecycle_changed_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, 'Active', 'Active', $8, $9, $9)
                """,
                device.device_id,
                device.label,
                parameter,
                alert.message,
                alert.value,
                alert.severity.value,
                alert.note,
                alert.is_back_to_normal,
                now,
            )
    except asyncpg.UniqueViolationError:
        logger.warning(
            "active alert already exists, skipping insert",
            extra={"device_id": device.device_id, "parameter": parameter},
        )
        return False
    alerts_created_total.labels(parameter=parameter, severity=alert.severity.value).inc()
    return True


async def reconcile_alert(
    conn,
    device: Device,
    evaluation: Evaluation,
    now: Optional[datetime] = None,
) -> list[str]:
    """
    Apply the lifecycle table for one evaluated parameter.

    Must run inside the transaction that holds the device row lock.
    Returns the human-readable actions taken.
    """
    now = now or utcnow()
    existing = await fetch_active_alert(conn, device.device_id, evaluation.parameter)
    action = plan_alert_action(existing, evaluation)
    if action.is_noop:
        return []

    if action.close_status is not None:
        await _close_alert(conn, existing["id"], action.close_status, now)
    if action.create is not None:
        created = await _insert_alert(conn, device, evaluation.parameter, action.create, now)
        if not created:
            action.create = None
    return action.describe(evaluation.parameter)


async def acknowledge_alert(pool, alert_id: str, user: str, now: Optional[datetime] = None):
    """Mark an Active alert as seen. Lifecycle and status are left untouched."""
    now = now or utcnow()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            UPDATE alerts
            SET acknowledged = TRUE, acknowledged_by = $2, acknowledged_at = $3
            WHERE id = $1 AND lifecycle = 'Active' AND NOT is_deleted
            RETURNING {ALERT_COLUMNS}
            """,
            alert_id,
            user,
            now,
        )
    if row is None:
        raise AlertNotFound(alert_id)

    audit = get_audit_logger()
    if audit:
        audit.user_action(
            user,
            f"Acknowledged alert: '{row['type']}' for device '{row['originator']}'.",
            "Acknowledgement",
        )
    return dict(row)


def _originator_summary(rows) -> str:
    return ", ".join(sorted({r["originator"] for r in rows}))


async def delete_alerts(pool, ids: Iterable[str], user: Optional[str], now: Optional[datetime] = None):
    """
    Soft-delete alerts. Active alerts are never deleted.

    Returns the deleted records so a caller can offer an undo within the
    purge grace period.
    """
    ids = list(ids)
    if not ids:
        return []
    now = now or utcnow()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""
            UPDATE alerts
            SET is_deleted = TRUE, deleted_at = $2
            WHERE id = ANY($1::uuid[])
              AND lifecycle <> 'Active'
              AND NOT is_deleted
            RETURNING {ALERT_COLUMNS}
            """,
            ids,
            now,
        )

    if rows:
        audit = get_audit_logger()
        if audit:
            plural = "s" if len(rows) > 1 else ""
            audit.user_action(
                user,
                f"Deleted {len(rows)} alert record{plural} from history. "
                f"Originator(s) {_originator_summary(rows)}",
                "Deletion",
            )
    logger.info("alerts soft-deleted", extra={"requested": len(ids), "deleted": len(rows)})
    return [dict(r) for r in rows]


def normalize_alert_record(record: Mapping[str, Any]) -> dict:
    """Map a restore payload record (snake or camel case) onto alert columns."""
    data = {_RECORD_ALIASES.get(k, k): v for k, v in record.items()}
    if data.get("id") is None:
        raise InvalidRequest("Alert record has no id.")
    try:
        data["id"] = str(uuid.UUID(str(data["id"])))
    except ValueError as exc:
        raise InvalidRequest(f"Alert record id {data['id']!r} is not a valid alert id.") from exc
    if data.get("lifecycle") == Lifecycle.ACTIVE.value:
        raise InvalidRequest(f"Alert record {data['id']} is Active and cannot be restored.")
    for key in ("acknowledged_at", "date_time", "lifecycle_changed_at"):
        if data.get(key) is not None:
            data[key] = parse_ts(data[key])
    data.setdefault("date_time", None)
    data.setdefault("lifecycle_changed_at", data["date_time"])
    data.setdefault("is_back_to_normal", False)
    data.setdefault("acknowledged", False)
    return {field: data.get(field) for field in RESTORABLE_FIELDS}


async def restore_alerts(pool, records: Iterable[Any], user: Optional[str]):
    """
    Undo a soft delete.

    ``records`` holds alert ids or full alert records. Full records are
    upserted, so a record already purged is re-inserted; restoring a live
    record changes nothing.
    """
    ids: list[str] = []
    full: list[dict] = []
    for record in records:
        if isinstance(record, Mapping):
            full.append(normalize_alert_record(record))
        else:
            ids.append(str(record))

    restored = []
    async with pool.acquire() as conn:
        async with conn.transaction():
            if ids:
                rows = await conn.fetch(
                    f"""
                    UPDATE alerts
                    SET is_deleted = FALSE, deleted_at = NULL
                    WHERE id = ANY($1::uuid[]) AND is_deleted
                    RETURNING {ALERT_COLUMNS}
                    """,
                    ids,
                )
                restored.extend(rows)
            for record in full:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO alerts (
                        id, device_id, originator, parameter, type, value, severity, note,
                        lifecycle, status, is_back_to_normal, acknowledged, acknowledged_by,
                        acknowledged_at, date_time, lifecycle_changed_at, is_deleted, deleted_at
                    )
                    VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                        COALESCE($15, NOW()), COALESCE($16, $15, NOW()), FALSE, NULL
                    )
                    ON CONFLICT (id) DO UPDATE
                    SET is_deleted = FALSE, deleted_at = NULL
                    WHERE alerts.is_deleted
                    RETURNING {ALERT_COLUMNS}
                    """,
                    *(record[f] for f in RESTORABLE_FIELDS),
                )
                if row is not None:
                    restored.append(row)

    if restored:
        audit = get_audit_logger()
        if audit:
            plural = "s" if len(restored) > 1 else ""
            audit.user_action(
                user,
                f"Restored {len(restored)} alert record{plural} from history. "
                f"Originator(s) {_originator_summary(restored)}",
                "Restoration",
            )
    return [dict(r) for r in restored]


async def list_alerts(
    pool,
    lifecycle: Optional[str] = None,
    severity: Optional[str] = None,
    originator: Optional[str] = None,
    is_deleted: bool = False,
    limit: int = 500,
):
    """Alerts matching the filters, newest first. Soft-deleted alerts only when asked for."""
    clauses = ["is_deleted = $1"]
    args: list[Any] = [is_deleted]
    for column, value in (("lifecycle", lifecycle), ("severity", severity), ("originator", originator)):
        if value:
            args.append(value)
            clauses.append(f"{column} = ${len(args)}")
    args.append(limit)
    query = f"""
        SELECT {ALERT_COLUMNS}
        FROM alerts
        WHERE {' AND '.join(clauses)}
        ORDER BY date_time DESC
        LIMIT ${len(args)}
    """
    async with pool.acquire() as conn:
        rows = await conn.fetch(query, *args)
    return [dict(r) for r in rows]
