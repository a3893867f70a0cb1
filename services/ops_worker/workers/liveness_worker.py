"""Device and sensor heartbeat checks."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from shared.audit import get_audit_logger
from shared.config import DEVICE_OFFLINE_SECONDS, SENSOR_OFFLINE_SECONDS
from shared.db import fetch_device
from shared.errors import SweepIncomplete
from shared.ingest_core import utcnow
from shared.logging import log_exception
from shared.metrics import devices_marked_offline_total, sensors_marked_offline_total
from shared.models import SENSORS, Device, DeviceStatus, SensorState
from shared.publisher import notify_device_update

logger = logging.getLogger(__name__)


def _is_stale(timestamp: Optional[datetime], cutoff: datetime) -> bool:
    return timestamp is None or timestamp < cutoff


def offline_device_state(device: Device) -> dict:
    """Column updates for a device whose heartbeat stopped: everything Offline, readings zeroed."""
    sensor_status = {}
    for key in SENSORS:
        state = device.sensor(key)
        sensor_status[key] = SensorState(
            status=DeviceStatus.OFFLINE.value,
            last_reading_timestamp=state.last_reading_timestamp,
        ).to_document()
    latest = dict(device.latest_reading)
    latest.update({key: 0 for key in SENSORS})
    return {"status": DeviceStatus.OFFLINE.value, "sensor_status": sensor_status, "latest_reading": latest}


def stale_sensors(device: Device, cutoff: datetime) -> list[str]:
    return [
        key
        for key in SENSORS
        if device.sensor(key).status == DeviceStatus.ONLINE.value
        and _is_stale(device.sensor(key).last_reading_timestamp, cutoff)
    ]


async def _mark_device_offline(pool, device_id: str, cutoff: datetime) -> bool:
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await fetch_device(conn, device_id, for_update=True)
            if row is None:
                return False
            device = Device.from_row(row)
            # A reading may have landed since the candidate list was read.
            if device.status != DeviceStatus.ONLINE.value or not _is_stale(device.last_contact, cutoff):
                return False
            state = offline_device_state(device)
            await conn.execute(
                """
                UPDATE devices
                SET status = $2, sensor_status = $3, latest_reading = $4
                WHERE device_id = $1
                """,
                device_id,
                state["status"],
                state["sensor_status"],
                state["latest_reading"],
            )
            device = Device.model_validate({**device.model_dump(), **state})
            await notify_device_update(conn, device.state_payload())
    return True


async def check_device_liveness(pool, now: Optional[datetime] = None) -> list[str]:
    """Online devices silent for longer than the offline threshold go Offline, sensors included."""
    cutoff = (now or utcnow()) - timedelta(seconds=DEVICE_OFFLINE_SECONDS)
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT device_id
            FROM devices
            WHERE status = 'Online'
              AND (last_contact IS NULL OR last_contact < $1)
            """,
            cutoff,
        )

    marked = []
    failed = []
    for row in rows:
        device_id = row["device_id"]
        try:
            changed = await _mark_device_offline(pool, device_id, cutoff)
        except Exception as exc:
            log_exception(logger, "device liveness update failed", exc, {"device_id": device_id})
            failed.append(device_id)
            continue
        if not changed:
            continue
        marked.append(device_id)
        devices_marked_offline_total.inc()
        logger.warning("device marked offline", extra={"device_id": device_id})
        audit = get_audit_logger()
        if audit:
            audit.device_offline(device_id)
    if failed:
        raise SweepIncomplete("check_device_liveness", failed)
    return marked


async def _mark_sensors_offline(pool, device_id: str, cutoff: datetime) -> list[str]:
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await fetch_device(conn, device_id, for_update=True)
            if row is None:
                return []
            device = Device.from_row(row)
            if device.status != DeviceStatus.ONLINE.value:
                return []
            stale = stale_sensors(device, cutoff)
            if not stale:
                return []

            sensor_status = {key: state.to_document() for key, state in device.sensor_status.items()}
            latest = dict(device.latest_reading)
            for key in stale:
                sensor_status[key] = SensorState(
                    status=DeviceStatus.OFFLINE.value,
                    last_reading_timestamp=device.sensor(key).last_reading_timestamp,
                ).to_document()
                latest[key] = 0
            await conn.execute(
                "UPDATE devices SET sensor_status = $2, latest_reading = $3 WHERE device_id = $1",
                device_id,
                sensor_status,
                latest,
            )
            device = Device.model_validate(
                {**device.model_dump(), "sensor_status": sensor_status, "latest_reading": latest}
            )
            await notify_device_update(conn, device.state_payload())
    return stale


async def check_sensor_liveness(pool, now: Optional[datetime] = None) -> dict[str, list[str]]:
    """On Online devices, sensors whose own readings stopped go Offline one by one."""
    cutoff = (now or utcnow()) - timedelta(seconds=SENSOR_OFFLINE_SECONDS)
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT device_id FROM devices WHERE status = 'Online'")

    marked: dict[str, list[str]] = {}
    failed = []
    for row in rows:
        device_id = row["device_id"]
        try:
            stale = await _mark_sensors_offline(pool, device_id, cutoff)
        except Exception as exc:
            log_exception(logger, "sensor liveness update failed", exc, {"device_id": device_id})
            failed.append(device_id)
            continue
        if not stale:
            continue
        marked[device_id] = stale
        audit = get_audit_logger()
        for sensor in stale:
            sensors_marked_offline_total.labels(sensor=sensor).inc()
            if audit:
                audit.sensor_offline(device_id, sensor)
        logger.warning("sensors marked offline", extra={"device_id": device_id, "sensors": stale})
    if failed:
        raise SweepIncomplete("check_sensor_liveness", failed)
    return marked
