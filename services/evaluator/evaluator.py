"""
Evaluator service: the reading hot path and the operator-facing alert API.

A reading is processed inside one transaction that holds the device row lock,
so two readings for the same device never reconcile alerts concurrently.
Commands and audit entries go out after commit.
"""
import asyncio
import functools
import json
import logging
import signal
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from evaluator.alert_lifecycle import (
    acknowledge_alert,
    delete_alerts,
    list_alerts,
    reconcile_alert,
    restore_alerts,
)
from shared.audit import get_audit_logger, init_audit_logger
from shared.automation import AutomationDecision, ValveAction, decide
from shared.commands import DeviceCommand, build_pump_command, build_valve_command
from shared.config import THRESHOLD_AUTOCORRECT, env_int
from shared.config_diff import describe_changes
from shared.db import DEVICE_COLUMNS, close_pool, fetch_device, get_pool
from shared.errors import (
    AlertNotFound,
    DeviceNotFound,
    IngestRejected,
    InvalidConfiguration,
    InvalidRequest,
    StationWatchError,
)
from shared.ingest_core import Reading, utcnow, validate_reading
from shared.logging import configure_logging, log_event, new_trace
from shared.metrics import (
    db_pool_free,
    db_pool_size,
    processing_duration_seconds,
    readings_processed_total,
    valve_commands_total,
)
from shared.models import SENSOR_KEYS, Device, DeviceConfigurations, DeviceStatus, SensorState
from shared.publisher import notify_device_update, publish_command
from shared.thresholds import Evaluation, evaluate_reading, validate_thresholds

logger = logging.getLogger("evaluator")

HTTP_PORT = env_int("HTTP_PORT", 8080)

_json_dumps = functools.partial(json.dumps, default=str)


@dataclass
class IngestResult:
    device_id: str
    actions: list[str] = field(default_factory=list)
    valve_action: str = ValveAction.NONE.value
    evaluations: list[Evaluation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "message": "Sensor reading processed successfully.",
            "deviceId": self.device_id,
            "actions": self.actions,
            "valveAction": self.valve_action,
        }


@dataclass
class ConfigurationSaved:
    configurations: DeviceConfigurations
    changes: list[str] = field(default_factory=list)
    corrected: list[str] = field(default_factory=list)


def merge_reading(device: Device, reading: Reading, now: datetime) -> tuple[dict, dict]:
    """
    New sensor_status and latest_reading documents for an accepted reading.
    Parameters absent from the reading keep their previous values.
    """
    sensor_status = {key: state.to_document() for key, state in device.sensor_status.items()}
    latest = dict(device.latest_reading)
    for parameter, value in reading.values.items():
        key = SENSOR_KEYS[parameter]
        latest[key] = value
        sensor_status[key] = SensorState(
            status=DeviceStatus.ONLINE.value,
            last_reading_timestamp=now,
        ).to_document()
    latest["timestamp"] = reading.timestamp.isoformat()
    return sensor_status, latest


async def _apply_valve_decision(conn, device: Device, decision: AutomationDecision) -> DeviceCommand:
    command = build_valve_command(decision.target_valve)
    await conn.execute(
        """
        UPDATE devices
        SET valve = $2, commands = commands || $3::jsonb
        WHERE device_id = $1
        """,
        device.device_id,
        command.state["valve"],
        command.state["commands"],
    )
    valve_commands_total.labels(action=decision.action.value).inc()
    return command


async def _send_command(device: Device, command: DeviceCommand) -> bool:
    result = await publish_command(device.device_id, command.payload)
    if not result.success:
        audit = get_audit_logger()
        if audit:
            audit.system(
                device.device_id,
                "Microcontroller",
                f"Failed to send {command.type} command ({command.payload['value']})",
                "error",
            )
    return result.success


async def process_reading(pool, payload: Any, now: Optional[datetime] = None) -> IngestResult:
    """
    Evaluate one reading, drive the valve automation and reconcile alerts.

    Raises IngestRejected (400 malformed, 404 unknown device) before any state changes.
    """
    try:
        reading = validate_reading(payload, now=now)
    except IngestRejected:
        readings_processed_total.labels(result="rejected").inc()
        raise
    now = now or utcnow()
    start = time.monotonic()
    result = IngestResult(device_id=reading.device_id)
    command: Optional[DeviceCommand] = None
    decision = AutomationDecision()

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await fetch_device(conn, reading.device_id, for_update=True)
            if row is None:
                readings_processed_total.labels(result="rejected").inc()
                raise IngestRejected(f"Device {reading.device_id} not found", status_code=404)
            device = Device.from_row(row)

            sensor_status, latest = merge_reading(device, reading, now)
            await conn.execute(
                """
                UPDATE devices
                SET status = 'Online', last_contact = $2, sensor_status = $3, latest_reading = $4
                WHERE device_id = $1
                """,
                device.device_id,
                now,
                sensor_status,
                latest,
            )

            result.evaluations = evaluate_reading(
                reading.values,
                device.configurations,
                autocorrect=THRESHOLD_AUTOCORRECT,
            )
            decision = decide(reading.values, device)
            updates: dict[str, Any] = {
                "status": DeviceStatus.ONLINE.value,
                "last_contact": now,
                "sensor_status": sensor_status,
                "latest_reading": latest,
            }
            if decision.action != ValveAction.NONE:
                command = await _apply_valve_decision(conn, device, decision)
                updates["valve"] = decision.target_valve
                result.valve_action = decision.action.value

            for evaluation in result.evaluations:
                result.actions.extend(await reconcile_alert(conn, device, evaluation, now=now))

            device = Device.model_validate({**device.model_dump(), **updates})
            await notify_device_update(conn, device.state_payload())

    if command is not None:
        audit = get_audit_logger()
        if audit:
            audit.valve_automation(
                device.device_id,
                decision.describe(),
                closed=decision.action == ValveAction.CLOSE,
            )
        result.actions.append(decision.describe())
        await _send_command(device, command)

    readings_processed_total.labels(result="accepted").inc()
    processing_duration_seconds.labels(service="evaluator", operation="ingest").observe(
        time.monotonic() - start
    )
    log_event(
        logger,
        "reading processed",
        device_id=reading.device_id,
        parameters=list(reading.values),
        actions=len(result.actions),
        valve_action=result.valve_action,
    )
    return result


def _parse_configurations(configurations: Any) -> DeviceConfigurations:
    if not isinstance(configurations, dict):
        raise InvalidConfiguration("Expected a configurations object.")
    try:
        return DeviceConfigurations.model_validate(configurations)
    except ValidationError as exc:
        raise InvalidConfiguration(f"Invalid configurations: {exc.error_count()} error(s)") from exc


async def save_device_configuration(
    pool,
    device_id: str,
    configurations: Any,
    actor: Optional[str],
) -> ConfigurationSaved:
    """
    Validate, auto-correct and persist a device configuration, logging what changed.

    The stale-Active timeout is server-managed: a submitted value is ignored
    and the stored one kept.
    """
    config = _parse_configurations(configurations)
    report = validate_thresholds(config.thresholds, autocorrect=True)
    corrected = report.corrected + report.reset_to_default
    if not report.ok:
        for violation in report.violations:
            logger.warning(
                "threshold ordering corrected on save",
                extra={"device_id": device_id, "violation": str(violation)},
            )
        config = config.model_copy(update={"thresholds": report.thresholds})

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await fetch_device(conn, device_id, for_update=True)
            if row is None:
                raise DeviceNotFound(device_id)
            device = Device.from_row(row)
            stored_intervals = device.configurations.logging.alert_intervals
            intervals = config.logging.alert_intervals.model_copy(
                update={"stale_active_to_recent": stored_intervals.stale_active_to_recent}
            )
            config = config.model_copy(
                update={"logging": config.logging.model_copy(update={"alert_intervals": intervals})}
            )
            document = config.to_document()
            changes = describe_changes(document, device.configurations.to_document())
            await conn.execute(
                "UPDATE devices SET configurations = $2 WHERE device_id = $1",
                device_id,
                document,
            )

    if changes:
        audit = get_audit_logger()
        if audit:
            audit.config_changed(actor, device.label, changes)
    log_event(logger, "configuration saved", device_id=device_id, changes=len(changes), corrected=corrected)
    return ConfigurationSaved(configurations=config, changes=changes, corrected=corrected)


async def send_pump_command(
    pool,
    device_id: str,
    value: str,
    user: Optional[str],
    now: Optional[datetime] = None,
) -> DeviceCommand:
    """Persist the optimistic pump state, then send the command to the station."""
    now = now or utcnow()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await fetch_device(conn, device_id, for_update=True)
            if row is None:
                raise DeviceNotFound(device_id)
            device = Device.from_row(row)
            command = build_pump_command(device, value, now=now)
            updated = await conn.fetchrow(
                f"""
                UPDATE devices
                SET pump = $2,
                    pump_cycle = COALESCE($3, pump_cycle),
                    commands = commands || $4::jsonb
                WHERE device_id = $1
                RETURNING {DEVICE_COLUMNS}
                """,
                device_id,
                command.state["pump"],
                command.state.get("pump_cycle"),
                command.state["commands"],
            )
            if updated is not None:
                device = Device.from_row(updated)
            await notify_device_update(conn, device.state_payload())

    await _send_command(device, command)
    audit = get_audit_logger()
    if audit:
        audit.user_action(user, f"sent pump command ({value}) to device {device.label}", "Pump")
    return command


# HTTP


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except StationWatchError as exc:
        return web.json_response({"message": str(exc)}, status=exc.status_code)


@web.middleware
async def trace_middleware(request, handler):
    with new_trace() as trace_id:
        response = await handler(request)
        response.headers["X-Trace-Id"] = trace_id
        return response


async def _json_body(request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise InvalidRequest("Request body is not valid JSON.") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    return body


def _user(body: dict) -> Optional[str]:
    return body.get("user") or body.get("userID")


def _alert_ids(values: Any, key: str) -> list[str]:
    if not isinstance(values, list):
        raise InvalidRequest(f"Invalid request body. Expected '{key}' array.")
    try:
        return [str(uuid.UUID(str(v))) for v in values]
    except ValueError as exc:
        raise InvalidRequest(f"'{key}' contains an invalid alert id.") from exc


async def ingest_handler(request):
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        readings_processed_total.labels(result="rejected").inc()
        raise IngestRejected("Invalid sensor reading payload.")
    result = await process_reading(request.app["pool"], payload)
    return web.json_response(result.to_dict())


async def list_alerts_handler(request):
    q = request.query
    alerts = await list_alerts(
        request.app["pool"],
        lifecycle=q.get("lifecycle"),
        severity=q.get("severity"),
        originator=q.get("originator"),
        is_deleted=q.get("isDeleted") == "true",
    )
    return web.json_response(alerts, dumps=_json_dumps)


async def acknowledge_handler(request):
    alert_id = request.match_info["alert_id"]
    try:
        alert_id = str(uuid.UUID(alert_id))
    except ValueError:
        raise AlertNotFound(alert_id)
    body = await _json_body(request)
    user = _user(body)
    if not user:
        raise InvalidRequest("Acknowledging user is required.")
    alert = await acknowledge_alert(request.app["pool"], alert_id, user)
    return web.json_response(alert, dumps=_json_dumps)


async def delete_history_handler(request):
    body = await _json_body(request)
    ids = _alert_ids(body.get("idsToDelete"), "idsToDelete")
    deleted = await delete_alerts(request.app["pool"], ids, _user(body))
    return web.json_response(
        {"message": "Alerts marked as deleted.", "deleted": deleted},
        dumps=_json_dumps,
    )


async def restore_history_handler(request):
    body = await _json_body(request)
    if "alertsToRestore" in body:
        records = body["alertsToRestore"]
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise InvalidRequest("Invalid request body. Expected 'alertsToRestore' array.")
    else:
        records = _alert_ids(body.get("idsToRestore"), "idsToRestore")
    restored = await restore_alerts(request.app["pool"], records, _user(body))
    return web.json_response(
        {"message": "Alerts restored.", "restored": len(restored)},
        dumps=_json_dumps,
    )


async def configuration_handler(request):
    body = await _json_body(request)
    configurations = body.get("newConfigs", body.get("configurations"))
    saved = await save_device_configuration(
        request.app["pool"],
        request.match_info["device_id"],
        configurations,
        _user(body),
    )
    return web.json_response(
        {
            "message": "Configuration updated successfully",
            "configurations": saved.configurations.to_document(),
            "changes": saved.changes,
            "corrected": saved.corrected,
        }
    )


async def pump_command_handler(request):
    body = await _json_body(request)
    value = body.get("commandValue")
    await send_pump_command(request.app["pool"], request.match_info["device_id"], value, _user(body))
    return web.json_response({"message": f"Pump command {value} sent."}, status=202)


async def health_handler(request):
    return web.json_response({"status": "ok", "service": "evaluator"})


async def metrics_handler(request):
    pool = request.app["pool"]
    db_pool_size.labels(service="evaluator").set(pool.get_size())
    db_pool_free.labels(service="evaluator").set(pool.get_idle_size())
    return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])


def create_app(pool) -> web.Application:
    app = web.Application(middlewares=[trace_middleware, error_middleware])
    app["pool"] = pool
    app.router.add_post("/ingest", ingest_handler)
    app.router.add_get("/alerts", list_alerts_handler)
    app.router.add_patch("/alerts/{alert_id}/acknowledge", acknowledge_handler)
    app.router.add_put("/alerts/delete-history", delete_history_handler)
    app.router.add_put("/alerts/restore-history", restore_history_handler)
    app.router.add_put("/devices/{device_id}/configuration", configuration_handler)
    app.router.add_put("/devices/{device_id}/pump-command", pump_command_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def main() -> None:
    configure_logging("evaluator")
    pool = await get_pool()
    audit = init_audit_logger(pool, "evaluator")
    await audit.start()

    runner = web.AppRunner(create_app(pool))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", HTTP_PORT)
    await site.start()
    log_event(logger, "evaluator started", service_port=HTTP_PORT)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        log_event(logger, "evaluator stopping")
        await runner.cleanup()
        await audit.stop()
        await close_pool()


if __name__ == "__main__":
    asyncio.run(main())
