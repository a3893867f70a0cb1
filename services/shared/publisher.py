"""Outbound side effects: device commands over MQTT, state broadcasts over NOTIFY."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import paho.mqtt.client as mqtt

from shared.config import env_int, optional_env
from shared.metrics import command_publish_failures_total

logger = logging.getLogger(__name__)

MQTT_HOST = optional_env("MQTT_HOST", "stationwatch-mqtt")
MQTT_PORT = env_int("MQTT_PORT", 1883)
MQTT_USERNAME = optional_env("MQTT_USERNAME")
MQTT_PASSWORD = optional_env("MQTT_PASSWORD")
COMMAND_TOPIC_TEMPLATE = optional_env("COMMAND_TOPIC_TEMPLATE", "stations/{device_id}/command")

DEVICE_UPDATE_CHANNEL = "device_update"


@dataclass
class PublishResult:
    """Result of an MQTT publish attempt."""

    success: bool
    error: Optional[str] = None
    duration_ms: Optional[float] = None


def command_topic(device_id: str) -> str:
    return COMMAND_TOPIC_TEMPLATE.format(device_id=device_id)


async def publish_command(
    device_id: str,
    command: dict,
    qos: int = 1,
    timeout: int = 10,
) -> PublishResult:
    """
    Publish ``{type, value, phase?, resumeTime?}`` to the device command topic.

    Fire-and-forget: failures are logged and counted, never raised.
    """
    loop = asyncio.get_running_loop()
    start_time = loop.time()
    topic = command_topic(device_id)
    payload = json.dumps(command)

    def _publish_blocking() -> None:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if MQTT_USERNAME:
            client.username_pw_set(MQTT_USERNAME, MQTT_PASSWORD or None)
        client.connect(MQTT_HOST, MQTT_PORT, keepalive=timeout)
        try:
            client.loop_start()
            info = client.publish(topic, payload, qos=qos)
            info.wait_for_publish(timeout=timeout)
        finally:
            client.loop_stop()
            client.disconnect()

    try:
        await loop.run_in_executor(None, _publish_blocking)
        duration_ms = (loop.time() - start_time) * 1000
        logger.info(
            "command published",
            extra={"device_id": device_id, "topic": topic, "command": command},
        )
        return PublishResult(success=True, duration_ms=duration_ms)
    except Exception as e:
        duration_ms = (loop.time() - start_time) * 1000
        command_publish_failures_total.labels(command_type=command.get("type", "unknown")).inc()
        logger.exception("MQTT publish failed", extra={"device_id": device_id, "topic": topic})
        return PublishResult(success=False, error=str(e), duration_ms=duration_ms)


async def notify_device_update(conn, payload: dict) -> None:
    """Broadcast a device state change to dashboard listeners."""
    await conn.execute(
        "SELECT pg_notify($1, $2)",
        DEVICE_UPDATE_CHANNEL,
        json.dumps(payload, default=str),
    )
