"""Builders for commands sent to a station's microcontroller."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from shared.errors import InvalidCommand
from shared.models import Device, ValveState

PUMP_COMMANDS = ("FILL", "DRAIN", "IDLE")
PUMP_PHASES = {"FILL": "FILLING", "DRAIN": "DRAINING"}


@dataclass
class DeviceCommand:
    """A command payload plus the device columns to update optimistically."""

    payload: dict
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.payload["type"]


def build_valve_command(value: str) -> DeviceCommand:
    if value not in (ValveState.OPEN.value, ValveState.CLOSED.value):
        raise InvalidCommand(f"Invalid valve command value {value!r}")
    return DeviceCommand(
        payload={"type": "setValve", "value": value},
        state={"valve": value, "commands": {"setValve": value}},
    )


def build_pump_command(device: Device, value: str, now: Optional[datetime] = None) -> DeviceCommand:
    """
    FILL/DRAIN resume a paused phase when it still has time left, otherwise
    start a fresh phase lasting the configured interval. IDLE stops the pump
    and keeps the cycle as-is until the device reports its remaining time.
    """
    if value not in PUMP_COMMANDS:
        raise InvalidCommand(f"Invalid pump command value {value!r}")

    commands = {"setPump": value}
    if value == "IDLE":
        return DeviceCommand(
            payload={"type": "setPump", "value": value, "phase": "NONE", "resumeTime": 0},
            state={"pump": "IDLE", "commands": commands},
        )

    cycle = device.pump_cycle
    if cycle.remaining_time_sec > 0 and cycle.paused_phase != "NONE":
        phase = cycle.paused_phase
        payload = {
            "type": "setPump",
            "value": "RESUME",
            "phase": phase,
            "resumeTime": cycle.remaining_time_sec,
        }
        remaining = cycle.remaining_time_sec
    else:
        phase = PUMP_PHASES[value]
        payload = {"type": "setPump", "value": value, "phase": phase, "resumeTime": 0}
        intervals = device.configurations.controls.pump_cycle_intervals
        minutes = intervals.fill if value == "FILL" else intervals.drain
        remaining = minutes * 60

    pump_cycle = cycle.model_copy(
        update={
            "paused_phase": phase,
            "remaining_time_sec": remaining,
            "phase_started_at": now,
        }
    )
    return DeviceCommand(
        payload=payload,
        state={"pump": phase, "pump_cycle": pump_cycle.to_document(), "commands": commands},
    )
