"""Device, configuration and alert vocabulary shared by every StationWatch service.

Configuration documents are stored as JSONB using the camelCase keys the
dashboard writes (``critLow``, ``valveShutOff``, ``triggerTDS`` ...). The
pydantic models accept either spelling and always dump camelCase.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Severity(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"
    CRITICAL = "Critical"


class Lifecycle(str, Enum):
    ACTIVE = "Active"
    RECENT = "Recent"
    HISTORY = "History"


class AlertStatus(str, Enum):
    ACTIVE = "Active"
    RESOLVED = "Resolved"
    ESCALATED = "Escalated"
    CLEARED = "Cleared"
    EXPIRED = "Expired"


class DeviceStatus(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"
    ERROR = "Error"


class ValveState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# Reading parameter -> key under configurations.thresholds
PARAMETERS = ("pH", "turbidity", "temp", "tds")
RANGE_PARAMETERS = ("pH", "temp")
CEILING_PARAMETERS = ("turbidity", "tds")
THRESHOLD_KEYS = {"pH": "ph", "turbidity": "turbidity", "temp": "temp", "tds": "tds"}

# Reading parameter -> key under currentState.sensorStatus / latestReading
SENSOR_KEYS = {"pH": "PH", "turbidity": "TURBIDITY", "temp": "TEMP", "tds": "TDS"}
SENSORS = ("PH", "TEMP", "TDS", "TURBIDITY")

# Parameters that can close the valve, with the display name used in log entries
VALVE_PARAMETERS = {"pH": "pH", "turbidity": "Turbidity", "tds": "TDS"}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class RangeThresholds(_CamelModel):
    crit_low: float
    warn_low: float
    normal_low: float
    normal_high: float
    warn_high: float
    crit_high: float


class CeilingThresholds(_CamelModel):
    normal_low: float
    normal_high: float
    warn: float
    crit: float


class Thresholds(_CamelModel):
    ph: Optional[RangeThresholds] = None
    turbidity: Optional[CeilingThresholds] = None
    temp: Optional[RangeThresholds] = None
    tds: Optional[CeilingThresholds] = None

    def for_parameter(self, parameter: str):
        key = THRESHOLD_KEYS.get(parameter)
        if key is None:
            return None
        return getattr(self, key)


class ValveShutOff(_CamelModel):
    enabled: bool = True
    ph_low: float = 5.9
    ph_high: float = 9.1
    turbidity_crit: float = 13
    tds_crit: float = 1200
    trigger_ph: bool = Field(True, alias="triggerPH")
    trigger_turbidity: bool = True
    trigger_tds: bool = Field(True, alias="triggerTDS")

    def trigger_for(self, parameter: str) -> bool:
        return {
            "pH": self.trigger_ph,
            "turbidity": self.trigger_turbidity,
            "tds": self.trigger_tds,
        }.get(parameter, False)


class ValveOpenOnNormal(_CamelModel):
    enabled: bool = True
    trigger_ph: bool = Field(True, alias="triggerPH")
    trigger_turbidity: bool = True
    trigger_tds: bool = Field(True, alias="triggerTDS")

    def trigger_for(self, parameter: str) -> bool:
        return {
            "pH": self.trigger_ph,
            "turbidity": self.trigger_turbidity,
            "tds": self.trigger_tds,
        }.get(parameter, False)


class PumpCycleIntervals(_CamelModel):
    drain: float = 3
    delay: float = 1
    fill: float = 3


class Controls(_CamelModel):
    valve_shut_off: Optional[ValveShutOff] = None
    valve_open_on_normal: Optional[ValveOpenOnNormal] = None
    pump_cycle_intervals: PumpCycleIntervals = Field(default_factory=PumpCycleIntervals)


class AlertIntervals(_CamelModel):
    active_to_recent: float = 30  # seconds
    recent_to_history: float = 5  # minutes
    stale_active_to_recent: Optional[float] = None  # minutes; server default when unset


class LoggingSettings(_CamelModel):
    alert_intervals: AlertIntervals = Field(default_factory=AlertIntervals)


class DeviceConfigurations(_CamelModel):
    thresholds: Thresholds = Field(default_factory=Thresholds)
    controls: Controls = Field(default_factory=Controls)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def default_configurations() -> DeviceConfigurations:
    """Factory defaults applied to newly registered devices."""
    return DeviceConfigurations(
        thresholds=Thresholds(
            ph=RangeThresholds(
                crit_low=6.0, warn_low=6.4, normal_low=6.5,
                normal_high=8.5, warn_high=8.6, crit_high=9.0,
            ),
            turbidity=CeilingThresholds(normal_low=0, normal_high=5, warn=5, crit=10),
            temp=RangeThresholds(
                crit_low=0, warn_low=5, normal_low=10,
                normal_high=30, warn_high=31, crit_high=35,
            ),
            tds=CeilingThresholds(normal_low=0, normal_high=500, warn=500, crit=1000),
        ),
        controls=Controls(
            valve_shut_off=ValveShutOff(),
            valve_open_on_normal=ValveOpenOnNormal(),
        ),
    )


class SensorState(_CamelModel):
    status: str = DeviceStatus.OFFLINE.value
    last_reading_timestamp: Optional[datetime] = None


class PumpCycle(_CamelModel):
    paused_phase: str = "NONE"
    remaining_time_sec: float = Field(0, alias="remainingTime_sec")
    phase_started_at: Optional[datetime] = None


def _json_field(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class Device(BaseModel):
    """A pumping-station device as loaded from the ``devices`` table."""

    device_id: str
    label: str
    location: str = ""
    status: str = DeviceStatus.OFFLINE.value
    valve: str = ValveState.CLOSED.value
    pump: str = "IDLE"
    last_contact: Optional[datetime] = None
    sensor_status: dict[str, SensorState] = Field(default_factory=dict)
    pump_cycle: PumpCycle = Field(default_factory=PumpCycle)
    latest_reading: dict[str, Any] = Field(default_factory=dict)
    commands: dict[str, str] = Field(default_factory=dict)
    configurations: DeviceConfigurations = Field(default_factory=DeviceConfigurations)

    @classmethod
    def from_row(cls, row) -> "Device":
        data = dict(row)
        return cls(
            device_id=data["device_id"],
            label=data.get("label") or data["device_id"],
            location=data.get("location") or "",
            status=data.get("status") or DeviceStatus.OFFLINE.value,
            valve=data.get("valve") or ValveState.CLOSED.value,
            pump=data.get("pump") or "IDLE",
            last_contact=data.get("last_contact"),
            sensor_status=_json_field(data.get("sensor_status"), {}),
            pump_cycle=_json_field(data.get("pump_cycle"), {}),
            latest_reading=_json_field(data.get("latest_reading"), {}),
            commands=_json_field(data.get("commands"), {}),
            configurations=_json_field(data.get("configurations"), {}),
        )

    def sensor(self, sensor_key: str) -> SensorState:
        return self.sensor_status.get(sensor_key) or SensorState()

    def state_payload(self) -> dict:
        """Compact device state pushed to dashboards on every change."""
        return {
            "device_id": self.device_id,
            "label": self.label,
            "status": self.status,
            "valve": self.valve,
            "pump": self.pump,
            "last_contact": self.last_contact.isoformat() if self.last_contact else None,
            "sensor_status": {k: v.to_document() for k, v in self.sensor_status.items()},
            "latest_reading": self.latest_reading,
        }
