import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as dtparser

from shared.errors import IngestRejected
from shared.models import PARAMETERS

logger = logging.getLogger(__name__)

# Spellings accepted from gateways and firmware, mapped to reading parameters.
PARAMETER_ALIASES = {
    "pH": "pH",
    "ph": "pH",
    "PH": "pH",
    "turbidity": "turbidity",
    "TURBIDITY": "turbidity",
    "tds": "tds",
    "TDS": "tds",
    "temp": "temp",
    "TEMP": "temp",
    "temperature": "temp",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(v):
    """
    Parse timestamp string to datetime.
    - Accepts ISO 8601 format (e.g., 2026-02-09T09:15:23.045Z)
    - Accepts epoch seconds or milliseconds as numbers
    - If no timezone specified, assumes UTC
    - Returns None if parsing fails
    """
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        seconds = v / 1000.0 if v > 1e11 else float(v)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(v, str):
        try:
            dt = dtparser.isoparse(v)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt
        except Exception:
            return None
    return None


def coerce_value(raw) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


@dataclass
class Reading:
    """One sensor reading as accepted at the ingest boundary."""

    device_id: str
    timestamp: datetime
    values: dict[str, float] = field(default_factory=dict)
    dropped: list[str] = field(default_factory=list)

    def get(self, parameter: str) -> Optional[float]:
        return self.values.get(parameter)


def validate_reading(payload, now: datetime | None = None) -> Reading:
    """
    Turn an ingest payload into a Reading.

    Raises IngestRejected for payloads that cannot be attributed to a device.
    Unparseable parameter values are dropped (and reported on the Reading)
    rather than failing the whole reading.
    """
    if not isinstance(payload, dict):
        raise IngestRejected("Invalid sensor reading payload.")
    device_id = payload.get("deviceId") or payload.get("device_id")
    if not isinstance(device_id, str) or not device_id.strip():
        raise IngestRejected("Invalid sensor reading payload.")

    ts = payload.get("timestamp")
    timestamp = parse_ts(ts) if ts is not None else None
    if timestamp is None:
        if ts is not None:
            logger.warning(
                "unparseable reading timestamp, using receive time",
                extra={"device_id": device_id, "timestamp": str(ts)},
            )
        timestamp = now or utcnow()

    values: dict[str, float] = {}
    dropped: list[str] = []
    for key, raw in payload.items():
        parameter = PARAMETER_ALIASES.get(key)
        if parameter is None or raw is None:
            continue
        value = coerce_value(raw)
        if value is None:
            dropped.append(parameter)
            continue
        values[parameter] = value

    if dropped:
        logger.warning(
            "dropped non-numeric reading values",
            extra={"device_id": device_id, "parameters": dropped},
        )
    ordered = {p: values[p] for p in PARAMETERS if p in values}
    return Reading(device_id=device_id.strip(), timestamp=timestamp, values=ordered, dropped=dropped)
