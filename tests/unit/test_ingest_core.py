from datetime import datetime, timezone

import pytest

from shared.errors import IngestRejected
from shared.ingest_core import coerce_value, parse_ts, validate_reading

pytestmark = [pytest.mark.unit]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_reading_accepts_firmware_spellings():
    reading = validate_reading(
        {"deviceId": "dev-1", "PH": 7.2, "TURBIDITY": "3.5", "temperature": 21, "TDS": 410},
        now=NOW,
    )
    assert reading.device_id == "dev-1"
    assert reading.values == {"pH": 7.2, "turbidity": 3.5, "temp": 21.0, "tds": 410.0}
    assert reading.dropped == []


def test_reading_values_follow_parameter_order():
    reading = validate_reading({"device_id": "dev-1", "tds": 1, "temp": 2, "pH": 3}, now=NOW)
    assert list(reading.values) == ["pH", "temp", "tds"]


def test_missing_device_id_is_rejected():
    with pytest.raises(IngestRejected) as exc:
        validate_reading({"pH": 7.0}, now=NOW)
    assert exc.value.status_code == 400
    assert exc.value.reason == "Invalid sensor reading payload."


@pytest.mark.parametrize("payload", [None, [], "dev-1", {"deviceId": "  "}, {"deviceId": 42}])
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(IngestRejected):
        validate_reading(payload, now=NOW)


def test_non_numeric_values_are_dropped_not_fatal():
    reading = validate_reading({"deviceId": "dev-1", "pH": "acidic", "tds": 300, "temp": None}, now=NOW)
    assert reading.values == {"tds": 300.0}
    assert reading.dropped == ["pH"]


def test_unknown_keys_are_ignored():
    reading = validate_reading({"deviceId": "dev-1", "chlorine": 2.0, "pH": 7}, now=NOW)
    assert reading.values == {"pH": 7.0}


def test_timestamp_falls_back_to_receive_time():
    assert validate_reading({"deviceId": "dev-1"}, now=NOW).timestamp == NOW
    assert validate_reading({"deviceId": "dev-1", "timestamp": "yesterday-ish"}, now=NOW).timestamp == NOW


def test_device_timestamp_is_kept_when_parseable():
    reading = validate_reading({"deviceId": "dev-1", "timestamp": "2026-02-28T23:00:00Z"}, now=NOW)
    assert reading.timestamp == datetime(2026, 2, 28, 23, 0, tzinfo=timezone.utc)


def test_parse_ts_handles_epoch_seconds_and_millis():
    assert parse_ts(1772366400) == NOW
    assert parse_ts(1772366400000) == NOW


def test_parse_ts_assumes_utc_for_naive_values():
    assert parse_ts("2026-03-01T12:00:00") == NOW
    assert parse_ts(datetime(2026, 3, 1, 12, 0)) == NOW


def test_parse_ts_rejects_garbage():
    assert parse_ts("not a date") is None
    assert parse_ts(True) is None
    assert parse_ts({"ts": 1}) is None


@pytest.mark.parametrize("raw", [None, True, "abc", float("nan"), float("inf"), [1]])
def test_coerce_value_rejects_non_numbers(raw):
    assert coerce_value(raw) is None


def test_coerce_value_parses_numeric_strings():
    assert coerce_value("7.25") == 7.25
    assert coerce_value(0) == 0.0
