import pytest

from shared.models import (
    CeilingThresholds,
    Controls,
    DeviceConfigurations,
    RangeThresholds,
    Severity,
    Thresholds,
    ValveShutOff,
    default_configurations,
)
from shared.thresholds import (
    VALVE_SHUT_OFF_NOTE,
    breaches_shut_off,
    evaluate,
    evaluate_reading,
    resolve_thresholds,
    validate_thresholds,
)

pytestmark = [pytest.mark.unit]


@pytest.fixture
def config() -> DeviceConfigurations:
    return default_configurations()


@pytest.mark.parametrize(
    "value,severity",
    [
        (5.5, Severity.CRITICAL),
        (6.0, Severity.CRITICAL),
        (6.2, Severity.WARNING),
        (6.4, Severity.WARNING),
        (7.0, Severity.NORMAL),
        (8.55, Severity.NORMAL),
        (8.6, Severity.WARNING),
        (9.0, Severity.CRITICAL),
        (9.3, Severity.CRITICAL),
    ],
)
def test_ph_range_classification(config, value, severity):
    assert evaluate("pH", value, config).severity == severity


@pytest.mark.parametrize(
    "value,severity",
    [
        (0.0, Severity.NORMAL),
        (5.0, Severity.NORMAL),
        (5.1, Severity.WARNING),
        (9.8, Severity.WARNING),
        (10.0, Severity.CRITICAL),
        (15.5, Severity.CRITICAL),
    ],
)
def test_turbidity_ceiling_classification(config, value, severity):
    assert evaluate("turbidity", value, config).severity == severity


def test_ceiling_exact_warn_is_normal(config):
    assert evaluate("tds", 500, config).severity == Severity.NORMAL
    assert evaluate("tds", 500.5, config).severity == Severity.WARNING


def test_messages_name_parameter_and_value(config):
    assert evaluate("pH", 9.3, config).message == "Critical High pH level detected (9.3)"
    assert evaluate("pH", 5.5, config).message == "Critical Low pH level detected (5.5)"
    assert evaluate("turbidity", 9.8, config).message == "High turbidity detected (9.8 NTU)"
    assert evaluate("temp", 32.5, config).message == "Temperature is nearing critical levels (32.5°C)"
    assert evaluate("tds", 1500.0, config).message == "Critical TDS level detected (1500.0 mg/L)"


def test_missing_threshold_block_is_normal():
    result = evaluate("pH", 14.0, DeviceConfigurations())
    assert result.severity == Severity.NORMAL
    assert result.message == "No configuration for pH."
    assert result.is_normal


def test_unknown_parameter_is_normal(config):
    result = evaluate("chlorine", 4.0, config)
    assert result.severity == Severity.NORMAL
    assert result.message == "No configuration for chlorine."


def test_shut_off_note_only_when_shut_off_limit_breached(config):
    # Alert thresholds say Critical at 9.0 but the valve limit is 9.1.
    assert evaluate("pH", 9.0, config).note is None
    assert evaluate("pH", 9.3, config).note == VALVE_SHUT_OFF_NOTE
    assert evaluate("turbidity", 15.5, config).note == VALVE_SHUT_OFF_NOTE
    assert evaluate("tds", 1100, config).note is None


def test_shut_off_note_respects_trigger_and_master_switch(config):
    no_trigger = config.model_copy(
        update={"controls": Controls(valve_shut_off=ValveShutOff(trigger_ph=False))}
    )
    assert evaluate("pH", 9.5, no_trigger).note is None

    disabled = config.model_copy(
        update={"controls": Controls(valve_shut_off=ValveShutOff(enabled=False))}
    )
    assert evaluate("pH", 9.5, disabled).note is None


def test_breaches_shut_off_limits(config):
    assert breaches_shut_off("pH", 5.8, config)
    assert not breaches_shut_off("pH", 5.9, config)
    assert not breaches_shut_off("pH", 9.1, config)
    assert breaches_shut_off("tds", 1201, config)
    assert not breaches_shut_off("tds", 1200, config)
    assert not breaches_shut_off("temp", 99, config)


def test_evaluate_reading_uses_fixed_parameter_order(config):
    results = evaluate_reading({"tds": 100, "temp": 20, "pH": 7.0}, config)
    assert [r.parameter for r in results] == ["pH", "temp", "tds"]


def test_default_thresholds_are_valid():
    report = validate_thresholds(default_configurations().thresholds)
    assert report.ok


def test_validate_reports_out_of_order_values():
    thresholds = Thresholds(
        ph=RangeThresholds(
            crit_low=6.0, warn_low=6.6, normal_low=6.5,
            normal_high=8.5, warn_high=8.6, crit_high=9.0,
        )
    )
    report = validate_thresholds(thresholds)
    assert not report.ok
    assert [(v.lower, v.upper) for v in report.violations] == [("warn_low", "normal_low")]
    assert report.thresholds is thresholds


def test_autocorrect_sorts_values_into_slots():
    thresholds = Thresholds(
        turbidity=CeilingThresholds(normal_low=0, normal_high=5, warn=12, crit=10)
    )
    report = validate_thresholds(thresholds, autocorrect=True)
    assert report.corrected == ["turbidity"]
    fixed = report.thresholds.turbidity
    assert (fixed.warn, fixed.crit) == (10, 12)


def test_autocorrect_falls_back_to_defaults_when_sorting_is_not_enough():
    thresholds = Thresholds(
        ph=RangeThresholds(
            crit_low=7.0, warn_low=7.0, normal_low=7.0,
            normal_high=7.0, warn_high=7.0, crit_high=7.0,
        )
    )
    report = validate_thresholds(thresholds, autocorrect=True)
    assert report.reset_to_default == ["pH"]
    assert report.thresholds.ph == default_configurations().thresholds.ph


def test_resolve_without_autocorrect_drops_invalid_block(config):
    broken = config.model_copy(
        update={
            "thresholds": config.thresholds.model_copy(
                update={"tds": CeilingThresholds(normal_low=0, normal_high=500, warn=1000, crit=900)}
            )
        }
    )
    thresholds = resolve_thresholds(broken, autocorrect=False)
    assert thresholds.tds is None
    assert thresholds.ph == config.thresholds.ph

    result = evaluate("tds", 5000, broken, thresholds=thresholds)
    assert result.severity == Severity.NORMAL


def test_evaluation_with_autocorrected_thresholds(config):
    broken = config.model_copy(
        update={
            "thresholds": config.thresholds.model_copy(
                update={"tds": CeilingThresholds(normal_low=0, normal_high=500, warn=1000, crit=900)}
            )
        }
    )
    results = evaluate_reading({"tds": 950}, broken, autocorrect=True)
    # sorted into warn=900, crit=1000
    assert results[0].severity == Severity.WARNING


def test_configuration_accepts_camel_case_documents():
    config = DeviceConfigurations.model_validate(
        {
            "thresholds": {
                "ph": {
                    "critLow": 6, "warnLow": 6.4, "normalLow": 6.5,
                    "normalHigh": 8.5, "warnHigh": 8.6, "critHigh": 9,
                }
            },
            "controls": {"valveShutOff": {"enabled": True, "phHigh": 9.5, "triggerPH": True}},
        }
    )
    assert config.thresholds.ph.crit_high == 9
    assert config.controls.valve_shut_off.ph_high == 9.5
    document = config.to_document()
    assert document["controls"]["valveShutOff"]["triggerPH"] is True
    assert document["thresholds"]["ph"]["critHigh"] == 9
