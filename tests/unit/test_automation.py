import pytest

from shared.automation import AutomationDecision, ValveAction, decide, safe_to_open, shut_off_causes
from shared.models import Controls, Device, ValveOpenOnNormal, ValveShutOff, default_configurations

pytestmark = [pytest.mark.unit]


def make_device(valve="OPEN", shut_off=None, reopen=None) -> Device:
    config = default_configurations()
    controls = Controls(
        valve_shut_off=shut_off if shut_off is not None else ValveShutOff(),
        valve_open_on_normal=reopen if reopen is not None else ValveOpenOnNormal(),
    )
    return Device(
        device_id="dev-1",
        label="Station 1",
        valve=valve,
        configurations=config.model_copy(update={"controls": controls}),
    )


def test_tds_breach_closes_open_valve():
    decision = decide({"pH": 7.0, "tds": 1500}, make_device(valve="OPEN"))
    assert decision.action == ValveAction.CLOSE
    assert decision.causes == ["tds"]
    assert decision.target_valve == "CLOSED"
    assert decision.describe() == "Valve closed automatically. Cause: TDS"


def test_multiple_causes_are_all_recorded():
    decision = decide({"pH": 9.5, "turbidity": 20, "tds": 100}, make_device(valve="OPEN"))
    assert decision.action == ValveAction.CLOSE
    assert decision.causes == ["pH", "turbidity"]
    assert decision.describe() == "Valve closed automatically. Cause: pH, Turbidity"


def test_breach_with_valve_already_closed_is_no_op():
    decision = decide({"tds": 1500}, make_device(valve="CLOSED"))
    assert decision.action == ValveAction.NONE
    assert decision.causes == ["tds"]
    assert decision.target_valve is None


def test_disabled_shut_off_never_closes():
    device = make_device(valve="OPEN", shut_off=ValveShutOff(enabled=False))
    assert decide({"tds": 5000}, device).action == ValveAction.NONE
    assert shut_off_causes({"tds": 5000}, device) == []


def test_trigger_flag_off_ignores_parameter():
    device = make_device(valve="OPEN", shut_off=ValveShutOff(trigger_tds=False))
    assert decide({"tds": 5000}, device).action == ValveAction.NONE


def test_ph_limits_are_inclusive_of_safe_band():
    device = make_device(valve="OPEN")
    assert decide({"pH": 9.1}, device).action == ValveAction.NONE
    assert decide({"pH": 5.9}, device).action == ValveAction.NONE
    assert decide({"pH": 9.11}, device).action == ValveAction.CLOSE


def test_clean_reading_reopens_closed_valve():
    decision = decide({"pH": 7.2, "turbidity": 1.0, "tds": 300}, make_device(valve="CLOSED"))
    assert decision.action == ValveAction.OPEN
    assert decision.target_valve == "OPEN"
    assert decision.describe() == "Valve re-opened automatically. Water quality back within shut-off limits"


def test_reopen_disabled_keeps_valve_closed():
    device = make_device(valve="CLOSED", reopen=ValveOpenOnNormal(enabled=False))
    assert decide({"pH": 7.2, "tds": 300}, device).action == ValveAction.NONE


def test_reopen_ignores_parameters_with_trigger_disabled():
    # pH is outside the shut-off band, but shut-off does not watch pH and
    # neither does re-open.
    device = make_device(
        valve="CLOSED",
        shut_off=ValveShutOff(trigger_ph=False),
        reopen=ValveOpenOnNormal(trigger_ph=False),
    )
    assert safe_to_open({"pH": 10.0, "tds": 300}, device)
    assert decide({"pH": 10.0, "tds": 300}, device).action == ValveAction.OPEN


def test_reopen_blocked_by_triggered_parameter_outside_limits():
    device = make_device(valve="CLOSED", shut_off=ValveShutOff(trigger_tds=False))
    # tds is not a shut-off cause, but re-open still watches it
    assert shut_off_causes({"tds": 1500, "pH": 7.0}, device) == []
    assert not safe_to_open({"tds": 1500, "pH": 7.0}, device)
    assert decide({"tds": 1500, "pH": 7.0}, device).action == ValveAction.NONE


def test_missing_parameters_do_not_block_reopen():
    device = make_device(valve="CLOSED")
    assert safe_to_open({"pH": 7.0}, device)


def test_reading_without_valve_parameters_does_not_reopen():
    device = make_device(valve="CLOSED")
    assert not safe_to_open({"temp": 20.0}, device)
    assert decide({"temp": 20.0}, device).action == ValveAction.NONE


def test_shut_off_takes_precedence_over_reopen():
    decision = decide({"pH": 7.0, "turbidity": 14}, make_device(valve="CLOSED"))
    assert decision.action == ValveAction.NONE
    assert decision.causes == ["turbidity"]


def test_default_decision_describes_no_action():
    assert AutomationDecision().describe() == "No valve action"
