"""Threshold evaluation for water-quality readings.

Range parameters (pH, temp) alert on both sides of a normal band; ceiling
parameters (turbidity, tds) only alert when the value climbs. Evaluation is a
pure function of the value and the device configuration and never raises: a
missing or unusable threshold block classifies the value as Normal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from shared.metrics import threshold_config_violations_total, threshold_evaluations_total
from shared.models import (
    CEILING_PARAMETERS,
    PARAMETERS,
    RANGE_PARAMETERS,
    THRESHOLD_KEYS,
    CeilingThresholds,
    DeviceConfigurations,
    RangeThresholds,
    Severity,
    Thresholds,
    default_configurations,
)

logger = logging.getLogger(__name__)

VALVE_SHUT_OFF_NOTE = "Valve shut off"

# Ordered slots per threshold kind, lowest first. "<" pairs must be strictly
# increasing; "<=" pairs may touch (the back-to-normal band may meet the warning band).
RANGE_ORDER = ("crit_low", "warn_low", "normal_low", "normal_high", "warn_high", "crit_high")
RANGE_RELATIONS = ("<", "<=", "<", "<=", "<")
CEILING_ORDER = ("normal_low", "normal_high", "warn", "crit")
CEILING_RELATIONS = ("<", "<=", "<")

UNITS = {"pH": "", "turbidity": " NTU", "tds": " mg/L", "temp": "°C"}


@dataclass
class Evaluation:
    parameter: str
    value: float
    severity: Severity
    message: str
    note: Optional[str] = None

    @property
    def is_normal(self) -> bool:
        return self.severity == Severity.NORMAL


@dataclass
class ThresholdViolation:
    parameter: str
    lower: str
    upper: str
    lower_value: float
    upper_value: float

    def __str__(self) -> str:
        return (
            f"{self.parameter}: {self.lower}={self.lower_value} must be below "
            f"{self.upper}={self.upper_value}"
        )


@dataclass
class ValidationReport:
    thresholds: Thresholds
    violations: list[ThresholdViolation] = field(default_factory=list)
    corrected: list[str] = field(default_factory=list)
    reset_to_default: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


def _order_for(parameter: str):
    if parameter in RANGE_PARAMETERS:
        return RANGE_ORDER, RANGE_RELATIONS
    return CEILING_ORDER, CEILING_RELATIONS


def _check_order(parameter: str, rules) -> list[ThresholdViolation]:
    order, relations = _order_for(parameter)
    violations = []
    for (lower, upper), relation in zip(zip(order, order[1:]), relations):
        lo = getattr(rules, lower)
        hi = getattr(rules, upper)
        ok = lo < hi if relation == "<" else lo <= hi
        if not ok:
            violations.append(ThresholdViolation(parameter, lower, upper, lo, hi))
    return violations


def _sorted_copy(parameter: str, rules):
    order, _ = _order_for(parameter)
    values = sorted(getattr(rules, name) for name in order)
    return rules.model_copy(update=dict(zip(order, values)))


def validate_thresholds(thresholds: Thresholds, autocorrect: bool = False) -> ValidationReport:
    """
    Check the monotonic ordering of every configured threshold block.

    With autocorrect, a block's values are re-assigned to the ordered slots in
    ascending order. If that still leaves a strict pair equal, the block falls
    back to the factory defaults. Violations are always reported as found.
    """
    defaults = default_configurations().thresholds
    updates = {}
    report = ValidationReport(thresholds=thresholds)
    for parameter in PARAMETERS:
        rules = thresholds.for_parameter(parameter)
        if rules is None:
            continue
        violations = _check_order(parameter, rules)
        if not violations:
            continue
        report.violations.extend(violations)
        if not autocorrect:
            continue
        fixed = _sorted_copy(parameter, rules)
        if _check_order(parameter, fixed):
            fixed = defaults.for_parameter(parameter)
            report.reset_to_default.append(parameter)
        else:
            report.corrected.append(parameter)
        updates[THRESHOLD_KEYS[parameter]] = fixed
    if updates:
        report.thresholds = thresholds.model_copy(update=updates)
    return report


def resolve_thresholds(config: DeviceConfigurations, autocorrect: bool = True) -> Thresholds:
    """
    Thresholds safe to evaluate against.

    Without autocorrect an invalid block is dropped, so its parameter evaluates
    as Normal instead of raising alerts from a nonsensical band.
    """
    report = validate_thresholds(config.thresholds, autocorrect=autocorrect)
    if report.ok:
        return report.thresholds
    for violation in report.violations:
        threshold_config_violations_total.labels(parameter=violation.parameter).inc()
        logger.warning(
            "invalid threshold ordering",
            extra={"violation": str(violation), "autocorrect": autocorrect},
        )
    if autocorrect:
        return report.thresholds
    broken = {THRESHOLD_KEYS[v.parameter]: None for v in report.violations}
    return config.thresholds.model_copy(update=broken)


def breaches_shut_off(parameter: str, value: float, config: DeviceConfigurations) -> bool:
    """True when value is outside the valve shut-off limits (independent of alert thresholds)."""
    shut_off = config.controls.valve_shut_off
    if shut_off is None:
        return False
    if parameter == "pH":
        return value < shut_off.ph_low or value > shut_off.ph_high
    if parameter == "turbidity":
        return value > shut_off.turbidity_crit
    if parameter == "tds":
        return value > shut_off.tds_crit
    return False


def _classify_range(parameter: str, value: float, rules: RangeThresholds) -> tuple[Severity, str]:
    unit = UNITS[parameter]
    label = "pH level" if parameter == "pH" else "Temperature"
    # Critical bounds are inclusive.
    if value <= rules.crit_low:
        return Severity.CRITICAL, f"Critical Low {label} detected ({value}{unit})"
    if value >= rules.crit_high:
        return Severity.CRITICAL, f"Critical High {label} detected ({value}{unit})"
    if value <= rules.warn_low or value >= rules.warn_high:
        return Severity.WARNING, f"{label} is nearing critical levels ({value}{unit})"
    return Severity.NORMAL, f"{parameter} is within the normal range."


def _classify_ceiling(parameter: str, value: float, rules: CeilingThresholds) -> tuple[Severity, str]:
    unit = UNITS[parameter]
    name = "TDS" if parameter == "tds" else "turbidity"
    if value >= rules.crit:
        return Severity.CRITICAL, f"Critical {name} level detected ({value}{unit})"
    if value > rules.warn:
        return Severity.WARNING, f"High {name} detected ({value}{unit})"
    return Severity.NORMAL, f"{parameter} is within the normal range."


def evaluate(
    parameter: str,
    value: float,
    config: DeviceConfigurations,
    thresholds: Optional[Thresholds] = None,
) -> Evaluation:
    """Classify one parameter reading. ``thresholds`` overrides ``config.thresholds`` when given."""
    rules = (thresholds or config.thresholds).for_parameter(parameter)
    if rules is None:
        result = Evaluation(parameter, value, Severity.NORMAL, f"No configuration for {parameter}.")
    elif parameter in RANGE_PARAMETERS:
        severity, message = _classify_range(parameter, value, rules)
        result = Evaluation(parameter, value, severity, message)
    elif parameter in CEILING_PARAMETERS:
        severity, message = _classify_ceiling(parameter, value, rules)
        result = Evaluation(parameter, value, severity, message)
    else:
        result = Evaluation(parameter, value, Severity.NORMAL, f"No configuration for {parameter}.")

    shut_off = config.controls.valve_shut_off
    if (
        shut_off is not None
        and shut_off.enabled
        and shut_off.trigger_for(parameter)
        and breaches_shut_off(parameter, value, config)
    ):
        result.note = VALVE_SHUT_OFF_NOTE

    threshold_evaluations_total.labels(parameter=parameter, severity=result.severity.value).inc()
    return result


def evaluate_reading(
    values: dict[str, float],
    config: DeviceConfigurations,
    autocorrect: bool = True,
) -> list[Evaluation]:
    """Evaluate every parameter present in a reading, in the fixed parameter order."""
    thresholds = resolve_thresholds(config, autocorrect=autocorrect)
    return [
        evaluate(parameter, values[parameter], config, thresholds=thresholds)
        for parameter in PARAMETERS
        if values.get(parameter) is not None
    ]
