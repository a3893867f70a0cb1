"""Automatic valve control.

The decider is pure: it looks at one reading and the device's current valve
position and says whether to close, re-open, or leave the valve alone. The
evaluator service applies the decision (persists it, publishes the command,
writes the system log).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from shared.models import VALVE_PARAMETERS, Device, ValveState
from shared.thresholds import breaches_shut_off


class ValveAction(str, Enum):
    CLOSE = "CLOSE"
    OPEN = "OPEN"
    NONE = "NONE"


@dataclass
class AutomationDecision:
    action: ValveAction = ValveAction.NONE
    causes: list[str] = field(default_factory=list)

    @property
    def target_valve(self) -> str | None:
        if self.action == ValveAction.CLOSE:
            return ValveState.CLOSED.value
        if self.action == ValveAction.OPEN:
            return ValveState.OPEN.value
        return None

    def describe(self) -> str:
        names = ", ".join(VALVE_PARAMETERS.get(p, p) for p in self.causes)
        if self.action == ValveAction.CLOSE:
            return f"Valve closed automatically. Cause: {names}"
        if self.action == ValveAction.OPEN:
            return "Valve re-opened automatically. Water quality back within shut-off limits"
        return "No valve action"


def shut_off_causes(values: dict[str, float], device: Device) -> list[str]:
    shut_off = device.configurations.controls.valve_shut_off
    if shut_off is None or not shut_off.enabled:
        return []
    return [
        parameter
        for parameter in VALVE_PARAMETERS
        if values.get(parameter) is not None
        and shut_off.trigger_for(parameter)
        and breaches_shut_off(parameter, values[parameter], device.configurations)
    ]


def safe_to_open(values: dict[str, float], device: Device) -> bool:
    """
    Every parameter with its re-open trigger enabled must be inside the
    shut-off limits. Parameters missing from the reading, or with the trigger
    disabled, never block, but at least one triggered parameter must be present.
    """
    reopen = device.configurations.controls.valve_open_on_normal
    if reopen is None:
        return False
    checked = 0
    for parameter in VALVE_PARAMETERS:
        value = values.get(parameter)
        if value is None or not reopen.trigger_for(parameter):
            continue
        if breaches_shut_off(parameter, value, device.configurations):
            return False
        checked += 1
    return checked > 0


def decide(values: dict[str, float], device: Device) -> AutomationDecision:
    causes = shut_off_causes(values, device)
    if causes:
        if device.valve == ValveState.OPEN.value:
            return AutomationDecision(ValveAction.CLOSE, causes)
        return AutomationDecision(ValveAction.NONE, causes)

    reopen = device.configurations.controls.valve_open_on_normal
    if (
        reopen is not None
        and reopen.enabled
        and device.valve == ValveState.CLOSED.value
        and safe_to_open(values, device)
    ):
        return AutomationDecision(ValveAction.OPEN, [])
    return AutomationDecision()
