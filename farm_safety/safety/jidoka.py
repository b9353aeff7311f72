"""
Jidoka - stop-the-line anomaly detection.

Each threshold trigger has a direction (value above / below the threshold)
and an escalation rule deciding between warning, critical and emergency.
Frost is special: anything under the hard freeze point is an emergency no
matter what threshold is configured.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from farm_safety.models.enums import ReadingType, Severity, TriggerKind
from farm_safety.safety.errors import IllegalStateTransition, TransitionResult
from farm_safety.timestamps import from_iso, new_id, to_iso, utcnow

FREEZING_POINT_F = 32.0


class StopTriggerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    threshold: Optional[float] = None
    duration_minutes: Optional[int] = None
    cooldown_minutes: int = 60


class TriggerResult(BaseModel):
    triggered: bool
    severity: Severity = Severity.WARNING
    message: str = ""


class JidokaEvent(BaseModel):
    """A stop-the-line event. Created unresolved; resolved exactly once; never deleted."""

    id: str
    timestamp: str
    trigger_kind: TriggerKind
    severity: Severity
    sensor_id: Optional[str] = None
    actuator_id: Optional[str] = None
    current_value: Optional[float] = None
    threshold: Optional[float] = None
    message: str
    actions_taken: List[str] = Field(default_factory=list)
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    notes: Optional[str] = None


DEFAULT_STOP_TRIGGERS: Dict[TriggerKind, StopTriggerConfig] = {
    TriggerKind.LEAK_DETECTED: StopTriggerConfig(cooldown_minutes=120),
    TriggerKind.OVERWATERING: StopTriggerConfig(threshold=80, duration_minutes=60, cooldown_minutes=240),
    TriggerKind.UNDERWATERING: StopTriggerConfig(threshold=15, duration_minutes=1440, cooldown_minutes=60),
    TriggerKind.EC_SPIKE: StopTriggerConfig(threshold=3.0, cooldown_minutes=120),
    TriggerKind.EC_DROP: StopTriggerConfig(threshold=0.1, cooldown_minutes=60),
    TriggerKind.FROST_RISK: StopTriggerConfig(threshold=35, cooldown_minutes=60),
    TriggerKind.HEAT_RISK: StopTriggerConfig(threshold=105, cooldown_minutes=60),
    TriggerKind.SENSOR_OFFLINE: StopTriggerConfig(duration_minutes=60, cooldown_minutes=30),
    TriggerKind.ACTUATOR_TIMEOUT: StopTriggerConfig(duration_minutes=5, cooldown_minutes=30),
    TriggerKind.MANUAL_STOP: StopTriggerConfig(cooldown_minutes=0),
    TriggerKind.SYSTEM_ERROR: StopTriggerConfig(cooldown_minutes=60),
}


class _Rule(NamedTuple):
    above: bool
    severity: Callable[[float, float], Severity]
    message: str


def _frost_severity(value: float, threshold: float) -> Severity:
    if value < FREEZING_POINT_F:
        return Severity.EMERGENCY
    return Severity.CRITICAL


# Threshold triggers; the remaining kinds are raised by collaborators, not by values
THRESHOLD_RULES: Dict[TriggerKind, _Rule] = {
    TriggerKind.OVERWATERING: _Rule(
        True,
        lambda v, t: Severity.CRITICAL if v > t + 10 else Severity.WARNING,
        "Soil moisture {value:g}% exceeds threshold {threshold:g}%",
    ),
    TriggerKind.UNDERWATERING: _Rule(
        False,
        lambda v, t: Severity.CRITICAL if v < t - 5 else Severity.WARNING,
        "Soil moisture {value:g}% below threshold {threshold:g}%",
    ),
    TriggerKind.EC_SPIKE: _Rule(
        True,
        lambda v, t: Severity.CRITICAL if v > t * 1.5 else Severity.WARNING,
        "EC {value:g} mS/cm exceeds threshold {threshold:g} mS/cm",
    ),
    TriggerKind.EC_DROP: _Rule(
        False,
        lambda v, t: Severity.WARNING,
        "EC {value:g} mS/cm below threshold {threshold:g} mS/cm - possible nutrient deficiency",
    ),
    TriggerKind.FROST_RISK: _Rule(
        False,
        _frost_severity,
        "Temperature {value:g}°F below frost threshold {threshold:g}°F",
    ),
    TriggerKind.HEAT_RISK: _Rule(
        True,
        lambda v, t: Severity.CRITICAL if v > t + 5 else Severity.WARNING,
        "Temperature {value:g}°F exceeds heat threshold {threshold:g}°F",
    ),
}

EXTERNAL_TRIGGERS: Tuple[TriggerKind, ...] = (
    TriggerKind.LEAK_DETECTED,
    TriggerKind.SENSOR_OFFLINE,
    TriggerKind.ACTUATOR_TIMEOUT,
    TriggerKind.MANUAL_STOP,
    TriggerKind.SYSTEM_ERROR,
)

READING_TRIGGERS: Dict[ReadingType, Tuple[TriggerKind, ...]] = {
    ReadingType.MOISTURE: (TriggerKind.OVERWATERING, TriggerKind.UNDERWATERING),
    ReadingType.EC: (TriggerKind.EC_SPIKE, TriggerKind.EC_DROP),
    ReadingType.TEMPERATURE: (TriggerKind.FROST_RISK, TriggerKind.HEAT_RISK),
}

RECOMMENDED_ACTIONS: Dict[TriggerKind, List[str]] = {
    TriggerKind.LEAK_DETECTED: [
        "Immediately shut off all valves",
        "Inspect water lines for damage",
        "Check valve connections",
        "Do not resume until leak source identified",
    ],
    TriggerKind.OVERWATERING: [
        "Stop all scheduled irrigation",
        "Check drainage",
        "Allow soil to dry before resuming",
        "Review watering schedule",
    ],
    TriggerKind.UNDERWATERING: [
        "Check irrigation system functionality",
        "Manually water if critical",
        "Verify sensor readings",
        "Review schedule and adjust",
    ],
    TriggerKind.FROST_RISK: [
        "Cover sensitive plants",
        "Water soil (thermal mass)",
        "Move containers near house",
        "Consider supplemental heat",
    ],
    TriggerKind.HEAT_RISK: [
        "Provide shade",
        "Increase watering frequency",
        "Water roots, not leaves",
        "Check for wilting",
    ],
    TriggerKind.EC_SPIKE: [
        "Stop fertilization immediately",
        "Flush soil with clean water",
        "Check for salt buildup",
        "Test water source",
    ],
    TriggerKind.EC_DROP: [
        "Review fertilization schedule",
        "Verify EC sensor calibration",
        "Check for excessive leaching",
    ],
    TriggerKind.SENSOR_OFFLINE: [
        "Check sensor battery",
        "Verify sensor connectivity",
        "Replace sensor if needed",
        "Use manual monitoring until resolved",
    ],
    TriggerKind.ACTUATOR_TIMEOUT: [
        "Check actuator power",
        "Verify network connectivity",
        "Test manual operation",
        "Do not send commands until resolved",
    ],
    TriggerKind.MANUAL_STOP: [
        "Confirm the reason for the stop with the operator",
        "Do not resume automation until the operator clears the stop",
    ],
    TriggerKind.SYSTEM_ERROR: [
        "Check service logs",
        "Verify audit chain integrity",
        "Operate manually until resolved",
    ],
}


def check(trigger_kind: TriggerKind, value: float, config: Optional[StopTriggerConfig] = None) -> TriggerResult:
    """Decide whether `value` trips `trigger_kind` and how severe it is."""
    trigger_kind = TriggerKind(trigger_kind)
    config = config or DEFAULT_STOP_TRIGGERS[trigger_kind]
    rule = THRESHOLD_RULES.get(trigger_kind)
    if not config.enabled or config.threshold is None or rule is None:
        return TriggerResult(triggered=False)

    threshold = config.threshold
    crossed = value > threshold if rule.above else value < threshold
    if not crossed:
        return TriggerResult(triggered=False)

    return TriggerResult(
        triggered=True,
        severity=rule.severity(value, threshold),
        message=rule.message.format(value=value, threshold=threshold),
    )


def triggers_for_reading(reading_type: ReadingType) -> Tuple[TriggerKind, ...]:
    return READING_TRIGGERS.get(ReadingType(reading_type), ())


def create_event(
    trigger_kind: TriggerKind,
    severity: Severity,
    message: str,
    sensor_id: Optional[str] = None,
    actuator_id: Optional[str] = None,
    current_value: Optional[float] = None,
    threshold: Optional[float] = None,
    actions_taken: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> JidokaEvent:
    return JidokaEvent(
        id=new_id("jidoka"),
        timestamp=to_iso(now or utcnow()),
        trigger_kind=trigger_kind,
        severity=severity,
        sensor_id=sensor_id,
        actuator_id=actuator_id,
        current_value=current_value,
        threshold=threshold,
        message=message,
        actions_taken=list(actions_taken or []),
        resolved=False,
    )


def recommended_actions(event: JidokaEvent) -> List[str]:
    """Advisory text only; nothing here is enforced."""
    return list(RECOMMENDED_ACTIONS.get(event.trigger_kind, []))


def in_cooldown(
    previous: Optional[JidokaEvent],
    config: StopTriggerConfig,
    now: Optional[datetime] = None,
) -> bool:
    """True while a previous event for the same trigger and sensor is still cooling down."""
    if previous is None or config.cooldown_minutes <= 0:
        return False
    elapsed = (now or utcnow()) - from_iso(previous.timestamp)
    return elapsed < timedelta(minutes=config.cooldown_minutes)


def resolve(
    event: JidokaEvent,
    resolved_by: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """The single terminal transition of an event."""
    if event.resolved:
        return TransitionResult.refused(IllegalStateTransition(
            f"REFUSAL: Jidoka event {event.id} was already resolved by {event.resolved_by} at {event.resolved_at}.",
            current_status="resolved",
            attempted="resolve",
        ))
    return TransitionResult.success(event.model_copy(update={
        "resolved": True,
        "resolved_by": resolved_by,
        "resolved_at": to_iso(now or utcnow()),
        "notes": notes,
    }))
