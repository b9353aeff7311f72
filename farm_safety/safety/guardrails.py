"""
Guardrails - hard safety limits by automation level.

Every level has a fully-populated, immutable limit table. Levels 0 and 1
(observe / assist) carry zero water ceilings, so any nonzero water action
fails its check through the table itself rather than a special-cased branch.
"""
import math
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from farm_safety.models.enums import GuardrailKind

MIN_LEVEL = 0
MAX_LEVEL = 4


class GuardrailConfig(BaseModel):
    """Operational limits that cannot be exceeded at one automation level."""
    model_config = ConfigDict(frozen=True)

    max_water_per_action_gallons: float
    max_water_daily_gallons: float
    min_watering_interval_minutes: float
    max_consecutive_actions: float
    require_sensor_reading: bool
    moisture_ceiling_percent: float
    moisture_floor_percent: float
    ec_ceiling_ms_cm: float
    temp_floor_f: float
    temp_ceiling_f: float


class GuardrailCheck(BaseModel):
    """Result of one limit comparison. Only ever stored inside a request or audit payload."""
    model_config = ConfigDict(frozen=True)

    kind: GuardrailKind
    passed: bool
    current_value: Optional[float] = None
    limit: Optional[float] = None
    message: str


class ObservedState(BaseModel):
    """
    What is known about the proposed action and the field right now.

    A field left as None is "not assessed" - no check is produced for it.
    """
    proposed_water_gallons: Optional[float] = None
    water_used_today_gallons: Optional[float] = None
    minutes_since_last_action: Optional[float] = None
    consecutive_actions_today: Optional[int] = None
    has_sensor_reading: Optional[bool] = None
    moisture_percent: Optional[float] = None
    ec_ms_cm: Optional[float] = None
    temp_f: Optional[float] = None


_OBSERVE_ONLY = GuardrailConfig(
    max_water_per_action_gallons=0,
    max_water_daily_gallons=0,
    min_watering_interval_minutes=math.inf,
    max_consecutive_actions=0,
    require_sensor_reading=True,
    moisture_ceiling_percent=100,
    moisture_floor_percent=0,
    ec_ceiling_ms_cm=math.inf,
    temp_floor_f=-math.inf,
    temp_ceiling_f=math.inf,
)

GUARDRAILS_BY_LEVEL: Dict[int, GuardrailConfig] = {
    # Level 0: Observe only (no actuator control)
    0: _OBSERVE_ONLY,
    # Level 1: Assist (recommendations only)
    1: _OBSERVE_ONLY,
    # Level 2: Propose + approvals (human must approve)
    2: GuardrailConfig(
        max_water_per_action_gallons=2,
        max_water_daily_gallons=10,
        min_watering_interval_minutes=240,
        max_consecutive_actions=3,
        require_sensor_reading=True,
        moisture_ceiling_percent=70,
        moisture_floor_percent=15,
        ec_ceiling_ms_cm=3.0,
        temp_floor_f=35,
        temp_ceiling_f=100,
    ),
    # Level 3: Auto within guardrails
    3: GuardrailConfig(
        max_water_per_action_gallons=5,
        max_water_daily_gallons=20,
        min_watering_interval_minutes=120,
        max_consecutive_actions=5,
        require_sensor_reading=True,
        moisture_ceiling_percent=75,
        moisture_floor_percent=20,
        ec_ceiling_ms_cm=2.5,
        temp_floor_f=38,
        temp_ceiling_f=95,
    ),
    # Level 4: Full ops (strict Jidoka)
    4: GuardrailConfig(
        max_water_per_action_gallons=10,
        max_water_daily_gallons=50,
        min_watering_interval_minutes=60,
        max_consecutive_actions=10,
        require_sensor_reading=True,
        moisture_ceiling_percent=80,
        moisture_floor_percent=25,
        ec_ceiling_ms_cm=2.0,
        temp_floor_f=40,
        temp_ceiling_f=90,
    ),
}


def clamp_level(level: int) -> int:
    return min(MAX_LEVEL, max(MIN_LEVEL, int(level)))


def guardrails_for(level: int) -> GuardrailConfig:
    """Limits for an automation level; out-of-range levels clamp to the nearest bound."""
    return GUARDRAILS_BY_LEVEL[clamp_level(level)]


def _check(kind: GuardrailKind, passed: bool, current, limit, ok: str, failed: str) -> GuardrailCheck:
    # Unbounded limits (observe-only levels) are reported as no limit
    if limit is not None and not math.isfinite(limit):
        limit = None
    return GuardrailCheck(
        kind=kind,
        passed=passed,
        current_value=current,
        limit=limit,
        message=ok if passed else failed,
    )


def evaluate(level: int, observed: ObservedState) -> List[GuardrailCheck]:
    """
    Check an action against the limits of its automation level.

    Partial evaluation: a check is produced only for the fields supplied in
    `observed`. Every comparison is a plain numeric test against the table.
    """
    limits = guardrails_for(level)
    checks: List[GuardrailCheck] = []
    proposed = observed.proposed_water_gallons

    if proposed is not None:
        limit = limits.max_water_per_action_gallons
        # Negative or non-finite amounts are never valid, whatever the ceiling
        valid = math.isfinite(proposed) and proposed >= 0
        checks.append(_check(
            GuardrailKind.MAX_WATER_PER_ACTION,
            valid and proposed <= limit,
            proposed,
            limit,
            "Water amount within limit",
            f"Water amount {proposed:g} gal exceeds limit {limit:g} gal" if valid
            else f"Water amount {proposed:g} gal is not a valid amount",
        ))

    if proposed is not None and observed.water_used_today_gallons is not None:
        total = observed.water_used_today_gallons + proposed
        limit = limits.max_water_daily_gallons
        checks.append(_check(
            GuardrailKind.MAX_WATER_DAILY,
            total <= limit,
            total,
            limit,
            "Daily water limit OK",
            f"Total daily water {total:g} gal would exceed limit {limit:g} gal",
        ))

    if observed.minutes_since_last_action is not None:
        minutes = observed.minutes_since_last_action
        limit = limits.min_watering_interval_minutes
        checks.append(_check(
            GuardrailKind.MIN_WATERING_INTERVAL,
            minutes >= limit,
            minutes,
            limit,
            "Sufficient time since last watering",
            f"Only {minutes:g} min since last watering, minimum is {limit:g} min",
        ))

    if observed.consecutive_actions_today is not None:
        count = observed.consecutive_actions_today
        limit = limits.max_consecutive_actions
        checks.append(_check(
            GuardrailKind.MAX_CONSECUTIVE_ACTIONS,
            count < limit,
            count,
            limit,
            "Action count within limit",
            f"{count} actions today, limit is {limit:g}",
        ))

    if observed.has_sensor_reading is not None and limits.require_sensor_reading:
        checks.append(_check(
            GuardrailKind.REQUIRE_SENSOR_READING,
            observed.has_sensor_reading is True,
            None,
            None,
            "Sensor reading available",
            "No sensor reading available - required for this automation level",
        ))

    if observed.moisture_percent is not None:
        moisture = observed.moisture_percent
        checks.append(_check(
            GuardrailKind.MOISTURE_CEILING,
            moisture < limits.moisture_ceiling_percent,
            moisture,
            limits.moisture_ceiling_percent,
            "Moisture below ceiling",
            f"Moisture {moisture:g}% at or above ceiling {limits.moisture_ceiling_percent:g}% - do not water",
        ))

    if observed.ec_ms_cm is not None:
        ec = observed.ec_ms_cm
        checks.append(_check(
            GuardrailKind.EC_CEILING,
            ec <= limits.ec_ceiling_ms_cm,
            ec,
            limits.ec_ceiling_ms_cm,
            "EC within limits",
            f"EC {ec:g} mS/cm exceeds ceiling {limits.ec_ceiling_ms_cm:g} mS/cm",
        ))

    if observed.temp_f is not None:
        temp = observed.temp_f
        checks.append(_check(
            GuardrailKind.TEMP_FLOOR,
            temp >= limits.temp_floor_f,
            temp,
            limits.temp_floor_f,
            "Temperature above floor",
            f"Temperature {temp:g}°F below floor {limits.temp_floor_f:g}°F - frost risk",
        ))

    return checks


def all_pass(checks: List[GuardrailCheck]) -> bool:
    """AND over the produced checks; vacuously true for an empty list."""
    return all(c.passed for c in checks)


def failed_checks(checks: List[GuardrailCheck]) -> List[GuardrailCheck]:
    return [c for c in checks if not c.passed]
