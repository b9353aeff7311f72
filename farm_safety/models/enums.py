"""Enums for the farm safety core - these define the valid values for every closed set."""
from enum import Enum


class GuardrailKind(str, Enum):
    """Hard limits a proposed action is checked against."""
    MAX_WATER_PER_ACTION = "max_water_per_action"
    MAX_WATER_DAILY = "max_water_daily"
    MIN_WATERING_INTERVAL = "min_watering_interval"
    MAX_CONSECUTIVE_ACTIONS = "max_consecutive_actions"
    REQUIRE_SENSOR_READING = "require_sensor_reading"
    MOISTURE_CEILING = "moisture_ceiling"
    EC_CEILING = "ec_ceiling"
    TEMP_FLOOR = "temp_floor"


class ActionType(str, Enum):
    """Actuator actions that pass through the approval gate."""
    WATER = "water"
    FERTILIZE = "fertilize"
    ADJUST_VALVE = "adjust_valve"
    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    SCHEDULE_CHANGE = "schedule_change"
    CONFIG_CHANGE = "config_change"
    SAFETY_OVERRIDE = "safety_override"


class ApprovalStatus(str, Enum):
    """Pending is the only non-terminal status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AuditEntryType(str, Enum):
    """Closed set of audit entry types."""
    ACTION_PROPOSED = "action_proposed"
    ACTION_APPROVED = "action_approved"
    ACTION_REJECTED = "action_rejected"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    JIDOKA_TRIGGERED = "jidoka_triggered"
    JIDOKA_RESOLVED = "jidoka_resolved"
    CONFIG_CHANGED = "config_changed"
    SENSOR_READING = "sensor_reading"
    MANUAL_LOG = "manual_log"
    SYSTEM_EVENT = "system_event"


class TriggerKind(str, Enum):
    """Stop-the-line trigger kinds."""
    LEAK_DETECTED = "leak_detected"
    OVERWATERING = "overwatering"
    UNDERWATERING = "underwatering"
    EC_SPIKE = "ec_spike"
    EC_DROP = "ec_drop"
    FROST_RISK = "frost_risk"
    HEAT_RISK = "heat_risk"
    SENSOR_OFFLINE = "sensor_offline"
    ACTUATOR_TIMEOUT = "actuator_timeout"
    MANUAL_STOP = "manual_stop"
    SYSTEM_ERROR = "system_error"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class RollbackPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReadingType(str, Enum):
    MOISTURE = "moisture"
    TEMPERATURE = "temperature"
    EC = "ec"
    PH = "ph"
    HUMIDITY = "humidity"
    LIGHT = "light"
    FLOW = "flow"
    PRESSURE = "pressure"
    BATTERY = "battery"
    OTHER = "other"


class Unit(str, Enum):
    PERCENT = "percent"
    FAHRENHEIT = "fahrenheit"
    CELSIUS = "celsius"
    MS_CM = "mS/cm"
    PH = "pH"
    LUX = "lux"
    GPM = "gpm"
    PSI = "psi"
    VOLTS = "volts"
    OTHER = "other"


class ReadingQuality(str, Enum):
    GOOD = "good"
    SUSPECT = "suspect"
    BAD = "bad"
