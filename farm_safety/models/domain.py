"""Storage models for the mutable safety records (the audit chain lives in audit.py)."""
from sqlalchemy import Boolean, Column, Enum as SQLEnum, Float, Integer, JSON, String

from farm_safety.database import Base
from farm_safety.models.audit import _values
from farm_safety.models.enums import (
    ActionType,
    ApprovalStatus,
    ReadingQuality,
    ReadingType,
    RollbackPriority,
    Severity,
    TriggerKind,
    Unit,
)


class ApprovalRequestRecord(Base):
    """
    A proposed actuator action held behind the approval gate.

    Invariants (enforced in the service layer, guarded here by compare-and-set):
    - Status leaves `pending` at most once
    - executed_at is only ever set on an approved request, once
    """
    __tablename__ = "approval_requests"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)
    expires_at = Column(String, nullable=False)
    status = Column(SQLEnum(ApprovalStatus, values_callable=_values), nullable=False, index=True)
    action_type = Column(SQLEnum(ActionType, values_callable=_values), nullable=False)
    automation_level = Column(Integer, nullable=False)
    target_id = Column(String, nullable=True, index=True)
    target_name = Column(String, nullable=True)
    proposed_action = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    ai_confidence = Column(Float, nullable=True)
    parameters = Column(JSON, nullable=False, default=dict)
    guardrail_checks = Column(JSON, nullable=False, default=list)
    sources_used = Column(JSON, nullable=False, default=list)

    # Exactly one decision block is filled in
    approved_by = Column(String, nullable=True)
    approved_at = Column(String, nullable=True)
    rejected_by = Column(String, nullable=True)
    rejected_at = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancelled_at = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)

    executed_at = Column(String, nullable=True)
    execution_result = Column(String, nullable=True)


class JidokaEventRecord(Base):
    """
    Stop-the-line event.

    Invariants:
    - Created unresolved, resolved at most once
    - Never deleted
    """
    __tablename__ = "jidoka_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    timestamp = Column(String, nullable=False)
    trigger_kind = Column(SQLEnum(TriggerKind, values_callable=_values), nullable=False, index=True)
    severity = Column(SQLEnum(Severity, values_callable=_values), nullable=False)
    sensor_id = Column(String, nullable=True, index=True)
    actuator_id = Column(String, nullable=True)
    current_value = Column(Float, nullable=True)
    threshold = Column(Float, nullable=True)
    message = Column(String, nullable=False)
    actions_taken = Column(JSON, nullable=False, default=list)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(String, nullable=True)
    notes = Column(String, nullable=True)


class RollbackPlanRecord(Base):
    """Corrective plan; one per originating action or event, `executed` flips once."""
    __tablename__ = "rollback_plans"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)
    original_action_id = Column(String, nullable=False, unique=True, index=True)
    original_action = Column(String, nullable=False)
    trigger_conditions = Column(JSON, nullable=False, default=list)
    steps = Column(JSON, nullable=False, default=list)
    estimated_total_minutes = Column(Integer, nullable=False)
    priority = Column(SQLEnum(RollbackPriority, values_callable=_values), nullable=False)
    executed = Column(Boolean, nullable=False, default=False)
    executed_at = Column(String, nullable=True)


class SensorReadingRecord(Base):
    """Raw reading as handed over by the ingestion collaborator."""
    __tablename__ = "sensor_readings"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(String, nullable=False, index=True)
    sensor_id = Column(String, nullable=False, index=True)
    reading_type = Column(SQLEnum(ReadingType, values_callable=_values), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(SQLEnum(Unit, values_callable=_values), nullable=False)
    battery_pct = Column(Float, nullable=True)
    quality = Column(SQLEnum(ReadingQuality, values_callable=_values), nullable=True)
