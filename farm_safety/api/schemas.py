"""Pydantic schemas for request/response validation."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from farm_safety.config import DEFAULT_AUTOMATION_LEVEL
from farm_safety.models.enums import ActionType, Decision, Severity, TriggerKind
from farm_safety.safety.approval_policy import ApprovalPolicy
from farm_safety.safety.guardrails import GuardrailCheck
from farm_safety.safety.jidoka import JidokaEvent
from farm_safety.safety.readings import SensorReading


# Approval schemas
class ActionProposal(BaseModel):
    action_type: ActionType
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    reason: str = Field(..., min_length=1)
    automation_level: int = DEFAULT_AUTOMATION_LEVEL
    ai_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    sources_used: List[str] = Field(default_factory=list)
    actor: str = "ai"
    description: Optional[str] = None


class DecisionCreate(BaseModel):
    decision: Decision
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None


class CancelCreate(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None


class ExecutionReport(BaseModel):
    success: bool
    result: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    error: Optional[str] = None
    actor: str = "actuator"


class RefusalResponse(BaseModel):
    """Response when an action is refused by the guardrails."""
    message: str
    approval_id: Optional[str] = None
    checks: List[GuardrailCheck] = Field(default_factory=list)


# Audit schemas
class ManualLogCreate(BaseModel):
    actor: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    target: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


# Reading and Jidoka schemas
class ReadingsBatch(BaseModel):
    readings: List[SensorReading] = Field(..., min_length=1)


class StopCreate(BaseModel):
    trigger_kind: TriggerKind
    message: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)
    severity: Severity = Severity.CRITICAL
    sensor_id: Optional[str] = None
    actuator_id: Optional[str] = None
    current_value: Optional[float] = None


class ResolveCreate(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


class JidokaEventResponse(JidokaEvent):
    recommended_actions: List[str] = Field(default_factory=list)


# Rollback schemas
class RollbackCreate(BaseModel):
    source_id: str = Field(..., min_length=1)


class RollbackExecute(BaseModel):
    actor: str = Field(..., min_length=1)


# Level tables
class LevelResponse(BaseModel):
    """Limits and approval policy of one automation level. Unbounded limits are null."""
    level: int
    guardrails: Dict[str, Any]
    policy: ApprovalPolicy
    grantable: bool
