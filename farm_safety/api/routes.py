"""API routes for the farm safety gateway."""
import math
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import PlainTextResponse

from farm_safety.api.schemas import (
    ActionProposal,
    CancelCreate,
    DecisionCreate,
    ExecutionReport,
    JidokaEventResponse,
    LevelResponse,
    ManualLogCreate,
    ReadingsBatch,
    RefusalResponse,
    ResolveCreate,
    RollbackCreate,
    RollbackExecute,
    StopCreate,
)
from farm_safety.config import AUDIT_SIGNING_KEY
from farm_safety.database import SessionLocal
from farm_safety.models.enums import ApprovalStatus, AuditEntryType
from farm_safety.repositories.sql import SqlAlchemyStore
from farm_safety.safety.approval_policy import ApprovalRequest
from farm_safety.safety.audit_chain import AuditEntry, ChainVerification
from farm_safety.safety.errors import (
    ChainIntegrityViolation,
    IllegalStateTransition,
    NotFoundError,
    PolicyViolation,
    SafetyError,
)
from farm_safety.safety.guardrails import clamp_level
from farm_safety.safety.jidoka import JidokaEvent, recommended_actions
from farm_safety.safety.rollback import RollbackPlan
from farm_safety.services.safety_service import SafetyService

router = APIRouter()

_service: Optional[SafetyService] = None


def get_service() -> SafetyService:
    """One service (and so one audit chain writer) per process."""
    global _service
    if _service is None:
        _service = SafetyService(SqlAlchemyStore(SessionLocal), signing_key=AUDIT_SIGNING_KEY)
    return _service


def _http_error(e: SafetyError) -> HTTPException:
    """Translate a safety refusal into the HTTP error the caller sees."""
    if isinstance(e, PolicyViolation):
        # Return refusal as HTTP 403 Forbidden with every check
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": e.message,
                "approval_id": e.request.id if e.request is not None else None,
                "checks": [c.model_dump(mode="json") for c in e.checks],
            },
        )
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, IllegalStateTransition):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": e.message,
                "current_status": e.current_status,
                "attempted": e.attempted,
            },
        )
    if isinstance(e, ChainIntegrityViolation):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": e.message, "invalid_at": e.invalid_at, "reason": e.reason},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)


def _with_actions(event: JidokaEvent) -> JidokaEventResponse:
    return JidokaEventResponse(**event.model_dump(), recommended_actions=recommended_actions(event))


# Approval endpoints
@router.post(
    "/actions",
    response_model=ApprovalRequest,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": RefusalResponse}},
)
def propose_action(proposal: ActionProposal, service: SafetyService = Depends(get_service)):
    """
    Propose an actuator action.
    Refused with 403 (and recorded as rejected) when any guardrail fails.
    """
    try:
        return service.propose_action(
            proposal.action_type,
            target_id=proposal.target_id,
            target_name=proposal.target_name,
            params=proposal.params,
            reason=proposal.reason,
            automation_level=proposal.automation_level,
            ai_confidence=proposal.ai_confidence,
            sources_used=proposal.sources_used,
            actor=proposal.actor,
            description=proposal.description,
        )
    except SafetyError as e:
        raise _http_error(e)


@router.get("/approvals", response_model=List[ApprovalRequest])
def list_approvals(
    status_filter: Optional[ApprovalStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1),
    service: SafetyService = Depends(get_service),
):
    """List approval requests, newest first."""
    return service.list_approvals(status_filter, limit)


@router.post("/approvals/sweep", response_model=List[ApprovalRequest])
def sweep_expired(service: SafetyService = Depends(get_service)):
    """Expire every pending request whose window has closed."""
    return service.sweep_expired()


@router.get("/approvals/{approval_id}", response_model=ApprovalRequest)
def get_approval(approval_id: str, service: SafetyService = Depends(get_service)):
    try:
        return service.get_approval(approval_id)
    except SafetyError as e:
        raise _http_error(e)


@router.post("/approvals/{approval_id}/decision", response_model=ApprovalRequest)
def decide(approval_id: str, decision_data: DecisionCreate, service: SafetyService = Depends(get_service)):
    """
    Approve or reject a pending request.
    Refused with 409 if the request is no longer pending or has expired.
    """
    try:
        return service.decide(approval_id, decision_data.decision, decision_data.actor, decision_data.reason)
    except SafetyError as e:
        raise _http_error(e)


@router.post("/approvals/{approval_id}/cancel", response_model=ApprovalRequest)
def cancel(approval_id: str, cancel_data: CancelCreate, service: SafetyService = Depends(get_service)):
    try:
        return service.cancel(approval_id, cancel_data.actor, cancel_data.reason)
    except SafetyError as e:
        raise _http_error(e)


@router.post("/approvals/{approval_id}/execution", response_model=ApprovalRequest)
def record_execution(approval_id: str, report: ExecutionReport, service: SafetyService = Depends(get_service)):
    """Actuator outcome for an approved request. Recorded once."""
    try:
        return service.record_execution(
            approval_id,
            report.success,
            result=report.result,
            retry_count=report.retry_count,
            error=report.error,
            actor=report.actor,
        )
    except SafetyError as e:
        raise _http_error(e)


# Audit endpoints
@router.get("/audit", response_model=List[AuditEntry])
def list_audit(
    types: Optional[List[AuditEntryType]] = Query(None),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1),
    service: SafetyService = Depends(get_service),
):
    """Audit entries in chain order; `limit` keeps the most recent."""
    return service.list_audit(types=types, start=start, end=end, limit=limit)


@router.get("/audit/verify", response_model=ChainVerification)
def verify_chain(service: SafetyService = Depends(get_service)):
    return service.verify_chain()


@router.get("/audit/export")
def export_audit(service: SafetyService = Depends(get_service)):
    """The whole chain as the JSON backup format."""
    return Response(content=service.export_audit(), media_type="application/json")


@router.get("/audit/summary", response_class=PlainTextResponse)
def audit_summary(service: SafetyService = Depends(get_service)):
    return service.audit_summary()


@router.post("/audit/manual", response_model=AuditEntry, status_code=status.HTTP_201_CREATED)
def log_manual(entry_data: ManualLogCreate, service: SafetyService = Depends(get_service)):
    try:
        return service.log_manual(entry_data.actor, entry_data.action, entry_data.target, entry_data.details)
    except SafetyError as e:
        raise _http_error(e)


# Reading and Jidoka endpoints
@router.post("/readings", response_model=List[JidokaEventResponse], status_code=status.HTTP_201_CREATED)
def report_readings(batch: ReadingsBatch, service: SafetyService = Depends(get_service)):
    """Store readings; returns the Jidoka events they tripped."""
    try:
        return [_with_actions(e) for e in service.report_readings(batch.readings)]
    except SafetyError as e:
        raise _http_error(e)


@router.post("/jidoka", response_model=JidokaEventResponse, status_code=status.HTTP_201_CREATED)
def raise_stop(stop_data: StopCreate, service: SafetyService = Depends(get_service)):
    """Stop the line (leak, actuator timeout, operator stop)."""
    try:
        event = service.raise_stop(
            stop_data.trigger_kind,
            stop_data.message,
            stop_data.actor,
            severity=stop_data.severity,
            sensor_id=stop_data.sensor_id,
            actuator_id=stop_data.actuator_id,
            current_value=stop_data.current_value,
        )
        return _with_actions(event)
    except SafetyError as e:
        raise _http_error(e)


@router.get("/jidoka", response_model=List[JidokaEventResponse])
def list_jidoka_events(resolved: Optional[bool] = None, service: SafetyService = Depends(get_service)):
    return [_with_actions(e) for e in service.list_jidoka_events(resolved)]


@router.post("/jidoka/{event_id}/resolve", response_model=JidokaEventResponse)
def resolve_jidoka(event_id: str, resolve_data: ResolveCreate, service: SafetyService = Depends(get_service)):
    try:
        return _with_actions(service.resolve_jidoka(event_id, resolve_data.resolved_by, resolve_data.notes))
    except SafetyError as e:
        raise _http_error(e)


# Rollback endpoints
@router.post("/rollbacks", response_model=RollbackPlan, status_code=status.HTTP_201_CREATED)
def generate_rollback(rollback_data: RollbackCreate, service: SafetyService = Depends(get_service)):
    """Plan for an approval request, a Jidoka event or an executed-action audit entry."""
    try:
        return service.generate_rollback(rollback_data.source_id)
    except SafetyError as e:
        raise _http_error(e)


@router.get("/rollbacks", response_model=List[RollbackPlan])
def list_rollback_plans(service: SafetyService = Depends(get_service)):
    return service.list_rollback_plans()


@router.get("/rollbacks/{plan_id}", response_model=RollbackPlan)
def get_rollback_plan(plan_id: str, service: SafetyService = Depends(get_service)):
    try:
        return service.get_rollback_plan(plan_id)
    except SafetyError as e:
        raise _http_error(e)


@router.post("/rollbacks/{plan_id}/execute", response_model=RollbackPlan)
def execute_rollback(plan_id: str, execute_data: RollbackExecute, service: SafetyService = Depends(get_service)):
    try:
        return service.execute_rollback(plan_id, execute_data.actor)
    except SafetyError as e:
        raise _http_error(e)


# Level tables
@router.get("/levels/{level}", response_model=LevelResponse)
def get_level(level: int, service: SafetyService = Depends(get_service)):
    """Guardrails and approval policy for an automation level (clamped to 0-4)."""
    limits = service.guardrails_for(level).model_dump()
    policy = service.policy_for(level)
    return LevelResponse(
        level=clamp_level(level),
        guardrails={
            name: None if isinstance(value, float) and math.isinf(value) else value
            for name, value in limits.items()
        },
        policy=policy,
        grantable=policy.grantable,
    )
