"""
Approval policy - human-in-loop gates for actuator actions.

Invariants enforced here:
- A request is created `pending`; pending is the only status a transition may leave
- Exactly one of approve / reject / expire / cancel ever applies to a request
- A request past `expires_at` can no longer be decided, only expired
- Execution is recorded at most once, and only for an approved request
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from farm_safety.models.enums import ActionType, ApprovalStatus, Decision
from farm_safety.safety.errors import ExpiredRequest, IllegalStateTransition, TransitionResult
from farm_safety.safety.guardrails import GuardrailCheck, clamp_level
from farm_safety.timestamps import from_iso, new_id, to_iso, utcnow


class ApprovalPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    requires_approval: bool
    expiration_minutes: int
    auto_approve_if_guardrails_pass: bool
    notify_on_expiration: bool

    @property
    def grantable(self) -> bool:
        """A zero-minute window means no request at this level can ever be approved."""
        return self.expiration_minutes > 0


APPROVAL_POLICIES: Dict[int, ApprovalPolicy] = {
    # Level 0: Observe only - no actions allowed
    0: ApprovalPolicy(
        requires_approval=True,
        expiration_minutes=0,
        auto_approve_if_guardrails_pass=False,
        notify_on_expiration=False,
    ),
    # Level 1: Assist - no actions allowed
    1: ApprovalPolicy(
        requires_approval=True,
        expiration_minutes=0,
        auto_approve_if_guardrails_pass=False,
        notify_on_expiration=False,
    ),
    # Level 2: Propose + approvals, one hour to approve
    2: ApprovalPolicy(
        requires_approval=True,
        expiration_minutes=60,
        auto_approve_if_guardrails_pass=False,
        notify_on_expiration=True,
    ),
    # Level 3: Auto within guardrails
    3: ApprovalPolicy(
        requires_approval=False,
        expiration_minutes=30,
        auto_approve_if_guardrails_pass=True,
        notify_on_expiration=True,
    ),
    # Level 4: Full ops
    4: ApprovalPolicy(
        requires_approval=False,
        expiration_minutes=15,
        auto_approve_if_guardrails_pass=True,
        notify_on_expiration=True,
    ),
}


class ApprovalRequest(BaseModel):
    """A proposed actuator action held behind the approval gate."""

    id: str
    created_at: str
    expires_at: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    action_type: ActionType
    automation_level: int
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    proposed_action: str
    reason: str
    ai_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    guardrail_checks: List[GuardrailCheck] = Field(default_factory=list)
    sources_used: List[str] = Field(default_factory=list)

    # Exactly one decision block is ever filled in
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None

    executed_at: Optional[str] = None
    execution_result: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


def policy_for(level: int) -> ApprovalPolicy:
    return APPROVAL_POLICIES[clamp_level(level)]


def requires_approval(level: int, guardrails_passed: bool) -> bool:
    """Whether a human must sign off, given the level and the guardrail outcome."""
    policy = policy_for(level)
    if not policy.requires_approval and policy.auto_approve_if_guardrails_pass and guardrails_passed:
        return False
    return True


def create_request(
    action_type: ActionType,
    proposed_action: str,
    reason: str,
    automation_level: int,
    target_id: Optional[str] = None,
    target_name: Optional[str] = None,
    ai_confidence: Optional[float] = None,
    parameters: Optional[Dict[str, Any]] = None,
    guardrail_checks: Optional[List[GuardrailCheck]] = None,
    sources_used: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """Create a pending request whose window comes from the level's policy."""
    now = now or utcnow()
    policy = policy_for(automation_level)
    return ApprovalRequest(
        id=new_id("approval"),
        created_at=to_iso(now),
        expires_at=to_iso(now + timedelta(minutes=policy.expiration_minutes)),
        status=ApprovalStatus.PENDING,
        action_type=action_type,
        automation_level=clamp_level(automation_level),
        target_id=target_id,
        target_name=target_name,
        proposed_action=proposed_action,
        reason=reason,
        ai_confidence=ai_confidence,
        parameters=parameters or {},
        guardrail_checks=guardrail_checks or [],
        sources_used=sources_used or [],
    )


def is_expired(request: ApprovalRequest, now: Optional[datetime] = None) -> bool:
    if request.status != ApprovalStatus.PENDING:
        return False
    return (now or utcnow()) > from_iso(request.expires_at)


def _refuse_non_pending(request: ApprovalRequest, attempted: str) -> TransitionResult:
    return TransitionResult.refused(IllegalStateTransition(
        f"REFUSAL: Cannot {attempted} approval {request.id}: status is already "
        f"'{request.status.value}'. Only pending requests can change status.",
        current_status=request.status.value,
        attempted=attempted,
    ))


def decide(
    request: ApprovalRequest,
    decision: Decision,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Approve or reject a pending request.

    Refused if the request is not pending or its window has closed. An
    expired-but-still-pending request must be expired first (see `expire`).
    """
    now = now or utcnow()
    decision = Decision(decision)
    if request.status != ApprovalStatus.PENDING:
        return _refuse_non_pending(request, decision.value)
    if is_expired(request, now) or not policy_for(request.automation_level).grantable:
        return TransitionResult.refused(ExpiredRequest(
            f"REFUSAL: Approval {request.id} expired at {request.expires_at}; it can no longer be decided.",
            current_status=request.status.value,
            attempted=decision.value,
        ))

    stamp = to_iso(now)
    if decision == Decision.APPROVE:
        updated = request.model_copy(update={
            "status": ApprovalStatus.APPROVED,
            "approved_by": actor,
            "approved_at": stamp,
        })
    else:
        updated = request.model_copy(update={
            "status": ApprovalStatus.REJECTED,
            "rejected_by": actor,
            "rejected_at": stamp,
            "rejection_reason": reason,
        })
    return TransitionResult.success(updated)


def reject_on_guardrails(request: ApprovalRequest, reason: str, now: Optional[datetime] = None) -> TransitionResult:
    """
    Refuse a freshly proposed request whose guardrail checks failed.

    Happens at proposal time, so the approval window is irrelevant.
    """
    if request.status != ApprovalStatus.PENDING:
        return _refuse_non_pending(request, "reject")
    return TransitionResult.success(request.model_copy(update={
        "status": ApprovalStatus.REJECTED,
        "rejected_by": "guardrails",
        "rejected_at": to_iso(now or utcnow()),
        "rejection_reason": reason,
    }))


def expire(request: ApprovalRequest, now: Optional[datetime] = None) -> TransitionResult:
    """Time-triggered pending -> expired. Refused when the window is still open."""
    now = now or utcnow()
    if request.status != ApprovalStatus.PENDING:
        return _refuse_non_pending(request, "expire")
    if not is_expired(request, now) and policy_for(request.automation_level).grantable:
        return TransitionResult.refused(IllegalStateTransition(
            f"REFUSAL: Approval {request.id} does not expire until {request.expires_at}.",
            current_status=request.status.value,
            attempted="expire",
        ))
    return TransitionResult.success(request.model_copy(update={"status": ApprovalStatus.EXPIRED}))


def cancel(
    request: ApprovalRequest,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Withdraw a pending request, e.g. when a newer proposal supersedes it."""
    if request.status != ApprovalStatus.PENDING:
        return _refuse_non_pending(request, "cancel")
    return TransitionResult.success(request.model_copy(update={
        "status": ApprovalStatus.CANCELLED,
        "cancelled_by": actor,
        "cancelled_at": to_iso(now or utcnow()),
        "cancellation_reason": reason,
    }))


def mark_executed(request: ApprovalRequest, result: str, now: Optional[datetime] = None) -> TransitionResult:
    """Record the actuator outcome. Only approved, not-yet-executed requests qualify."""
    if request.status != ApprovalStatus.APPROVED:
        return TransitionResult.refused(IllegalStateTransition(
            f"REFUSAL: Approval {request.id} is '{request.status.value}'. Must be approved first.",
            current_status=request.status.value,
            attempted="execute",
        ))
    if request.executed_at is not None:
        return TransitionResult.refused(IllegalStateTransition(
            f"REFUSAL: Approval {request.id} was already executed at {request.executed_at}.",
            current_status=request.status.value,
            attempted="execute",
        ))
    return TransitionResult.success(request.model_copy(update={
        "executed_at": to_iso(now or utcnow()),
        "execution_result": result,
    }))


def format_request(request: ApprovalRequest) -> str:
    lines = [
        f"APPROVAL REQUEST: {request.id}",
        f"Status: {request.status.value.upper()}",
        f"Action: {request.action_type.value} - {request.proposed_action}",
    ]
    if request.target_name:
        lines.append(f"Target: {request.target_name}")
    lines.append(f"Reason: {request.reason}")
    if request.ai_confidence is not None:
        lines.append(f"AI Confidence: {request.ai_confidence * 100:.0f}%")
    lines.append(f"Created: {request.created_at}")
    lines.append(f"Expires: {request.expires_at}")
    if request.sources_used:
        lines.append(f"Sources: {', '.join(request.sources_used)}")
    failed = [c for c in request.guardrail_checks if not c.passed]
    if failed:
        lines.append("Failed guardrails:")
        lines.extend(f"  - {c.message}" for c in failed)
    return "\n".join(lines)
