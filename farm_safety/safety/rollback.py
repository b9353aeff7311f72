"""
Rollback plans - deterministic corrective templates keyed by action type.

Invariants:
- estimated_total_minutes is the literal sum of the step durations (missing counts as 0)
- A plan is marked executed exactly once
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from farm_safety.models.enums import ActionType, AuditEntryType, RollbackPriority, Severity, TriggerKind
from farm_safety.safety.errors import IllegalStateTransition, TransitionResult
from farm_safety.timestamps import new_id, to_iso, utcnow

# Operator CLI the automated steps are expressed in
CLI = "farm"


class RollbackStep(BaseModel):
    step: int
    action: str
    command: Optional[str] = None
    manual: bool = False
    estimated_duration_minutes: Optional[int] = None
    notes: Optional[str] = None


class RollbackPlan(BaseModel):
    id: str
    created_at: str
    original_action_id: str
    original_action: str
    trigger_conditions: List[str] = Field(default_factory=list)
    steps: List[RollbackStep] = Field(default_factory=list)
    estimated_total_minutes: int
    priority: RollbackPriority
    executed: bool = False
    executed_at: Optional[str] = None


class RollbackContext(BaseModel):
    """What a template needs to know about the action being undone."""
    action_id: str
    description: Optional[str] = None
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    water_gallons: Optional[float] = None
    product: Optional[str] = None
    priority: Optional[RollbackPriority] = None


def total_minutes(steps: List[RollbackStep]) -> int:
    return sum(s.estimated_duration_minutes or 0 for s in steps)


def _plan(
    context: RollbackContext,
    original_action: str,
    trigger_conditions: List[str],
    steps: List[RollbackStep],
    priority: RollbackPriority,
    now: Optional[datetime],
) -> RollbackPlan:
    return RollbackPlan(
        id=new_id("rollback"),
        created_at=to_iso(now or utcnow()),
        original_action_id=context.action_id,
        original_action=original_action,
        trigger_conditions=trigger_conditions,
        steps=steps,
        estimated_total_minutes=total_minutes(steps),
        priority=context.priority or priority,
        executed=False,
    )


def watering_plan(context: RollbackContext, now: Optional[datetime] = None) -> RollbackPlan:
    target_id = context.target_id or "unknown"
    target_name = context.target_name or "Unknown target"
    gallons = context.water_gallons if context.water_gallons is not None else 1
    steps = [
        RollbackStep(
            step=1,
            action="Verify current soil moisture",
            command=f"{CLI} sensors read --id {target_id}",
            estimated_duration_minutes=1,
        ),
        RollbackStep(
            step=2,
            action="If moisture > 80%, check for drainage issues",
            manual=True,
            estimated_duration_minutes=5,
            notes="Inspect container drainage holes, check for standing water",
        ),
        RollbackStep(
            step=3,
            action="If overwatered, stop all scheduled irrigation",
            command=f"{CLI} water stop --zone {target_id}",
            estimated_duration_minutes=1,
        ),
        RollbackStep(
            step=4,
            action="Allow soil to dry naturally",
            manual=True,
            estimated_duration_minutes=1440,
            notes="Do not water until moisture drops below 50%",
        ),
        RollbackStep(
            step=5,
            action="Resume normal schedule when moisture stabilizes",
            manual=True,
            estimated_duration_minutes=5,
        ),
    ]
    return _plan(
        context,
        f"Water {target_name} with {gallons:g} gallons",
        [
            "Moisture exceeds 85% within 2 hours",
            "Standing water observed",
            "Plant shows signs of overwatering (yellowing, wilting)",
        ],
        steps,
        RollbackPriority.MEDIUM,
        now,
    )


def fertilization_plan(context: RollbackContext, now: Optional[datetime] = None) -> RollbackPlan:
    target_id = context.target_id or "unknown"
    target_name = context.target_name or "Unknown target"
    steps = [
        RollbackStep(
            step=1,
            action="Check EC levels immediately",
            command=f"{CLI} sensors read --id {target_id} --type ec",
            estimated_duration_minutes=1,
        ),
        RollbackStep(
            step=2,
            action="If EC > 3.0 mS/cm, flush soil with clean water",
            manual=True,
            estimated_duration_minutes=15,
            notes="Use 2-3x the container volume in clean water",
        ),
        RollbackStep(
            step=3,
            action="Allow to drain completely",
            manual=True,
            estimated_duration_minutes=30,
        ),
        RollbackStep(
            step=4,
            action="Re-check EC after drainage",
            command=f"{CLI} sensors read --id {target_id} --type ec",
            estimated_duration_minutes=1,
        ),
        RollbackStep(
            step=5,
            action="If still high, repeat flush",
            manual=True,
            estimated_duration_minutes=45,
        ),
    ]
    return _plan(
        context,
        f"Apply {context.product or 'fertilizer'} to {target_name}",
        [
            "EC spikes above 3.0 mS/cm",
            "Leaf tip burn observed",
            "Salt deposits visible on soil surface",
        ],
        steps,
        RollbackPriority.HIGH,
        now,
    )


def generic_plan(context: RollbackContext, now: Optional[datetime] = None) -> RollbackPlan:
    steps = [
        RollbackStep(
            step=1,
            action="Document current state",
            manual=True,
            estimated_duration_minutes=5,
            notes="Take photos, record observations",
        ),
        RollbackStep(
            step=2,
            action="Identify what went wrong",
            manual=True,
            estimated_duration_minutes=10,
            notes="Compare expected vs actual outcomes",
        ),
        RollbackStep(step=3, action="Determine corrective action", manual=True, estimated_duration_minutes=10),
        RollbackStep(step=4, action="Execute correction", manual=True, estimated_duration_minutes=30),
        RollbackStep(step=5, action="Monitor for improvement", manual=True, estimated_duration_minutes=1440),
    ]
    return _plan(
        context,
        context.description or f"Action {context.action_id}",
        [
            "Unexpected negative outcome",
            "Plant stress observed",
            "Sensor readings abnormal",
        ],
        steps,
        RollbackPriority.MEDIUM,
        now,
    )


def generate(action_type: ActionType, context: RollbackContext, now: Optional[datetime] = None) -> RollbackPlan:
    """Pick the template for an action type; anything without one gets the generic plan."""
    action_type = ActionType(action_type)
    if action_type == ActionType.WATER:
        return watering_plan(context, now)
    if action_type == ActionType.FERTILIZE:
        return fertilization_plan(context, now)
    return generic_plan(context, now)


def generate_from_approval(request, now: Optional[datetime] = None) -> RollbackPlan:
    params = request.parameters or {}
    context = RollbackContext(
        action_id=request.id,
        description=request.proposed_action,
        target_id=request.target_id,
        target_name=request.target_name,
        water_gallons=params.get("gallons"),
        product=params.get("product"),
    )
    return generate(request.action_type, context, now)


_TRIGGER_ACTIONS = {
    TriggerKind.OVERWATERING: ActionType.WATER,
    TriggerKind.UNDERWATERING: ActionType.WATER,
    TriggerKind.LEAK_DETECTED: ActionType.WATER,
    TriggerKind.EC_SPIKE: ActionType.FERTILIZE,
    TriggerKind.EC_DROP: ActionType.FERTILIZE,
}

_SEVERITY_PRIORITY = {
    Severity.WARNING: None,
    Severity.CRITICAL: RollbackPriority.HIGH,
    Severity.EMERGENCY: RollbackPriority.CRITICAL,
}


def generate_from_jidoka(event, now: Optional[datetime] = None) -> RollbackPlan:
    """Corrective plan for a stop-the-line event; severity can only raise the priority."""
    action_type = _TRIGGER_ACTIONS.get(event.trigger_kind, ActionType.SAFETY_OVERRIDE)
    context = RollbackContext(
        action_id=event.id,
        description=event.message,
        target_id=event.actuator_id or event.sensor_id,
        target_name=event.actuator_id or event.sensor_id,
    )
    plan = generate(action_type, context, now)
    escalated = _SEVERITY_PRIORITY[event.severity]
    if escalated is not None and _rank(escalated) > _rank(plan.priority):
        plan = plan.model_copy(update={"priority": escalated})
    return plan


def generate_from_audit(entries, now: Optional[datetime] = None) -> List[RollbackPlan]:
    """One generic plan per executed action in the audit trail."""
    return [
        generic_plan(RollbackContext(action_id=e.id, description=e.action), now)
        for e in entries
        if e.entry_type == AuditEntryType.ACTION_EXECUTED
    ]


def _rank(priority: RollbackPriority) -> int:
    return list(RollbackPriority).index(priority)


def mark_executed(plan: RollbackPlan, now: Optional[datetime] = None) -> TransitionResult:
    if plan.executed:
        return TransitionResult.refused(IllegalStateTransition(
            f"REFUSAL: Rollback plan {plan.id} was already executed at {plan.executed_at}.",
            current_status="executed",
            attempted="execute",
        ))
    return TransitionResult.success(plan.model_copy(update={
        "executed": True,
        "executed_at": to_iso(now or utcnow()),
    }))


def format_plan(plan: RollbackPlan) -> str:
    lines = [
        f"ROLLBACK PLAN: {plan.id}",
        f"Priority: {plan.priority.value.upper()}",
        f"Original Action: {plan.original_action}",
        f"Estimated Time: {plan.estimated_total_minutes} minutes",
        "",
        "TRIGGER CONDITIONS:",
    ]
    lines.extend(f"  - {condition}" for condition in plan.trigger_conditions)
    lines.append("")
    lines.append("ROLLBACK STEPS:")
    for step in plan.steps:
        lines.append(f"  {step.step}. {step.action}")
        if step.command:
            lines.append(f"     Command: {step.command}")
        if step.notes:
            lines.append(f"     Note: {step.notes}")
        kind = "[Manual]" if step.manual else "[Automated]"
        lines.append(f"     {kind} ~{step.estimated_duration_minutes or 0} min")
    return "\n".join(lines)
