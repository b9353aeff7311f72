"""
Safety service - the gateway-facing orchestration of the safety core.

Every actuator action and every lifecycle transition MUST go through here.
The pure modules under farm_safety.safety decide; this service reads state
from the injected store, records each decision in the audit chain, and only
then writes the new record and notifies anyone listening.
"""
import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from farm_safety.config import SENSOR_MAX_AGE_MINUTES
from farm_safety.models.enums import (
    ActionType,
    ApprovalStatus,
    AuditEntryType,
    Decision,
    ReadingQuality,
    ReadingType,
    Severity,
    TriggerKind,
)
from farm_safety.repositories.base import SafetyStore
from farm_safety.safety import approval_policy, guardrails, jidoka, rollback
from farm_safety.safety.approval_policy import ApprovalPolicy, ApprovalRequest
from farm_safety.safety.audit_chain import (
    AuditChain,
    AuditEntry,
    ChainVerification,
    export_chain,
    filter_by_time,
    filter_by_type,
    format_entry,
    format_summary,
)
from farm_safety.safety.errors import (
    ExpiredRequest,
    IllegalStateTransition,
    NotFoundError,
    PolicyViolation,
    describe_failed_checks,
)
from farm_safety.safety.guardrails import GuardrailConfig, ObservedState
from farm_safety.safety.jidoka import JidokaEvent, StopTriggerConfig
from farm_safety.safety.readings import SensorReading, latest_by_sensor, to_fahrenheit
from farm_safety.safety.rollback import RollbackPlan
from farm_safety.timestamps import Clock, as_utc, from_iso, utcnow

logger = logging.getLogger(__name__)

GUARDRAIL_ACTOR = "guardrails"
AUTO_APPROVE_ACTOR = "system:auto-approve"
JIDOKA_ACTOR = "jidoka"
SYSTEM_ACTOR = "system"

# Actions a stop-the-line event halts
LINE_ACTIONS = (ActionType.WATER, ActionType.FERTILIZE)

STOP_SEVERITIES = (Severity.CRITICAL, Severity.EMERGENCY)

Notifier = Callable[[str, Any, str], None]


def water_amount(params: Dict[str, Any]) -> Optional[float]:
    """The `gallons` parameter as a finite number, or None when absent."""
    value = params.get("gallons")
    if value is None:
        return None
    try:
        gallons = float(value)
    except (TypeError, ValueError):
        gallons = math.nan
    if isinstance(value, bool) or not math.isfinite(gallons):
        raise PolicyViolation(f"REFUSAL: gallons must be a finite number, got {value!r}.")
    return gallons


def describe_action(action_type: ActionType, target_name: Optional[str], params: Dict[str, Any]) -> str:
    target = target_name or "target"
    gallons = water_amount(params)
    if action_type == ActionType.WATER and gallons is not None:
        return f"Water {target} with {gallons:g} gallons"
    if action_type == ActionType.FERTILIZE:
        return f"Apply {params.get('product') or 'fertilizer'} to {target}"
    return f"{action_type.value.replace('_', ' ').capitalize()} {target}"


class SafetyService:
    """Enforces guardrails, approvals, Jidoka and rollback against one store and one audit chain."""

    def __init__(
        self,
        store: SafetyStore,
        signing_key: Optional[str] = None,
        clock: Clock = utcnow,
        notify: Optional[Notifier] = None,
        sensor_max_age_minutes: int = SENSOR_MAX_AGE_MINUTES,
        stop_triggers: Optional[Dict[TriggerKind, StopTriggerConfig]] = None,
    ):
        self.store = store
        self.clock = clock
        self.notify = notify
        self.audit = AuditChain(store, signing_key=signing_key, clock=clock)
        self.sensor_max_age = timedelta(minutes=sensor_max_age_minutes)
        self.stop_triggers = dict(jidoka.DEFAULT_STOP_TRIGGERS)
        self.stop_triggers.update(stop_triggers or {})
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Proposals and approvals
    # ------------------------------------------------------------------

    def propose_action(
        self,
        action_type: ActionType,
        target_id: Optional[str] = None,
        target_name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        reason: str = "",
        automation_level: int = 2,
        ai_confidence: Optional[float] = None,
        sources_used: Optional[List[str]] = None,
        actor: str = "ai",
        description: Optional[str] = None,
    ) -> ApprovalRequest:
        """
        Run a proposed action through the guardrails and the approval policy.

        Outcomes:
        - Any guardrail fails: the request is recorded as rejected by the
          guardrails and PolicyViolation is raised. Never auto-approved.
        - Approval required: the request is stored pending.
        - Level allows auto-approval and every guardrail passed: stored approved.
        """
        action_type = ActionType(action_type)
        params = dict(params or {})
        # Malformed amounts are refused before anything is recorded
        water_amount(params)
        level = guardrails.clamp_level(automation_level)

        with self._lock:
            now = self.clock()
            observed = self._observe(action_type, target_id, params, now)
            checks = guardrails.evaluate(level, observed)
            passed = guardrails.all_pass(checks)
            needs_human = approval_policy.requires_approval(level, passed)

            request = approval_policy.create_request(
                action_type,
                description or describe_action(action_type, target_name, params),
                reason,
                level,
                target_id=target_id,
                target_name=target_name,
                ai_confidence=ai_confidence,
                parameters=params,
                guardrail_checks=checks,
                sources_used=sources_used,
                now=now,
            )
            self.audit.append(
                AuditEntryType.ACTION_PROPOSED,
                actor,
                f"Proposed: {request.proposed_action}",
                target=target_id,
                details={
                    "approvalId": request.id,
                    "actionType": action_type.value,
                    "automationLevel": level,
                    "parameters": params,
                    "guardrailChecks": [c.model_dump(mode="json") for c in checks],
                    "guardrailsPassed": passed,
                    "requiresApproval": needs_human,
                },
            )

            if not passed:
                self._reject_on_guardrails(request, now)

            if needs_human:
                self.store.add_approval(request)
                logger.info("Approval %s pending until %s: %s", request.id, request.expires_at, request.proposed_action)
                self._notify("approval_requested", request, approval_policy.format_request(request))
                return request

            approved = approval_policy.decide(request, Decision.APPROVE, AUTO_APPROVE_ACTOR, now=now).unwrap()
            self.audit.append(
                AuditEntryType.ACTION_APPROVED,
                AUTO_APPROVE_ACTOR,
                f"approve approval {approved.id}",
                target=target_id,
                details={"approvalId": approved.id, "automationLevel": level, "auto": True},
            )
            self.store.add_approval(approved)
            logger.info("Approval %s auto-approved at level %s", approved.id, level)
            return approved

    def _reject_on_guardrails(self, request: ApprovalRequest, now: datetime) -> None:
        failures = describe_failed_checks(request.guardrail_checks)
        rejected = approval_policy.reject_on_guardrails(request, "; ".join(failures), now).unwrap()
        self.audit.append(
            AuditEntryType.ACTION_REJECTED,
            GUARDRAIL_ACTOR,
            f"reject approval {rejected.id}",
            target=rejected.target_id,
            details={"approvalId": rejected.id, "failedChecks": failures},
        )
        self.store.add_approval(rejected)
        logger.warning("Guardrails refused %s: %s", rejected.proposed_action, "; ".join(failures))
        raise PolicyViolation(
            f"REFUSAL: {rejected.proposed_action} violates {len(failures)} guardrail(s): {'; '.join(failures)}",
            checks=rejected.guardrail_checks,
            request=rejected,
        )

    def decide(
        self,
        approval_id: str,
        decision: Decision,
        actor: str,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """
        Approve or reject a pending request.

        A request whose window has closed is expired (and audited) first, then
        ExpiredRequest is raised.
        """
        decision = Decision(decision)
        with self._lock:
            now = self.clock()
            request = self._require_approval(approval_id)
            result = approval_policy.decide(request, decision, actor, reason=reason, now=now)
            if isinstance(result.error, ExpiredRequest):
                self._expire(request, now)
                logger.warning("Decision on expired approval %s refused", approval_id)
                raise result.error
            updated = result.unwrap()

            approved = decision == Decision.APPROVE
            self.audit.append(
                AuditEntryType.ACTION_APPROVED if approved else AuditEntryType.ACTION_REJECTED,
                actor,
                f"{decision.value} approval {approval_id}",
                target=request.target_id,
                details={"approvalId": approval_id, "reason": reason},
            )
            self._commit_approval(request, updated)
            logger.info("Approval %s %s by %s", approval_id, updated.status.value, actor)
            return updated

    def cancel(self, approval_id: str, actor: str, reason: Optional[str] = None) -> ApprovalRequest:
        with self._lock:
            now = self.clock()
            request = self._refresh(self._require_approval(approval_id), now)
            updated = approval_policy.cancel(request, actor, reason=reason, now=now).unwrap()
            self._record_cancellation(updated, actor, reason)
            self._commit_approval(request, updated)
            return updated

    def record_execution(
        self,
        approval_id: str,
        success: bool,
        result: Optional[str] = None,
        retry_count: int = 0,
        error: Optional[str] = None,
        actor: str = "actuator",
    ) -> ApprovalRequest:
        """Record the final actuator outcome; retries are the collaborator's business."""
        with self._lock:
            now = self.clock()
            request = self._require_approval(approval_id)
            outcome = result or ("success" if success else error or "failed")
            updated = approval_policy.mark_executed(request, outcome, now=now).unwrap()
            self.audit.append(
                AuditEntryType.ACTION_EXECUTED if success else AuditEntryType.ACTION_FAILED,
                actor,
                f"{'Executed' if success else 'Failed'}: {request.proposed_action}",
                target=request.target_id,
                details={
                    "approvalId": approval_id,
                    "result": outcome,
                    "retryCount": retry_count,
                    "error": error,
                },
            )
            self._commit_approval(request, updated)
            if success:
                logger.info("Approval %s executed after %s retries", approval_id, retry_count)
            else:
                logger.warning("Approval %s failed after %s retries: %s", approval_id, retry_count, error)
            return updated

    def get_approval(self, approval_id: str) -> ApprovalRequest:
        with self._lock:
            return self._refresh(self._require_approval(approval_id), self.clock())

    def list_approvals(self, status: Optional[ApprovalStatus] = None, limit: Optional[int] = None) -> List[ApprovalRequest]:
        """Newest first, after expiring anything whose window has closed."""
        with self._lock:
            self.sweep_expired()
            requests = self.store.list_approvals(ApprovalStatus(status) if status else None)
            requests = list(reversed(requests))
            return requests[:limit] if limit else requests

    def sweep_expired(self) -> List[ApprovalRequest]:
        """Expire every pending request past its window. Idempotent."""
        with self._lock:
            now = self.clock()
            expired = []
            for request in self.store.list_approvals(ApprovalStatus.PENDING):
                refreshed = self._refresh(request, now)
                if refreshed.status == ApprovalStatus.EXPIRED:
                    expired.append(refreshed)
            return expired

    def _refresh(self, request: ApprovalRequest, now: datetime) -> ApprovalRequest:
        if not request.is_pending:
            return request
        return self._expire(request, now) or request

    def _expire(self, request: ApprovalRequest, now: datetime) -> Optional[ApprovalRequest]:
        result = approval_policy.expire(request, now)
        if not result.ok:
            return None
        updated = result.value
        self.audit.append(
            AuditEntryType.SYSTEM_EVENT,
            SYSTEM_ACTOR,
            f"Approval {request.id} expired",
            target=request.target_id,
            details={"event": "approval_expired", "approvalId": request.id, "expiresAt": request.expires_at},
        )
        self._commit_approval(request, updated)
        logger.info("Approval %s expired at %s", request.id, request.expires_at)
        if approval_policy.policy_for(request.automation_level).notify_on_expiration:
            self._notify("approval_expired", updated, approval_policy.format_request(updated))
        return updated

    def _record_cancellation(self, updated: ApprovalRequest, actor: str, reason: Optional[str]) -> None:
        self.audit.append(
            AuditEntryType.SYSTEM_EVENT,
            actor,
            f"Approval {updated.id} cancelled",
            target=updated.target_id,
            details={"event": "approval_cancelled", "approvalId": updated.id, "reason": reason},
        )
        logger.info("Approval %s cancelled by %s", updated.id, actor)

    def _commit_approval(self, expected: ApprovalRequest, updated: ApprovalRequest) -> None:
        if not self.store.compare_and_set_approval(expected, updated):
            raise IllegalStateTransition(
                f"REFUSAL: Approval {expected.id} changed concurrently; reload and retry.",
                current_status=expected.status.value,
                attempted=updated.status.value,
            )

    def _require_approval(self, approval_id: str) -> ApprovalRequest:
        request = self.store.get_approval(approval_id)
        if request is None:
            raise NotFoundError("Approval request", approval_id)
        return request

    # ------------------------------------------------------------------
    # Guardrail inputs
    # ------------------------------------------------------------------

    def _observe(
        self,
        action_type: ActionType,
        target_id: Optional[str],
        params: Dict[str, Any],
        now: datetime,
    ) -> ObservedState:
        """
        Build the guardrail inputs from stored history and fresh readings.

        History (water used, interval, action count) is scoped to the target
        when one is given. Sensor-derived fields are only supplied for the
        actions they gate: moisture and temperature for watering, EC and
        temperature for fertilizing.
        """
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        executed = [
            r for r in self.store.list_approvals(ApprovalStatus.APPROVED)
            if r.executed_at and (target_id is None or r.target_id == target_id)
        ]
        executed_today = [r for r in executed if from_iso(r.executed_at) >= day_start]
        waterings = [r for r in executed if r.action_type == ActionType.WATER]

        observed = ObservedState(
            consecutive_actions_today=len(executed_today),
            has_sensor_reading=False,
        )

        if action_type == ActionType.WATER:
            observed.proposed_water_gallons = water_amount(params)
            observed.water_used_today_gallons = sum(
                float(r.parameters.get("gallons") or 0)
                for r in waterings
                if from_iso(r.executed_at) >= day_start
            )
            if waterings:
                last = max(from_iso(r.executed_at) for r in waterings)
                observed.minutes_since_last_action = (now - last).total_seconds() / 60

        fresh = self._fresh_readings(params.get("sensor_id"), now)
        observed.has_sensor_reading = bool(fresh)
        if action_type in LINE_ACTIONS:
            temperature = fresh.get(ReadingType.TEMPERATURE)
            if temperature is not None:
                observed.temp_f = to_fahrenheit(temperature.value, temperature.unit)
        if action_type == ActionType.WATER and ReadingType.MOISTURE in fresh:
            observed.moisture_percent = fresh[ReadingType.MOISTURE].value
        if action_type == ActionType.FERTILIZE and ReadingType.EC in fresh:
            observed.ec_ms_cm = fresh[ReadingType.EC].value
        return observed

    def _fresh_readings(self, sensor_id: Optional[str], now: datetime) -> Dict[ReadingType, SensorReading]:
        """Newest usable reading per type within the freshness window."""
        fresh: Dict[ReadingType, SensorReading] = {}
        for (reading_sensor, reading_type), reading in latest_by_sensor(self.store.list_readings()).items():
            if sensor_id is not None and reading_sensor != sensor_id:
                continue
            if reading.quality == ReadingQuality.BAD:
                continue
            if now - from_iso(reading.timestamp) > self.sensor_max_age:
                continue
            current = fresh.get(reading_type)
            if current is None or from_iso(reading.timestamp) > from_iso(current.timestamp):
                fresh[reading_type] = reading
        return fresh

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def list_audit(
        self,
        types: Optional[Iterable[AuditEntryType]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Chain order; `limit` keeps the most recent entries."""
        entries = self.audit.entries()
        if types:
            entries = filter_by_type(entries, types)
        if start is not None or end is not None:
            entries = filter_by_time(
                entries,
                as_utc(start) if start is not None else None,
                as_utc(end) if end is not None else None,
            )
        return entries[-limit:] if limit else entries

    def verify_chain(self, raise_on_failure: bool = False) -> ChainVerification:
        if raise_on_failure:
            self.audit.assert_intact()
        return self.audit.verify()

    def export_audit(self) -> str:
        return export_chain(self.audit.entries())

    def audit_summary(self, recent: int = 10) -> str:
        state = self.audit.state()
        lines = [format_summary(state)]
        if state.entries and recent:
            lines.append("")
            lines.append("Recent entries:")
            lines.extend(format_entry(e) for e in state.entries[-recent:])
        return "\n".join(lines)

    def log_manual(
        self,
        actor: str,
        action: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.audit.append(AuditEntryType.MANUAL_LOG, actor, action, target=target, details=details)

    # ------------------------------------------------------------------
    # Sensor readings and Jidoka
    # ------------------------------------------------------------------

    def report_reading(self, reading: SensorReading) -> List[JidokaEvent]:
        return self.report_readings([reading])

    def report_readings(self, readings: List[SensorReading]) -> List[JidokaEvent]:
        """Store a batch of readings and raise a Jidoka event for every tripped trigger."""
        if not readings:
            return []
        with self._lock:
            now = self.clock()
            self.audit.append(
                AuditEntryType.SENSOR_READING,
                SYSTEM_ACTOR,
                f"Recorded {len(readings)} sensor reading(s)",
                details={
                    "readings": [
                        {"sensorId": r.sensor_id, "type": r.reading_type.value, "value": r.value, "unit": r.unit.value}
                        for r in readings
                    ],
                },
            )
            self.store.add_readings(readings)

            events = []
            for reading in readings:
                if reading.quality == ReadingQuality.BAD:
                    logger.info("Skipping Jidoka checks for bad reading from %s", reading.sensor_id)
                    continue
                value = reading.value
                if reading.reading_type == ReadingType.TEMPERATURE:
                    value = to_fahrenheit(value, reading.unit)
                for kind in jidoka.triggers_for_reading(reading.reading_type):
                    config = self.stop_triggers[kind]
                    result = jidoka.check(kind, value, config)
                    if not result.triggered:
                        continue
                    previous = self.store.latest_jidoka_event(kind, reading.sensor_id)
                    if jidoka.in_cooldown(previous, config, now):
                        logger.info("Jidoka %s for %s suppressed by cooldown", kind.value, reading.sensor_id)
                        continue
                    events.append(self._trigger(
                        kind,
                        result.severity,
                        result.message,
                        actor=f"sensor:{reading.sensor_id}",
                        sensor_id=reading.sensor_id,
                        current_value=value,
                        threshold=config.threshold,
                        now=now,
                    ))
            return events

    def raise_stop(
        self,
        trigger_kind: TriggerKind,
        message: str,
        actor: str,
        severity: Severity = Severity.CRITICAL,
        sensor_id: Optional[str] = None,
        actuator_id: Optional[str] = None,
        current_value: Optional[float] = None,
    ) -> JidokaEvent:
        """Stop the line on a collaborator's say-so (leak, timeout, operator)."""
        with self._lock:
            return self._trigger(
                TriggerKind(trigger_kind),
                Severity(severity),
                message,
                actor=actor,
                sensor_id=sensor_id,
                actuator_id=actuator_id,
                current_value=current_value,
                threshold=self.stop_triggers[TriggerKind(trigger_kind)].threshold,
                now=self.clock(),
            )

    def _trigger(
        self,
        kind: TriggerKind,
        severity: Severity,
        message: str,
        actor: str,
        sensor_id: Optional[str] = None,
        actuator_id: Optional[str] = None,
        current_value: Optional[float] = None,
        threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> JidokaEvent:
        event = jidoka.create_event(
            kind,
            severity,
            message,
            sensor_id=sensor_id,
            actuator_id=actuator_id,
            current_value=current_value,
            threshold=threshold,
            now=now,
        )
        plan = rollback.generate_from_jidoka(event, now)
        self.audit.append(
            AuditEntryType.JIDOKA_TRIGGERED,
            actor,
            message,
            target=actuator_id or sensor_id,
            details={
                "eventId": event.id,
                "triggerKind": kind.value,
                "severity": severity.value,
                "currentValue": current_value,
                "threshold": threshold,
                "recommendedActions": jidoka.recommended_actions(event),
                "rollbackPlanId": plan.id,
            },
        )
        logger.warning("JIDOKA %s (%s): %s", kind.value, severity.value, message)

        if severity in STOP_SEVERITIES:
            event = event.model_copy(update={"actions_taken": self._stop_the_line(event, now)})
        self.store.add_jidoka_event(event)
        self.store.add_rollback_plan(plan)
        self._notify("jidoka_triggered", event, message)
        return event

    def _stop_the_line(self, event: JidokaEvent, now: datetime) -> List[str]:
        """Cancel every pending water and fertilizer approval."""
        taken = []
        reason = f"Line stopped by Jidoka event {event.id}: {event.message}"
        for request in self.store.list_approvals(ApprovalStatus.PENDING):
            if request.action_type not in LINE_ACTIONS:
                continue
            result = approval_policy.cancel(request, JIDOKA_ACTOR, reason=reason, now=now)
            if not result.ok:
                continue
            self._record_cancellation(result.value, JIDOKA_ACTOR, reason)
            self._commit_approval(request, result.value)
            taken.append(f"Cancelled pending approval {request.id} ({request.proposed_action})")
        return taken

    def get_jidoka_event(self, event_id: str) -> JidokaEvent:
        event = self.store.get_jidoka_event(event_id)
        if event is None:
            raise NotFoundError("Jidoka event", event_id)
        return event

    def list_jidoka_events(self, resolved: Optional[bool] = None) -> List[JidokaEvent]:
        return list(reversed(self.store.list_jidoka_events(resolved)))

    def resolve_jidoka(self, event_id: str, resolved_by: str, notes: Optional[str] = None) -> JidokaEvent:
        with self._lock:
            event = self.get_jidoka_event(event_id)
            updated = jidoka.resolve(event, resolved_by, notes=notes, now=self.clock()).unwrap()
            self.audit.append(
                AuditEntryType.JIDOKA_RESOLVED,
                resolved_by,
                f"Resolved {event.trigger_kind.value}: {event.message}",
                target=event.actuator_id or event.sensor_id,
                details={"eventId": event_id, "notes": notes},
            )
            if not self.store.compare_and_set_jidoka_event(event, updated):
                raise IllegalStateTransition(
                    f"REFUSAL: Jidoka event {event_id} changed concurrently; reload and retry.",
                    current_status="resolved",
                    attempted="resolve",
                )
            logger.info("Jidoka event %s resolved by %s", event_id, resolved_by)
            return updated

    # ------------------------------------------------------------------
    # Rollback plans
    # ------------------------------------------------------------------

    def generate_rollback(self, source_id: str) -> RollbackPlan:
        """
        Plan for an approval request, a Jidoka event, or an executed-action audit entry.

        A source gets exactly one plan: asking again returns the stored plan
        (Jidoka events already have one from the moment they were raised).
        """
        with self._lock:
            existing = self.store.get_rollback_plan_for(source_id)
            if existing is not None:
                logger.info("Rollback plan %s already exists for %s", existing.id, source_id)
                return existing
            now = self.clock()
            request = self.store.get_approval(source_id)
            event = None if request else self.store.get_jidoka_event(source_id)
            if request is not None:
                plan = rollback.generate_from_approval(request, now)
            elif event is not None:
                plan = rollback.generate_from_jidoka(event, now)
            else:
                entry = self.store.get_audit_entry(source_id)
                if entry is None:
                    raise NotFoundError("Rollback source", source_id)
                plans = rollback.generate_from_audit([entry], now)
                if not plans:
                    raise IllegalStateTransition(
                        f"REFUSAL: Audit entry {source_id} is '{entry.entry_type.value}'. "
                        "Only executed actions can be rolled back.",
                        current_status=entry.entry_type.value,
                        attempted="rollback",
                    )
                plan = plans[0]

            self.audit.append(
                AuditEntryType.SYSTEM_EVENT,
                SYSTEM_ACTOR,
                f"Rollback plan {plan.id} generated",
                target=source_id,
                details={
                    "event": "rollback_planned",
                    "planId": plan.id,
                    "priority": plan.priority.value,
                    "estimatedTotalMinutes": plan.estimated_total_minutes,
                },
            )
            self.store.add_rollback_plan(plan)
            self._notify("rollback_planned", plan, rollback.format_plan(plan))
            return plan

    def get_rollback_plan(self, plan_id: str) -> RollbackPlan:
        plan = self.store.get_rollback_plan(plan_id)
        if plan is None:
            raise NotFoundError("Rollback plan", plan_id)
        return plan

    def list_rollback_plans(self) -> List[RollbackPlan]:
        return list(reversed(self.store.list_rollback_plans()))

    def execute_rollback(self, plan_id: str, actor: str) -> RollbackPlan:
        with self._lock:
            plan = self.get_rollback_plan(plan_id)
            updated = rollback.mark_executed(plan, now=self.clock()).unwrap()
            self.audit.append(
                AuditEntryType.ACTION_EXECUTED,
                actor,
                f"Rollback executed: {plan.original_action}",
                target=plan.original_action_id,
                details={"planId": plan_id, "priority": plan.priority.value},
            )
            if not self.store.compare_and_set_rollback_plan(plan, updated):
                raise IllegalStateTransition(
                    f"REFUSAL: Rollback plan {plan_id} changed concurrently; reload and retry.",
                    current_status="executed",
                    attempted="execute",
                )
            logger.info("Rollback plan %s executed by %s", plan_id, actor)
            return updated

    # ------------------------------------------------------------------
    # Level tables
    # ------------------------------------------------------------------

    def guardrails_for(self, level: int) -> GuardrailConfig:
        return guardrails.guardrails_for(level)

    def policy_for(self, level: int) -> ApprovalPolicy:
        return approval_policy.policy_for(level)

    def _notify(self, kind: str, record, summary: str) -> None:
        if self.notify is None:
            logger.debug("No notifier for %s:\n%s", kind, summary)
            return
        self.notify(kind, record, summary)
