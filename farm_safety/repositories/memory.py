"""In-process store; used by tests and single-process deployments."""
import threading
from typing import Dict, List, Optional

from farm_safety.models.enums import ApprovalStatus, TriggerKind
from farm_safety.repositories.base import SafetyStore
from farm_safety.safety.approval_policy import ApprovalRequest
from farm_safety.safety.audit_chain import GENESIS_HASH, AuditEntry
from farm_safety.safety.errors import ChainIntegrityViolation, IllegalStateTransition
from farm_safety.safety.jidoka import JidokaEvent
from farm_safety.safety.readings import SensorReading
from farm_safety.safety.rollback import RollbackPlan


class InMemoryStore(SafetyStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._audit: List[AuditEntry] = []
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._jidoka: Dict[str, JidokaEvent] = {}
        self._rollbacks: Dict[str, RollbackPlan] = {}
        self._readings: List[SensorReading] = []

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            tail_hash = self._audit[-1].hash if self._audit else GENESIS_HASH
            if entry.previous_hash != tail_hash:
                raise ChainIntegrityViolation(
                    f"Refusing to fork the audit chain: entry {entry.id} links to "
                    f"{entry.previous_hash[:16]}..., tail is {tail_hash[:16]}...",
                    invalid_at=len(self._audit),
                    reason="append does not extend the current tail",
                )
            self._audit.append(entry)

    def last_audit_entry(self) -> Optional[AuditEntry]:
        with self._lock:
            return self._audit[-1] if self._audit else None

    def list_audit_entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit)

    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._lock:
            return next((e for e in self._audit if e.id == entry_id), None)

    def add_approval(self, request: ApprovalRequest) -> None:
        with self._lock:
            self._approvals[request.id] = request

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            return self._approvals.get(approval_id)

    def list_approvals(self, status: Optional[ApprovalStatus] = None) -> List[ApprovalRequest]:
        with self._lock:
            return [r for r in self._approvals.values() if status is None or r.status == status]

    def compare_and_set_approval(self, expected: ApprovalRequest, updated: ApprovalRequest) -> bool:
        with self._lock:
            current = self._approvals.get(expected.id)
            if current is None:
                return False
            if current.status != expected.status or current.executed_at != expected.executed_at:
                return False
            self._approvals[expected.id] = updated
            return True

    def add_jidoka_event(self, event: JidokaEvent) -> None:
        with self._lock:
            self._jidoka[event.id] = event

    def get_jidoka_event(self, event_id: str) -> Optional[JidokaEvent]:
        with self._lock:
            return self._jidoka.get(event_id)

    def list_jidoka_events(self, resolved: Optional[bool] = None) -> List[JidokaEvent]:
        with self._lock:
            return [e for e in self._jidoka.values() if resolved is None or e.resolved == resolved]

    def latest_jidoka_event(self, trigger_kind: TriggerKind, sensor_id: Optional[str]) -> Optional[JidokaEvent]:
        with self._lock:
            matching = [
                e for e in self._jidoka.values()
                if e.trigger_kind == trigger_kind and e.sensor_id == sensor_id
            ]
            return matching[-1] if matching else None

    def compare_and_set_jidoka_event(self, expected: JidokaEvent, updated: JidokaEvent) -> bool:
        with self._lock:
            current = self._jidoka.get(expected.id)
            if current is None or current.resolved != expected.resolved:
                return False
            self._jidoka[expected.id] = updated
            return True

    def add_rollback_plan(self, plan: RollbackPlan) -> None:
        with self._lock:
            existing = self.get_rollback_plan_for(plan.original_action_id)
            if existing is not None:
                raise IllegalStateTransition(
                    f"REFUSAL: {plan.original_action_id} already has rollback plan {existing.id}.",
                    current_status="planned",
                    attempted="plan",
                )
            self._rollbacks[plan.id] = plan

    def get_rollback_plan(self, plan_id: str) -> Optional[RollbackPlan]:
        with self._lock:
            return self._rollbacks.get(plan_id)

    def get_rollback_plan_for(self, original_action_id: str) -> Optional[RollbackPlan]:
        with self._lock:
            return next((p for p in self._rollbacks.values() if p.original_action_id == original_action_id), None)

    def list_rollback_plans(self) -> List[RollbackPlan]:
        with self._lock:
            return list(self._rollbacks.values())

    def compare_and_set_rollback_plan(self, expected: RollbackPlan, updated: RollbackPlan) -> bool:
        with self._lock:
            current = self._rollbacks.get(expected.id)
            if current is None or current.executed != expected.executed:
                return False
            self._rollbacks[expected.id] = updated
            return True

    def add_readings(self, readings: List[SensorReading]) -> None:
        with self._lock:
            self._readings.extend(readings)

    def list_readings(self) -> List[SensorReading]:
        with self._lock:
            return list(self._readings)
