"""
Store interface injected into the safety service.

The safety core never persists anything itself. Whatever backs this
interface must honour two contracts:
- audit entries are append-only and an append must extend the current tail
- compare_and_set_* writes only if the stored record still matches `expected`
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from farm_safety.models.enums import ApprovalStatus, TriggerKind
from farm_safety.safety.approval_policy import ApprovalRequest
from farm_safety.safety.audit_chain import AuditEntry
from farm_safety.safety.jidoka import JidokaEvent
from farm_safety.safety.readings import SensorReading
from farm_safety.safety.rollback import RollbackPlan


class SafetyStore(ABC):

    # Audit chain
    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> None:
        """Append `entry`; raises ChainIntegrityViolation if it does not extend the tail."""

    @abstractmethod
    def last_audit_entry(self) -> Optional[AuditEntry]:
        ...

    @abstractmethod
    def list_audit_entries(self) -> List[AuditEntry]:
        """All entries in chain order."""

    @abstractmethod
    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        ...

    # Approval requests
    @abstractmethod
    def add_approval(self, request: ApprovalRequest) -> None:
        ...

    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        ...

    @abstractmethod
    def list_approvals(self, status: Optional[ApprovalStatus] = None) -> List[ApprovalRequest]:
        """Oldest first."""

    @abstractmethod
    def compare_and_set_approval(self, expected: ApprovalRequest, updated: ApprovalRequest) -> bool:
        """Write `updated` only if the stored status and executed_at still equal `expected`'s."""

    # Jidoka events
    @abstractmethod
    def add_jidoka_event(self, event: JidokaEvent) -> None:
        ...

    @abstractmethod
    def get_jidoka_event(self, event_id: str) -> Optional[JidokaEvent]:
        ...

    @abstractmethod
    def list_jidoka_events(self, resolved: Optional[bool] = None) -> List[JidokaEvent]:
        ...

    @abstractmethod
    def latest_jidoka_event(self, trigger_kind: TriggerKind, sensor_id: Optional[str]) -> Optional[JidokaEvent]:
        ...

    @abstractmethod
    def compare_and_set_jidoka_event(self, expected: JidokaEvent, updated: JidokaEvent) -> bool:
        """Write `updated` only if the stored resolved flag still equals `expected`'s."""

    # Rollback plans
    @abstractmethod
    def add_rollback_plan(self, plan: RollbackPlan) -> None:
        """Store `plan`; raises IllegalStateTransition if its action already has one."""

    @abstractmethod
    def get_rollback_plan(self, plan_id: str) -> Optional[RollbackPlan]:
        ...

    @abstractmethod
    def get_rollback_plan_for(self, original_action_id: str) -> Optional[RollbackPlan]:
        """The plan generated for an approval, Jidoka event or audit entry, if any."""

    @abstractmethod
    def list_rollback_plans(self) -> List[RollbackPlan]:
        ...

    @abstractmethod
    def compare_and_set_rollback_plan(self, expected: RollbackPlan, updated: RollbackPlan) -> bool:
        """Write `updated` only if the stored executed flag still equals `expected`'s."""

    # Sensor readings
    @abstractmethod
    def add_readings(self, readings: List[SensorReading]) -> None:
        ...

    @abstractmethod
    def list_readings(self) -> List[SensorReading]:
        ...
