"""
SQLAlchemy-backed store.

Every method runs in its own short session. Compare-and-set is a conditional
UPDATE whose WHERE clause carries the expected state; a rowcount of zero means
another writer got there first.
"""
import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from farm_safety.models.audit import AuditEntryRecord
from farm_safety.models.domain import (
    ApprovalRequestRecord,
    JidokaEventRecord,
    RollbackPlanRecord,
    SensorReadingRecord,
)
from farm_safety.models.enums import ApprovalStatus, TriggerKind
from farm_safety.repositories.base import SafetyStore
from farm_safety.safety.approval_policy import ApprovalRequest
from farm_safety.safety.audit_chain import GENESIS_HASH, AuditEntry
from farm_safety.safety.errors import ChainIntegrityViolation, IllegalStateTransition
from farm_safety.safety.jidoka import JidokaEvent
from farm_safety.safety.readings import SensorReading
from farm_safety.safety.rollback import RollbackPlan

logger = logging.getLogger(__name__)


def _approval_row(request: ApprovalRequest) -> dict:
    row = request.model_dump()
    row["guardrail_checks"] = [c.model_dump(mode="json") for c in request.guardrail_checks]
    return row


def _rollback_row(plan: RollbackPlan) -> dict:
    row = plan.model_dump()
    row["steps"] = [s.model_dump(mode="json") for s in plan.steps]
    return row


class SqlAlchemyStore(SafetyStore):

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # Audit chain
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._session() as db:
            tail = db.query(AuditEntryRecord).order_by(AuditEntryRecord.seq.desc()).first()
            tail_hash = tail.hash if tail else GENESIS_HASH
            if entry.previous_hash != tail_hash:
                raise ChainIntegrityViolation(
                    f"Refusing to fork the audit chain: entry {entry.id} links to "
                    f"{entry.previous_hash[:16]}..., tail is {tail_hash[:16]}...",
                    reason="append does not extend the current tail",
                )
            db.add(AuditEntryRecord(**entry.model_dump()))
            try:
                db.commit()
            except IntegrityError:
                # Another process appended after the same predecessor first
                db.rollback()
                logger.error("Concurrent audit append rejected for entry %s", entry.id)
                raise ChainIntegrityViolation(
                    f"Refusing to fork the audit chain: {entry.previous_hash[:16]}... already has a successor",
                    reason="append does not extend the current tail",
                )

    def last_audit_entry(self) -> Optional[AuditEntry]:
        with self._session() as db:
            row = db.query(AuditEntryRecord).order_by(AuditEntryRecord.seq.desc()).first()
            return AuditEntry.model_validate(row, from_attributes=True) if row else None

    def list_audit_entries(self) -> List[AuditEntry]:
        with self._session() as db:
            rows = db.query(AuditEntryRecord).order_by(AuditEntryRecord.seq).all()
            return [AuditEntry.model_validate(r, from_attributes=True) for r in rows]

    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._session() as db:
            row = db.query(AuditEntryRecord).filter(AuditEntryRecord.id == entry_id).first()
            return AuditEntry.model_validate(row, from_attributes=True) if row else None

    # Approval requests
    def add_approval(self, request: ApprovalRequest) -> None:
        with self._session() as db:
            db.add(ApprovalRequestRecord(**_approval_row(request)))
            db.commit()

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._session() as db:
            row = db.query(ApprovalRequestRecord).filter(ApprovalRequestRecord.id == approval_id).first()
            return ApprovalRequest.model_validate(row, from_attributes=True) if row else None

    def list_approvals(self, status: Optional[ApprovalStatus] = None) -> List[ApprovalRequest]:
        with self._session() as db:
            query = db.query(ApprovalRequestRecord)
            if status is not None:
                query = query.filter(ApprovalRequestRecord.status == ApprovalStatus(status))
            rows = query.order_by(ApprovalRequestRecord.seq).all()
            return [ApprovalRequest.model_validate(r, from_attributes=True) for r in rows]

    def compare_and_set_approval(self, expected: ApprovalRequest, updated: ApprovalRequest) -> bool:
        values = _approval_row(updated)
        values.pop("id")
        with self._session() as db:
            query = db.query(ApprovalRequestRecord).filter(
                ApprovalRequestRecord.id == expected.id,
                ApprovalRequestRecord.status == expected.status,
            )
            if expected.executed_at is None:
                query = query.filter(ApprovalRequestRecord.executed_at.is_(None))
            else:
                query = query.filter(ApprovalRequestRecord.executed_at == expected.executed_at)
            count = query.update(values, synchronize_session=False)
            db.commit()
            return count == 1

    # Jidoka events
    def add_jidoka_event(self, event: JidokaEvent) -> None:
        with self._session() as db:
            db.add(JidokaEventRecord(**event.model_dump()))
            db.commit()

    def get_jidoka_event(self, event_id: str) -> Optional[JidokaEvent]:
        with self._session() as db:
            row = db.query(JidokaEventRecord).filter(JidokaEventRecord.id == event_id).first()
            return JidokaEvent.model_validate(row, from_attributes=True) if row else None

    def list_jidoka_events(self, resolved: Optional[bool] = None) -> List[JidokaEvent]:
        with self._session() as db:
            query = db.query(JidokaEventRecord)
            if resolved is not None:
                query = query.filter(JidokaEventRecord.resolved == resolved)
            rows = query.order_by(JidokaEventRecord.seq).all()
            return [JidokaEvent.model_validate(r, from_attributes=True) for r in rows]

    def latest_jidoka_event(self, trigger_kind: TriggerKind, sensor_id: Optional[str]) -> Optional[JidokaEvent]:
        with self._session() as db:
            query = db.query(JidokaEventRecord).filter(JidokaEventRecord.trigger_kind == TriggerKind(trigger_kind))
            if sensor_id is None:
                query = query.filter(JidokaEventRecord.sensor_id.is_(None))
            else:
                query = query.filter(JidokaEventRecord.sensor_id == sensor_id)
            row = query.order_by(JidokaEventRecord.seq.desc()).first()
            return JidokaEvent.model_validate(row, from_attributes=True) if row else None

    def compare_and_set_jidoka_event(self, expected: JidokaEvent, updated: JidokaEvent) -> bool:
        values = updated.model_dump()
        values.pop("id")
        with self._session() as db:
            count = db.query(JidokaEventRecord).filter(
                JidokaEventRecord.id == expected.id,
                JidokaEventRecord.resolved == expected.resolved,
            ).update(values, synchronize_session=False)
            db.commit()
            return count == 1

    # Rollback plans
    def add_rollback_plan(self, plan: RollbackPlan) -> None:
        with self._session() as db:
            db.add(RollbackPlanRecord(**_rollback_row(plan)))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.error("Duplicate rollback plan for %s rejected", plan.original_action_id)
                raise IllegalStateTransition(
                    f"REFUSAL: {plan.original_action_id} already has a rollback plan.",
                    current_status="planned",
                    attempted="plan",
                )

    def get_rollback_plan(self, plan_id: str) -> Optional[RollbackPlan]:
        with self._session() as db:
            row = db.query(RollbackPlanRecord).filter(RollbackPlanRecord.id == plan_id).first()
            return RollbackPlan.model_validate(row, from_attributes=True) if row else None

    def get_rollback_plan_for(self, original_action_id: str) -> Optional[RollbackPlan]:
        with self._session() as db:
            row = db.query(RollbackPlanRecord).filter(RollbackPlanRecord.original_action_id == original_action_id).first()
            return RollbackPlan.model_validate(row, from_attributes=True) if row else None

    def list_rollback_plans(self) -> List[RollbackPlan]:
        with self._session() as db:
            rows = db.query(RollbackPlanRecord).order_by(RollbackPlanRecord.seq).all()
            return [RollbackPlan.model_validate(r, from_attributes=True) for r in rows]

    def compare_and_set_rollback_plan(self, expected: RollbackPlan, updated: RollbackPlan) -> bool:
        values = _rollback_row(updated)
        values.pop("id")
        with self._session() as db:
            count = db.query(RollbackPlanRecord).filter(
                RollbackPlanRecord.id == expected.id,
                RollbackPlanRecord.executed == expected.executed,
            ).update(values, synchronize_session=False)
            db.commit()
            return count == 1

    # Sensor readings
    def add_readings(self, readings: List[SensorReading]) -> None:
        with self._session() as db:
            db.add_all([SensorReadingRecord(**r.model_dump()) for r in readings])
            db.commit()

    def list_readings(self) -> List[SensorReading]:
        with self._session() as db:
            rows = db.query(SensorReadingRecord).order_by(SensorReadingRecord.seq).all()
            return [SensorReading.model_validate(r, from_attributes=True) for r in rows]
