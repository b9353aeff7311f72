"""
Audit chain storage model.

Rows mirror AuditEntry one-to-one. They are written once and never updated
or deleted; chain order is the autoincrement sequence.
"""
from sqlalchemy import Column, Enum as SQLEnum, Integer, JSON, String

from farm_safety.database import Base
from farm_safety.models.enums import AuditEntryType


def _values(enum_class):
    return [member.value for member in enum_class]


class AuditEntryRecord(Base):
    """
    Immutable, hash-linked audit entry.

    Invariants:
    - Append-only: never edited or deleted
    - previous_hash is unique, so two appends can never link to the same predecessor
    """
    __tablename__ = "audit_entries"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC
    entry_type = Column(SQLEnum(AuditEntryType, values_callable=_values), nullable=False, index=True)
    actor = Column(String, nullable=False)
    target = Column(String, nullable=True)
    action = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    previous_hash = Column(String(64), nullable=False, unique=True)
    hash = Column(String(64), nullable=False, unique=True)
    signature = Column(String, nullable=True)
