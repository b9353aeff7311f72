"""
Audit chain - tamper-evident, append-only log of every safety decision.

Each entry's hash is SHA-256 over a canonical JSON serialization of its
fields (everything except the hash and the signature), and each entry links
to its predecessor's hash. The first entry links to GENESIS_HASH.

Invariants:
- Entries are never edited or removed once appended
- entries[i].previous_hash == entries[i - 1].hash
- Verification failure means tampering or data loss; there is no repair
"""
import hashlib
import hmac
import json
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from farm_safety.models.enums import AuditEntryType
from farm_safety.safety.errors import ChainIntegrityViolation
from farm_safety.timestamps import Clock, from_iso, new_id, to_iso, utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditEntry(BaseModel):
    """
    One immutable link in the chain.

    Serialized with camelCase keys (`entryType`, `previousHash`) so exports
    keep a stable wire format.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    timestamp: str
    entry_type: AuditEntryType
    actor: str
    target: Optional[str] = None
    action: str
    details: Optional[Dict[str, Any]] = None
    previous_hash: str
    hash: str
    signature: Optional[str] = None


class ChainVerification(BaseModel):
    valid: bool
    invalid_at: Optional[int] = None
    reason: Optional[str] = None


class ChainState(BaseModel):
    entries: List[AuditEntry]
    last_hash: str
    chain_valid: bool


class ImportResult(BaseModel):
    entries: List[AuditEntry]
    valid: bool
    error: Optional[str] = None


def canonical_payload(
    id: str,
    timestamp: str,
    entry_type: AuditEntryType,
    actor: str,
    target: Optional[str],
    action: str,
    details: Optional[Dict[str, Any]],
    previous_hash: str,
) -> str:
    """Stable serialization of the hashed fields: sorted keys, compact separators."""
    payload = {
        "id": id,
        "timestamp": timestamp,
        "entryType": AuditEntryType(entry_type).value,
        "actor": actor,
        "target": target,
        "action": action,
        "details": details,
        "previousHash": previous_hash,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_hash(entry: AuditEntry) -> str:
    data = canonical_payload(
        entry.id,
        entry.timestamp,
        entry.entry_type,
        entry.actor,
        entry.target,
        entry.action,
        entry.details,
        entry.previous_hash,
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def sign(entry_hash: str, key: str) -> str:
    """HMAC-SHA256 over the entry hash."""
    return hmac.new(key.encode("utf-8"), entry_hash.encode("utf-8"), hashlib.sha256).hexdigest()


def create_entry(
    entry_type: AuditEntryType,
    actor: str,
    action: str,
    target: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    previous_hash: str = GENESIS_HASH,
    now: Optional[datetime] = None,
    signing_key: Optional[str] = None,
) -> AuditEntry:
    """Build a hashed (and optionally signed) entry linked to `previous_hash`."""
    unhashed = AuditEntry(
        id=new_id("audit"),
        timestamp=to_iso(now or utcnow()),
        entry_type=entry_type,
        actor=actor,
        target=target,
        action=action,
        details=details,
        previous_hash=previous_hash,
        hash="",
    )
    entry_hash = compute_hash(unhashed)
    return unhashed.model_copy(update={
        "hash": entry_hash,
        "signature": sign(entry_hash, signing_key) if signing_key else None,
    })


def append_to_chain(
    entries: List[AuditEntry],
    entry_type: AuditEntryType,
    actor: str,
    action: str,
    target: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    signing_key: Optional[str] = None,
) -> AuditEntry:
    """Create the next entry for `entries`. The caller owns storing it."""
    previous_hash = entries[-1].hash if entries else GENESIS_HASH
    return create_entry(
        entry_type,
        actor,
        action,
        target=target,
        details=details,
        previous_hash=previous_hash,
        now=now,
        signing_key=signing_key,
    )


def verify_entry_hash(entry: AuditEntry) -> bool:
    return entry.hash == compute_hash(entry)


def verify(entries: List[AuditEntry], signing_key: Optional[str] = None) -> ChainVerification:
    """
    Re-derive every hash and re-check every link in a single pass.

    Reports the index of the first entry that fails.
    """
    if not entries:
        return ChainVerification(valid=True)

    if entries[0].previous_hash != GENESIS_HASH:
        return ChainVerification(
            valid=False,
            invalid_at=0,
            reason="First entry does not link to genesis hash",
        )

    for i, entry in enumerate(entries):
        if not verify_entry_hash(entry):
            return ChainVerification(
                valid=False,
                invalid_at=i,
                reason=f"Entry {i} hash is invalid (data may be tampered)",
            )
        if i > 0 and entry.previous_hash != entries[i - 1].hash:
            return ChainVerification(
                valid=False,
                invalid_at=i,
                reason=f"Entry {i} does not link to previous entry",
            )
        if signing_key and (
            entry.signature is None
            or not hmac.compare_digest(entry.signature, sign(entry.hash, signing_key))
        ):
            return ChainVerification(
                valid=False,
                invalid_at=i,
                reason=f"Entry {i} signature is missing or invalid",
            )

    return ChainVerification(valid=True)


def assert_intact(entries: List[AuditEntry], signing_key: Optional[str] = None) -> None:
    """Raise ChainIntegrityViolation unless the chain verifies."""
    result = verify(entries, signing_key=signing_key)
    if not result.valid:
        raise ChainIntegrityViolation(
            f"TAMPERING DETECTED: {result.reason}",
            invalid_at=result.invalid_at,
            reason=result.reason,
        )


def chain_state(entries: List[AuditEntry], signing_key: Optional[str] = None) -> ChainState:
    return ChainState(
        entries=list(entries),
        last_hash=entries[-1].hash if entries else GENESIS_HASH,
        chain_valid=verify(entries, signing_key=signing_key).valid,
    )


def filter_by_type(entries: Iterable[AuditEntry], types: Iterable[AuditEntryType]) -> List[AuditEntry]:
    wanted = {AuditEntryType(t) for t in types}
    return [e for e in entries if e.entry_type in wanted]


def filter_by_time(
    entries: Iterable[AuditEntry],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[AuditEntry]:
    """Inclusive time-range filter; either bound may be omitted."""
    selected = []
    for entry in entries:
        moment = from_iso(entry.timestamp)
        if start is not None and moment < start:
            continue
        if end is not None and moment > end:
            continue
        selected.append(entry)
    return selected


def export_chain(entries: List[AuditEntry]) -> str:
    """Serialize for backup. import_chain(export_chain(x)) re-exports byte-for-byte."""
    records = [e.model_dump(mode="json", by_alias=True) for e in entries]
    return json.dumps(records, indent=2, ensure_ascii=False)


def import_chain(text: str, signing_key: Optional[str] = None) -> ImportResult:
    """Parse an export and verify it. Malformed input is reported, not raised."""
    try:
        records = json.loads(text)
        entries = [AuditEntry.model_validate(record) for record in records]
    except (ValueError, TypeError, ValidationError) as exc:
        return ImportResult(entries=[], valid=False, error=f"Parse error: {exc}")
    result = verify(entries, signing_key=signing_key)
    return ImportResult(entries=entries, valid=result.valid, error=result.reason)


def format_entry(entry: AuditEntry) -> str:
    lines = [
        f"[{entry.timestamp}] {entry.entry_type.value.upper()}",
        f"  Actor: {entry.actor}",
    ]
    if entry.target:
        lines.append(f"  Target: {entry.target}")
    lines.append(f"  Action: {entry.action}")
    lines.append(f"  Hash: {entry.hash[:16]}...")
    return "\n".join(lines)


def format_summary(state: ChainState) -> str:
    lines = [
        "AUDIT CHAIN SUMMARY",
        "===================",
        f"Total entries: {len(state.entries)}",
        f"Chain valid: {'YES' if state.chain_valid else 'NO - TAMPERING DETECTED'}",
        f"Last hash: {state.last_hash[:16]}...",
    ]
    if state.entries:
        lines.append(f"First entry: {state.entries[0].timestamp}")
        lines.append(f"Last entry: {state.entries[-1].timestamp}")
        lines.append("")
        lines.append("By type:")
        counts = Counter(e.entry_type.value for e in state.entries)
        for entry_type, count in counts.items():
            lines.append(f"  {entry_type}: {count}")
    return "\n".join(lines)


class AuditChain:
    """
    The single writer for one chain.

    Reading the tail, hashing and storing the new entry happen under one lock,
    so concurrent appenders can never link to the same predecessor.
    """

    def __init__(self, store, signing_key: Optional[str] = None, clock: Clock = utcnow):
        self.store = store
        self.signing_key = signing_key
        self.clock = clock
        self._lock = threading.Lock()

    def append(
        self,
        entry_type: AuditEntryType,
        actor: str,
        action: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        with self._lock:
            tail = self.store.last_audit_entry()
            entry = create_entry(
                entry_type,
                actor,
                action,
                target=target,
                details=details,
                previous_hash=tail.hash if tail else GENESIS_HASH,
                now=self.clock(),
                signing_key=self.signing_key,
            )
            self.store.append_audit_entry(entry)
        logger.info("Audit: %s by %s on %s (%s)", entry.entry_type.value, actor, target or "-", action)
        return entry

    def entries(self) -> List[AuditEntry]:
        return self.store.list_audit_entries()

    def verify(self) -> ChainVerification:
        result = verify(self.entries(), signing_key=self.signing_key)
        if not result.valid:
            logger.error("Audit chain verification failed at %s: %s", result.invalid_at, result.reason)
        return result

    def assert_intact(self) -> None:
        assert_intact(self.entries(), signing_key=self.signing_key)

    def state(self) -> ChainState:
        return chain_state(self.entries(), signing_key=self.signing_key)
