from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Optional

from .models import utcnow
from .store import (
    AuditEntry,
    DeviceInfo,
    IntelligenceRecord,
    PendingVerification,
    UserIdentity,
    clamp_score,
)


@dataclass
class _Counter:
    kind: str
    value: str
    phone: str
    ip: str
    created_at: datetime


@dataclass
class _Device:
    info: DeviceInfo
    trust_score: int
    first_seen: datetime
    last_seen: datetime


class InMemoryStore:
    """Process-local PersistentStore.

    Every method runs under one lock, which makes the attempt increment and
    the pending-record replacement atomic. Records are copied on the way in
    and out so callers never share state with the store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.records: dict[uuid.UUID, PendingVerification] = {}
        self.counters: list[_Counter] = []
        self.intelligence: dict[str, IntelligenceRecord] = {}
        self.users: dict[str, UserIdentity] = {}
        self.audit: list[AuditEntry] = []
        self.devices: dict[str, _Device] = {}

    def replace_pending(self, record: PendingVerification) -> PendingVerification:
        with self._lock:
            stale = [rid for rid, r in self.records.items() if r.phone == record.phone and not r.verified]
            for rid in stale:
                del self.records[rid]
            self.records[record.id] = replace(record, verified=False, risk_flags=list(record.risk_flags))
            return record

    def latest_pending(self, phone: str) -> Optional[PendingVerification]:
        with self._lock:
            pending = [r for r in self.records.values() if r.phone == phone and not r.verified]
            if not pending:
                return None
            latest = max(pending, key=lambda r: r.created_at)
            return replace(latest, risk_flags=list(latest.risk_flags))

    def count_pending(self, phone: str) -> int:
        with self._lock:
            return sum(1 for r in self.records.values() if r.phone == phone and not r.verified)

    def increment_attempts(self, record_id: uuid.UUID, max_attempts: int) -> Optional[int]:
        with self._lock:
            rec = self.records.get(record_id)
            if rec is None or rec.verified or rec.attempts >= max_attempts:
                return None
            rec.attempts += 1
            return rec.attempts

    def mark_verified(self, record_id: uuid.UUID, at: datetime) -> bool:
        with self._lock:
            rec = self.records.get(record_id)
            if rec is None or rec.verified:
                return False
            rec.verified = True
            rec.verified_at = at
            return True

    def add_counters(self, identifiers: Iterable[tuple[str, str]], phone: str, ip: str, at: datetime) -> None:
        with self._lock:
            for kind, value in identifiers:
                self.counters.append(_Counter(kind, value, phone, ip, at))

    def window_stats(self, kind: str, value: str, since: datetime) -> tuple[int, Optional[datetime]]:
        with self._lock:
            times = [c.created_at for c in self.counters if c.kind == kind and c.value == value and c.created_at > since]
            return len(times), (min(times) if times else None)

    def distinct_phones_for_ip(self, ip: str, since: datetime) -> set[str]:
        with self._lock:
            return {c.phone for c in self.counters if c.kind == "ip" and c.value == ip and c.created_at > since}

    def distinct_ips_for_phone(self, phone: str, since: datetime) -> set[str]:
        with self._lock:
            return {c.ip for c in self.counters if c.kind == "phone" and c.value == phone and c.created_at > since}

    def prune_counters(self, before: datetime) -> int:
        with self._lock:
            kept = [c for c in self.counters if c.created_at >= before]
            removed = len(self.counters) - len(kept)
            self.counters = kept
            return removed

    def get_intelligence(self, phone: str) -> Optional[IntelligenceRecord]:
        with self._lock:
            rec = self.intelligence.get(phone)
            return replace(rec, warnings=list(rec.warnings)) if rec else None

    def save_intelligence(self, record: IntelligenceRecord) -> None:
        with self._lock:
            self.intelligence[record.phone] = replace(
                record,
                risk_score=clamp_score(record.risk_score),
                warnings=list(record.warnings),
                last_verification=record.last_verification or utcnow(),
            )

    def adjust_intelligence_risk(self, phone: str, delta: int) -> Optional[int]:
        with self._lock:
            rec = self.intelligence.get(phone)
            if rec is None:
                return None
            rec.risk_score = clamp_score(rec.risk_score + delta)
            return rec.risk_score

    def get_user(self, phone: str) -> Optional[UserIdentity]:
        with self._lock:
            user = self.users.get(phone)
            return replace(user) if user else None

    def record_verification(self, phone: str, at: datetime) -> UserIdentity:
        with self._lock:
            user = self.users.setdefault(phone, UserIdentity(phone=phone))
            user.last_verified_at = at
            user.verification_count += 1
            return replace(user)

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self.audit.append(replace(entry, risk_flags=list(entry.risk_flags), created_at=entry.created_at or utcnow()))

    def upsert_device(self, info: DeviceInfo, at: datetime) -> None:
        with self._lock:
            dev = self.devices.get(info.fingerprint_hash)
            if dev is None:
                self.devices[info.fingerprint_hash] = _Device(info=replace(info), trust_score=50, first_seen=at, last_seen=at)
                return
            for attr in ("user_agent", "screen_resolution", "timezone", "language", "platform"):
                value = getattr(info, attr)
                if value:
                    setattr(dev.info, attr, value)
            dev.last_seen = at

    def bump_device_trust(self, fingerprint_hash: str, amount: int, at: datetime) -> None:
        with self._lock:
            dev = self.devices.get(fingerprint_hash)
            if dev is None:
                return
            dev.trust_score = clamp_score(dev.trust_score + amount)
            dev.last_seen = at

    def ping(self) -> None:
        return None
