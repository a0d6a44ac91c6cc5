"""Persistent store interface for the verification core.

The lifecycle manager, rate limiter and intelligence validator only talk to
storage through :class:`PersistentStore`. ``SqlStore`` backs it with
SQLAlchemy; ``InMemoryStore`` is the process-local double used by tests.

Implementations must provide two guarantees under concurrency:

* ``increment_attempts`` is an atomic increment-and-read guarded by the
  attempt ceiling. Verification reserves an attempt through it before any
  code comparison, so concurrent guesses never compare more codes than the
  ceiling allows;
* ``replace_pending`` leaves at most one unverified record per phone.

Any backend failure surfaces as :class:`StoreUnavailable`.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol


class StoreUnavailable(RuntimeError):
    """The backing store could not complete an operation."""


@dataclass
class PendingVerification:
    phone: str
    code_hash: str
    nonce: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    verified_at: Optional[datetime] = None
    request_ip: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint_hash: Optional[str] = None
    session_id: Optional[str] = None
    risk_score: int = 0
    risk_flags: list[str] = field(default_factory=list)
    required_captcha: bool = False
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass
class IntelligenceRecord:
    phone: str
    is_valid: bool
    line_type: str = "unknown"
    carrier: Optional[str] = None
    country_code: Optional[str] = None
    risk_score: int = 0
    warnings: list[str] = field(default_factory=list)
    last_verification: Optional[datetime] = None


@dataclass
class UserIdentity:
    phone: str
    last_verified_at: Optional[datetime] = None
    verification_count: int = 0


@dataclass
class AuditEntry:
    attempt_type: str
    status: str
    phone_masked: Optional[str] = None
    ip_address: Optional[str] = None
    fingerprint_hash: Optional[str] = None
    session_id: Optional[str] = None
    error_kind: Optional[str] = None
    risk_score: int = 0
    risk_flags: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass
class DeviceInfo:
    fingerprint_hash: str
    user_agent: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None


class PersistentStore(Protocol):
    # verification records
    def replace_pending(self, record: PendingVerification) -> PendingVerification: ...

    def latest_pending(self, phone: str) -> Optional[PendingVerification]: ...

    def count_pending(self, phone: str) -> int: ...

    def increment_attempts(self, record_id: uuid.UUID, max_attempts: int) -> Optional[int]:
        """Return the new attempt count, or None if the ceiling was already reached."""
        ...

    def mark_verified(self, record_id: uuid.UUID, at: datetime) -> bool: ...

    # rate-limit counters
    def add_counters(self, identifiers: Iterable[tuple[str, str]], phone: str, ip: str, at: datetime) -> None: ...

    def window_stats(self, kind: str, value: str, since: datetime) -> tuple[int, Optional[datetime]]:
        """Count and oldest timestamp of counter rows newer than ``since``."""
        ...

    def distinct_phones_for_ip(self, ip: str, since: datetime) -> set[str]: ...

    def distinct_ips_for_phone(self, phone: str, since: datetime) -> set[str]: ...

    def prune_counters(self, before: datetime) -> int: ...

    # phone intelligence
    def get_intelligence(self, phone: str) -> Optional[IntelligenceRecord]: ...

    def save_intelligence(self, record: IntelligenceRecord) -> None: ...

    def adjust_intelligence_risk(self, phone: str, delta: int) -> Optional[int]: ...

    # user identity
    def get_user(self, phone: str) -> Optional[UserIdentity]: ...

    def record_verification(self, phone: str, at: datetime) -> UserIdentity: ...

    # audit / devices
    def append_audit(self, entry: AuditEntry) -> None: ...

    def upsert_device(self, info: DeviceInfo, at: datetime) -> None: ...

    def bump_device_trust(self, fingerprint_hash: str, amount: int, at: datetime) -> None: ...

    def ping(self) -> None: ...


def clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))
