from __future__ import annotations

import functools
import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .database import SessionLocal, session_scope
from .models import (
    AuthAttempt,
    DeviceFingerprint,
    PhoneIntelligence,
    RateLimitCounter,
    SmsVerification,
    User,
    utcnow,
)
from .store import (
    AuditEntry,
    DeviceInfo,
    IntelligenceRecord,
    PendingVerification,
    StoreUnavailable,
    UserIdentity,
    clamp_score,
)

logger = logging.getLogger("phoneverify.store")


def _guard(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"{fn.__name__} failed: {exc.__class__.__name__}") from exc

    return wrapper


def _pending_from_row(row: SmsVerification) -> PendingVerification:
    return PendingVerification(
        id=row.id,
        phone=row.phone,
        code_hash=row.code_hash,
        nonce=row.nonce,
        created_at=row.created_at,
        expires_at=row.expires_at,
        attempts=row.attempts,
        verified=row.verified,
        verified_at=row.verified_at,
        request_ip=row.request_ip,
        user_agent=row.user_agent,
        fingerprint_hash=row.fingerprint_hash,
        session_id=row.session_id,
        risk_score=row.risk_score,
        risk_flags=list(row.risk_flags or []),
        required_captcha=row.required_captcha,
    )


def _intel_from_row(row: PhoneIntelligence) -> IntelligenceRecord:
    return IntelligenceRecord(
        phone=row.phone,
        is_valid=row.is_valid,
        line_type=row.line_type,
        carrier=row.carrier,
        country_code=row.country_code,
        risk_score=row.risk_score,
        warnings=list(row.warnings or []),
        last_verification=row.last_verification,
    )


class SqlStore:
    """:class:`~phoneverify.store.PersistentStore` on SQLAlchemy sessions."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._factory = session_factory or SessionLocal

    def _session(self):
        return session_scope(self._factory)

    # --- verification records -------------------------------------------

    @_guard
    def replace_pending(self, record: PendingVerification) -> PendingVerification:
        # A concurrent send for the same phone can win the partial unique
        # index between our delete and insert; one retry resolves it.
        for attempt in range(2):
            try:
                with self._session() as db:
                    db.execute(
                        delete(SmsVerification)
                        .where(SmsVerification.phone == record.phone, SmsVerification.verified.is_(False))
                        .execution_options(synchronize_session=False)
                    )
                    db.add(
                        SmsVerification(
                            id=record.id,
                            phone=record.phone,
                            code_hash=record.code_hash,
                            nonce=record.nonce,
                            created_at=record.created_at,
                            expires_at=record.expires_at,
                            attempts=record.attempts,
                            verified=False,
                            request_ip=record.request_ip,
                            user_agent=record.user_agent,
                            fingerprint_hash=record.fingerprint_hash,
                            session_id=record.session_id,
                            risk_score=record.risk_score,
                            risk_flags=list(record.risk_flags),
                            required_captcha=record.required_captcha,
                        )
                    )
                return record
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.info("Pending record race for %s, retrying", record.phone[-3:])
        return record

    @_guard
    def latest_pending(self, phone: str) -> Optional[PendingVerification]:
        with self._session() as db:
            row = db.execute(
                select(SmsVerification)
                .where(SmsVerification.phone == phone, SmsVerification.verified.is_(False))
                .order_by(SmsVerification.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _pending_from_row(row) if row else None

    @_guard
    def count_pending(self, phone: str) -> int:
        with self._session() as db:
            return db.execute(
                select(func.count(SmsVerification.id)).where(
                    SmsVerification.phone == phone, SmsVerification.verified.is_(False)
                )
            ).scalar_one()

    @_guard
    def increment_attempts(self, record_id: uuid.UUID, max_attempts: int) -> Optional[int]:
        with self._session() as db:
            res = db.execute(
                update(SmsVerification)
                .where(
                    SmsVerification.id == record_id,
                    SmsVerification.verified.is_(False),
                    SmsVerification.attempts < max_attempts,
                )
                .values(attempts=SmsVerification.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                return None
            return db.execute(
                select(SmsVerification.attempts).where(SmsVerification.id == record_id)
            ).scalar_one()

    @_guard
    def mark_verified(self, record_id: uuid.UUID, at: datetime) -> bool:
        with self._session() as db:
            res = db.execute(
                update(SmsVerification)
                .where(SmsVerification.id == record_id, SmsVerification.verified.is_(False))
                .values(verified=True, verified_at=at)
                .execution_options(synchronize_session=False)
            )
            return res.rowcount == 1

    # --- rate-limit counters --------------------------------------------

    @_guard
    def add_counters(self, identifiers: Iterable[tuple[str, str]], phone: str, ip: str, at: datetime) -> None:
        with self._session() as db:
            db.add_all(
                RateLimitCounter(identifier_kind=kind, identifier_value=value, phone=phone, ip=ip, created_at=at)
                for kind, value in identifiers
            )

    @_guard
    def window_stats(self, kind: str, value: str, since: datetime) -> tuple[int, Optional[datetime]]:
        with self._session() as db:
            count, oldest = db.execute(
                select(func.count(RateLimitCounter.id), func.min(RateLimitCounter.created_at)).where(
                    RateLimitCounter.identifier_kind == kind,
                    RateLimitCounter.identifier_value == value,
                    RateLimitCounter.created_at > since,
                )
            ).one()
            return int(count or 0), oldest

    @_guard
    def distinct_phones_for_ip(self, ip: str, since: datetime) -> set[str]:
        with self._session() as db:
            rows = db.execute(
                select(RateLimitCounter.phone).distinct().where(
                    RateLimitCounter.identifier_kind == "ip",
                    RateLimitCounter.identifier_value == ip,
                    RateLimitCounter.created_at > since,
                )
            ).scalars()
            return set(rows)

    @_guard
    def distinct_ips_for_phone(self, phone: str, since: datetime) -> set[str]:
        with self._session() as db:
            rows = db.execute(
                select(RateLimitCounter.ip).distinct().where(
                    RateLimitCounter.identifier_kind == "phone",
                    RateLimitCounter.identifier_value == phone,
                    RateLimitCounter.created_at > since,
                )
            ).scalars()
            return set(rows)

    @_guard
    def prune_counters(self, before: datetime) -> int:
        with self._session() as db:
            res = db.execute(
                delete(RateLimitCounter)
                .where(RateLimitCounter.created_at < before)
                .execution_options(synchronize_session=False)
            )
            return res.rowcount or 0

    # --- phone intelligence ---------------------------------------------

    @_guard
    def get_intelligence(self, phone: str) -> Optional[IntelligenceRecord]:
        with self._session() as db:
            row = db.get(PhoneIntelligence, phone)
            return _intel_from_row(row) if row else None

    @_guard
    def save_intelligence(self, record: IntelligenceRecord) -> None:
        with self._session() as db:
            db.merge(
                PhoneIntelligence(
                    phone=record.phone,
                    is_valid=record.is_valid,
                    carrier=record.carrier,
                    line_type=record.line_type,
                    country_code=record.country_code,
                    risk_score=clamp_score(record.risk_score),
                    warnings=list(record.warnings),
                    last_verification=record.last_verification or utcnow(),
                )
            )

    @_guard
    def adjust_intelligence_risk(self, phone: str, delta: int) -> Optional[int]:
        with self._session() as db:
            row = db.get(PhoneIntelligence, phone, with_for_update=True)
            if row is None:
                return None
            row.risk_score = clamp_score(row.risk_score + delta)
            return row.risk_score

    # --- users ----------------------------------------------------------

    @_guard
    def get_user(self, phone: str) -> Optional[UserIdentity]:
        with self._session() as db:
            row = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
            if row is None:
                return None
            return UserIdentity(phone=row.phone, last_verified_at=row.last_verified_at, verification_count=row.verification_count)

    @_guard
    def record_verification(self, phone: str, at: datetime) -> UserIdentity:
        for attempt in range(2):
            try:
                with self._session() as db:
                    res = db.execute(
                        update(User)
                        .where(User.phone == phone)
                        .values(last_verified_at=at, verification_count=User.verification_count + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        db.add(User(phone=phone, last_verified_at=at, verification_count=1, created_at=at))
                        db.flush()
                    row = db.execute(select(User).where(User.phone == phone)).scalar_one()
                    return UserIdentity(phone=row.phone, last_verified_at=row.last_verified_at, verification_count=row.verification_count)
            except IntegrityError:
                # another verify created the user first; take the update path
                if attempt == 1:
                    raise
        raise StoreUnavailable("record_verification did not converge")

    # --- audit / devices ------------------------------------------------

    @_guard
    def append_audit(self, entry: AuditEntry) -> None:
        with self._session() as db:
            db.add(
                AuthAttempt(
                    phone_masked=entry.phone_masked,
                    ip_address=entry.ip_address,
                    fingerprint_hash=entry.fingerprint_hash,
                    session_id=entry.session_id,
                    attempt_type=entry.attempt_type,
                    status=entry.status,
                    error_kind=entry.error_kind,
                    risk_score=clamp_score(entry.risk_score),
                    risk_flags=list(entry.risk_flags),
                    created_at=entry.created_at or utcnow(),
                )
            )

    @_guard
    def upsert_device(self, info: DeviceInfo, at: datetime) -> None:
        with self._session() as db:
            row = db.get(DeviceFingerprint, info.fingerprint_hash)
            if row is None:
                row = DeviceFingerprint(fingerprint_hash=info.fingerprint_hash, first_seen=at)
                db.add(row)
            for attr in ("user_agent", "screen_resolution", "timezone", "language", "platform"):
                value = getattr(info, attr)
                if value:
                    setattr(row, attr, value)
            row.last_seen = at

    @_guard
    def bump_device_trust(self, fingerprint_hash: str, amount: int, at: datetime) -> None:
        with self._session() as db:
            row = db.get(DeviceFingerprint, fingerprint_hash)
            if row is None:
                return
            row.trust_score = clamp_score((row.trust_score or 0) + amount)
            row.last_seen = at

    @_guard
    def ping(self) -> None:
        with self._session() as db:
            db.execute(select(1))
