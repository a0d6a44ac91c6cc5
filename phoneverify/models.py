import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    Index,
    JSON,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def default_uuid() -> uuid.UUID:
    return uuid.uuid4()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SmsVerification(Base):
    __tablename__ = "sms_verifications"
    __table_args__ = (
        # at most one unverified record per phone
        Index(
            "uq_sms_verifications_pending_phone",
            "phone",
            unique=True,
            postgresql_where=text("NOT verified"),
            sqlite_where=text("verified = 0"),
        ),
        Index("ix_sms_verifications_phone_created", "phone", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False)
    code_hash = Column(String(64), nullable=False)
    nonce = Column(String(32), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
    request_ip = Column(String(64), nullable=True)
    user_agent = Column(String(256), nullable=True)
    fingerprint_hash = Column(String(128), nullable=True)
    session_id = Column(String(128), nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    risk_flags = Column(JSON, nullable=False, default=list)
    required_captcha = Column(Boolean, nullable=False, default=False)


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"
    __table_args__ = (
        Index("ix_rate_limit_counters_identifier", "identifier_kind", "identifier_value", "created_at"),
        Index("ix_rate_limit_counters_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier_kind = Column(String(16), nullable=False)  # phone|ip|fingerprint
    identifier_value = Column(String(128), nullable=False)
    # the request's phone and ip, for the cross-identifier ratios
    phone = Column(String(32), nullable=False)
    ip = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PhoneIntelligence(Base):
    __tablename__ = "phone_number_intelligence"

    phone = Column(String(32), primary_key=True)
    is_valid = Column(Boolean, nullable=False, default=False)
    carrier = Column(String(128), nullable=True)
    line_type = Column(String(16), nullable=False, default="unknown")  # mobile|landline|voip|unknown
    country_code = Column(String(8), nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    warnings = Column(JSON, nullable=False, default=list)
    last_verification = Column(DateTime, nullable=False, default=utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    last_verified_at = Column(DateTime, nullable=True)
    verification_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AuthAttempt(Base):
    __tablename__ = "auth_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_masked = Column(String(32), nullable=True)
    ip_address = Column(String(64), nullable=True)
    fingerprint_hash = Column(String(128), nullable=True)
    session_id = Column(String(128), nullable=True)
    attempt_type = Column(String(16), nullable=False)  # send_otp|verify_otp
    status = Column(String(16), nullable=False)  # success|failed|blocked
    error_kind = Column(String(32), nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    risk_flags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class DeviceFingerprint(Base):
    __tablename__ = "device_fingerprints"

    fingerprint_hash = Column(String(128), primary_key=True)
    user_agent = Column(String(256), nullable=True)
    screen_resolution = Column(String(32), nullable=True)
    timezone = Column(String(64), nullable=True)
    language = Column(String(32), nullable=True)
    platform = Column(String(64), nullable=True)
    trust_score = Column(Integer, nullable=False, default=50)
    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=False, default=utcnow)
