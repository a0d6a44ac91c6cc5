"""OTP send/verify pipeline.

``VerificationService.send`` and ``VerificationService.verify`` run an
ordered list of stage functions over a mutable state object. A stage either
fills in state or raises a :class:`~phoneverify.errors.VerificationError`,
which ends the run. Whatever the outcome, exactly one audit entry is
appended per call.

Store failures are fatal here (the caller gets a 500), with two exceptions:
the rate limiter degrades to allowing the request, and bookkeeping after a
successful verify (intelligence risk, device trust) is best-effort.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from phoneverify_shared.otp import code_matches, generate_otp_code, hash_code, new_nonce, new_session_id
from phoneverify_shared.phone_utils import mask_phone, normalize_phone_e164
from phoneverify_shared.sms_provider import SmsGateway, build_gateway, build_message

from .captcha import CaptchaVerifier
from .consistency import check_consistency
from .errors import (
    CaptchaRequiredError,
    CooldownError,
    ExpiredError,
    InfrastructureError,
    InvalidCodeError,
    LockedError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    VerificationError,
)
from .intelligence import (
    PhoneIntelligenceValidator,
    PhoneLookupClient,
    SmsVerdict,
    TwilioLookupClient,
    ValidationResult,
    sms_capable,
)
from .metrics import SEND_COUNTER, VERIFY_COUNTER
from .models import utcnow
from .policy import AbusePolicy, PolicyDecision
from .rate_limiter import ENUMERATION_FLAG, MultiDimensionalRateLimiter, RateLimitReport
from .store import AuditEntry, DeviceInfo, PendingVerification, PersistentStore, StoreUnavailable, UserIdentity


logger = logging.getLogger("phoneverify.otp")
audit_logger = logging.getLogger("phoneverify.audit")

DEVICE_TRUST_BONUS = 5
VERIFIED_RISK_DELTA = -10

# error kinds that mean the request was refused rather than malformed
_BLOCKED_KINDS = {"rate_limited", "captcha_required", "cooldown", "locked"}


def _clip(value: Optional[str], width: int, tail: bool = False) -> Optional[str]:
    """Fit ``value`` to its audit column; ``tail`` keeps the end of masked phones."""
    if value is None or len(value) <= width:
        return value
    return value[-width:] if tail else value[:width]


@dataclass
class RequestContext:
    ip: str
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None
    session_id: Optional[str] = None
    captcha_token: Optional[str] = None
    device: Optional[dict] = None


@dataclass
class SendOutcome:
    success: bool
    risk_score: int
    session_id: str
    expires_at: datetime
    risk_flags: list[str] = field(default_factory=list)
    message_id: Optional[str] = None
    delivered: bool = True


@dataclass
class VerifyOutcome:
    success: bool
    phone: str
    verified_at: datetime
    verification_count: int = 1
    risk_flags: list[str] = field(default_factory=list)


@dataclass
class SendState:
    raw_phone: str
    request: RequestContext
    now: datetime
    phone: str = ""
    intelligence: Optional[ValidationResult] = None
    sms_verdict: Optional[SmsVerdict] = None
    rate_limit: Optional[RateLimitReport] = None
    heuristic_flags: list[str] = field(default_factory=list)
    decision: Optional[PolicyDecision] = None
    code: Optional[str] = None
    nonce: Optional[str] = None
    session_id: Optional[str] = None
    record: Optional[PendingVerification] = None
    message_id: Optional[str] = None
    delivered: bool = False

    @property
    def risk_score(self) -> int:
        if self.decision:
            return self.decision.risk_score
        return self.intelligence.risk_score if self.intelligence else 0

    @property
    def risk_flags(self) -> list[str]:
        if self.decision:
            return list(self.decision.risk_flags)
        flags = list(self.rate_limit.flags) if self.rate_limit else []
        return flags + [f for f in self.heuristic_flags if f not in flags]


@dataclass
class VerifyState:
    raw_phone: str
    code: str
    request: RequestContext
    now: datetime
    phone: str = ""
    record: Optional[PendingVerification] = None
    risk_flags: list[str] = field(default_factory=list)
    risk_score: int = 0
    user: Optional[UserIdentity] = None


Stage = Callable[["VerificationService", object], None]


# --- send stages -----------------------------------------------------------

def normalize(svc: "VerificationService", state) -> None:
    state.phone = normalize_phone_e164(state.raw_phone, svc.country_code)


def validate_format(svc: "VerificationService", state: SendState) -> None:
    if not svc.mobile_pattern.match(state.phone):
        raise ValidationError("phone does not match the mobile pattern")


def cooldown(svc: "VerificationService", state: SendState) -> None:
    user = svc.store.get_user(state.phone)
    if not user or not user.last_verified_at:
        return
    next_eligible = user.last_verified_at + svc.reverify_cooldown
    if state.now < next_eligible:
        raise CooldownError("phone verified within the cooldown period", next_eligible_at=next_eligible)


def intelligence(svc: "VerificationService", state: SendState) -> None:
    state.intelligence = svc.intelligence.validate(state.phone)
    state.sms_verdict = sms_capable(state.intelligence)


def rate_limit(svc: "VerificationService", state: SendState) -> None:
    req = state.request
    state.rate_limit = svc.rate_limiter.check_and_record(state.phone, req.ip, req.fingerprint)


def heuristics(svc: "VerificationService", state: SendState) -> None:
    can_send = state.sms_verdict.can_send if state.sms_verdict else True
    state.heuristic_flags = svc.policy.heuristic_flags(state.request.ip, can_send)


def decide(svc: "VerificationService", state: SendState) -> None:
    report = state.rate_limit or RateLimitReport(allowed=True)
    decision = svc.policy.decide(
        report.results,
        state.intelligence.risk_score if state.intelligence else 0,
        enumeration_flags=[f for f in report.flags if f == ENUMERATION_FLAG],
        heuristic_flags=state.heuristic_flags,
    )
    state.decision = decision
    if not decision.allowed:
        raise RateLimitError(
            decision.reason or "blocked",
            risk_score=decision.risk_score,
            risk_flags=decision.risk_flags,
            require_captcha=decision.require_captcha,
        )


def captcha(svc: "VerificationService", state: SendState) -> None:
    decision = state.decision
    if not decision or not decision.require_captcha:
        return
    token = state.request.captcha_token
    if not token:
        raise CaptchaRequiredError(
            "captcha token missing",
            risk_score=decision.risk_score,
            risk_flags=decision.risk_flags,
            require_captcha=True,
        )
    if not svc.captcha.verify(token, state.request.ip):
        raise CaptchaRequiredError(
            "captcha token rejected",
            risk_score=decision.risk_score,
            risk_flags=decision.risk_flags,
            require_captcha=True,
        )


def generate(svc: "VerificationService", state: SendState) -> None:
    state.code = generate_otp_code()
    state.nonce = new_nonce()
    state.session_id = state.request.session_id or new_session_id()


def persist(svc: "VerificationService", state: SendState) -> None:
    req = state.request
    record = PendingVerification(
        phone=state.phone,
        code_hash=hash_code(svc.storage_secret, state.phone, state.nonce, state.code),
        nonce=state.nonce,
        created_at=state.now,
        expires_at=state.now + svc.otp_ttl,
        attempts=0,
        request_ip=req.ip,
        user_agent=req.user_agent,
        fingerprint_hash=req.fingerprint,
        session_id=state.session_id,
        risk_score=state.risk_score,
        risk_flags=state.risk_flags,
        required_captcha=bool(state.decision and state.decision.require_captcha),
    )
    state.record = svc.store.replace_pending(record)
    if req.fingerprint:
        device = dict(req.device or {})
        info = DeviceInfo(
            fingerprint_hash=req.fingerprint,
            user_agent=device.get("user_agent") or req.user_agent,
            screen_resolution=device.get("screen_resolution"),
            timezone=device.get("timezone"),
            language=device.get("language"),
            platform=device.get("platform"),
        )
        try:
            svc.store.upsert_device(info, state.now)
        except StoreUnavailable as exc:
            logger.warning("Device upsert failed: %s", exc)


def dispatch(svc: "VerificationService", state: SendState) -> None:
    body = build_message(state.code, svc.sms_template, int(svc.otp_ttl.total_seconds()))
    try:
        state.message_id = svc.gateway.send(state.phone, body)
        state.delivered = True
    except Exception as exc:
        if not svc.gateway_soft_fail:
            raise InfrastructureError(f"sms gateway failed: {exc}") from exc
        # record stays verifiable; only outside production
        logger.warning("SMS dispatch to %s failed, continuing (soft-fail): %s", mask_phone(state.phone), exc)
        state.delivered = False


SEND_STAGES: tuple = (
    normalize,
    validate_format,
    cooldown,
    intelligence,
    rate_limit,
    heuristics,
    decide,
    captcha,
    generate,
    persist,
    dispatch,
)


# --- verify stages ---------------------------------------------------------

def load_record(svc: "VerificationService", state: VerifyState) -> None:
    state.record = svc.store.latest_pending(state.phone)
    if state.record is None:
        raise NotFoundError("no pending verification")


def check_state(svc: "VerificationService", state: VerifyState) -> None:
    record = state.record
    if state.now >= record.expires_at:
        raise ExpiredError("verification expired")
    if record.attempts >= svc.max_attempts:
        raise LockedError("attempt limit reached", remaining_attempts=0)


def consistency(svc: "VerificationService", state: VerifyState) -> None:
    flags = check_consistency(state.record, state.request.fingerprint, state.request.session_id)
    state.risk_flags.extend(flags)
    state.risk_score = svc.policy.score(state.risk_flags)
    if flags:
        logger.info("Consistency flags for %s: %s", mask_phone(state.phone), ",".join(flags))


def compare_code(svc: "VerificationService", state: VerifyState) -> None:
    record = state.record
    # every comparison holds one of the record's attempts, so parallel
    # guesses can never evaluate more than max_attempts codes
    attempts = svc.store.increment_attempts(record.id, svc.max_attempts)
    if attempts is None:
        raise LockedError("attempt limit reached", remaining_attempts=0, risk_flags=state.risk_flags)
    if code_matches(svc.storage_secret, record.phone, record.nonce, state.code, record.code_hash):
        return
    raise InvalidCodeError(
        "code mismatch",
        remaining_attempts=max(0, svc.max_attempts - attempts),
        risk_score=state.risk_score,
        risk_flags=state.risk_flags,
    )


def finalize(svc: "VerificationService", state: VerifyState) -> None:
    record = state.record
    if not svc.store.mark_verified(record.id, state.now):
        raise ExpiredError("verification already used")
    state.user = svc.store.record_verification(state.phone, state.now)
    try:
        svc.intelligence.adjust_risk(state.phone, VERIFIED_RISK_DELTA)
    except StoreUnavailable as exc:
        logger.warning("Risk adjustment failed for %s: %s", mask_phone(state.phone), exc)
    fingerprint = state.request.fingerprint or record.fingerprint_hash
    if fingerprint:
        try:
            svc.store.bump_device_trust(fingerprint, DEVICE_TRUST_BONUS, state.now)
        except StoreUnavailable as exc:
            logger.warning("Device trust update failed: %s", exc)


VERIFY_STAGES: tuple = (
    normalize,
    load_record,
    check_state,
    consistency,
    compare_code,
    finalize,
)


class VerificationService:
    def __init__(
        self,
        store: PersistentStore,
        gateway: SmsGateway,
        intelligence: PhoneIntelligenceValidator,
        rate_limiter: MultiDimensionalRateLimiter,
        policy: AbusePolicy,
        *,
        storage_secret: str,
        captcha: Optional[CaptchaVerifier] = None,
        country_code: str = "81",
        mobile_pattern: str = r"^\+81[789]0\d{8}$",
        otp_ttl_secs: int = 300,
        max_attempts: int = 5,
        reverify_cooldown_days: int = 365,
        gateway_soft_fail: bool = False,
        is_production: bool = False,
        sms_template: Optional[str] = None,
        send_stages: Optional[Sequence[Stage]] = None,
        verify_stages: Optional[Sequence[Stage]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not storage_secret:
            raise ValueError("storage_secret is required")
        self.store = store
        self.gateway = gateway
        self.intelligence = intelligence
        self.rate_limiter = rate_limiter
        self.policy = policy
        self.captcha = captcha or CaptchaVerifier()
        self.storage_secret = storage_secret
        self.country_code = country_code
        self.mobile_pattern = re.compile(mobile_pattern)
        self.otp_ttl = timedelta(seconds=otp_ttl_secs)
        self.max_attempts = max_attempts
        self.reverify_cooldown = timedelta(days=reverify_cooldown_days)
        # production never tolerates a gateway failure
        self.gateway_soft_fail = gateway_soft_fail and not is_production
        self.sms_template = sms_template or None
        self.send_stages = tuple(send_stages or SEND_STAGES)
        self.verify_stages = tuple(verify_stages or VERIFY_STAGES)
        self.clock = clock

    def _run(self, stages, state, counter, attempt_type: str) -> None:
        try:
            for stage in stages:
                stage(self, state)
        except VerificationError as exc:
            self._fail(exc, state, counter, attempt_type)
            raise
        except StoreUnavailable as exc:
            err = InfrastructureError(f"store unavailable: {exc}")
            self._fail(err, state, counter, attempt_type)
            raise err from exc
        except Exception as exc:
            logger.exception("Unexpected %s failure", attempt_type)
            err = InfrastructureError(f"unexpected error: {exc.__class__.__name__}")
            self._fail(err, state, counter, attempt_type)
            raise err from exc

    def _fail(self, exc: VerificationError, state, counter, attempt_type: str) -> None:
        counter.labels(exc.kind).inc()
        status = "blocked" if exc.kind in _BLOCKED_KINDS else "failed"
        flags = exc.risk_flags or list(state.risk_flags)
        score = exc.risk_score or state.risk_score
        self._audit(attempt_type, status, state, error_kind=exc.kind, risk_score=score, risk_flags=flags)
        logger.info(
            "%s %s for %s: %s (%s)",
            attempt_type,
            status,
            mask_phone(state.phone or state.raw_phone),
            exc.kind,
            exc.detail,
        )

    def _audit(self, attempt_type: str, status: str, state, *, error_kind=None, risk_score=0, risk_flags=()) -> None:
        req = state.request
        entry = AuditEntry(
            attempt_type=attempt_type,
            status=status,
            phone_masked=_clip(mask_phone(state.phone or state.raw_phone), 32, tail=True),
            ip_address=_clip(req.ip, 64),
            fingerprint_hash=_clip(req.fingerprint, 128),
            session_id=_clip(getattr(state, "session_id", None) or req.session_id, 128),
            error_kind=error_kind,
            risk_score=risk_score,
            risk_flags=list(risk_flags),
            created_at=state.now,
        )
        audit_logger.info(
            json.dumps(
                {
                    "attempt_type": entry.attempt_type,
                    "status": entry.status,
                    "phone": entry.phone_masked,
                    "ip": entry.ip_address,
                    "error_kind": entry.error_kind,
                    "risk_score": entry.risk_score,
                    "risk_flags": entry.risk_flags,
                }
            )
        )
        try:
            self.store.append_audit(entry)
        except StoreUnavailable as exc:
            # never break the primary flow on audit errors
            audit_logger.warning("Audit write failed: %s", exc)

    def audit_rejected(
        self,
        attempt_type: str,
        raw_phone: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Audit a request refused before its pipeline ran (malformed body or headers)."""
        request = RequestContext(ip=ip, user_agent=user_agent, fingerprint=fingerprint, session_id=session_id)
        state = SendState(raw_phone=raw_phone or "", request=request, now=self.clock())
        counter = SEND_COUNTER if attempt_type == "send_otp" else VERIFY_COUNTER
        counter.labels("invalid_request").inc()
        self._audit(attempt_type, "failed", state, error_kind="invalid_request")

    def send(self, raw_phone: str, request: RequestContext) -> SendOutcome:
        state = SendState(raw_phone=raw_phone or "", request=request, now=self.clock())
        self._run(self.send_stages, state, SEND_COUNTER, "send_otp")
        SEND_COUNTER.labels("success").inc()
        self._audit("send_otp", "success", state, risk_score=state.risk_score, risk_flags=state.risk_flags)
        return SendOutcome(
            success=True,
            risk_score=state.risk_score,
            session_id=state.session_id or "",
            expires_at=state.record.expires_at if state.record else state.now + self.otp_ttl,
            risk_flags=state.risk_flags,
            message_id=state.message_id,
            delivered=state.delivered,
        )

    def verify(self, raw_phone: str, code: str, request: RequestContext) -> VerifyOutcome:
        state = VerifyState(raw_phone=raw_phone or "", code=(code or "").strip(), request=request, now=self.clock())
        self._run(self.verify_stages, state, VERIFY_COUNTER, "verify_otp")
        VERIFY_COUNTER.labels("success").inc()
        self._audit("verify_otp", "success", state, risk_score=state.risk_score, risk_flags=state.risk_flags)
        return VerifyOutcome(
            success=True,
            phone=state.phone,
            verified_at=state.now,
            verification_count=state.user.verification_count if state.user else 1,
            risk_flags=list(state.risk_flags),
        )


def build_lookup_client(settings) -> Optional[PhoneLookupClient]:
    provider = (settings.LOOKUP_PROVIDER or "none").strip().lower()
    if provider == "twilio":
        return TwilioLookupClient(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            timeout=settings.LOOKUP_TIMEOUT_SECS,
        )
    if provider in ("none", ""):
        return None
    raise ValueError(f"Unsupported lookup provider {provider!r}")


def build_service(
    settings,
    store: PersistentStore,
    *,
    gateway: Optional[SmsGateway] = None,
    lookup: Optional[PhoneLookupClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> VerificationService:
    """Wire a service from settings; explicit collaborators win over configured ones."""
    if gateway is None:
        gateway = build_gateway(
            settings.SMS_PROVIDER,
            http_url=settings.SMS_HTTP_URL,
            http_token=settings.SMS_HTTP_AUTH_TOKEN,
            sender_name=settings.SMS_SENDER_NAME,
            twilio_account_sid=settings.TWILIO_ACCOUNT_SID,
            twilio_auth_token=settings.TWILIO_AUTH_TOKEN,
            twilio_from=settings.TWILIO_PHONE_NUMBER,
        )
    if lookup is None:
        lookup = build_lookup_client(settings)
    validator = PhoneIntelligenceValidator(
        store,
        lookup,
        target_region=settings.TARGET_REGION,
        country_code=settings.DEFAULT_COUNTRY_CODE,
        mobile_pattern=settings.MOBILE_NUMBER_PATTERN,
        cache_ttl_secs=settings.INTELLIGENCE_CACHE_TTL_SECS,
        cache_size=settings.INTELLIGENCE_CACHE_SIZE,
        max_lookups_per_minute=settings.LOOKUP_MAX_PER_MINUTE,
        clock=clock,
    )
    limiter = MultiDimensionalRateLimiter(
        store,
        window_secs=settings.RL_WINDOW_SECS,
        phone_limit=settings.RL_PHONE_LIMIT,
        ip_limit=settings.RL_IP_LIMIT,
        fingerprint_limit=settings.RL_FINGERPRINT_LIMIT,
        max_phones_per_ip=settings.RL_MAX_PHONES_PER_IP,
        max_ips_per_phone=settings.RL_MAX_IPS_PER_PHONE,
        retention_secs=settings.RL_COUNTER_RETENTION_SECS,
        clock=clock,
    )
    return VerificationService(
        store,
        gateway,
        validator,
        limiter,
        AbusePolicy(suspicious_ranges=settings.SUSPICIOUS_IP_RANGES),
        storage_secret=settings.OTP_STORAGE_SECRET,
        captcha=CaptchaVerifier(settings.CAPTCHA_SECRET, settings.CAPTCHA_VERIFY_URL, settings.CAPTCHA_TIMEOUT_SECS),
        country_code=settings.DEFAULT_COUNTRY_CODE,
        mobile_pattern=settings.MOBILE_NUMBER_PATTERN,
        otp_ttl_secs=settings.OTP_TTL_SECS,
        max_attempts=settings.OTP_MAX_ATTEMPTS,
        reverify_cooldown_days=settings.REVERIFY_COOLDOWN_DAYS,
        gateway_soft_fail=settings.gateway_soft_fail,
        is_production=settings.IS_PRODUCTION,
        sms_template=settings.SMS_TEMPLATE,
        clock=clock,
    )
