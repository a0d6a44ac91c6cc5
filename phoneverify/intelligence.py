"""Phone number intelligence: carrier lookup, risk scoring and SMS eligibility.

``PhoneIntelligenceValidator.validate`` resolves a normalized number through
an in-process TTL cache, then the persisted ``phone_number_intelligence``
row, then the external lookup. The lookup is throttled per process and
carries an explicit timeout; any failure falls back to a regex heuristic
that is neither cached nor persisted.
"""
from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from urllib.parse import quote

import httpx
from phoneverify_shared.phone_utils import mask_phone

from .metrics import LOOKUP_COUNTER
from .models import utcnow
from .store import IntelligenceRecord, PersistentStore, StoreUnavailable, clamp_score


logger = logging.getLogger("phoneverify.intelligence")

FALLBACK_WARNING = "Using fallback validation - carrier information unavailable"

# Additive risk weights; the sum is capped at 100.
LOOKUP_RISK_WEIGHTS = {
    "invalid": 100,
    "foreign": 50,
    "landline": 80,
    "voip": 40,
    "unknown_line": 20,
    "no_carrier": 10,
    "carrier_error": 30,
}

LINE_TYPES = ("mobile", "landline", "voip", "unknown")


class LookupUnavailable(RuntimeError):
    """The external lookup could not produce an answer (throttle, timeout, HTTP error)."""


@dataclass
class LookupResult:
    valid: bool
    phone_number: str
    country_code: Optional[str] = None
    carrier: Optional[str] = None
    line_type: str = "unknown"
    carrier_error: Optional[str] = None
    validation_errors: list[str] = field(default_factory=list)


class PhoneLookupClient(Protocol):
    def lookup(self, phone: str) -> LookupResult: ...


def map_line_type(raw: Optional[str]) -> str:
    kind = (raw or "").strip().lower()
    if kind == "mobile":
        return "mobile"
    if kind in ("landline", "fixed"):
        return "landline"
    if kind in ("voip", "fixedvoip", "nonfixedvoip"):
        return "voip"
    return "unknown"


class TwilioLookupClient:
    """Twilio Lookup v2 over httpx with basic auth."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        timeout: float = 4.0,
        base_url: str = "https://lookups.twilio.com/v2/PhoneNumbers",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    def lookup(self, phone: str) -> LookupResult:
        if not self.account_sid or not self.auth_token:
            raise LookupUnavailable("lookup credentials not configured")
        url = f"{self.base_url}/{quote(phone, safe='')}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.get(
                    url,
                    params={"Fields": "line_type_intelligence"},
                    auth=(self.account_sid, self.auth_token),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise LookupUnavailable(f"lookup transport error: {exc.__class__.__name__}") from exc
        if resp.status_code == 404:
            return LookupResult(valid=False, phone_number=phone, validation_errors=["NOT_FOUND"])
        if resp.status_code >= 400:
            raise LookupUnavailable(f"lookup_bad_status_{resp.status_code}")
        try:
            body = resp.json() or {}
        except ValueError as exc:
            raise LookupUnavailable("lookup returned invalid JSON") from exc
        info = body.get("line_type_intelligence") or body.get("carrier") or {}
        return LookupResult(
            valid=bool(body.get("valid")),
            phone_number=body.get("phone_number") or phone,
            country_code=body.get("country_code"),
            carrier=info.get("carrier_name") or info.get("name"),
            line_type=map_line_type(info.get("type")),
            carrier_error=info.get("error_code"),
            validation_errors=list(body.get("validation_errors") or []),
        )


@dataclass
class ValidationResult:
    phone: str
    is_valid: bool
    carrier: Optional[str] = None
    line_type: str = "unknown"
    country_code: Optional[str] = None
    is_target_country: bool = False
    risk_score: int = 0
    can_receive_sms: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    fallback: bool = False


@dataclass
class SmsVerdict:
    can_send: bool
    reason: Optional[str] = None


def score_lookup(lookup: LookupResult, target_region: str) -> int:
    weights = LOOKUP_RISK_WEIGHTS
    score = 0
    if not lookup.valid:
        score += weights["invalid"]
    if lookup.country_code != target_region:
        score += weights["foreign"]
    if lookup.line_type == "landline":
        score += weights["landline"]
    elif lookup.line_type == "voip":
        score += weights["voip"]
    elif lookup.line_type == "unknown":
        score += weights["unknown_line"]
    if not lookup.carrier:
        score += weights["no_carrier"]
    if lookup.carrier_error:
        score += weights["carrier_error"]
    return min(score, 100)


def _warnings_for(lookup: LookupResult) -> list[str]:
    out = []
    if lookup.line_type == "voip":
        out.append("VoIP number may have delivery issues")
    if lookup.line_type == "unknown":
        out.append("Unknown line type - delivery not guaranteed")
    if not lookup.carrier:
        out.append("Carrier information unavailable")
    if lookup.carrier_error:
        out.append(f"Carrier lookup error: {lookup.carrier_error}")
    return out


def sms_capable(result: ValidationResult) -> SmsVerdict:
    """Derived eligibility rule; VoIP passes and is reflected in the score."""
    if not result.is_valid:
        return SmsVerdict(False, "Invalid phone number")
    if not result.is_target_country:
        return SmsVerdict(False, "Number outside the supported country")
    if result.line_type == "landline":
        return SmsVerdict(False, "Landline number cannot receive SMS")
    if result.risk_score > 70:
        return SmsVerdict(False, "High risk number")
    return SmsVerdict(True)


class PhoneIntelligenceValidator:
    def __init__(
        self,
        store: PersistentStore,
        lookup: Optional[PhoneLookupClient] = None,
        *,
        target_region: str = "JP",
        country_code: str = "81",
        mobile_pattern: str = r"^\+81[789]0\d{8}$",
        cache_ttl_secs: int = 86400,
        cache_size: int = 1000,
        max_lookups_per_minute: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lookup_client = lookup
        self.target_region = target_region
        self.country_prefix = "+" + country_code.lstrip("+")
        self.mobile_pattern = re.compile(mobile_pattern)
        self.cache_ttl = timedelta(seconds=cache_ttl_secs)
        self.cache_size = max(1, cache_size)
        self.max_lookups_per_minute = max_lookups_per_minute
        self.clock = clock
        self._cache: "OrderedDict[str, tuple[datetime, ValidationResult]]" = OrderedDict()
        self._lookups: deque[datetime] = deque()
        self._lock = threading.Lock()

    # --- cache ----------------------------------------------------------

    def _cache_get(self, phone: str, now: datetime) -> Optional[ValidationResult]:
        with self._lock:
            ent = self._cache.get(phone)
            if not ent:
                return None
            expires_at, value = ent
            if expires_at <= now:
                self._cache.pop(phone, None)
                return None
            return replace(value, errors=list(value.errors), warnings=list(value.warnings))

    def _cache_set(self, result: ValidationResult, expires_at: datetime) -> None:
        with self._lock:
            self._cache.pop(result.phone, None)
            self._cache[result.phone] = (expires_at, result)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # --- throttle -------------------------------------------------------

    def _take_lookup_slot(self, now: datetime) -> bool:
        horizon = now - timedelta(seconds=60)
        with self._lock:
            while self._lookups and self._lookups[0] <= horizon:
                self._lookups.popleft()
            if len(self._lookups) >= self.max_lookups_per_minute:
                return False
            self._lookups.append(now)
            return True

    # --- validation -----------------------------------------------------

    def _from_record(self, rec: IntelligenceRecord) -> ValidationResult:
        result = ValidationResult(
            phone=rec.phone,
            is_valid=rec.is_valid,
            carrier=rec.carrier,
            line_type=rec.line_type if rec.line_type in LINE_TYPES else "unknown",
            country_code=rec.country_code,
            is_target_country=rec.country_code == self.target_region,
            risk_score=clamp_score(rec.risk_score),
            warnings=list(rec.warnings),
        )
        result.can_receive_sms = sms_capable(result).can_send
        return result

    def _from_lookup(self, phone: str, lookup: LookupResult) -> ValidationResult:
        result = ValidationResult(
            phone=phone,
            is_valid=lookup.valid,
            carrier=lookup.carrier,
            line_type=lookup.line_type,
            country_code=lookup.country_code,
            is_target_country=lookup.country_code == self.target_region,
            risk_score=score_lookup(lookup, self.target_region),
            errors=list(lookup.validation_errors),
            warnings=_warnings_for(lookup),
        )
        result.can_receive_sms = sms_capable(result).can_send
        return result

    def fallback(self, phone: str, reason: str) -> ValidationResult:
        matches = bool(self.mobile_pattern.match(phone or ""))
        in_country = (phone or "").startswith(self.country_prefix)
        return ValidationResult(
            phone=phone,
            is_valid=matches,
            country_code=self.target_region if in_country else None,
            is_target_country=in_country,
            risk_score=30 if matches else 100,
            can_receive_sms=matches,
            errors=[reason],
            warnings=[FALLBACK_WARNING],
            fallback=True,
        )

    def validate(self, phone: str) -> ValidationResult:
        """Intelligence for an already normalized E.164 number."""
        now = self.clock()
        cached = self._cache_get(phone, now)
        if cached is not None:
            LOOKUP_COUNTER.labels("cache").inc()
            return cached

        try:
            rec = self.store.get_intelligence(phone)
        except StoreUnavailable as exc:
            logger.warning("Intelligence read failed for %s: %s", mask_phone(phone), exc)
            rec = None
        if rec is not None and rec.last_verification and rec.last_verification > now - self.cache_ttl:
            result = self._from_record(rec)
            self._cache_set(result, rec.last_verification + self.cache_ttl)
            LOOKUP_COUNTER.labels("persisted").inc()
            return result

        if self.lookup_client is None:
            LOOKUP_COUNTER.labels("fallback").inc()
            return self.fallback(phone, "lookup disabled")
        if not self._take_lookup_slot(now):
            logger.warning("Lookup throttle reached (%d/min), using fallback", self.max_lookups_per_minute)
            LOOKUP_COUNTER.labels("fallback").inc()
            return self.fallback(phone, "lookup throttled")
        try:
            lookup = self.lookup_client.lookup(phone)
        except LookupUnavailable as exc:
            logger.warning("Lookup failed for %s, using fallback: %s", mask_phone(phone), exc)
            LOOKUP_COUNTER.labels("fallback").inc()
            return self.fallback(phone, str(exc))

        result = self._from_lookup(phone, lookup)
        try:
            self.store.save_intelligence(
                IntelligenceRecord(
                    phone=phone,
                    is_valid=result.is_valid,
                    line_type=result.line_type,
                    carrier=result.carrier,
                    country_code=result.country_code,
                    risk_score=result.risk_score,
                    warnings=list(result.warnings),
                    last_verification=now,
                )
            )
        except StoreUnavailable as exc:
            logger.warning("Intelligence write failed for %s: %s", mask_phone(phone), exc)
        self._cache_set(result, now + self.cache_ttl)
        LOOKUP_COUNTER.labels("lookup").inc()
        return result

    def can_send_sms(self, phone: str, result: Optional[ValidationResult] = None) -> SmsVerdict:
        return sms_capable(result or self.validate(phone))

    def adjust_risk(self, phone: str, delta: int) -> Optional[int]:
        """Shift a number's stored risk score, clamped to [0, 100].

        Returns the new persisted score, or the cached one when the number
        was never persisted; None when neither exists.
        """
        new_score: Optional[int] = None
        with self._lock:
            ent = self._cache.get(phone)
            if ent:
                expires_at, value = ent
                value = replace(value, risk_score=clamp_score(value.risk_score + delta))
                value.can_receive_sms = sms_capable(value).can_send
                self._cache[phone] = (expires_at, value)
                new_score = value.risk_score
        persisted = self.store.adjust_intelligence_risk(phone, delta)
        return persisted if persisted is not None else new_score

    def stats(self) -> dict:
        now = self.clock()
        horizon = now - timedelta(seconds=60)
        with self._lock:
            recent = sum(1 for t in self._lookups if t > horizon)
            return {
                "cache_size": len(self._cache),
                "cache_capacity": self.cache_size,
                "lookups_last_minute": recent,
                "max_lookups_per_minute": self.max_lookups_per_minute,
            }
