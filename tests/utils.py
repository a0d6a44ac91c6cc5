import re
import uuid
from datetime import datetime, timedelta

from phoneverify.captcha import CaptchaVerifier
from phoneverify.intelligence import LookupResult, LookupUnavailable, PhoneIntelligenceValidator
from phoneverify.policy import AbusePolicy
from phoneverify.rate_limiter import MultiDimensionalRateLimiter
from phoneverify.service import RequestContext, VerificationService
from phoneverify_shared.sms_provider import SmsGatewayError


class FrozenClock:
    def __init__(self, start: datetime = datetime(2026, 1, 15, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingGateway:
    """Keeps every message body, including the ones it fails to 'deliver'."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, to_e164: str, body: str) -> str:
        self.sent.append((to_e164, body))
        if self.fail:
            raise SmsGatewayError("gateway down")
        return f"msg-{len(self.sent)}"

    def last_code(self, phone: str | None = None) -> str:
        for to, body in reversed(self.sent):
            if phone is None or to == phone:
                return re.search(r"\d{6}", body).group(0)
        raise AssertionError(f"no message sent to {phone}")


class StubLookup:
    """Scripted lookup client; unknown numbers resolve to a JP mobile on a named carrier."""

    def __init__(self, results: dict | None = None):
        self.results = dict(results or {})
        self.calls: list[str] = []
        self.error: Exception | None = None

    def lookup(self, phone: str) -> LookupResult:
        self.calls.append(phone)
        if self.error is not None:
            raise self.error
        if phone in self.results:
            return self.results[phone]
        return LookupResult(valid=True, phone_number=phone, country_code="JP", carrier="NTT DOCOMO", line_type="mobile")


class FailingLookup:
    def lookup(self, phone: str) -> LookupResult:
        raise LookupUnavailable("timed out")


def make_service(store, gateway, clock, *, lookup=None, captcha=None, limiter_kwargs=None, **kwargs) -> VerificationService:
    validator = PhoneIntelligenceValidator(store, lookup, clock=clock)
    limiter = MultiDimensionalRateLimiter(store, clock=clock, **(limiter_kwargs or {}))
    return VerificationService(
        store,
        gateway,
        validator,
        limiter,
        kwargs.pop("policy", None) or AbusePolicy(),
        storage_secret="test-otp-secret",
        captcha=captcha or CaptchaVerifier(),
        clock=clock,
        **kwargs,
    )


def ctx(ip: str = "198.51.100.7", **kwargs) -> RequestContext:
    return RequestContext(ip=ip, user_agent="pytest", **kwargs)


def unique_phone(prefix: str = "090") -> str:
    """Return a unique national mobile number with the given 3-digit prefix."""
    suffix = str(uuid.uuid4().int % (10 ** 8)).zfill(8)
    return f"{prefix}{suffix}"
