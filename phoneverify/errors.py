"""Verification error taxonomy and its HTTP rendering.

Every failure the send/verify pipeline can produce is a ``VerificationError``
subclass carrying a machine ``kind`` (recorded in the audit log) and the
risk context known at the time it was raised. The client only ever sees the
localized message for ``message_key`` and a ``public_code``. ``not_found``
and ``invalid_code`` render identically.
"""
from datetime import datetime
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from phoneverify_shared.rate_limit import client_ip
from .messages import message_for, resolve_locale


class VerificationError(Exception):
    kind = "verification_error"
    status_code = 400
    message_key = "invalid_request"
    public_code: Optional[str] = None

    def __init__(
        self,
        detail: str = "",
        *,
        risk_score: int = 0,
        risk_flags: Optional[list[str]] = None,
        remaining_attempts: Optional[int] = None,
        next_eligible_at: Optional[datetime] = None,
        require_captcha: bool = False,
    ) -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind
        self.risk_score = risk_score
        self.risk_flags = list(risk_flags or [])
        self.remaining_attempts = remaining_attempts
        self.next_eligible_at = next_eligible_at
        self.require_captcha = require_captcha

    def to_body(self, locale: str) -> dict:
        body = {
            "success": False,
            "error": message_for(self.message_key, locale),
            "code": self.public_code or self.kind,
        }
        if self.remaining_attempts is not None:
            body["remainingAttempts"] = self.remaining_attempts
        return body


class ValidationError(VerificationError):
    kind = "validation"
    message_key = "invalid_phone"
    public_code = "invalid_phone"


class CaptchaRequiredError(ValidationError):
    kind = "captcha_required"
    message_key = "captcha_required"
    public_code = "captcha_required"

    def to_body(self, locale: str) -> dict:
        body = super().to_body(locale)
        body["requireCaptcha"] = True
        body["riskScore"] = self.risk_score
        body["riskFlags"] = list(self.risk_flags)
        return body


class CooldownError(VerificationError):
    kind = "cooldown"
    message_key = "cooldown"

    def to_body(self, locale: str) -> dict:
        eligible = self.next_eligible_at.date().isoformat() if self.next_eligible_at else ""
        body = {
            "success": False,
            "error": message_for(self.message_key, locale, next_eligible=eligible),
            "code": self.kind,
        }
        if self.next_eligible_at:
            body["nextEligibleAt"] = self.next_eligible_at.isoformat() + "Z"
        return body


class NotFoundError(VerificationError):
    kind = "not_found"
    message_key = "not_found"
    public_code = "invalid_code"


class ExpiredError(VerificationError):
    kind = "expired"
    status_code = 410
    message_key = "expired"


class LockedError(VerificationError):
    kind = "locked"
    message_key = "locked"


class InvalidCodeError(VerificationError):
    kind = "invalid_code"
    message_key = "invalid_code"


class RateLimitError(VerificationError):
    kind = "rate_limited"
    status_code = 429
    message_key = "rate_limited"

    def to_body(self, locale: str) -> dict:
        return {
            "success": False,
            "error": message_for(self.message_key, locale),
            "riskScore": self.risk_score,
            "riskFlags": list(self.risk_flags),
            "requireCaptcha": self.require_captcha,
        }


class InfrastructureError(VerificationError):
    kind = "infrastructure"
    status_code = 500
    message_key = "infrastructure"


async def verification_error_handler(request: Request, exc: VerificationError):
    locale = resolve_locale(request.headers.get("Accept-Language"))
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(locale))


_AUDITED_PATHS = {"/auth/send-otp": "send_otp", "/auth/verify-otp": "verify_otp"}


async def request_validation_handler(request: Request, exc: RequestValidationError):
    attempt_type = _AUDITED_PATHS.get(request.url.path)
    service = getattr(request.app.state, "service", None)
    if attempt_type and service is not None:
        body = exc.body if isinstance(exc.body, dict) else {}
        phone = body.get("phoneNumber")
        await run_in_threadpool(
            service.audit_rejected,
            attempt_type,
            phone if isinstance(phone, str) else "",
            ip=client_ip(request, getattr(request.app.state, "trust_proxy_headers", False)),
            user_agent=request.headers.get("user-agent"),
            fingerprint=request.headers.get("x-device-fingerprint"),
            session_id=request.headers.get("x-session-id"),
        )
    locale = resolve_locale(request.headers.get("Accept-Language"))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message_for("invalid_request", locale), "code": "invalid_request"},
    )
