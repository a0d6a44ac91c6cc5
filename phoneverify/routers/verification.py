from fastapi import APIRouter, Depends, Header, Request

from phoneverify_shared.rate_limit import client_ip
from ..schemas import SendOtpIn, VerifyOtpIn
from ..service import RequestContext, VerificationService


router = APIRouter(prefix="/auth", tags=["auth"])

# column widths in models.py
MAX_ID_HEADER = 128
MAX_CAPTCHA_TOKEN = 2048
MAX_USER_AGENT = 256


def get_service(request: Request) -> VerificationService:
    return request.app.state.service


def _request_ip(request: Request) -> str:
    return client_ip(request, getattr(request.app.state, "trust_proxy_headers", False))


def _user_agent(request: Request) -> str | None:
    ua = request.headers.get("user-agent")
    return ua[:MAX_USER_AGENT] if ua else None


@router.post("/send-otp")
def send_otp(
    payload: SendOtpIn,
    request: Request,
    x_session_id: str | None = Header(default=None, max_length=MAX_ID_HEADER),
    x_device_fingerprint: str | None = Header(default=None, max_length=MAX_ID_HEADER),
    x_captcha_token: str | None = Header(default=None, max_length=MAX_CAPTCHA_TOKEN),
    service: VerificationService = Depends(get_service),
):
    device = payload.device_info.model_dump(exclude_none=True) if payload.device_info else None
    ctx = RequestContext(
        ip=_request_ip(request),
        user_agent=_user_agent(request),
        fingerprint=x_device_fingerprint or None,
        session_id=x_session_id or None,
        captcha_token=x_captcha_token or None,
        device=device,
    )
    outcome = service.send(payload.phone_number, ctx)
    return {
        "success": True,
        "riskScore": outcome.risk_score,
        "sessionId": outcome.session_id,
        "expiresAt": outcome.expires_at.isoformat() + "Z",
    }


@router.post("/verify-otp")
def verify_otp(
    payload: VerifyOtpIn,
    request: Request,
    x_session_id: str | None = Header(default=None, max_length=MAX_ID_HEADER),
    x_device_fingerprint: str | None = Header(default=None, max_length=MAX_ID_HEADER),
    service: VerificationService = Depends(get_service),
):
    ctx = RequestContext(
        ip=_request_ip(request),
        user_agent=_user_agent(request),
        fingerprint=payload.fingerprint or x_device_fingerprint or None,
        session_id=x_session_id or None,
    )
    outcome = service.verify(payload.phone_number, payload.otp, ctx)
    return {
        "success": True,
        "user": {
            "phoneNumber": outcome.phone,
            "verifiedAt": outcome.verified_at.isoformat() + "Z",
        },
    }
