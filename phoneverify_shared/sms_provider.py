from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx

from .otp import mask_code_in_message
from .phone_utils import mask_phone

logger = logging.getLogger("phoneverify.sms")

DEFAULT_TEMPLATE = "認証コード: {code}\n\n※{minutes}分間有効です。第三者には絶対に教えないでください。"


class SmsGatewayError(RuntimeError):
    """Raised when a backend could not hand the message to the carrier."""


class SmsGateway(Protocol):
    def send(self, to_e164: str, body: str) -> str:  # pragma: no cover - interface
        ...


@dataclass
class LogBackend:
    """Writes a masked line instead of sending; for local development."""

    def send(self, to_e164: str, body: str) -> str:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("SMS log backend id=%s to=%s msg=%s", message_id, mask_phone(to_e164), mask_code_in_message(body))
        return message_id


@dataclass
class HttpBackend:
    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    timeout: float = 5.0

    def send(self, to_e164: str, body: str) -> str:
        if not (self.url or "").strip():
            raise SmsGatewayError("SMS URL must be configured for HTTP provider")
        payload = {"to": to_e164, "message": body}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        res = _send_with_retry(
            lambda: httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout),
            backend_name="http",
        )
        return _message_id_from(res) or f"http-{uuid.uuid4().hex[:12]}"


@dataclass
class TwilioBackend:
    """Twilio Programmable Messaging over its REST API."""

    account_sid: str
    auth_token: str
    from_number: str
    base_url: str = "https://api.twilio.com/2010-04-01"
    timeout: float = 5.0

    def send(self, to_e164: str, body: str) -> str:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise SmsGatewayError("Twilio backend not fully configured")
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": to_e164, "From": self.from_number, "Body": body}
        res = _send_with_retry(
            lambda: httpx.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout),
            backend_name="twilio",
        )
        sid = _message_id_from(res, keys=("sid",))
        if not sid:
            raise SmsGatewayError("Twilio response carried no message sid")
        return sid


def build_gateway(
    provider: str,
    *,
    http_url: str = "",
    http_token: Optional[str] = None,
    sender_name: Optional[str] = None,
    twilio_account_sid: str = "",
    twilio_auth_token: str = "",
    twilio_from: str = "",
) -> SmsGateway:
    mode = (provider or "log").strip().lower()
    if mode == "log":
        return LogBackend()
    if mode == "http":
        return HttpBackend(url=http_url, auth_token=http_token or None, sender_name=sender_name or None)
    if mode == "twilio":
        return TwilioBackend(account_sid=twilio_account_sid, auth_token=twilio_auth_token, from_number=twilio_from)
    raise ValueError(f"Unsupported SMS provider {provider!r}")


def build_message(code: str, template: Optional[str] = None, ttl_secs: int = 300) -> str:
    tmpl = template or DEFAULT_TEMPLATE
    minutes = max(1, ttl_secs // 60)
    try:
        return tmpl.format(code=code, minutes=minutes)
    except (KeyError, IndexError, ValueError):
        return DEFAULT_TEMPLATE.format(code=code, minutes=minutes)


def _message_id_from(res: Optional[httpx.Response], keys: tuple[str, ...] = ("id", "messageId", "sid")) -> Optional[str]:
    if res is None:
        return None
    try:
        body = res.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    for key in keys:
        if body.get(key):
            return str(body[key])
    return None


def _send_with_retry(
    callable_fn: Callable[[], httpx.Response],
    backend_name: str,
    max_attempts: int = 3,
    delay: float = 0.5,
) -> httpx.Response:
    for attempt in range(1, max_attempts + 1):
        try:
            res = callable_fn()
            res.raise_for_status()
            return res
        except httpx.HTTPStatusError as exc:
            # Client errors (bad number, bad credentials) will not succeed on retry.
            if exc.response.status_code < 500 or attempt == max_attempts:
                raise SmsGatewayError(f"{backend_name} SMS failed ({exc.response.status_code})") from exc
            logger.warning("%s SMS attempt %s failed: %s", backend_name, attempt, exc)
        except httpx.HTTPError as exc:
            if attempt == max_attempts:
                raise SmsGatewayError(f"{backend_name} SMS transport error: {exc}") from exc
            logger.warning("%s SMS attempt %s failed: %s", backend_name, attempt, exc)
        time.sleep(delay)
        delay *= 2
    raise SmsGatewayError(f"{backend_name} SMS failed")
