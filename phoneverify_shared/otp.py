import hashlib
import hmac
import re
import secrets

OTP_LENGTH = 6
_OTP_MIN = 10 ** (OTP_LENGTH - 1)
_OTP_SPAN = 10 ** OTP_LENGTH - _OTP_MIN


def generate_otp_code() -> str:
    """Uniform draw from [100000, 999999] using the OS entropy source."""
    return str(_OTP_MIN + secrets.randbelow(_OTP_SPAN))


def new_nonce() -> str:
    return secrets.token_hex(16)


def new_session_id() -> str:
    return secrets.token_urlsafe(16)


def hash_code(secret: str, phone: str, nonce: str, code: str) -> str:
    msg = "|".join([phone, nonce, code]).encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


def code_matches(secret: str, phone: str, nonce: str, code: str, expected_hash: str) -> bool:
    if not code or not expected_hash:
        return False
    computed = hash_code(secret, phone, nonce, code.strip())
    return secrets.compare_digest(computed, expected_hash)


def _mask_digits(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{2,})", lambda m: _mask_digits(m.group(0)), message)
