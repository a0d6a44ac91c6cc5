from .otp import (
    generate_otp_code,
    hash_code,
    code_matches,
    new_nonce,
    new_session_id,
    mask_code_in_message,
)
from .rate_limit import SlidingWindowLimiter, RedisRateLimiter, client_ip
from .env import env_bool, env_int, env_float, env_list
from .phone_utils import normalize_phone_e164, basic_normalize, mask_phone
from .sms_provider import SmsGateway, SmsGatewayError, build_gateway, build_message

__all__ = [
    "generate_otp_code",
    "hash_code",
    "code_matches",
    "new_nonce",
    "new_session_id",
    "mask_code_in_message",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "client_ip",
    "env_bool",
    "env_int",
    "env_float",
    "env_list",
    "normalize_phone_e164",
    "basic_normalize",
    "mask_phone",
    "SmsGateway",
    "SmsGatewayError",
    "build_gateway",
    "build_message",
]
