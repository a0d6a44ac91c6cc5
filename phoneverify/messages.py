from typing import Optional

from .config import settings


SUPPORTED_LOCALES = ("ja", "en")

# not_found and invalid_code share one wording so a caller cannot learn
# whether a number has a pending code
_GENERIC_CODE_JA = "認証コードが正しくありません。"
_GENERIC_CODE_EN = "The verification code is incorrect."

MESSAGES: dict[str, dict[str, str]] = {
    "ja": {
        "invalid_request": "入力内容が正しくありません。",
        "invalid_phone": "有効な携帯電話番号を入力してください。",
        "captcha_required": "追加の確認が必要です。画像認証を完了してください。",
        "cooldown": "この電話番号は既に認証済みです。{next_eligible}以降に再度お試しください。",
        "not_found": _GENERIC_CODE_JA,
        "invalid_code": _GENERIC_CODE_JA,
        "expired": "認証コードの有効期限が切れています。もう一度送信してください。",
        "locked": "試行回数の上限に達しました。新しい認証コードを送信してください。",
        "rate_limited": "リクエストが多すぎます。しばらくしてから再度お試しください。",
        "infrastructure": "ただいま処理できません。時間をおいて再度お試しください。",
    },
    "en": {
        "invalid_request": "The request is invalid.",
        "invalid_phone": "Please enter a valid mobile phone number.",
        "captcha_required": "Additional verification is required. Please complete the captcha.",
        "cooldown": "This phone number is already verified. Please try again after {next_eligible}.",
        "not_found": _GENERIC_CODE_EN,
        "invalid_code": _GENERIC_CODE_EN,
        "expired": "The verification code has expired. Please request a new one.",
        "locked": "Too many attempts. Please request a new verification code.",
        "rate_limited": "Too many requests. Please try again later.",
        "infrastructure": "We could not process your request. Please try again later.",
    },
}


def resolve_locale(accept_language: Optional[str], default: Optional[str] = None) -> str:
    fallback = default or settings.DEFAULT_LOCALE
    if fallback not in SUPPORTED_LOCALES:
        fallback = "ja"
    if not accept_language:
        return fallback
    for part in accept_language.split(","):
        tag = part.split(";")[0].strip().lower()
        primary = tag.split("-")[0]
        if primary in SUPPORTED_LOCALES:
            return primary
    return fallback


def message_for(kind: str, locale: str, **params) -> str:
    table = MESSAGES.get(locale) or MESSAGES["ja"]
    template = table.get(kind) or table["infrastructure"]
    return template.format(**params) if params else template
