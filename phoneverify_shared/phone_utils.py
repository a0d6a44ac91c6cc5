import re

DEFAULT_COUNTRY_CODE = "81"

# Full-width digits and plus sign map onto their ASCII forms.
_FULLWIDTH = {ord("０") + i: ord("0") + i for i in range(10)}
_FULLWIDTH[ord("＋")] = ord("+")

# Whitespace (including the ideographic space), hyphen lookalikes and both
# half- and full-width parentheses.
_SEPARATORS = re.compile(r"[\s　\-‐‑‒–—―−－ー()（）]")


def basic_normalize(phone: str) -> str:
    """Convert full-width digits and drop separators; no country handling."""
    if not phone:
        return ""
    return _SEPARATORS.sub("", phone.translate(_FULLWIDTH))


def normalize_phone_e164(phone: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a human-typed phone number to E.164 text.

    A leading ``0`` is the national trunk prefix and is replaced with the
    default country code; a leading country code gets a ``+``; anything
    else is assumed to be a national number. The result is not validated.
    """
    cc = default_country_code.lstrip("+")
    raw = basic_normalize(phone)
    if not raw:
        return ""
    if raw.startswith("+"):
        return raw
    if raw.startswith("0"):
        return f"+{cc}{raw[1:]}"
    if raw.startswith(cc):
        return "+" + raw
    return f"+{cc}{raw}"


def mask_phone(phone: str, visible_digits: int = 3) -> str:
    if not phone:
        return ""
    normalized = normalize_phone_e164(phone)
    if len(normalized) <= visible_digits:
        return normalized
    masked_portion = "*" * max(len(normalized) - visible_digits, 0)
    return masked_portion + normalized[-visible_digits:]
