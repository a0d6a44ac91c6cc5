from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from .rate_limiter import ENUMERATION_FLAG, LIMIT_FLAGS, WindowResult
from .store import clamp_score


SUSPICIOUS_IP = "SUSPICIOUS_IP"
SUSPICIOUS_PHONE = "SUSPICIOUS_PHONE"
DEVICE_MISMATCH = "DEVICE_MISMATCH"
SESSION_MISMATCH = "SESSION_MISMATCH"

# signal -> sub-score; the composite is the maximum, not the sum
RISK_WEIGHTS: dict[str, int] = {
    "PHONE_RATE_LIMIT": 70,
    "IP_RATE_LIMIT": 70,
    "FINGERPRINT_RATE_LIMIT": 70,
    ENUMERATION_FLAG: 50,
    SUSPICIOUS_IP: 60,
    SUSPICIOUS_PHONE: 80,
    DEVICE_MISMATCH: 20,
    SESSION_MISMATCH: 10,
}

# any of these forces a captcha regardless of score
HARD_FLAGS = frozenset({ENUMERATION_FLAG, SUSPICIOUS_IP, SUSPICIOUS_PHONE})


@dataclass
class PolicyDecision:
    allowed: bool
    risk_score: int
    risk_flags: list[str] = field(default_factory=list)
    require_captcha: bool = False
    reason: Optional[str] = None


def parse_networks(cidrs: Iterable[str]) -> list:
    """Parse CIDR strings; a malformed entry is a configuration error."""
    nets = []
    for raw in cidrs:
        raw = (raw or "").strip()
        if not raw:
            continue
        try:
            nets.append(ipaddress.ip_network(raw, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid CIDR in SUSPICIOUS_IP_RANGES: {raw!r}") from exc
    return nets


def ip_in_networks(ip: Optional[str], networks) -> bool:
    if not ip or not networks:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr.version == net.version and addr in net for net in networks)


def _unique(flags: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for flag in flags:
        if flag and flag not in seen:
            seen.append(flag)
    return seen


class AbusePolicy:
    """Combines limiter output, intelligence risk and heuristic flags into a verdict.

    ``decide`` and ``score`` perform no I/O.
    """

    def __init__(
        self,
        weights: Optional[Mapping[str, int]] = None,
        *,
        captcha_threshold: int = 40,
        block_threshold: int = 70,
        suspicious_ranges: Iterable[str] = (),
    ) -> None:
        self.weights = dict(RISK_WEIGHTS)
        if weights:
            self.weights.update(weights)
        self.captcha_threshold = captcha_threshold
        self.block_threshold = block_threshold
        self.suspicious_networks = parse_networks(suspicious_ranges)

    def score(self, flags: Iterable[str], base: int = 0) -> int:
        subs = [base] + [self.weights.get(flag, 0) for flag in flags]
        return clamp_score(max(subs))

    def heuristic_flags(self, ip: Optional[str], can_send_sms: bool) -> list[str]:
        flags = []
        if ip_in_networks(ip, self.suspicious_networks):
            flags.append(SUSPICIOUS_IP)
        if not can_send_sms:
            flags.append(SUSPICIOUS_PHONE)
        return flags

    def decide(
        self,
        rate_limits: Mapping[str, WindowResult],
        intelligence_risk: int,
        enumeration_flags: Iterable[str] = (),
        consistency_flags: Iterable[str] = (),
        heuristic_flags: Iterable[str] = (),
    ) -> PolicyDecision:
        exceeded = [kind for kind, res in rate_limits.items() if not res.allowed]
        flags = _unique(
            [LIMIT_FLAGS[kind] for kind in exceeded]
            + list(enumeration_flags)
            + list(heuristic_flags)
            + list(consistency_flags)
        )
        risk = self.score(flags, base=intelligence_risk)
        require_captcha = risk >= self.captcha_threshold or any(f in HARD_FLAGS for f in flags)

        reason = None
        if exceeded:
            reason = "rate_limited"
        elif risk >= self.block_threshold:
            reason = "high_risk"
        return PolicyDecision(
            allowed=reason is None,
            risk_score=risk,
            risk_flags=flags,
            require_captcha=require_captcha,
            reason=reason,
        )
