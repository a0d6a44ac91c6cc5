"""Sliding-window abuse limits per phone, IP and device fingerprint.

Each identifier kind has its own window over ``rate_limit_counters``. A
request is counted only when every present dimension admits it, so
rejected spam never extends its own lockout. Two cross-identifier ratios
(distinct phones per IP, distinct IPs per phone) raise
``PHONE_ENUMERATION`` independent of the raw counts.

When the store is unreachable the limiter fails open and says so in the
report (``degraded``) and the log.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from phoneverify_shared.phone_utils import mask_phone

from .metrics import RATE_LIMIT_COUNTER
from .models import utcnow
from .store import PersistentStore, StoreUnavailable


logger = logging.getLogger("phoneverify.ratelimit")

PHONE = "phone"
IP = "ip"
FINGERPRINT = "fingerprint"

LIMIT_FLAGS = {
    PHONE: "PHONE_RATE_LIMIT",
    IP: "IP_RATE_LIMIT",
    FINGERPRINT: "FINGERPRINT_RATE_LIMIT",
}
ENUMERATION_FLAG = "PHONE_ENUMERATION"


@dataclass
class WindowResult:
    kind: str
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: datetime


@dataclass
class RateLimitReport:
    allowed: bool
    results: dict[str, WindowResult] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    unique_phones_for_ip: int = 0
    unique_ips_for_phone: int = 0
    degraded: bool = False

    @property
    def exceeded(self) -> list[str]:
        return [kind for kind, res in self.results.items() if not res.allowed]


class MultiDimensionalRateLimiter:
    def __init__(
        self,
        store: PersistentStore,
        *,
        window_secs: int = 3600,
        phone_limit: int = 3,
        ip_limit: int = 20,
        fingerprint_limit: int = 15,
        max_phones_per_ip: int = 10,
        max_ips_per_phone: int = 3,
        retention_secs: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.window = timedelta(seconds=window_secs)
        self.limits = {PHONE: phone_limit, IP: ip_limit, FINGERPRINT: fingerprint_limit}
        self.max_phones_per_ip = max_phones_per_ip
        self.max_ips_per_phone = max_ips_per_phone
        self.retention = timedelta(seconds=retention_secs)
        self.clock = clock
        # serializes check-then-record within this process
        self._lock = threading.Lock()

    def _identifiers(self, phone: str, ip: str, fingerprint: Optional[str]) -> list[tuple[str, str]]:
        idents = [(PHONE, phone), (IP, ip)]
        if fingerprint:
            idents.append((FINGERPRINT, fingerprint))
        return idents

    def _open_report(self, idents: list[tuple[str, str]], now: datetime) -> RateLimitReport:
        results = {
            kind: WindowResult(kind, True, 0, self.limits[kind], self.limits[kind], now + self.window)
            for kind, _ in idents
        }
        return RateLimitReport(allowed=True, results=results, degraded=True)

    def check_and_record(self, phone: str, ip: str, fingerprint: Optional[str] = None) -> RateLimitReport:
        now = self.clock()
        since = now - self.window
        idents = self._identifiers(phone, ip, fingerprint)
        try:
            with self._lock:
                report = self._evaluate(idents, phone, ip, now, since)
                if report.allowed:
                    self.store.add_counters(idents, phone=phone, ip=ip, at=now)
        except StoreUnavailable as exc:
            logger.warning("Rate limit store unavailable, failing open: %s", exc)
            RATE_LIMIT_COUNTER.labels("degraded").inc()
            return self._open_report(idents, now)

        RATE_LIMIT_COUNTER.labels("allowed" if report.allowed else "rejected").inc()
        if report.flags:
            logger.info(
                "Rate limit flags for %s from %s: %s",
                mask_phone(phone),
                ip,
                ",".join(report.flags),
            )
        return report

    def _evaluate(self, idents, phone: str, ip: str, now: datetime, since: datetime) -> RateLimitReport:
        results: dict[str, WindowResult] = {}
        for kind, value in idents:
            limit = self.limits[kind]
            count, oldest = self.store.window_stats(kind, value, since)
            allowed = count < limit
            results[kind] = WindowResult(
                kind=kind,
                allowed=allowed,
                count=count,
                limit=limit,
                remaining=max(0, limit - count - 1) if allowed else 0,
                reset_at=(oldest + self.window) if oldest else (now + self.window),
            )

        phones = self.store.distinct_phones_for_ip(ip, since) | {phone}
        ips = self.store.distinct_ips_for_phone(phone, since) | {ip}

        flags = [LIMIT_FLAGS[kind] for kind, res in results.items() if not res.allowed]
        if len(phones) > self.max_phones_per_ip or len(ips) > self.max_ips_per_phone:
            flags.append(ENUMERATION_FLAG)

        return RateLimitReport(
            allowed=all(res.allowed for res in results.values()),
            results=results,
            flags=flags,
            unique_phones_for_ip=len(phones),
            unique_ips_for_phone=len(ips),
        )

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete counter rows past the retention horizon; returns rows removed."""
        cutoff = (now or self.clock()) - self.retention
        removed = self.store.prune_counters(cutoff)
        if removed:
            logger.info("Pruned %d rate limit counters older than %s", removed, cutoff.isoformat())
        return removed
