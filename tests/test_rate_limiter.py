from datetime import timedelta

from phoneverify.rate_limiter import ENUMERATION_FLAG, MultiDimensionalRateLimiter
from phoneverify.store import StoreUnavailable
from phoneverify.store_memory import InMemoryStore


PHONE = "+819012345678"
IP = "198.51.100.7"


def _limiter(store, clock, **kwargs):
    return MultiDimensionalRateLimiter(store, clock=clock, **kwargs)


def test_phone_limit_rejects_fourth_and_does_not_count_it(store, clock):
    rl = _limiter(store, clock)
    reports = [rl.check_and_record(PHONE, IP) for _ in range(4)]
    assert [r.allowed for r in reports] == [True, True, True, False]
    assert reports[0].results["phone"].remaining == 2
    assert reports[2].results["phone"].remaining == 0
    assert reports[3].exceeded == ["phone"]
    assert "PHONE_RATE_LIMIT" in reports[3].flags
    assert len(store.counters) == 6  # phone + ip for the three admitted requests


def test_window_slides(store, clock):
    rl = _limiter(store, clock)
    for _ in range(3):
        rl.check_and_record(PHONE, IP)
        clock.advance(minutes=10)
    assert not rl.check_and_record(PHONE, IP).allowed
    # first counter leaves the window one hour after it was written
    clock.advance(minutes=30, seconds=1)
    assert rl.check_and_record(PHONE, IP).allowed


def test_reset_at_follows_oldest_counter(store, clock):
    rl = _limiter(store, clock)
    start = clock()
    rl.check_and_record(PHONE, IP)
    clock.advance(minutes=5)
    report = rl.check_and_record(PHONE, IP)
    assert report.results["phone"].reset_at == start + timedelta(hours=1)


def test_fingerprint_dimension_only_when_present(store, clock):
    rl = _limiter(store, clock)
    assert "fingerprint" not in rl.check_and_record(PHONE, IP).results
    report = rl.check_and_record("+819011112222", IP, "fp-1")
    assert report.results["fingerprint"].count == 0


def test_fingerprint_limit(store, clock):
    rl = _limiter(store, clock, fingerprint_limit=2)
    ips = ["203.0.113.1", "203.0.113.2", "203.0.113.3"]
    reports = [rl.check_and_record(f"+8190111100{i:02d}", ip, "fp-shared") for i, ip in enumerate(ips)]
    assert [r.allowed for r in reports] == [True, True, False]
    assert reports[2].flags == ["FINGERPRINT_RATE_LIMIT"]


def test_ip_limit(store, clock):
    rl = _limiter(store, clock, ip_limit=2, max_phones_per_ip=100)
    reports = [rl.check_and_record(f"+8190222200{i:02d}", IP) for i in range(3)]
    assert [r.allowed for r in reports] == [True, True, False]
    assert "IP_RATE_LIMIT" in reports[2].flags


def test_eleventh_phone_from_one_ip_is_enumeration(store, clock):
    rl = _limiter(store, clock)
    reports = [rl.check_and_record(f"+8190333300{i:02d}", IP) for i in range(11)]
    assert all(ENUMERATION_FLAG not in r.flags for r in reports[:10])
    assert ENUMERATION_FLAG in reports[10].flags
    assert reports[10].unique_phones_for_ip == 11
    # enumeration is a signal, not a limit
    assert reports[10].allowed


def test_fourth_ip_for_one_phone_is_enumeration(store, clock):
    rl = _limiter(store, clock, phone_limit=10)
    reports = [rl.check_and_record(PHONE, f"203.0.113.{i}") for i in range(1, 5)]
    assert ENUMERATION_FLAG not in reports[2].flags
    assert ENUMERATION_FLAG in reports[3].flags
    assert reports[3].unique_ips_for_phone == 4


class _BrokenStore(InMemoryStore):
    def window_stats(self, kind, value, since):
        raise StoreUnavailable("db down")


def test_store_failure_fails_open_and_reports_degraded(clock):
    rl = _limiter(_BrokenStore(), clock)
    report = rl.check_and_record(PHONE, IP, "fp-1")
    assert report.allowed
    assert report.degraded
    assert set(report.results) == {"phone", "ip", "fingerprint"}


def test_prune_removes_counters_past_retention(store, clock):
    rl = _limiter(store, clock)
    rl.check_and_record(PHONE, IP)
    clock.advance(hours=12)
    rl.check_and_record(PHONE, IP)
    clock.advance(hours=13)
    assert rl.prune() == 2
    assert len(store.counters) == 2
