from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from phoneverify.database import make_engine
from phoneverify.errors import InvalidCodeError, LockedError
from phoneverify.models import Base, SmsVerification
from phoneverify.store import AuditEntry, DeviceInfo, IntelligenceRecord, PendingVerification, StoreUnavailable
from phoneverify.store_sql import SqlStore

from .utils import ctx, make_service


PHONE = "+819012345678"


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlStore(session_factory)


def _pending(clock, **kwargs):
    now = clock()
    base = dict(phone=PHONE, code_hash="h" * 64, nonce="n" * 32, created_at=now, expires_at=now + timedelta(minutes=5))
    base.update(kwargs)
    return PendingVerification(**base)


def test_replace_pending_keeps_one_unverified_row(sql_store, clock):
    first = sql_store.replace_pending(_pending(clock))
    clock.advance(seconds=30)
    second = sql_store.replace_pending(_pending(clock, session_id="s-2", risk_flags=["PHONE_ENUMERATION"]))
    assert sql_store.count_pending(PHONE) == 1
    latest = sql_store.latest_pending(PHONE)
    assert latest.id == second.id != first.id
    assert latest.session_id == "s-2"
    assert latest.risk_flags == ["PHONE_ENUMERATION"]


def test_partial_unique_index_rejects_second_pending_row(session_factory, clock):
    now = clock()
    with pytest.raises(IntegrityError):
        with session_factory() as db:
            for _ in range(2):
                db.add(SmsVerification(phone=PHONE, code_hash="h", nonce="n", created_at=now, expires_at=now))
            db.commit()


def test_verified_rows_do_not_block_a_new_pending_row(sql_store, clock):
    rec = sql_store.replace_pending(_pending(clock))
    assert sql_store.mark_verified(rec.id, clock())
    assert not sql_store.mark_verified(rec.id, clock())
    sql_store.replace_pending(_pending(clock))
    assert sql_store.count_pending(PHONE) == 1


def test_increment_attempts_stops_at_ceiling(sql_store, clock):
    rec = sql_store.replace_pending(_pending(clock))
    assert [sql_store.increment_attempts(rec.id, 3) for _ in range(4)] == [1, 2, 3, None]
    assert sql_store.latest_pending(PHONE).attempts == 3


def test_counter_queries(sql_store, clock):
    now = clock()
    sql_store.add_counters([("phone", PHONE), ("ip", "203.0.113.1")], phone=PHONE, ip="203.0.113.1", at=now)
    clock.advance(minutes=1)
    sql_store.add_counters([("phone", PHONE), ("ip", "203.0.113.2")], phone=PHONE, ip="203.0.113.2", at=clock())
    since = now - timedelta(hours=1)
    assert sql_store.window_stats("phone", PHONE, since) == (2, now)
    assert sql_store.window_stats("fingerprint", "fp", since) == (0, None)
    assert sql_store.distinct_ips_for_phone(PHONE, since) == {"203.0.113.1", "203.0.113.2"}
    assert sql_store.distinct_phones_for_ip("203.0.113.1", since) == {PHONE}
    assert sql_store.prune_counters(now + timedelta(seconds=1)) == 2
    assert sql_store.window_stats("phone", PHONE, since)[0] == 1


def test_intelligence_upsert_and_adjust(sql_store, clock):
    sql_store.save_intelligence(
        IntelligenceRecord(phone=PHONE, is_valid=True, line_type="voip", carrier="KDDI", country_code="JP", risk_score=40, warnings=["w"], last_verification=clock())
    )
    sql_store.save_intelligence(
        IntelligenceRecord(phone=PHONE, is_valid=True, line_type="mobile", carrier="KDDI", country_code="JP", risk_score=5, last_verification=clock())
    )
    assert sql_store.get_intelligence(PHONE).line_type == "mobile"
    assert sql_store.adjust_intelligence_risk(PHONE, -10) == 0
    assert sql_store.adjust_intelligence_risk("+819000000000", -10) is None


def test_users_audit_and_devices(sql_store, clock):
    assert sql_store.get_user(PHONE) is None
    assert sql_store.record_verification(PHONE, clock()).verification_count == 1
    assert sql_store.record_verification(PHONE, clock()).verification_count == 2
    sql_store.append_audit(AuditEntry(attempt_type="send_otp", status="success", risk_flags=["X"]))
    sql_store.upsert_device(DeviceInfo(fingerprint_hash="fp-1", platform="Android"), clock())
    sql_store.bump_device_trust("fp-1", 5, clock())
    sql_store.bump_device_trust("fp-missing", 5, clock())
    sql_store.ping()


def test_sqlalchemy_errors_become_store_unavailable(clock):
    # schema never created
    store = SqlStore(sessionmaker(bind=make_engine("sqlite://"), future=True))
    with pytest.raises(StoreUnavailable):
        store.latest_pending(PHONE)
    with pytest.raises(StoreUnavailable):
        store.record_verification(PHONE, clock())


def test_every_store_operation_maps_backend_errors():
    unguarded = [
        name
        for name, fn in vars(SqlStore).items()
        if callable(fn) and not name.startswith("_") and not hasattr(fn, "__wrapped__")
    ]
    assert unguarded == []


def test_full_lifecycle_over_sql(sql_store, gateway, clock):
    svc = make_service(sql_store, gateway, clock)
    svc.send("090-1234-5678", ctx(fingerprint="fp-1"))
    code = gateway.last_code()
    with pytest.raises(InvalidCodeError) as err:
        svc.verify("090-1234-5678", "000000" if code != "000000" else "111111", ctx())
    assert err.value.remaining_attempts == 4
    outcome = svc.verify("090-1234-5678", code, ctx(fingerprint="fp-1"))
    assert outcome.success
    assert sql_store.get_user(PHONE).verification_count == 1
    assert sql_store.count_pending(PHONE) == 0


def test_correct_code_after_lockout_is_refused_over_sql(sql_store, gateway, clock, monkeypatch):
    svc = make_service(sql_store, gateway, clock)
    svc.send("090-1234-5678", ctx())
    code = gateway.last_code()
    stale = sql_store.latest_pending(PHONE)
    for _ in range(5):
        with pytest.raises(InvalidCodeError):
            svc.verify("090-1234-5678", "000000" if code != "000000" else "111111", ctx())

    monkeypatch.setattr(sql_store, "latest_pending", lambda phone: stale)
    with pytest.raises(LockedError):
        svc.verify("090-1234-5678", code, ctx())
    assert sql_store.count_pending(PHONE) == 1
    assert sql_store.get_user(PHONE) is None
