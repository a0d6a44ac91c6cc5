from fastapi.testclient import TestClient

from phoneverify.config import settings

from .utils import unique_phone


_TO_FULLWIDTH = {ord("0") + i: ord("０") + i for i in range(10)}


def _send(client, phone="090-1234-5678", headers=None, **body):
    return client.post("/auth/send-otp", json={"phoneNumber": phone, **body}, headers=headers or {})


def _verify(client, otp, phone="090-1234-5678", headers=None, **body):
    return client.post("/auth/verify-otp", json={"phoneNumber": phone, "otp": otp, **body}, headers=headers or {})


def test_send_otp_returns_session_and_expiry(client):
    r = _send(client, headers={"X-Session-ID": "sess-1"})
    assert r.status_code == 200
    data = r.json()
    assert data == {
        "success": True,
        "riskScore": 30,
        "sessionId": "sess-1",
        "expiresAt": "2026-01-15T09:05:00Z",
    }
    assert r.headers.get("X-Request-ID")
    assert r.headers.get("X-Content-Type-Options") == "nosniff"
    assert r.headers.get("Cache-Control") == "no-store"


def test_verify_otp_accepts_full_width_code(client, gateway):
    _send(client)
    code = gateway.last_code("+819012345678")
    r = _verify(client, code.translate(_TO_FULLWIDTH), phone="０９０ー１２３４ー５６７８")
    assert r.status_code == 200
    user = r.json()["user"]
    assert user["phoneNumber"] == "+819012345678"
    assert user["verifiedAt"] == "2026-01-15T09:00:00Z"


def test_wrong_code_and_unknown_phone_look_the_same(client, gateway):
    _send(client)
    code = gateway.last_code()
    wrong = _verify(client, "000000" if code != "000000" else "111111")
    unknown = _verify(client, "123456", phone="080-9999-0000")
    assert wrong.status_code == unknown.status_code == 400
    assert wrong.json()["remainingAttempts"] == 4
    assert wrong.json()["code"] == unknown.json()["code"] == "invalid_code"
    assert wrong.json()["error"] == unknown.json()["error"]
    assert "remainingAttempts" not in unknown.json()


def test_expired_code_is_gone(client, gateway, clock):
    _send(client)
    code = gateway.last_code()
    clock.advance(minutes=6)
    r = _verify(client, code)
    assert r.status_code == 410
    assert r.json()["code"] == "expired"


def test_invalid_phone_is_a_bad_request(client):
    r = _send(client, phone="03-1234-5678")
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_phone"
    assert r.json()["success"] is False


def test_malformed_body_is_a_bad_request(client):
    r = client.post("/auth/send-otp", json={"phone": "09012345678"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_request"


def test_fourth_send_is_429_with_flags(client):
    for _ in range(3):
        assert _send(client).status_code == 200
    r = _send(client)
    assert r.status_code == 429
    body = r.json()
    assert body["success"] is False
    assert "PHONE_RATE_LIMIT" in body["riskFlags"]
    assert body["riskScore"] == 70


def test_enumeration_requires_captcha_then_accepts_token(client):
    for _ in range(10):
        assert _send(client, phone=unique_phone("080")).status_code == 200
    r = _send(client, phone="070-1111-2222")
    assert r.status_code == 400
    body = r.json()
    assert body["requireCaptcha"] is True
    assert "PHONE_ENUMERATION" in body["riskFlags"]
    ok = _send(client, phone="070-1111-2222", headers={"X-Captcha-Token": "token"})
    assert ok.status_code == 200


def test_cooldown_reports_next_eligible_date(client, gateway):
    _send(client)
    assert _verify(client, gateway.last_code()).status_code == 200
    r = _send(client)
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "cooldown"
    assert body["nextEligibleAt"] == "2027-01-15T09:00:00Z"
    assert "2027-01-15" in body["error"]


def test_forwarded_for_is_ignored_by_default(client, store):
    _send(client, headers={"X-Forwarded-For": "203.0.113.50, 10.0.0.1", "X-Real-IP": "203.0.113.51"})
    assert {c.ip for c in store.counters} == {"testclient"}
    assert store.audit[-1].ip_address == "testclient"


def test_trusted_proxy_forwarded_for_is_the_client_ip(service, store, monkeypatch):
    from phoneverify.main import create_app

    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", True)
    client = TestClient(create_app(service=service))
    _send(client, headers={"X-Forwarded-For": "not-an-ip, 203.0.113.50, 10.0.0.1"})
    assert {c.ip for c in store.counters} == {"203.0.113.50"}


def test_oversized_identity_headers_are_rejected_before_any_state(client, store, gateway):
    for header in ("X-Device-Fingerprint", "X-Session-ID"):
        r = _send(client, headers={header: "f" * 200})
        assert r.status_code == 400
        assert r.json()["code"] == "invalid_request"
    r = _send(client, headers={"X-Captcha-Token": "t" * 5000})
    assert r.status_code == 400
    assert store.records == {}
    assert store.counters == []
    assert gateway.sent == []
    assert all(len(a.fingerprint_hash or "") <= 128 and len(a.session_id or "") <= 128 for a in store.audit)


def test_long_user_agent_is_truncated(client, store):
    _send(client, headers={"X-Device-Fingerprint": "fp-ua", "User-Agent": "U" * 1000})
    rec = next(iter(store.records.values()))
    assert rec.user_agent == "U" * 256
    assert store.devices["fp-ua"].info.user_agent == "U" * 256


def test_malformed_requests_are_audited(client, store):
    client.post("/auth/send-otp", json={"phone": "09012345678"})
    client.post("/auth/verify-otp", json={"phoneNumber": "090-1234-5678"})
    assert [(a.attempt_type, a.status, a.error_kind) for a in store.audit] == [
        ("send_otp", "failed", "invalid_request"),
        ("verify_otp", "failed", "invalid_request"),
    ]
    assert store.audit[-1].phone_masked == "**********678"
    assert store.audit[0].phone_masked == ""


def test_device_info_and_fingerprint_header(client, store, gateway):
    _send(
        client,
        headers={"X-Device-Fingerprint": "fp-9", "User-Agent": "Mozilla/5.0"},
        deviceInfo={"screenResolution": "1170x2532", "timezone": "Asia/Tokyo", "platform": "iOS"},
    )
    device = store.devices["fp-9"]
    assert device.info.screen_resolution == "1170x2532"
    assert device.info.user_agent == "Mozilla/5.0"
    r = _verify(client, gateway.last_code(), fingerprint="fp-9")
    assert r.status_code == 200
    assert store.devices["fp-9"].trust_score == 55


def test_messages_follow_accept_language(client):
    ja = _send(client, phone="12")
    en = _send(client, phone="12", headers={"Accept-Language": "en-US,en;q=0.9"})
    assert ja.json()["error"] == "有効な携帯電話番号を入力してください。"
    assert en.json()["error"] == "Please enter a valid mobile phone number."


def test_health_reports_store_and_cache(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["intelligence"]["cache_capacity"] == 1000


def test_health_is_503_when_store_is_down(client, store, monkeypatch):
    from phoneverify.store import StoreUnavailable

    def down():
        raise StoreUnavailable("no connection")

    monkeypatch.setattr(store, "ping", down)
    assert client.get("/health").status_code == 503


def test_metrics_exposes_otp_counters(client):
    _send(client)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "phoneverify_otp_send_total" in r.text
