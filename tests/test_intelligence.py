import httpx
import pytest

from phoneverify.intelligence import (
    FALLBACK_WARNING,
    LookupResult,
    LookupUnavailable,
    PhoneIntelligenceValidator,
    TwilioLookupClient,
    map_line_type,
    score_lookup,
)

from .utils import StubLookup


PHONE = "+819012345678"


def _result(**kwargs):
    base = dict(valid=True, phone_number=PHONE, country_code="JP", carrier="NTT DOCOMO", line_type="mobile")
    base.update(kwargs)
    return LookupResult(**base)


def _validator(store, clock, lookup, **kwargs):
    return PhoneIntelligenceValidator(store, lookup, clock=clock, **kwargs)


@pytest.mark.parametrize(
    "overrides,expected",
    [
        ({}, 0),
        ({"valid": False}, 100),
        ({"country_code": "US"}, 50),
        ({"line_type": "landline"}, 80),
        ({"line_type": "voip"}, 40),
        ({"line_type": "unknown"}, 20),
        ({"carrier": None}, 10),
        ({"carrier_error": "60600"}, 30),
        ({"line_type": "voip", "carrier": None}, 50),
        ({"line_type": "landline", "country_code": "US"}, 100),
    ],
)
def test_score_is_additive_and_capped(overrides, expected):
    assert score_lookup(_result(**overrides), "JP") == expected


@pytest.mark.parametrize(
    "raw,mapped",
    [("mobile", "mobile"), ("fixed", "landline"), ("landline", "landline"), ("nonFixedVoip", "voip"), ("tollFree", "unknown"), (None, "unknown")],
)
def test_line_type_mapping(raw, mapped):
    assert map_line_type(raw) == mapped


def test_lookup_result_is_cached_and_persisted(store, clock):
    lookup = StubLookup()
    v = _validator(store, clock, lookup)
    first = v.validate(PHONE)
    second = v.validate(PHONE)
    assert first.is_valid and first.risk_score == 0 and first.can_receive_sms
    assert second.risk_score == 0
    assert lookup.calls == [PHONE]
    assert store.get_intelligence(PHONE).carrier == "NTT DOCOMO"


def test_persisted_row_is_reused_by_another_process(store, clock):
    _validator(store, clock, StubLookup({PHONE: _result(line_type="voip")})).validate(PHONE)
    other = StubLookup()
    other.error = LookupUnavailable("should not be called")
    result = _validator(store, clock, other).validate(PHONE)
    assert not result.fallback
    assert result.line_type == "voip" and result.risk_score == 40
    assert other.calls == []


def test_cache_entries_expire_after_ttl(store, clock):
    lookup = StubLookup()
    v = _validator(store, clock, lookup)
    v.validate(PHONE)
    clock.advance(hours=24, seconds=1)
    v.validate(PHONE)
    assert lookup.calls == [PHONE, PHONE]


def test_cache_is_bounded_oldest_first(store, clock):
    v = _validator(store, clock, StubLookup(), cache_size=2)
    for phone in ("+819011110001", "+819011110002", "+819011110003"):
        v.validate(phone)
    assert v.stats()["cache_size"] == 2
    assert "+819011110001" not in v._cache


def test_lookup_failure_falls_back_without_caching(store, clock):
    lookup = StubLookup()
    lookup.error = LookupUnavailable("timeout")
    v = _validator(store, clock, lookup)
    result = v.validate(PHONE)
    assert result.fallback
    assert result.is_valid and result.risk_score == 30
    assert FALLBACK_WARNING in result.warnings
    v.validate(PHONE)
    assert len(lookup.calls) == 2
    assert store.get_intelligence(PHONE) is None


def test_fallback_rejects_numbers_outside_mobile_pattern(store, clock):
    v = _validator(store, clock, None)
    result = v.validate("+81312345678")
    assert not result.is_valid
    assert result.risk_score == 100
    assert not v.can_send_sms("+81312345678").can_send


def test_lookup_throttle_per_minute(store, clock):
    lookup = StubLookup()
    v = _validator(store, clock, lookup, max_lookups_per_minute=2)
    results = [v.validate(p) for p in ("+819011110001", "+819011110002", "+819011110003")]
    assert [r.fallback for r in results] == [False, False, True]
    assert v.stats()["lookups_last_minute"] == 2
    clock.advance(seconds=61)
    assert not v.validate("+819011110004").fallback


@pytest.mark.parametrize(
    "overrides,can_send",
    [
        ({}, True),
        ({"valid": False}, False),
        ({"country_code": "US"}, False),
        ({"line_type": "landline"}, False),
        ({"line_type": "voip"}, True),
        ({"line_type": "voip", "carrier": None, "carrier_error": "60600"}, False),
    ],
)
def test_can_send_sms_rules(store, clock, overrides, can_send):
    v = _validator(store, clock, StubLookup({PHONE: _result(**overrides)}))
    assert v.can_send_sms(PHONE).can_send is can_send


def test_voip_is_allowed_with_warning(store, clock):
    v = _validator(store, clock, StubLookup({PHONE: _result(line_type="voip")}))
    result = v.validate(PHONE)
    assert result.can_receive_sms
    assert any("VoIP" in w for w in result.warnings)


def test_adjust_risk_updates_cache_and_store_with_floor(store, clock):
    v = _validator(store, clock, StubLookup({PHONE: _result(line_type="voip")}))
    v.validate(PHONE)
    assert v.adjust_risk(PHONE, -10) == 30
    assert v.validate(PHONE).risk_score == 30
    assert store.get_intelligence(PHONE).risk_score == 30
    assert v.adjust_risk(PHONE, -100) == 0
    assert v.adjust_risk("+819099999999", -10) is None


def _twilio(handler, **kwargs):
    return TwilioLookupClient("ACxxx", "token", transport=httpx.MockTransport(handler), **kwargs)


def test_twilio_client_parses_line_type_intelligence():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(
            200,
            json={
                "valid": True,
                "phone_number": PHONE,
                "country_code": "JP",
                "line_type_intelligence": {"type": "fixed", "carrier_name": "KDDI", "error_code": None},
            },
        )

    result = _twilio(handler).lookup(PHONE)
    assert result.line_type == "landline"
    assert result.carrier == "KDDI"
    assert "%2B819012345678" in seen["url"]
    assert "Fields=line_type_intelligence" in seen["url"]
    assert seen["auth"].startswith("Basic ")


def test_twilio_client_errors_become_lookup_unavailable():
    def server_error(request):
        return httpx.Response(503)

    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(LookupUnavailable):
        _twilio(server_error).lookup(PHONE)
    with pytest.raises(LookupUnavailable):
        _twilio(timeout).lookup(PHONE)
    with pytest.raises(LookupUnavailable):
        TwilioLookupClient("", "").lookup(PHONE)


def test_twilio_not_found_is_an_invalid_number():
    result = _twilio(lambda request: httpx.Response(404)).lookup(PHONE)
    assert not result.valid
