import hashlib
import hmac
import json
from unittest.mock import MagicMock

import pytest
import requests

from meta_client import (
    InvalidTokenFormat,
    LeadFormDestination,
    LinkDestination,
    MetaAPIError,
    MetaClient,
    MetaConfig,
    MetaCredential,
    TokenCryptoError,
    decrypt_token,
    encrypt_token,
    is_valid_http_url,
    normalize_ad_account_id,
    resolve_privacy_policy_url,
)

KEY = "k" * 32
CRED = MetaCredential(access_token="tok", ad_account_id="123", page_id="page_1")


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {}
    resp.text = json.dumps(payload)
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session, monkeypatch):
    monkeypatch.setattr("meta_client.time.sleep", lambda s: None)
    return MetaClient(MetaConfig(), session=session)


# -----------------------------
# Token encryption
# -----------------------------

def test_encrypt_token_round_trip_with_fresh_iv():
    a = encrypt_token("EAAB-secret-token", KEY)
    b = encrypt_token("EAAB-secret-token", KEY)
    assert a != b
    iv_hex, ct_hex = a.split(":")
    assert len(iv_hex) == 32
    assert len(bytes.fromhex(ct_hex)) % 16 == 0
    assert decrypt_token(a, KEY) == "EAAB-secret-token"
    assert decrypt_token(b, KEY) == "EAAB-secret-token"


@pytest.mark.parametrize(
    "stored",
    [
        "no-delimiter",
        "a:b:c",
        "zz:00112233445566778899aabbccddeeff",
        "0011:00112233445566778899aabbccddeeff",
        "00112233445566778899aabbccddeeff:",
        "00112233445566778899aabbccddeeff:0011",
    ],
)
def test_decrypt_token_rejects_malformed_values(stored):
    with pytest.raises(InvalidTokenFormat):
        decrypt_token(stored, KEY)


def test_encryption_key_must_be_32_bytes():
    with pytest.raises(TokenCryptoError):
        encrypt_token("tok", "short")


# -----------------------------
# Helpers
# -----------------------------

@pytest.mark.parametrize(
    "website,expected",
    [
        ("https://beanthere.in", "https://beanthere.in/privacy"),
        ("https://beanthere.in/", "https://beanthere.in/privacy"),
        ("http://shop.example.com/coffee/", "http://shop.example.com/coffee/privacy"),
        ("beanthere.in", "https://adpilot.app/privacy/task-1"),
        ("ftp://beanthere.in", "https://adpilot.app/privacy/task-1"),
        ("https://localhost", "https://adpilot.app/privacy/task-1"),
        (None, "https://adpilot.app/privacy/task-1"),
        ("", "https://adpilot.app/privacy/task-1"),
    ],
)
def test_resolve_privacy_policy_url(website, expected):
    assert resolve_privacy_policy_url(website, "task-1", "https://adpilot.app/") == expected


def test_is_valid_http_url_rejects_whitespace():
    assert is_valid_http_url("https://example.com")
    assert not is_valid_http_url("https://exa mple.com")


def test_normalize_ad_account_id():
    assert normalize_ad_account_id("123") == "act_123"
    assert normalize_ad_account_id("act_123") == "act_123"


def test_build_targeting_forces_country_ages_and_advantage_audience(client):
    merged = client.build_targeting({"age_min": 13, "age_max": 80, "flexible_spec": [{"interests": [{"id": "1"}]}]})
    assert merged["geo_locations"] == {"countries": ["IN"]}
    assert merged["age_min"] == 18
    assert merged["age_max"] == 65
    assert merged["targeting_automation"] == {"advantage_audience": 1}
    assert merged["flexible_spec"] == [{"interests": [{"id": "1"}]}]


# -----------------------------
# Request layer
# -----------------------------

def test_request_sends_appsecret_proof(session):
    session.request.return_value = _response(200, {"id": "me"})
    client = MetaClient(MetaConfig(app_secret="s3cret"), session=session)
    client.whoami(CRED)

    params = session.request.call_args.kwargs["params"]
    expected = hmac.new(b"s3cret", b"tok", hashlib.sha256).hexdigest()
    assert params["access_token"] == "tok"
    assert params["appsecret_proof"] == expected


def test_request_retries_server_errors(client, session):
    session.request.side_effect = [
        _response(500, {"error": {"message": "Service temporarily unavailable", "code": 2}}),
        _response(200, {"id": "cmp_9"}),
    ]
    assert client.create_campaign(CRED, "Test", "OUTCOME_TRAFFIC") == "cmp_9"
    assert session.request.call_count == 2


def test_request_does_not_retry_client_errors(client, session):
    session.request.return_value = _response(400, {"error": {"message": "Invalid parameter", "code": 100}})
    with pytest.raises(MetaAPIError) as ei:
        client.create_campaign(CRED, "Test", "OUTCOME_TRAFFIC")
    assert session.request.call_count == 1
    assert ei.value.http_status == 400
    assert ei.value.raw.code == 100


def test_network_errors_retry_reads_only(client, session):
    session.request.side_effect = requests.ConnectionError("reset")
    with pytest.raises(MetaAPIError):
        client.create_ad(CRED, "Ad", "adset_1", "creative_1")
    assert session.request.call_count == 1

    session.request.reset_mock()
    session.request.side_effect = requests.ConnectionError("reset")
    with pytest.raises(MetaAPIError):
        client.whoami(CRED)
    assert session.request.call_count == 3


def test_verify_credential_false_on_error(client, session):
    session.request.return_value = _response(400, {"error": {"message": "Error validating access token", "code": 190}})
    assert client.verify_credential(CRED) is False


def test_refresh_requires_app_credentials(client):
    with pytest.raises(ValueError):
        client.refresh_long_lived_token("tok")


# -----------------------------
# Create flow
# -----------------------------

def test_create_campaign_payload(client, session):
    session.request.return_value = _response(200, {"id": "cmp_1"})
    client.create_campaign(CRED, "Bean There - Campaign", "OUTCOME_LEADS")

    kwargs = session.request.call_args.kwargs
    assert kwargs["url"].endswith("/act_123/campaigns")
    assert kwargs["data"]["special_ad_categories"] == "[]"
    assert kwargs["data"]["status"] == "PAUSED"
    assert kwargs["data"]["is_adset_budget_sharing_enabled"] == "false"


def test_upload_image_parses_hash(client, session):
    session.request.return_value = _response(200, {"images": {"image.jpg": {"hash": "abc123"}}})
    assert client.upload_image(CRED, b"\xff\xd8jpeg") == "abc123"
    assert "filename" in session.request.call_args.kwargs["files"]


def test_search_interests_dedupes_and_skips_blank_keywords(client, session):
    session.request.side_effect = [
        _response(200, {"data": [{"id": "1", "name": "Coffee"}, {"id": "2", "name": "Espresso"}]}),
        _response(200, {"data": [{"id": "2", "name": "Espresso"}, {"id": "3", "name": "Cafe"}]}),
    ]
    out = client.search_interests(CRED, ["coffee", "  ", "cafe"])
    assert [i["id"] for i in out] == ["1", "2", "3"]
    assert session.request.call_count == 2


def test_search_interests_skips_malformed_rows(client, session):
    session.request.return_value = _response(200, {"data": ["coffee", None, {"id": "7", "name": "Latte"}]})
    assert client.search_interests(CRED, ["coffee"]) == [{"id": "7", "name": "Latte"}]


def test_create_adset_sends_lead_fields(client, session):
    session.request.return_value = _response(200, {"id": "adset_1"})
    client.create_adset(
        CRED,
        "cmp_1",
        "Ad Set",
        50000,
        {"age_min": 22, "age_max": 45},
        optimization_goal="LEAD_GENERATION",
        promoted_object={"page_id": "page_1"},
        destination_type="ON_AD",
    )
    data = session.request.call_args.kwargs["data"]
    assert data["daily_budget"] == "50000"
    assert json.loads(data["promoted_object"]) == {"page_id": "page_1"}
    assert data["destination_type"] == "ON_AD"
    assert json.loads(data["targeting"])["geo_locations"] == {"countries": ["IN"]}


def test_create_adset_rejects_non_positive_budget(client):
    with pytest.raises(ValueError):
        client.create_adset(CRED, "cmp_1", "Ad Set", 0, None)


def test_create_lead_form_requires_page():
    client = MetaClient(MetaConfig(), session=MagicMock())
    with pytest.raises(ValueError):
        client.create_lead_form(
            MetaCredential(access_token="tok", ad_account_id="123"), "Form", "Intro", "https://x.com/privacy", "Thanks"
        )


def test_create_lead_form_posts_to_page(client, session):
    session.request.return_value = _response(200, {"id": "form_1"})
    assert client.create_lead_form(CRED, "Form", "Intro", "https://beanthere.in/privacy", "Thanks") == "form_1"
    kwargs = session.request.call_args.kwargs
    assert kwargs["url"].endswith("/page_1/leadgen_forms")
    assert json.loads(kwargs["data"]["privacy_policy"])["url"] == "https://beanthere.in/privacy"
    assert [q["type"] for q in json.loads(kwargs["data"]["questions"])] == ["FULL_NAME", "PHONE", "EMAIL"]


def test_create_creative_lead_form_destination(client, session):
    session.request.return_value = _response(200, {"id": "creative_1"})
    client.create_creative(CRED, "Creative", "hash_1", "Headline", "Body", LeadFormDestination(lead_form_id="form_1"))

    spec = json.loads(session.request.call_args.kwargs["data"]["object_story_spec"])
    assert spec["page_id"] == "page_1"
    cta = spec["link_data"]["call_to_action"]
    assert cta["type"] == "SIGN_UP"
    assert cta["value"] == {"lead_gen_form_id": "form_1"}


def test_create_creative_link_destination(client, session):
    session.request.return_value = _response(200, {"id": "creative_2"})
    client.create_creative(
        CRED, "Creative", "hash_1", "Headline", "Body", LinkDestination(url="https://beanthere.in"), description="Order"
    )

    link_data = json.loads(session.request.call_args.kwargs["data"]["object_story_spec"])["link_data"]
    assert link_data["link"] == "https://beanthere.in"
    assert link_data["description"] == "Order"
    assert link_data["call_to_action"]["type"] == "LEARN_MORE"


def test_create_ad_raises_without_id(client, session):
    session.request.return_value = _response(200, {"success": True})
    with pytest.raises(MetaAPIError):
        client.create_ad(CRED, "Ad", "adset_1", "creative_1")


@pytest.mark.parametrize("token", ["x", "é" * 10, "A" * 10_000])
def test_encrypt_token_round_trip_lengths(token):
    assert decrypt_token(encrypt_token(token, KEY), KEY) == token
