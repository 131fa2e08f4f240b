"""
Meta Marketing API client facade
================================

Every call the campaign pipeline makes to the Meta Graph API goes through
MetaClient. Operations take an explicit MetaCredential (per-user token, ad
account, page) and return an id/value or raise MetaAPIError. No business
decisions are made here.

It supports:
- Uploading an image to get image_hash
- Creating Campaign -> AdSet -> (Lead form) -> AdCreative -> Ad (default PAUSED to avoid spend)
- Interest lookup for detailed targeting (/search?type=adinterest)
- Token verification / long-lived token refresh
- Access-token encryption at rest (AES-256-CBC, random IV per value)
- Privacy-policy URL resolution for lead forms
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

import requests
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from dotenv import load_dotenv

from error_classifier import RawPlatformError

logger = logging.getLogger(__name__)


# -----------------------------
# Exceptions
# -----------------------------

class MetaAPIError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, error: dict | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.error = error or {}

    @property
    def raw(self) -> RawPlatformError:
        return RawPlatformError.from_error_body(self.error, http_status=self.http_status, fallback_message=str(self))


class TokenCryptoError(RuntimeError):
    pass


class InvalidTokenFormat(TokenCryptoError):
    """Stored token is not '<hex iv>:<hex ciphertext>' with a 16-byte IV."""


class TokenDecryptionError(TokenCryptoError):
    pass


# -----------------------------
# Config
# -----------------------------

@dataclass(frozen=True)
class MetaConfig:
    api_version: str = "v21.0"
    app_id: str | None = None
    app_secret: str | None = None
    timeout_s: int = 30
    default_country: str = "IN"
    default_link_url: str | None = None
    privacy_policy_base_url: str = "https://adpilot.app"
    launch_status: str = "PAUSED"
    encryption_key: str | None = None

    @staticmethod
    def from_env() -> "MetaConfig":
        """Loads config from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        timeout_raw = os.getenv("META_TIMEOUT_S", "30").strip() or "30"
        try:
            timeout_s = int(timeout_raw)
        except ValueError:
            raise ValueError(f"META_TIMEOUT_S must be an integer, got {timeout_raw!r}")

        launch_status = (os.getenv("LAUNCH_STATUS", "PAUSED").strip() or "PAUSED").upper()
        if launch_status not in {"ACTIVE", "PAUSED"}:
            raise ValueError("LAUNCH_STATUS must be ACTIVE or PAUSED.")

        return MetaConfig(
            api_version=os.getenv("META_API_VERSION", "v21.0").strip() or "v21.0",
            app_id=os.getenv("META_APP_ID", "").strip() or None,
            app_secret=os.getenv("META_APP_SECRET", "").strip() or None,
            timeout_s=timeout_s,
            default_country=(os.getenv("META_DEFAULT_COUNTRY", "IN").strip() or "IN").upper(),
            default_link_url=os.getenv("META_DEFAULT_LINK_URL", "").strip() or None,
            privacy_policy_base_url=os.getenv("PRIVACY_POLICY_BASE_URL", "https://adpilot.app").strip().rstrip("/")
            or "https://adpilot.app",
            launch_status=launch_status,
            encryption_key=os.getenv("ENCRYPTION_KEY", "").strip() or None,
        )


@dataclass(frozen=True)
class MetaCredential:
    access_token: str
    ad_account_id: str
    page_id: str | None = None


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = (ad_account_id or "").strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    if ad_account_id.isdigit():
        return f"act_{ad_account_id}"
    return ad_account_id


# -----------------------------
# Token encryption at rest
# -----------------------------

_IV_BYTES = 16
_DELIMITER = ":"


def _cipher_key(key: str | None) -> bytes:
    raw = (key or "").encode("utf-8")
    if len(raw) < 32:
        raise TokenCryptoError("ENCRYPTION_KEY must be at least 32 bytes.")
    return raw[:32]


def encrypt_token(token: str, key: str | None) -> str:
    """Encrypt with AES-256-CBC. Returns '<hex iv>:<hex ciphertext>' (fresh IV each call)."""
    iv = secrets.token_bytes(_IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(token.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_cipher_key(key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return iv.hex() + _DELIMITER + ciphertext.hex()


def decrypt_token(stored: str, key: str | None) -> str:
    parts = (stored or "").split(_DELIMITER)
    if len(parts) != 2:
        raise InvalidTokenFormat("Invalid encrypted token format: expected '<iv>:<ciphertext>'.")
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
    except ValueError as e:
        raise InvalidTokenFormat(f"Invalid encrypted token format: {e}") from e
    if len(iv) != _IV_BYTES:
        raise InvalidTokenFormat(f"Invalid IV length: expected {_IV_BYTES} bytes, got {len(iv)}.")
    if not ciphertext or len(ciphertext) % _IV_BYTES:
        raise InvalidTokenFormat("Invalid ciphertext length.")

    decryptor = Cipher(algorithms.AES(_cipher_key(key)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as e:
        # Wrong key or corrupted ciphertext.
        raise TokenDecryptionError("Could not decrypt token (wrong key or corrupted value).") from e


# -----------------------------
# Lead form helpers
# -----------------------------

DEFAULT_LEAD_QUESTIONS: List[Dict[str, str]] = [
    {"type": "FULL_NAME"},
    {"type": "PHONE"},
    {"type": "EMAIL"},
]


def is_valid_http_url(url: str | None) -> bool:
    u = (url or "").strip()
    if not u or any(c.isspace() for c in u):
        return False
    parsed = urlparse(u)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc) and "." in parsed.netloc


def resolve_privacy_policy_url(website: str | None, task_id: str, hosted_base_url: str) -> str:
    """Business site + '/privacy' when it's a valid absolute URL, else the hosted default."""
    if is_valid_http_url(website):
        return str(website).strip().rstrip("/") + "/privacy"
    return f"{hosted_base_url.rstrip('/')}/privacy/{task_id}"


# -----------------------------
# Creative destinations
# -----------------------------

@dataclass(frozen=True)
class LinkDestination:
    """WEBSITE conversion: the ad clicks through to url."""

    url: str


@dataclass(frozen=True)
class LeadFormDestination:
    """LEAD_FORM conversion: the ad opens an instant form."""

    lead_form_id: str
    # Meta still requires a link on lead ads; it is not where users land.
    link: str = "http://fb.me/"


CreativeDestination = Union[LinkDestination, LeadFormDestination]


# -----------------------------
# Meta Client (REST via requests)
# -----------------------------

RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


class MetaClient:
    def __init__(self, cfg: MetaConfig, *, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.base_url = f"https://graph.facebook.com/{cfg.api_version}"

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        max_retries: int = 2,
    ) -> dict:
        method = method.upper()
        url = self.base_url + "/" + path.lstrip("/")
        params = dict(params or {})
        data = dict(data or {})

        # Graph API accepts access_token as query or form field.
        target = params if method == "GET" else data
        target.setdefault("access_token", access_token)

        # Required when "App Secret Proof for Server API calls" is enabled on the app.
        if self.cfg.app_secret:
            target.setdefault(
                "appsecret_proof",
                hmac.new(self.cfg.app_secret.encode("utf-8"), access_token.encode("utf-8"), hashlib.sha256).hexdigest(),
            )

        last_err: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    params=params,
                    data=data or None,
                    files=files,
                    timeout=self.cfg.timeout_s,
                )
                # Meta often returns JSON even for errors.
                try:
                    payload = resp.json()
                except ValueError:
                    payload = {"raw": resp.text}
                if not isinstance(payload, dict):
                    payload = {"data": payload}

                if resp.status_code >= 400 or ("error" in payload):
                    error_obj = payload.get("error") or {}
                    if not isinstance(error_obj, dict):
                        error_obj = {"message": str(error_obj)}
                    msg = error_obj.get("message") or payload.get("raw") or "Unknown Meta API error"
                    raise MetaAPIError(
                        f"Meta API error ({resp.status_code}): {msg}",
                        http_status=resp.status_code,
                        error=error_obj,
                    )
                return payload
            except MetaAPIError as e:
                last_err = e
                if attempt < max_retries and e.http_status in RETRYABLE_HTTP_STATUSES:
                    logger.warning("Meta %s %s failed with HTTP %s, retrying (%d/%d)", method, path, e.http_status, attempt + 1, max_retries)
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise
            except requests.RequestException as e:
                last_err = e
                # A POST that timed out may still have created the object; only reads are retried.
                if attempt < max_retries and method == "GET":
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise MetaAPIError(f"Network error calling Meta API: {e}") from e

        raise MetaAPIError(f"Meta API request failed after retries: {last_err}")

    @staticmethod
    def _id_from(payload: dict, what: str) -> str:
        obj_id = str(payload.get("id") or "").strip()
        if not obj_id:
            raise MetaAPIError(f"{what} create did not return id. Response: {payload}")
        return obj_id

    # -----------------------------
    # Diagnostics / credentials
    # -----------------------------

    def whoami(self, credential: MetaCredential) -> dict:
        return self._request("GET", "/me", credential.access_token, params={"fields": "id,name"})

    def verify_credential(self, credential: MetaCredential) -> bool:
        """True if the token can still read /me. Platform and network errors mean False."""
        try:
            return bool(self.whoami(credential).get("id"))
        except MetaAPIError as e:
            logger.info("Credential verification failed: %s", e)
            return False

    def list_adaccounts(self, credential: MetaCredential, limit: int = 50) -> List[dict]:
        payload = self._request(
            "GET",
            "/me/adaccounts",
            credential.access_token,
            params={"fields": "id,name,account_status,currency,timezone_name", "limit": str(limit)},
        )
        data = payload.get("data") or []
        return data if isinstance(data, list) else []

    def refresh_long_lived_token(self, access_token: str) -> str:
        """Exchange a token for a fresh long-lived one (Meta tokens expire after ~60 days)."""
        if not (self.cfg.app_id and self.cfg.app_secret):
            raise ValueError("META_APP_ID and META_APP_SECRET are required to refresh tokens.")
        payload = self._request(
            "GET",
            "/oauth/access_token",
            access_token,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.cfg.app_id,
                "client_secret": self.cfg.app_secret,
                "fb_exchange_token": access_token,
            },
        )
        token = str(payload.get("access_token") or "").strip()
        if not token:
            raise MetaAPIError(f"Token refresh did not return access_token. Response: {payload}")
        return token

    # -----------------------------
    # Targeting lookup
    # -----------------------------

    def search_interests(self, credential: MetaCredential, keywords: Sequence[str], per_keyword_limit: int = 3) -> List[dict]:
        """Look up interest ids for keywords. Returns [{id, name}] deduplicated by id."""
        out: List[dict] = []
        seen: set[str] = set()
        for kw in keywords:
            q = (kw or "").strip()
            if not q:
                continue
            payload = self._request(
                "GET",
                "/search",
                credential.access_token,
                params={"type": "adinterest", "q": q, "limit": str(per_keyword_limit)},
            )
            for row in (payload.get("data") or [])[:per_keyword_limit]:
                if not isinstance(row, dict):
                    continue
                iid = str(row.get("id") or "").strip()
                if iid and iid not in seen:
                    seen.add(iid)
                    out.append({"id": iid, "name": str(row.get("name") or "")})
        return out

    # -----------------------------
    # Create flow (image -> campaign -> adset -> creative -> ad)
    # -----------------------------

    def upload_image(self, credential: MetaCredential, image_bytes: bytes, *, filename: str = "image.jpg") -> str:
        """
        Uploads an image and returns image_hash.
        Meta expects the file under the multipart field name `filename`.
        """
        if not image_bytes:
            raise ValueError("image_bytes is empty.")
        acct = normalize_ad_account_id(credential.ad_account_id)
        files = {"filename": (filename, image_bytes, "image/jpeg")}
        payload = self._request("POST", f"/{acct}/adimages", credential.access_token, files=files, data={})

        images = payload.get("images") or {}
        if not images:
            raise MetaAPIError(f"Upload did not return images. Response: {payload}")

        first_key = next(iter(images.keys()))
        image_hash = (images[first_key] or {}).get("hash") or first_key
        if not image_hash:
            raise MetaAPIError(f"Could not parse image_hash from response: {payload}")
        return str(image_hash)

    def create_campaign(self, credential: MetaCredential, name: str, objective: str, status: str = "PAUSED") -> str:
        acct = normalize_ad_account_id(credential.ad_account_id)
        data: Dict[str, Any] = {
            "name": name,
            "objective": objective,
            "status": status,
            # Must be JSON string (e.g., "[]")
            "special_ad_categories": json.dumps([]),
            # Budgets live on the ad set (ABO); some accounts require the flag explicitly.
            "is_adset_budget_sharing_enabled": "false",
        }
        payload = self._request("POST", f"/{acct}/campaigns", credential.access_token, data=data)
        return self._id_from(payload, "Campaign")

    def build_targeting(self, targeting: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Merge caller targeting with the fields every ad set is forced to carry."""
        merged: Dict[str, Any] = dict(targeting or {})
        merged["geo_locations"] = {"countries": [self.cfg.default_country]}
        try:
            age_min = int(merged.get("age_min") or 18)
        except (TypeError, ValueError):
            age_min = 18
        merged["age_min"] = max(age_min, 18)
        try:
            age_max = int(merged.get("age_max") or 65)
        except (TypeError, ValueError):
            age_max = 65
        merged["age_max"] = min(max(age_max, merged["age_min"]), 65)
        merged["targeting_automation"] = {"advantage_audience": 1}
        return merged

    def create_adset(
        self,
        credential: MetaCredential,
        campaign_id: str,
        name: str,
        daily_budget_minor: int,
        targeting: Optional[Dict[str, Any]],
        *,
        optimization_goal: str = "LINK_CLICKS",
        billing_event: str = "IMPRESSIONS",
        status: str = "PAUSED",
        promoted_object: Optional[Dict[str, Any]] = None,
        destination_type: Optional[str] = None,
    ) -> str:
        if int(daily_budget_minor) <= 0:
            raise ValueError("daily_budget_minor must be positive.")
        acct = normalize_ad_account_id(credential.ad_account_id)
        data: Dict[str, Any] = {
            "name": name,
            "campaign_id": campaign_id,
            "status": status,
            "daily_budget": str(int(daily_budget_minor)),
            "billing_event": billing_event,
            "optimization_goal": optimization_goal,
            "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
            "targeting": json.dumps(self.build_targeting(targeting)),
        }
        if promoted_object is not None:
            data["promoted_object"] = json.dumps(promoted_object)
        if destination_type:
            data["destination_type"] = destination_type

        payload = self._request("POST", f"/{acct}/adsets", credential.access_token, data=data)
        return self._id_from(payload, "AdSet")

    def create_lead_form(
        self,
        credential: MetaCredential,
        form_name: str,
        intro_text: str,
        privacy_policy_url: str,
        thank_you_message: str,
        questions: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        if not credential.page_id:
            raise ValueError("A Facebook page id is required to create a lead form.")
        data: Dict[str, Any] = {
            "name": form_name,
            "questions": json.dumps(questions or DEFAULT_LEAD_QUESTIONS),
            "privacy_policy": json.dumps({"url": privacy_policy_url, "link_text": "Privacy Policy"}),
            "context_card": json.dumps({"title": form_name[:60], "style": "PARAGRAPH_STYLE", "content": [intro_text]}),
            "thank_you_page": json.dumps({"title": "Thank you!", "body": thank_you_message}),
        }
        payload = self._request("POST", f"/{credential.page_id}/leadgen_forms", credential.access_token, data=data)
        return self._id_from(payload, "Lead form")

    def create_creative(
        self,
        credential: MetaCredential,
        name: str,
        image_hash: str,
        headline: str,
        body: str,
        destination: CreativeDestination,
        *,
        description: Optional[str] = None,
        call_to_action: Optional[str] = None,
    ) -> str:
        if not credential.page_id:
            raise ValueError("A Facebook page id is required to create an ad creative.")
        acct = normalize_ad_account_id(credential.ad_account_id)

        link_data: Dict[str, Any] = {
            "image_hash": image_hash,
            "message": body,
            "name": headline,
        }
        if description:
            link_data["description"] = description

        if isinstance(destination, LeadFormDestination):
            link_data["link"] = destination.link
            link_data["call_to_action"] = {
                "type": call_to_action or "SIGN_UP",
                "value": {"lead_gen_form_id": destination.lead_form_id},
            }
        elif isinstance(destination, LinkDestination):
            link_data["link"] = destination.url
            link_data["call_to_action"] = {"type": call_to_action or "LEARN_MORE", "value": {"link": destination.url}}
        else:
            raise TypeError(f"Unsupported creative destination: {destination!r}")

        data = {
            "name": name,
            "object_story_spec": json.dumps({"page_id": credential.page_id, "link_data": link_data}),
        }
        payload = self._request("POST", f"/{acct}/adcreatives", credential.access_token, data=data)
        return self._id_from(payload, "AdCreative")

    def create_ad(self, credential: MetaCredential, name: str, adset_id: str, creative_id: str, status: str = "PAUSED") -> str:
        acct = normalize_ad_account_id(credential.ad_account_id)
        data = {
            "name": name,
            "adset_id": adset_id,
            # creative must be a JSON object containing creative_id
            "creative": json.dumps({"creative_id": creative_id}),
            "status": status,
        }
        payload = self._request("POST", f"/{acct}/ads", credential.access_token, data=data)
        return self._id_from(payload, "Ad")
