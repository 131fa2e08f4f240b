# token_store.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import psycopg
from dotenv import load_dotenv

from meta_client import MetaClient, MetaCredential, decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "meta_accounts"


class CredentialMissing(RuntimeError):
    """No usable Meta credential for the user (not connected, inactive or expired)."""


class CredentialBusy(RuntimeError):
    """Refresh refused because a launch is in flight for the account."""


@dataclass(frozen=True)
class StoredCredential:
    user_id: str
    access_token_enc: str
    ad_account_id: str
    page_id: Optional[str]
    is_active: bool
    expires_at: Optional[datetime]


def ensure_credentials_table(database_url: str, *, table: str = DEFAULT_TABLE) -> None:
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    user_id TEXT PRIMARY KEY,
                    access_token_enc TEXT NOT NULL,
                    ad_account_id TEXT NOT NULL,
                    page_id TEXT,
                    is_active BOOLEAN NOT NULL DEFAULT true,
                    expires_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.commit()


def get_stored_credential(database_url: str, user_id: str, *, table: str = DEFAULT_TABLE) -> Optional[StoredCredential]:
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT user_id, access_token_enc, ad_account_id, page_id, is_active, expires_at
                FROM {table}
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return StoredCredential(
                user_id=str(row[0]),
                access_token_enc=str(row[1]),
                ad_account_id=str(row[2]),
                page_id=str(row[3]) if row[3] else None,
                is_active=bool(row[4]),
                expires_at=row[5],
            )


def save_credential(
    database_url: str,
    user_id: str,
    access_token: str,
    ad_account_id: str,
    *,
    encryption_key: str | None,
    page_id: str | None = None,
    expires_at: datetime | None = None,
    table: str = DEFAULT_TABLE,
) -> None:
    """Upsert a user's credential. The token is only ever written encrypted."""
    enc = encrypt_token(access_token, encryption_key)
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {table} (user_id, access_token_enc, ad_account_id, page_id, is_active, expires_at)
                VALUES (%s, %s, %s, %s, true, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                  access_token_enc=EXCLUDED.access_token_enc,
                  ad_account_id=EXCLUDED.ad_account_id,
                  page_id=COALESCE(EXCLUDED.page_id, {table}.page_id),
                  is_active=true,
                  expires_at=EXCLUDED.expires_at,
                  updated_at=now()
                """,
                (user_id, enc, ad_account_id, page_id, expires_at),
            )
            conn.commit()


class DbCredentialProvider:
    """Reads per-user credentials from Postgres and decrypts the token."""

    def __init__(self, database_url: str, *, encryption_key: str | None, refresh_buffer_minutes: int = 10, table: str = DEFAULT_TABLE):
        self.database_url = database_url
        self.encryption_key = encryption_key
        self.refresh_buffer_minutes = refresh_buffer_minutes
        self.table = table
        ensure_credentials_table(database_url, table=table)

    def __call__(self, user_id: str) -> MetaCredential:
        stored = get_stored_credential(self.database_url, user_id, table=self.table)
        if not stored or not stored.is_active:
            raise CredentialMissing("Facebook account not connected. Please connect it in Settings.")

        now = datetime.now(timezone.utc)
        if stored.expires_at and stored.expires_at <= now + timedelta(minutes=self.refresh_buffer_minutes):
            # The refresh job owns renewal; a launch never refreshes mid-flight.
            raise CredentialMissing(
                f"Facebook token is expired/near-expiry (expires_at={stored.expires_at.isoformat()}). Please reconnect."
            )

        return MetaCredential(
            access_token=decrypt_token(stored.access_token_enc, self.encryption_key),
            ad_account_id=stored.ad_account_id,
            page_id=stored.page_id,
        )


class EnvCredentialProvider:
    """Single shared credential from META_ACCESS_TOKEN / META_AD_ACCOUNT_ID / META_PAGE_ID."""

    def __init__(self, credential: MetaCredential | None):
        self.credential = credential

    @staticmethod
    def from_env() -> "EnvCredentialProvider":
        load_dotenv(override=False)
        token = os.getenv("META_ACCESS_TOKEN", "").strip()
        account_id = os.getenv("META_AD_ACCOUNT_ID", "").strip()
        page_id = os.getenv("META_PAGE_ID", "").strip() or None
        if not token or not account_id:
            return EnvCredentialProvider(None)
        return EnvCredentialProvider(MetaCredential(access_token=token, ad_account_id=account_id, page_id=page_id))

    def __call__(self, user_id: str) -> MetaCredential:
        if self.credential is None:
            raise CredentialMissing(
                "Missing access token. Set META_ACCESS_TOKEN and META_AD_ACCOUNT_ID or META_TOKEN_SOURCE=db."
            )
        return self.credential


def build_credential_provider(encryption_key: str | None):
    """Factory: env token (default) or per-user DB rows (META_TOKEN_SOURCE=db)."""
    load_dotenv(override=False)
    token_source = os.getenv("META_TOKEN_SOURCE", "").strip().lower()
    if token_source == "db":
        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("META_TOKEN_SOURCE=db but DATABASE_URL is not set.")
        return DbCredentialProvider(database_url, encryption_key=encryption_key)
    return EnvCredentialProvider.from_env()


def refresh_stored_token(
    client: MetaClient,
    task_store,
    database_url: str,
    user_id: str,
    *,
    encryption_key: str | None,
    lifetime_days: int = 60,
    table: str = DEFAULT_TABLE,
) -> datetime:
    """Exchange the stored token for a fresh long-lived one and store it encrypted.

    Refuses while any of the user's tasks is CREATING; credentials are read-only
    during a launch.
    """
    if task_store.has_inflight_launch(user_id):
        raise CredentialBusy(f"User {user_id} has a launch in progress; retry the refresh later.")

    stored = get_stored_credential(database_url, user_id, table=table)
    if not stored:
        raise CredentialMissing(f"No stored credential for user {user_id}.")

    token = decrypt_token(stored.access_token_enc, encryption_key)
    fresh = client.refresh_long_lived_token(token)
    expires_at = datetime.now(timezone.utc) + timedelta(days=lifetime_days)
    save_credential(
        database_url,
        user_id,
        fresh,
        stored.ad_account_id,
        encryption_key=encryption_key,
        page_id=stored.page_id,
        expires_at=expires_at,
        table=table,
    )
    logger.info("Refreshed Meta token for user %s (expires_at=%s)", user_id, expires_at.isoformat())
    return expires_at
