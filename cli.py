#!/usr/bin/env python3
"""Operator CLI for the campaign pipeline.

Talks to Meta with the env credential (META_ACCESS_TOKEN / META_AD_ACCOUNT_ID)
unless --user-id is given with META_TOKEN_SOURCE=db. Output is JSON on stdout,
errors go to stderr.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import textwrap
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from error_classifier import classify
from meta_client import MetaAPIError, MetaClient, MetaConfig, encrypt_token
from task_store import build_task_store
from token_store import build_credential_provider, refresh_stored_token


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cli.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Campaign pipeline operator tool

            Examples:
              # 1) Check that the token is still accepted by Meta
              python cli.py verify-token

              # 2) List ad accounts the token can see
              python cli.py list-adaccounts

              # 3) Preview interest targeting for keywords
              python cli.py search-interests coffee "specialty coffee"

              # 4) Encrypt a token for the meta_accounts table
              python cli.py encrypt-token --token <TOKEN>

              # 5) Inspect tasks
              python cli.py list-tasks --user-id <USER_ID>
              python cli.py show-task --task-id <TASK_ID>

              # 6) Renew a stored long-lived token (META_TOKEN_SOURCE=db)
              python cli.py refresh-token --user-id <USER_ID>
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--user-id", default="cli", help="Caller identity for per-user credentials and tasks.")
    p.add_argument("--store", default=None, help="SQLite task store path (default: TASK_DB_PATH or .campaign_tasks.db).")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("verify-token", help="GET /me with the configured credential.")

    sp = sub.add_parser("list-adaccounts", help="List ad accounts visible to the token.")
    sp.add_argument("--limit", type=int, default=50)

    sp = sub.add_parser("search-interests", help="Resolve keywords to Meta interest ids.")
    sp.add_argument("keywords", nargs="+")
    sp.add_argument("--per-keyword", type=int, default=3)

    sp = sub.add_parser("encrypt-token", help="Encrypt a token with ENCRYPTION_KEY (iv:ciphertext hex).")
    sp.add_argument("--token", default=None, help="Token to encrypt (default: read stdin).")

    sp = sub.add_parser("show-task", help="Print one task.")
    sp.add_argument("--task-id", required=True)

    sp = sub.add_parser("list-tasks", help="Print the user's most recent tasks.")
    sp.add_argument("--limit", type=int, default=10)

    sp = sub.add_parser("refresh-token", help="Exchange the stored token for a fresh long-lived one.")
    sp.add_argument("--lifetime-days", type=int, default=60)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv or sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        cfg = MetaConfig.from_env()
    except Exception as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    client = MetaClient(cfg)

    try:
        if args.cmd == "verify-token":
            credential = build_credential_provider(cfg.encryption_key)(args.user_id)
            ok = client.verify_credential(credential)
            print(json.dumps({"valid": ok, "ad_account_id": credential.ad_account_id}, indent=2))
            return 0 if ok else 1

        if args.cmd == "list-adaccounts":
            credential = build_credential_provider(cfg.encryption_key)(args.user_id)
            print(json.dumps(client.list_adaccounts(credential, limit=args.limit), indent=2))
            return 0

        if args.cmd == "search-interests":
            credential = build_credential_provider(cfg.encryption_key)(args.user_id)
            interests = client.search_interests(credential, args.keywords, args.per_keyword)
            print(json.dumps(interests, indent=2, ensure_ascii=False))
            return 0

        if args.cmd == "encrypt-token":
            token = args.token if args.token is not None else sys.stdin.read().strip()
            print(json.dumps({"access_token_enc": encrypt_token(token, cfg.encryption_key)}, indent=2))
            return 0

        if args.cmd == "show-task":
            task = build_task_store(args.store).get(args.task_id)
            if task is None:
                print(f"Task {args.task_id} not found", file=sys.stderr)
                return 1
            print(json.dumps(task.to_dict(), indent=2, ensure_ascii=False))
            return 0

        if args.cmd == "list-tasks":
            tasks = build_task_store(args.store).list_for_user(args.user_id, limit=args.limit)
            print(json.dumps([t.to_dict() for t in tasks], indent=2, ensure_ascii=False))
            return 0

        if args.cmd == "refresh-token":
            database_url = os.getenv("DATABASE_URL", "").strip()
            if not database_url:
                print("refresh-token needs DATABASE_URL (per-user tokens live in Postgres).", file=sys.stderr)
                return 2
            expires_at = refresh_stored_token(
                client,
                build_task_store(args.store),
                database_url,
                args.user_id,
                encryption_key=cfg.encryption_key,
                lifetime_days=args.lifetime_days,
            )
            print(json.dumps({"user_id": args.user_id, "expires_at": expires_at.isoformat()}, indent=2))
            return 0

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except MetaAPIError as e:
        print("\n[MetaAPIError]", e, file=sys.stderr)
        print(json.dumps(classify(e.raw).to_dict(), indent=2), file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
