#!/usr/bin/env python3
"""Mint a short-lived chat token.

Prints the token, then its expiry:

    <token>
    expires_at=2026-01-01T12:02:00Z
    expires_in=120s

Flags override CHAT_JWT_* from the environment / .env.
"""

from __future__ import annotations

import argparse
import sys
import time
from datetime import datetime, timezone
from typing import List, Optional

from ragchat.auth import build_token
from ragchat.config import load_config, parse_duration


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    cfg = load_config()
    parser = argparse.ArgumentParser(description="Mint an HS256 bearer token for /chat.")
    parser.add_argument("--secret", default=cfg.jwt_secret, help="Signing secret (or CHAT_JWT_SECRET)")
    parser.add_argument("--issuer", default=cfg.jwt_issuer, help="Token issuer")
    parser.add_argument("--audience", default=cfg.jwt_audience, help="Token audience")
    parser.add_argument("--ttl", default=str(cfg.jwt_ttl_seconds), help="Time-to-live, e.g. 120, 120s, 2m")
    return parser.parse_args(argv)


def format_expiry(expires_at: int) -> str:
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if not args.secret:
        print("CHAT_JWT_SECRET is not set", file=sys.stderr)
        return 1
    try:
        ttl = parse_duration(args.ttl)
        token, expires_at = build_token(args.secret, args.issuer, args.audience, ttl, now=time.time())
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(token)
    print(f"expires_at={format_expiry(expires_at)}")
    print(f"expires_in={int(ttl)}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
