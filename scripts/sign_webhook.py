#!/usr/bin/env python3
"""Print the signature header for a webhook payload file, for replaying events by hand."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from notifier.core.signatures import DEFAULT_ALGORITHM, HEADER_FOR_ALGORITHM, sign_payload


def render_header(raw_body: bytes, secret: str, algorithm: str) -> str:
    return f"{HEADER_FOR_ALGORITHM[algorithm]}: {sign_payload(raw_body, secret, algorithm)}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit the webhook signature header for a payload.")
    parser.add_argument("payload", type=Path, help="File holding the exact request body")
    parser.add_argument("--algorithm", choices=sorted(HEADER_FOR_ALGORITHM), default=DEFAULT_ALGORITHM)
    parser.add_argument("--secret", help="Shared secret (defaults to NOTIFIER_WEBHOOK_SECRET)")
    args = parser.parse_args()

    secret = args.secret or os.getenv("NOTIFIER_WEBHOOK_SECRET")
    if not secret:
        print("secret required: pass --secret or set NOTIFIER_WEBHOOK_SECRET", file=sys.stderr)
        raise SystemExit(2)

    print(render_header(args.payload.read_bytes(), secret, args.algorithm))


if __name__ == "__main__":
    main()
