#!/usr/bin/env python3
"""Delete expired refresh tokens and clear lapsed account locks once.

Meant to be run from cron or a scheduler; both sweeps are idempotent and safe
to run while the service is issuing tokens.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/sweep_expired.py
    python scripts/sweep_expired.py --tokens-only
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_sweeps(auth, *, tokens_only: bool = False) -> dict:
    result = {"expired_tokens_deleted": auth.sweep_expired_tokens()}
    if not tokens_only:
        result["lockouts_cleared"] = auth.clear_expired_lockouts()
    return result


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--tokens-only",
        action="store_true",
        help="Skip the lockout hygiene sweep",
    )
    args = parser.parse_args(argv)

    from intelliguard.logging import set_correlation_id
    from intelliguard.service.errors import ServiceError
    from intelliguard.service.runtime import get_runtime

    # One id per run ties both sweeps together in the logs
    cid = set_correlation_id()
    try:
        result = run_sweeps(get_runtime().auth, tokens_only=args.tokens_only)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1
    print(f"run: {cid}")
    for key, value in result.items():
        print(f"{key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
