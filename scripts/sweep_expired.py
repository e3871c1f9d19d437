#!/usr/bin/env python3
"""Run the expired refresh-token and session sweeps once.

Both sweeps are idempotent; schedule this from cron or a job runner at
any cadence.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(description="Sweep expired tokens and sessions")
    parser.add_argument("--json", action="store_true", help="Print the counts as JSON")
    args = parser.parse_args()

    from accesscore.service.runtime import run_sweeps

    try:
        counts = run_sweeps()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(counts))
    else:
        print(f"Deleted {counts['refresh_tokens_deleted']} expired refresh tokens")
        print(f"Expired {counts['sessions_expired']} sessions")


if __name__ == "__main__":
    main()
