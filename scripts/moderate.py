#!/usr/bin/env python3
"""
Moderator CLI for a running StreetSage instance.

Reads the token from MODERATOR_TOKEN and the server from
STREETSAGE_BASE_URL (or --base-url).

Usage:
    python scripts/moderate.py list --view pending
    python scripts/moderate.py approve 3f2a9c1b7d4e 8b1c0d2e4f6a
    python scripts/moderate.py delete 3f2a9c1b7d4e --view approved
    python scripts/moderate.py export --view approved --out approved.csv
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import ServiceError
from models import REVIEW_VIEWS
from moderation import REVIEW_ACTIONS, HttpModerationTransport, ModerationConsole

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _print_reviews(items: List[dict]) -> None:
    if not items:
        print("(no reviews)")
        return
    for r in items:
        deleted = " [deleted]" if r.get("deleted_at") else ""
        print(f"{r['id']}  {r['rating']}/5  {r['status']}{deleted}  "
              f"{r['county']} / {r['town']} / {r['estate']}")
        if r.get("title"):
            print(f"    {r['title']}")
        print(f"    {(r.get('body') or '')[:200]}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Moderate StreetSage reviews")
    parser.add_argument("command", choices=("list", "export") + REVIEW_ACTIONS)
    parser.add_argument("ids", nargs="*", help="Review ids (for actions)")
    parser.add_argument("--view", choices=REVIEW_VIEWS, default="pending")
    parser.add_argument("--base-url", default=os.environ.get("STREETSAGE_BASE_URL", "http://localhost:5001"))
    parser.add_argument("--out", help="Export destination (default: stdout)")
    args = parser.parse_args(argv)

    token = os.environ.get("MODERATOR_TOKEN")
    if not token:
        print("ERROR: MODERATOR_TOKEN is not set.", file=sys.stderr)
        return 2

    transport = HttpModerationTransport(args.base_url, token)

    if args.command == "export":
        try:
            body = transport.export_csv(args.view)
        except ServiceError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            return 1
        if args.out:
            with open(args.out, "w", encoding="utf-8") as fh:
                fh.write(body)
            logger.info("Wrote %s", args.out)
        else:
            sys.stdout.write(body)
        return 0

    console = ModerationConsole(transport, view=args.view)
    console.load()
    if console.error:
        print(f"ERROR: {console.error}", file=sys.stderr)
        return 1

    if args.command == "list":
        _print_reviews(console.items)
        return 0

    if not args.ids:
        print("ERROR: give at least one review id.", file=sys.stderr)
        return 2

    ok = console.apply(args.ids, args.command)
    if console.last_result:
        for review_id, reason in console.last_result.get("failed", {}).items():
            print(f"FAILED {review_id}: {reason}", file=sys.stderr)
    if not ok:
        print(f"ERROR: {console.error}", file=sys.stderr)
    _print_reviews(console.items)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
