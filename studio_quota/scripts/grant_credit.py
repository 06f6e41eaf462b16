#!/usr/bin/env python3
"""
Grant one-time upload credits to a user.

Used by support to apply a purchase by hand (e.g. after a missed webhook).
Safe to re-run: the payment reference makes the grant idempotent.

Usage:
    python -m studio_quota.scripts.grant_credit \\
        --email user@example.com --payment-ref pi_123 --credits 1

    python -m studio_quota.scripts.grant_credit \\
        --user-id user_abc --payment-ref pi_123 --credits 5 --amount 499 --currency usd
"""
import argparse
import json
import sys
from typing import Optional, Sequence

from studio_quota.core.errors import AppError
from studio_quota.features.purchases.service import grant_purchase
from studio_quota.features.users.service import get_user_by_email


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Grant one-time upload credits")
    who = parser.add_mutually_exclusive_group(required=True)
    who.add_argument("--user-id", help="Target user id")
    who.add_argument("--email", help="Target user email")
    parser.add_argument("--payment-ref", required=True, help="External payment reference (e.g. pi_...)")
    parser.add_argument("--credits", type=int, default=1, help="Units to grant (default: 1)")
    parser.add_argument("--amount", type=int, default=99, help="Amount paid in minor units (default: 99)")
    parser.add_argument("--currency", default="usd")
    parser.add_argument("--purchase-type", default="single_upload")
    parser.add_argument("--session-ref", help="Checkout session reference")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        user_id = args.user_id
        if not user_id:
            user = get_user_by_email(args.email)
            if user is None:
                print(f"ERROR: user not found for email: {args.email}", file=sys.stderr)
                return 1
            user_id = user.user_id

        grant = grant_purchase(
            user_id,
            external_payment_ref=args.payment_ref,
            granted_units=args.credits,
            amount=args.amount,
            currency=args.currency,
            purchase_type=args.purchase_type,
            external_session_ref=args.session_ref,
        )
    except AppError as e:
        print(f"ERROR: failed to grant credits: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps({
        "grant_id": grant.id,
        "user_id": grant.user_id,
        "granted_units": grant.granted_units,
        "status": grant.status.value,
    }))
    return 0


if __name__ == "__main__":
    sys.exit(main())
