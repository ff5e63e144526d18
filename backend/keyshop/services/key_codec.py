# Overview: Key code generation and expiry-policy arithmetic.

"""
Key Codec

Codes look like "7QK2-M9XA-0B3Z-PL4D": four dash-separated groups of four
characters drawn uniformly from A-Z0-9. Nothing here guarantees uniqueness;
callers retry against the keys.code unique constraint.

Expiry policies are relative to first activation:
- None / "Never"  -> activation + 100 years (stored "never")
- "<N>D"          -> activation + N days
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timedelta

from ..errors import InvalidPolicyError


KEY_ALPHABET = string.ascii_uppercase + string.digits
KEY_GROUPS = 4
KEY_GROUP_SIZE = 4

POLICY_NEVER = "NEVER"
NEVER_EXPIRES_YEARS = 100

_POLICY_RE = re.compile(r"^(\d+)\s*D?$")


def generate_key() -> str:
    groups = (
        "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_GROUP_SIZE))
        for _ in range(KEY_GROUPS)
    )
    return "-".join(groups)


def normalize_key(code: str | None) -> str:
    """Canonical lookup form: trimmed and upper-cased."""
    return (code or "").strip().upper()


def add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def calculate_expire_date(policy: str | None, activated_at: datetime) -> datetime:
    """
    Compute the real expiration for a key activated at activated_at.

    Raises:
        InvalidPolicyError: policy is neither "Never" nor "<N>D"
    """
    normalized = (policy or "").strip().upper()
    if not normalized or normalized == POLICY_NEVER:
        return add_years(activated_at, NEVER_EXPIRES_YEARS)

    match = _POLICY_RE.match(normalized)
    if not match:
        raise InvalidPolicyError(f"Invalid expiry policy: {policy}")

    return activated_at + timedelta(days=int(match.group(1)))


def placeholder_expire_date(purchased_at: datetime) -> datetime:
    """Far-future expiry stored until first activation."""
    return add_years(purchased_at, NEVER_EXPIRES_YEARS)
