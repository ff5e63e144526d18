# Overview: Key issuance and activation; generates order keys and serves the public verify endpoint.

"""
Key Issuance Engine

WHY: Key products are fulfilled by minting one code per purchased unit once
the order is paid, and every game client later verifies its code here.

DESIGN PRINCIPLES:
- Codes are random; uniqueness comes from retrying against keys.code (UNIQUE)
- Keys embed order / item / product / user snapshots, not live references
- Expiry is relative to FIRST activation, so purchase stores a placeholder
- activated_at is claimed with a conditional UPDATE (first activation wins);
  expires_at is computed in the same statement and never recomputed
- hwid / place_id binding is last-writer-wins
- Every verification attempt appends exactly one KeyLog row
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from flask import current_app
from sqlalchemy import update

from ..errors import (
    InvalidInputError,
    KeyExpiredError,
    InvalidPolicyError,
    KeyGenerationExhaustedError,
    KeyInactiveError,
    NotFoundError,
)
from ..extensions import db
from ..models import Key, KeyLog, Order, OrderItem, Product
from ..models.catalog import PRODUCT_TYPE_KEY
from ..models.keys import KEY_ACTION_ACTIVATE, KEY_ACTION_VERIFY
from keyshop.time_utils import to_utc_z, utcnow
from . import key_codec, order_store
from .concurrency import lock_for_update, run_with_retry


MAX_KEY_ATTEMPTS = 10

GITHUB_HOSTS = {"github.com", "raw.githubusercontent.com"}


@dataclass
class VerifyContext:
    """Caller-supplied context recorded on every KeyLog row."""
    hwid: str | None = None
    place_id: str | None = None
    game_name: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def as_log_data(self) -> dict:
        return {
            "game_name": self.game_name,
            "user_id": self.user_id,
            "user_name": self.user_name,
        }


# =============================================================================
# GENERATION
# =============================================================================

def _draw_unique_code(taken: set[str]) -> str:
    """
    Draw a code not present in the database nor in this batch.

    Raises:
        KeyGenerationExhaustedError: after MAX_KEY_ATTEMPTS collisions
    """
    for _ in range(MAX_KEY_ATTEMPTS):
        code = key_codec.normalize_key(key_codec.generate_key())
        if code in taken or order_store.key_code_exists(code):
            continue
        taken.add(code)
        return code
    raise KeyGenerationExhaustedError(
        f"Failed to generate a unique key after {MAX_KEY_ATTEMPTS} attempts"
    )


def generate_keys(order: Order, item: OrderItem, quantity: int) -> list[Key]:
    """
    Mint `quantity` keys for a key-type order item.

    Runs inside the caller's transaction (flushes, does not commit) so the
    keys land atomically with whatever status change triggered them.

    Returns the created keys.
    """
    if quantity < 1:
        raise InvalidInputError("quantity must be >= 1")

    purchased_at = utcnow()
    placeholder = key_codec.placeholder_expire_date(purchased_at)
    user_data = order.user_data or {}
    buyer_name = user_data.get("name") or user_data.get("email")

    taken: set[str] = set()
    keys: list[Key] = []
    for _ in range(quantity):
        key = Key(
            code=_draw_unique_code(taken),
            order_id=order.id,
            order_data=order.snapshot(),
            order_item_id=item.id,
            order_item_data=item.snapshot(),
            product_id=item.product_id,
            product_data=item.product_data,
            user_id=order.user_id,
            user_data=user_data,
            buyer_name=buyer_name,
            purchased_at=purchased_at,
            expires_at=placeholder,
            is_active=True,
        )
        db.session.add(key)
        keys.append(key)

    db.session.flush()

    # Legacy single-code field carries the first key ever issued for the line
    if not item.code and keys:
        item.code = keys[0].code

    return keys


def admin_generate_keys(order_id: int, order_item_id: int, quantity: int) -> list[Key]:
    """
    Manually issue additional keys for a key-type order item (admin tool).

    Raises:
        NotFoundError: order or item missing
        InvalidInputError: item is not a key product
    """
    def _op():
        order = order_store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")

        item = lock_for_update(db.session.query(OrderItem).filter_by(id=order_item_id)).first()
        if not item or item.order_id != order.id:
            raise NotFoundError("Order item not found")

        if item.product_type != PRODUCT_TYPE_KEY:
            raise InvalidInputError("Product is not a key type")

        keys = generate_keys(order, item, quantity)
        db.session.commit()
        current_app.logger.info(
            "Admin generated %d key(s) for order %s item %s", len(keys), order.id, item.id
        )
        return keys

    return run_with_retry(_op)


def set_key_active(code: str, is_active: bool) -> Key:
    key = db.session.query(Key).filter_by(code=key_codec.normalize_key(code)).first()
    if not key:
        raise NotFoundError("Key not found")
    key.is_active = is_active
    db.session.commit()
    return key


# =============================================================================
# VERIFICATION / ACTIVATION
# =============================================================================

def _key_log_data(key: Key, context: VerifyContext) -> dict:
    data = {
        "id": key.id,
        "key": key.code,
        "expires_at": to_utc_z(key.expires_at),
        "activated_at": to_utc_z(key.activated_at),
        "product_data": key.product_data,
    }
    data.update(context.as_log_data())
    return data


def _append_log(
    *,
    key: Key | None,
    context: VerifyContext,
    action: str,
    success: bool,
    message: str,
) -> KeyLog:
    entry = KeyLog(
        key_id=key.id if key else None,
        key_data=_key_log_data(key, context) if key else context.as_log_data(),
        action=action,
        success=success,
        message=message,
        hwid=context.hwid if success else None,
        place_id=context.place_id if success else None,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        created_at=utcnow(),
    )
    db.session.add(entry)
    return entry


def _reject(key: Key | None, context: VerifyContext, message: str, error_cls):
    """Persist the failed attempt, then raise."""
    db.session.rollback()
    _append_log(key=key, context=context, action=KEY_ACTION_VERIFY, success=False, message=message)
    db.session.commit()
    raise error_cls(message)


def _claim_activation(key: Key, now, expires_at) -> bool:
    """
    Stamp activated_at and the real expiry, only if never activated.

    Returns True if this call performed the first activation.
    """
    stmt = (
        update(Key)
        .where(Key.id == key.id, Key.activated_at.is_(None))
        .values(activated_at=now, expires_at=expires_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    won = db.session.execute(stmt).rowcount == 1
    db.session.expire(key)
    return won


def activate_or_verify(code: str, context: VerifyContext | None = None) -> dict:
    """
    Verify a key and activate it on first use.

    Args:
        code: key code in any casing / surrounding whitespace
        context: device/place/game/user and network metadata

    Returns:
        Key view: activation state, expiry (only once activated), product
        name and resolved payload

    Raises:
        NotFoundError, KeyInactiveError, KeyExpiredError,
        InvalidPolicyError: the key's product snapshot has an unparseable policy
    """
    context = context or VerifyContext()
    normalized = key_codec.normalize_key(code)
    if not normalized:
        raise InvalidInputError("key is required")

    key = db.session.query(Key).filter_by(code=normalized).first()
    if not key:
        _reject(None, context, "Key not found", NotFoundError)

    if not key.is_active:
        _reject(key, context, "Key is inactive", KeyInactiveError)

    now = utcnow()
    if key.activated_at is not None and key.expires_at < now:
        _reject(key, context, "Key has expired", KeyExpiredError)

    expires_at = None
    if key.activated_at is None:
        try:
            expires_at = key_codec.calculate_expire_date((key.product_data or {}).get("expire_days"), now)
        except InvalidPolicyError:
            current_app.logger.error("Key %s carries an unparseable expiry policy", key.id)
            _reject(key, context, "Invalid expiry policy", InvalidPolicyError)

    def _op():
        record = db.session.get(Key, key.id)
        first_activation = False
        if record.activated_at is None:
            first_activation = _claim_activation(record, now, expires_at)

        if context.hwid:
            record.hwid = context.hwid
        if context.place_id:
            record.place_id = context.place_id

        _append_log(
            key=record,
            context=context,
            action=KEY_ACTION_ACTIVATE if first_activation else KEY_ACTION_VERIFY,
            success=True,
            message="Key activated successfully" if first_activation else "Key verified successfully",
        )
        db.session.commit()
        return record, first_activation

    record, first_activation = run_with_retry(_op)
    if first_activation:
        current_app.logger.info("Key %s activated", record.id)

    return {
        "id": record.id,
        "key": record.code,
        "activated": record.activated_at is not None,
        "activated_at": to_utc_z(record.activated_at),
        "expires_at": to_utc_z(record.expires_at) if record.activated_at else None,
        "product_name": (record.product_data or {}).get("name") or "Unknown",
        "source_code": resolve_source_code(record),
        "status": "active" if record.activated_at else "unused",
        "hwid": record.hwid,
        "place_id": record.place_id,
    }


# =============================================================================
# PAYLOAD RESOLUTION
# =============================================================================

def _raw_source(key: Key) -> str | None:
    raw = (key.product_data or {}).get("source_code")
    if raw:
        return raw

    # Keys minted before products carried a payload: read the live catalog row
    product = db.session.get(Product, key.product_id)
    if product and product.source_code:
        return product.source_code
    return None


def fetch_github_content(url: str, *, transport: httpx.BaseTransport | None = None) -> str:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    token = current_app.config.get("GITHUB_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    timeout = current_app.config.get("SOURCE_FETCH_TIMEOUT_SECONDS", 10)
    with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
        response = client.get(url, headers=headers)
        response.raise_for_status()
        return response.text


def resolve_source_code(key: Key, *, transport: httpx.BaseTransport | None = None) -> str | None:
    """
    Return the payload delivered with a verified key.

    GitHub / raw GitHub URLs are fetched live (with GITHUB_TOKEN when set);
    any other value, or any fetch failure, returns the stored reference as is.
    """
    raw = _raw_source(key)
    if not raw:
        return None

    parsed = urlparse(raw.strip())
    if parsed.scheme not in ("http", "https"):
        return raw
    if (parsed.hostname or "").lower() not in GITHUB_HOSTS:
        return raw

    try:
        return fetch_github_content(raw.strip(), transport=transport)
    except httpx.HTTPError as exc:
        current_app.logger.warning("Failed to fetch key payload from %s: %s", parsed.hostname, exc)
        return raw
