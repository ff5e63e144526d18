from __future__ import annotations

from ..extensions import db
from keyshop.time_utils import to_utc_z


KEY_ACTION_VERIFY = "verify"
KEY_ACTION_ACTIVATE = "activate"


class Key(db.Model):
    """
    One issued credential (one per purchased unit of a key product).

    EXPIRY:
    - expires_at holds a far-future placeholder until first activation
    - activated_at is written once (first activation wins); expires_at is
      recomputed from the product's policy at that moment and never again
    - hwid / place_id follow last-writer-wins on every verification

    Order, item, product and user are embedded as snapshots alongside their
    ids so a key stays meaningful after its origin rows change.
    """
    __tablename__ = "keys"
    __table_args__ = (
        db.Index("ix_keys_order_item", "order_item_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    order_id = db.Column(db.Integer, nullable=False, index=True)
    order_data = db.Column(db.JSON, nullable=False)
    order_item_id = db.Column(db.Integer, nullable=False)
    order_item_data = db.Column(db.JSON, nullable=False)
    product_id = db.Column(db.Integer, nullable=False, index=True)
    product_data = db.Column(db.JSON, nullable=False)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    user_data = db.Column(db.JSON, nullable=False)
    buyer_name = db.Column(db.String(255), nullable=True)

    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    hwid = db.Column(db.String(255), nullable=True)
    place_id = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "product_id": self.product_id,
            "product_name": (self.product_data or {}).get("name"),
            "user_id": self.user_id,
            "buyer_name": self.buyer_name,
            "purchased_at": to_utc_z(self.purchased_at),
            "activated_at": to_utc_z(self.activated_at),
            # Placeholder expiry is meaningless until activation
            "expires_at": to_utc_z(self.expires_at) if self.activated_at else None,
            "hwid": self.hwid,
            "place_id": self.place_id,
            "is_active": self.is_active,
        }


class KeyLog(db.Model):
    """
    Append-only audit trail of verification attempts.

    key_id is NULL when the lookup itself failed. Rows are never updated or
    deleted.
    """
    __tablename__ = "key_logs"
    __table_args__ = (
        db.Index("ix_key_logs_key_created", "key_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key_id = db.Column(db.Integer, nullable=True)
    key_data = db.Column(db.JSON, nullable=False)

    action = db.Column(db.String(16), nullable=False)
    success = db.Column(db.Boolean, nullable=False)
    message = db.Column(db.String(255), nullable=False)

    hwid = db.Column(db.String(255), nullable=True)
    place_id = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key_id": self.key_id,
            "key_data": self.key_data,
            "action": self.action,
            "success": self.success,
            "message": self.message,
            "hwid": self.hwid,
            "place_id": self.place_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }
