from __future__ import annotations

from ..extensions import db
from keyshop.time_utils import to_utc_z


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"

# Statuses at or beyond "paid"; fulfillment has already run for these
SETTLED_ORDER_STATUSES = (ORDER_STATUS_PAID, ORDER_STATUS_COMPLETED)

PAYMENT_METHOD_PROMPTPAY = "promptpay"


class Order(db.Model):
    """
    Customer order.

    LIFECYCLE:
    - pending -> paid (exactly once) or cancelled (only from pending)
    - paid -> completed (downstream fulfillment, never reverted)
    - cancelled / completed are terminal

    omise_charge_id is written once through a conditional update that only
    matches while the column is NULL. The column is UNIQUE and nullable, so
    orders without a charge do not collide.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Snapshot of id/name/email/image/role at creation time
    user_data = db.Column(db.JSON, nullable=False)

    total_amount_satang = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    payment_method = db.Column(db.String(32), nullable=True)
    omise_charge_id = db.Column(db.String(128), nullable=True, unique=True)
    qr_code_url = db.Column(db.String(2048), nullable=True)
    charge_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.id",
    )

    def snapshot(self) -> dict:
        """Embedded copy stored on keys."""
        return {
            "id": self.id,
            "status": self.status,
            "total_amount_satang": self.total_amount_satang,
        }

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "user_data": self.user_data,
            "total_amount_satang": self.total_amount_satang,
            "status": self.status,
            "payment_method": self.payment_method,
            "omise_charge_id": self.omise_charge_id,
            "qr_code_url": self.qr_code_url,
            "charge_expires_at": to_utc_z(self.charge_expires_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Line on an order.

    product_id is a plain reference, not a foreign key: the line keeps a full
    product snapshot so catalog edits or deletions never rewrite history.
    code holds the first generated key (legacy single-code field).
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)

    product_data = db.Column(db.JSON, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    price_satang = db.Column(db.Integer, nullable=False)

    code = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def product_type(self) -> str | None:
        return (self.product_data or {}).get("type")

    def snapshot(self) -> dict:
        """Embedded copy stored on keys."""
        return {
            "id": self.id,
            "quantity": self.quantity,
            "price_satang": self.price_satang,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_data": self.product_data,
            "quantity": self.quantity,
            "price_satang": self.price_satang,
            "code": self.code,
            "created_at": to_utc_z(self.created_at),
        }
