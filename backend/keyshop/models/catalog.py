from __future__ import annotations

from ..extensions import db
from keyshop.time_utils import to_utc_z


PRODUCT_TYPE_KEY = "key"
PRODUCT_TYPE_OTHER = "other"

VALID_PRODUCT_TYPES = [PRODUCT_TYPE_KEY, PRODUCT_TYPE_OTHER]


def is_stock_tracked(product_type: str | None) -> bool:
    """Key products are generated on demand; every other type draws from stock."""
    return product_type != PRODUCT_TYPE_KEY


class Product(db.Model):
    """
    Catalog entry.

    The core only reads price/stock/type/expiry policy/active flag and writes
    stock decrements. Rows may be edited at any time, which is why orders
    embed a snapshot() instead of joining here.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_type_active", "type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in minor units (satang)
    price_satang = db.Column(db.Integer, nullable=False)

    image = db.Column(db.String(1024), nullable=True)
    category = db.Column(db.String(64), nullable=True)
    type = db.Column(db.String(16), nullable=False, default=PRODUCT_TYPE_OTHER)

    # Ignored for key products
    stock = db.Column(db.Integer, nullable=False, default=0)

    # Relative expiry policy for key products: "<N>D" or "Never" (None == Never)
    expire_days = db.Column(db.String(16), nullable=True)

    # Inline script or a raw-content URL returned by key verification
    source_code = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    def snapshot(self) -> dict:
        """Embedded copy stored on order items and keys at purchase time."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_satang": self.price_satang,
            "image": self.image,
            "category": self.category,
            "type": self.type,
            "expire_days": self.expire_days,
            "source_code": self.source_code,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_satang": self.price_satang,
            "image": self.image,
            "category": self.category,
            "type": self.type,
            "stock": self.stock,
            "expire_days": self.expire_days,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
