"""
Table definitions shared by every persistence backend.

The SQLAlchemy tables are the single description of each entity: the SQL
backend executes against them directly, while the REST and Mongo backends
read column names, numeric/date columns and unique keys from them.
"""
from dataclasses import dataclass
from typing import Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Index,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password", String(255), nullable=False),
    Column("role", String(16), nullable=False, default="user"),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("phone", String(32), nullable=True),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("description", Text, nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("originalPrice", Numeric(10, 2), nullable=True),
    Column("category", String(32), nullable=False),
    Column("subcategory", String(100), nullable=True),
    Column("brand", String(100), nullable=False),
    Column("model", String(100), nullable=True),
    Column("images", JSON, nullable=True),
    Column("specifications", JSON, nullable=True),
    Column("features", JSON, nullable=True),
    Column("stock", Integer, nullable=False, default=0),
    Column("sku", String(64), nullable=True, unique=True),
    Column("tags", JSON, nullable=True),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("isFeatured", Boolean, nullable=False, default=False),
    Column("rating", JSON, nullable=True),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True), nullable=False),
    Index("ix_products_category_active", "category", "isActive"),
    Index("ix_products_price", "price"),
    Index("ix_products_featured", "isFeatured"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("orderNumber", String(32), nullable=False, unique=True),
    Column("userId", Integer, ForeignKey("users.id"), nullable=False),
    Column("customerName", String(100), nullable=True),
    Column("customerEmail", String(255), nullable=True),
    Column("items", JSON, nullable=False),
    Column("shippingAddress", JSON, nullable=False),
    Column("billingAddress", JSON, nullable=True),
    Column("paymentMethod", String(32), nullable=False),
    Column("paymentStatus", String(16), nullable=False, default="pending"),
    Column("orderStatus", String(16), nullable=False, default="pending"),
    Column("subtotal", Numeric(10, 2), nullable=False),
    Column("shippingCost", Numeric(10, 2), nullable=False, default=0),
    Column("tax", Numeric(10, 2), nullable=False, default=0),
    Column("discount", Numeric(10, 2), nullable=False, default=0),
    Column("total", Numeric(10, 2), nullable=False),
    Column("notes", Text, nullable=True),
    Column("trackingNumber", String(64), nullable=True),
    Column("estimatedDelivery", DateTime(timezone=True), nullable=True),
    Column("deliveredAt", DateTime(timezone=True), nullable=True),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True), nullable=False),
    Index("ix_orders_status", "orderStatus"),
    Index("ix_orders_payment_status", "paymentStatus"),
)


@dataclass(frozen=True)
class Entity:
    name: str
    table: Table

    @property
    def table_name(self) -> str:
        return self.table.name

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.c)

    @property
    def numeric(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.c if isinstance(c.type, Numeric))

    @property
    def datetimes(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.c if isinstance(c.type, DateTime))

    @property
    def unique(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.c if c.unique)

    @property
    def optional_unique(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.c if c.unique and c.nullable)


USER = Entity("user", users)
PRODUCT = Entity("product", products)
ORDER = Entity("order", orders)

ENTITIES = (USER, PRODUCT, ORDER)
