"""
Store operations used by the route handlers.

Each listing fixes its baseline predicate here (public product listings only
ever see active products) and hands the rest to ``filters``. Functions raise
``HTTPException`` for not-found, conflict and permission failures; storage
errors propagate unchanged.
"""
import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool

import schemas
from adapter import DuplicateKeyError, Include, utcnow
from auth import hash_password, public_user, verify_password
from database import Database
from filters import (
    ORDER_SEARCH_FIELDS,
    PRODUCT_SEARCH_FIELDS,
    USER_SEARCH_FIELDS,
    build_where,
    listing,
    pagination_meta,
    price_range,
    search_clause,
)

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = 50000
SHIPPING_COST = 2000
TAX_RATE = 0.16
TERMINAL_STATUSES = ("delivered", "cancelled")
ORDER_NUMBER_ATTEMPTS = 3
RECENT_LIMIT = 5


# ----------------------- Products -----------------------
def normalize_images(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep at most one primary image: the first one flagged wins."""
    seen_primary = False
    normalized = []
    for image in images:
        image = dict(image)
        if image.get("isPrimary") and not seen_primary:
            seen_primary = True
        else:
            image["isPrimary"] = False
        normalized.append(image)
    return normalized


def primary_image(product: Dict[str, Any]) -> str:
    images = product.get("images") or []
    for image in images:
        if image.get("isPrimary"):
            return image.get("url", "")
    return images[0].get("url", "") if images else ""


def list_products(db: Database, page: int, limit: int, category: Optional[str] = None,
                  search: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, brand: Optional[str] = None,
                  featured: Optional[bool] = None, is_active: Optional[bool] = None,
                  sort_by: str = "createdAt", sort_order: str = "desc", admin: bool = False) -> Dict[str, Any]:
    baseline = {} if admin else {"isActive": True}
    exact = {"category": category, "brand": brand, "isFeatured": featured}
    if admin:
        exact["isActive"] = is_active
    where = build_where(
        baseline,
        exact,
        {"price": price_range(min_price, max_price)},
        search_clause(search, PRODUCT_SEARCH_FIELDS),
    )
    result = db.products.find_and_count_all(**listing(where, page, limit, sort_by, sort_order))
    return {
        "products": result["rows"],
        "pagination": pagination_meta(page, limit, result["count"], "Products"),
    }


def search_products(db: Database, q: Optional[str], category: Optional[str] = None,
                    brand: Optional[str] = None, min_price: Optional[float] = None,
                    max_price: Optional[float] = None, limit: int = 50) -> Dict[str, Any]:
    clause = search_clause(q, PRODUCT_SEARCH_FIELDS)
    if clause is None:
        return {"products": [], "total": 0, "query": q or ""}
    where = build_where(
        {"isActive": True},
        {"category": category, "brand": brand},
        {"price": price_range(min_price, max_price)},
        clause,
    )
    rows = db.products.find_all(where=where, order=[("isFeatured", "DESC"), ("name", "ASC")], limit=limit)
    return {"products": rows, "total": len(rows), "query": q.strip()}


def get_product(db: Database, product_id: int) -> Dict[str, Any]:
    product = db.products.find_by_pk(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def create_product(db: Database, payload: schemas.Product) -> Dict[str, Any]:
    data = payload.model_dump(mode="json")
    data["images"] = normalize_images(data["images"])
    try:
        return db.create_document("product", data)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")


def update_product(db: Database, product_id: int, payload: schemas.ProductUpdate) -> Dict[str, Any]:
    changes = payload.model_dump(mode="json", exclude_none=True)
    if "images" in changes:
        changes["images"] = normalize_images(changes["images"])
    if not changes:
        return get_product(db, product_id)
    try:
        product = db.products.update(changes, where={"id": product_id})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def delete_product(db: Database, product_id: int):
    if db.products.destroy(where={"id": product_id}) == 0:
        raise HTTPException(status_code=404, detail="Product not found")


def set_featured(db: Database, product_id: int, featured: bool) -> Dict[str, Any]:
    product = db.products.update({"isFeatured": featured}, where={"id": product_id})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# ----------------------- Users -----------------------
def list_users(db: Database, page: int, limit: int, role: Optional[str] = None, search: Optional[str] = None,
               is_active: Optional[bool] = None, sort_by: str = "createdAt",
               sort_order: str = "desc") -> Dict[str, Any]:
    where = build_where(exact={"role": role, "isActive": is_active},
                        search=search_clause(search, USER_SEARCH_FIELDS))
    result = db.users.find_and_count_all(
        attributes={"exclude": ["password"]},
        **listing(where, page, limit, sort_by, sort_order),
    )
    return {
        "users": result["rows"],
        "pagination": pagination_meta(page, limit, result["count"], "Users"),
    }


def register_user(db: Database, payload: schemas.User) -> Dict[str, Any]:
    if db.users.find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    try:
        user = db.users.create({
            "name": payload.name.strip(),
            "email": payload.email,
            "password": hash_password(payload.password),
            "phone": payload.phone,
            "role": "user",
            "isActive": True,
        })
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user id=%s", user["id"])
    return public_user(user)


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db.users.find_one({"email": email})
    if not user or not verify_password(password, user.get("password")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account disabled")
    return public_user(user)


def update_user_role(db: Database, user_id: int, role: str) -> Dict[str, Any]:
    # Admin accounts are only provisioned through the bootstrap/seed path.
    if role == "admin":
        raise HTTPException(status_code=403, detail="Cannot assign admin role. Admin users are created via seed only.")
    user = db.users.find_by_pk(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user["role"] == "admin":
        raise HTTPException(status_code=403, detail="Cannot change admin user role")
    updated = db.users.update({"role": role}, where={"id": user_id})
    return {k: updated[k] for k in ("id", "name", "email", "role")}


def seed_admin(db: Database, email: str, password: str, name: str = "Admin User") -> Dict[str, Any]:
    """Create or repair the bootstrap admin.

    The address goes through the same validation as the login body, so an
    admin that cannot sign in is never written.
    """
    try:
        email = validate_email(email.strip().lower(), check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValueError(f"Invalid admin email {email!r}: {exc}") from exc
    existing = db.users.find_one({"email": email})
    if existing is None:
        admin = db.users.create({
            "name": name,
            "email": email,
            "password": hash_password(password),
            "role": "admin",
            "isActive": True,
        })
        logger.info("Created admin user id=%s", admin["id"])
        return public_user(admin)

    changes = {}
    if existing["role"] != "admin":
        changes["role"] = "admin"
    if not verify_password(password, existing.get("password")):
        changes["password"] = hash_password(password)
    if changes:
        existing = db.users.update(changes, where={"id": existing["id"]})
        logger.info("Updated admin user id=%s (%s)", existing["id"], ", ".join(sorted(changes)))
    return public_user(existing)


# ----------------------- Orders -----------------------
def generate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))
    return f"GST-{timestamp[-6:]}-{random.randint(0, 999):03d}"


def user_include(db: Database) -> Include:
    return Include(db.users, "user", foreign_key="userId", attributes=["name", "email"])


def list_orders(db: Database, page: int, limit: int, status: Optional[str] = None,
                payment_status: Optional[str] = None, search: Optional[str] = None,
                sort_by: str = "createdAt", sort_order: str = "desc") -> Dict[str, Any]:
    where = build_where(exact={"orderStatus": status, "paymentStatus": payment_status},
                        search=search_clause(search, ORDER_SEARCH_FIELDS))
    result = db.orders.find_and_count_all(
        include=[user_include(db)],
        **listing(where, page, limit, sort_by, sort_order),
    )
    return {
        "orders": result["rows"],
        "pagination": pagination_meta(page, limit, result["count"], "Orders"),
    }


def get_order(db: Database, order_id: int, user: Dict[str, Any]) -> Dict[str, Any]:
    rows = db.orders.find_all(where={"id": order_id}, limit=1, include=[user_include(db)])
    if not rows:
        raise HTTPException(status_code=404, detail="Order not found")
    order = rows[0]
    if order["userId"] != user["id"] and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied")
    return order


def _create_order_row(db: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        data["orderNumber"] = generate_order_number()
        try:
            return db.orders.create(data)
        except DuplicateKeyError:
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning("Order number %s already taken, regenerating", data["orderNumber"])


def place_order(db: Database, user: Dict[str, Any], payload: schemas.Order) -> Dict[str, Any]:
    quantities: Dict[int, int] = {}
    for item in payload.items:
        quantities[item.product] = quantities.get(item.product, 0) + item.quantity

    found = {p["id"]: p for p in db.products.find_all(where={"id": {"$in": list(quantities)}})}

    items = []
    subtotal = 0.0
    for item in payload.items:
        product = found.get(item.product)
        if product is None or not product.get("isActive"):
            raise HTTPException(status_code=400, detail=f"Product {item.product} not found")
        price = float(product["price"])
        items.append({
            "product": product["id"],
            "name": product["name"],
            "quantity": item.quantity,
            "price": price,
            "image": primary_image(product),
        })
        subtotal += price * item.quantity

    for product_id, quantity in quantities.items():
        product = found[product_id]
        if product["stock"] < quantity:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for {product['name']}. Available: {product['stock']}",
            )

    subtotal = round(subtotal, 2)
    shipping_cost = 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_COST
    tax = round(subtotal * TAX_RATE, 2)
    discount = 0.0
    total = round(subtotal + shipping_cost + tax - discount, 2)

    shipping_address = payload.shippingAddress.model_dump()
    billing = payload.billingAddress.model_dump() if payload.billingAddress else shipping_address

    reserved = []
    try:
        for product_id, quantity in quantities.items():
            if not db.products.adjust(product_id, "stock", -quantity, floor=0):
                raise HTTPException(status_code=409, detail=f"Insufficient stock for {found[product_id]['name']}")
            reserved.append((product_id, quantity))
        order = _create_order_row(db, {
            "userId": user["id"],
            "customerName": user.get("name"),
            "customerEmail": user.get("email"),
            "items": items,
            "shippingAddress": shipping_address,
            "billingAddress": billing,
            "paymentMethod": payload.paymentMethod,
            "paymentStatus": "pending",
            "orderStatus": "pending",
            "subtotal": subtotal,
            "shippingCost": shipping_cost,
            "tax": tax,
            "discount": discount,
            "total": total,
            "notes": payload.notes,
        })
    except Exception:
        for product_id, quantity in reserved:
            try:
                db.products.adjust(product_id, "stock", quantity)
            except Exception:
                logger.exception("Could not release %d reserved units of product id=%s", quantity, product_id)
        raise

    logger.info("Order %s placed by user id=%s total=%.2f", order["orderNumber"], user["id"], total)
    return order


def update_order_status(db: Database, order_id: int, payload: schemas.OrderStatusUpdate) -> Dict[str, Any]:
    order = db.orders.find_by_pk(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    current = order["orderStatus"]
    if current in TERMINAL_STATUSES and payload.status != current:
        raise HTTPException(status_code=409, detail=f"Order is already {current}")

    changes: Dict[str, Any] = {"orderStatus": payload.status}
    if payload.status == "delivered" and current != "delivered":
        changes["deliveredAt"] = utcnow()
    if payload.paymentStatus:
        changes["paymentStatus"] = payload.paymentStatus
    if payload.trackingNumber:
        changes["trackingNumber"] = payload.trackingNumber
    if payload.notes:
        changes["notes"] = payload.notes

    updated = db.orders.update(changes, where={"id": order_id})
    if not updated:
        raise HTTPException(status_code=404, detail="Order not found")
    return updated


# ----------------------- Admin aggregates -----------------------
async def dashboard(db: Database) -> Dict[str, Any]:
    (
        total_users,
        total_accounts,
        total_products,
        total_orders,
        pending_orders,
        total_revenue,
        recent_orders,
        top_products,
    ) = await asyncio.gather(
        run_in_threadpool(db.users.count, where={"role": "user"}),
        run_in_threadpool(db.users.count),
        run_in_threadpool(db.products.count, where={"isActive": True}),
        run_in_threadpool(db.orders.count),
        run_in_threadpool(db.orders.count, where={"orderStatus": "pending"}),
        run_in_threadpool(db.orders.sum, "total", where={"paymentStatus": "paid"}),
        run_in_threadpool(
            db.orders.find_all,
            include=[user_include(db)],
            order=[("createdAt", "DESC"), ("id", "DESC")],
            limit=RECENT_LIMIT,
        ),
        run_in_threadpool(
            db.products.find_all,
            where={"isActive": True},
            order=[("createdAt", "DESC"), ("id", "DESC")],
            limit=RECENT_LIMIT,
            attributes=["id", "name", "price", "images", "stock"],
        ),
    )
    return {
        "stats": {
            "totalUsers": total_users,
            "totalAccounts": total_accounts,
            "totalProducts": total_products,
            "totalOrders": total_orders,
            "pendingOrders": pending_orders,
            "totalRevenue": total_revenue,
        },
        "recentOrders": recent_orders,
        "topProducts": top_products,
    }


async def analytics(db: Database) -> Dict[str, Any]:
    counts = [run_in_threadpool(db.products.count, where={"isActive": True, "category": c})
              for c in schemas.CATEGORIES]
    total_revenue, total_orders, *per_category = await asyncio.gather(
        run_in_threadpool(db.orders.sum, "total", where={"paymentStatus": "paid"}),
        run_in_threadpool(db.orders.count, where={"paymentStatus": "paid"}),
        *counts,
    )
    return {
        "totalRevenue": total_revenue,
        "totalOrders": total_orders,
        "categoryStats": [
            {"category": category, "count": count}
            for category, count in zip(schemas.CATEGORIES, per_category)
            if count
        ],
    }


def health(db: Database) -> Dict[str, Any]:
    return {
        "backend": db.name,
        "connected": db.ping(),
        "products": db.products.count(),
        "users": db.users.count(),
        "orders": db.orders.count(),
    }
