import asyncio
import logging
import math
import os
import time
from contextlib import asynccontextmanager, suppress
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import services
from auth import get_current_user, issue_token, require_admin
from backup import backup_data, periodic_backup, restore_data
from config import Settings
from database import Database, connect
from filters import (
    ADMIN_PAGE_SIZE,
    MAX_PAGE,
    MAX_PAGE_SIZE,
    ORDER_SORT_FIELDS,
    PRODUCT_SORT_FIELDS,
    PUBLIC_PAGE_SIZE,
    USER_SORT_FIELDS,
)
from ratelimit import RateLimiter
from schemas import (
    FeaturedToggle,
    LoginBody,
    MAX_ID,
    Order as OrderSchema,
    OrderStatus,
    OrderStatusUpdate,
    PaymentStatus,
    Product as ProductSchema,
    ProductUpdate,
    RoleUpdate,
    User as UserSchema,
)

logger = logging.getLogger("store")

RowId = Annotated[int, Path(ge=1, le=MAX_ID)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    db = connect(settings)
    db.sync()
    app.state.settings = settings
    app.state.db = db
    app.state.rate_limiter = None
    if settings.rate_limit_max > 0:
        app.state.rate_limiter = RateLimiter(settings.rate_limit_window, settings.rate_limit_max)

    if settings.restore_on_startup:
        restore_data(db, settings.backup_path)
    if settings.admin_email and settings.admin_password:
        services.seed_admin(db, settings.admin_email, settings.admin_password, settings.admin_name)

    task = None
    if settings.backup_interval > 0:
        task = asyncio.create_task(periodic_backup(app, settings.backup_interval))
    logger.info("Store API started (%s, %s backend)", settings.environment, db.name)
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        db.close()
        logger.info("Store API stopped")


app = FastAPI(title="Electronics Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(Settings.from_env().allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Middleware & errors -----------------------
@app.middleware("http")
async def rate_limit(request: Request, call_next):
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None or not request.url.path.startswith("/api"):
        return await call_next(request)

    key = request.client.host if request.client else "unknown"
    allowed, remaining, reset_at = limiter.hit(key)
    if not allowed:
        retry_after = max(math.ceil(reset_at - time.time()), 1)
        logger.warning("Rate limit exceeded for %s on %s", key, request.url.path)
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": "Too many requests from this IP, please try again later."},
            headers={"Retry-After": str(retry_after)},
        )
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    settings = getattr(request.app.state, "settings", None)
    message = "Internal server error" if settings is None or settings.is_production else str(exc)
    return JSONResponse(status_code=500, content={"success": False, "message": message})


# ----------------------- Utils -----------------------
def get_db(request: Request) -> Database:
    return request.app.state.db


def check_sort(sort_by: str, allowed) -> str:
    if sort_by not in allowed:
        raise HTTPException(status_code=400, detail=f"sortBy must be one of: {', '.join(allowed)}")
    return sort_by


def normalize_category(category: Optional[str]) -> Optional[str]:
    return category.strip().lower() if category and category.strip() else None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Electronics Store API running"}


@app.get("/test")
def test_database(request: Request):
    db = getattr(request.app.state, "db", None)
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_backend": db.name if db is not None else None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None and db.ping():
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = [model.entity.table_name for model in db.models.values()]
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/api/health")
def health(db: Database = Depends(get_db)):
    return {"success": True, "data": services.health(db)}


# ----------------------- Auth -----------------------
@app.post("/api/auth/register", status_code=201)
def register(body: UserSchema, request: Request, db: Database = Depends(get_db)):
    user = services.register_user(db, body)
    return {"success": True, "message": "Registration successful", "data": {"user": user, "token": issue_token(user, request)}}


@app.post("/api/auth/login")
def login(body: LoginBody, request: Request, db: Database = Depends(get_db)):
    user = services.authenticate(db, body.email, body.password)
    return {"success": True, "message": "Login successful", "data": {"user": user, "token": issue_token(user, request)}}


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "data": {"user": user}}


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(PUBLIC_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    category: Optional[str] = None,
    search: Optional[str] = None,
    q: Optional[str] = None,
    minPrice: Optional[float] = Query(None, ge=0),
    maxPrice: Optional[float] = Query(None, ge=0),
    brand: Optional[str] = None,
    featured: Optional[bool] = None,
    sortBy: str = "createdAt",
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    db: Database = Depends(get_db),
):
    data = services.list_products(
        db,
        page=page,
        limit=limit,
        category=normalize_category(category),
        search=search or q,
        min_price=minPrice,
        max_price=maxPrice,
        brand=brand,
        featured=featured,
        sort_by=check_sort(sortBy, PRODUCT_SORT_FIELDS),
        sort_order=sortOrder,
    )
    return {"success": True, "data": data}


@app.get("/api/products/{product_id}")
def get_product(product_id: RowId, db: Database = Depends(get_db)):
    return {"success": True, "data": {"product": services.get_product(db, product_id)}}


@app.post("/api/products", status_code=201)
def create_product(body: ProductSchema, db: Database = Depends(get_db), user=Depends(require_admin)):
    product = services.create_product(db, body)
    logger.info("Product id=%s created by admin id=%s", product["id"], user["id"])
    return {"success": True, "message": "Product created successfully", "data": {"product": product}}


@app.put("/api/products/{product_id}")
def update_product(product_id: RowId, body: ProductUpdate, db: Database = Depends(get_db), user=Depends(require_admin)):
    product = services.update_product(db, product_id, body)
    return {"success": True, "message": "Product updated successfully", "data": {"product": product}}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: RowId, db: Database = Depends(get_db), user=Depends(require_admin)):
    services.delete_product(db, product_id)
    logger.info("Product id=%s deleted by admin id=%s", product_id, user["id"])
    return {"success": True, "message": "Product deleted successfully"}


@app.get("/api/search")
def search(
    q: Optional[str] = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    minPrice: Optional[float] = Query(None, ge=0),
    maxPrice: Optional[float] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    db: Database = Depends(get_db),
):
    data = services.search_products(
        db, q, category=normalize_category(category), brand=brand,
        min_price=minPrice, max_price=maxPrice, limit=limit,
    )
    return {"success": True, "data": data}


# ----------------------- Orders -----------------------
@app.post("/api/orders", status_code=201)
def create_order(body: OrderSchema, db: Database = Depends(get_db), user=Depends(get_current_user)):
    order = services.place_order(db, user, body)
    return {"success": True, "message": "Order placed successfully", "data": {"order": order}}


@app.get("/api/orders/{order_id}")
def get_order(order_id: RowId, db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"success": True, "data": {"order": services.get_order(db, order_id, user)}}


# ----------------------- Admin -----------------------
@app.get("/api/admin/dashboard")
async def admin_dashboard(db: Database = Depends(get_db), user=Depends(require_admin)):
    return {"success": True, "data": await services.dashboard(db)}


@app.get("/api/admin/analytics")
async def admin_analytics(db: Database = Depends(get_db), user=Depends(require_admin)):
    return {"success": True, "data": await services.analytics(db)}


@app.get("/api/admin/products")
def admin_products(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(ADMIN_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    category: Optional[str] = None,
    search: Optional[str] = None,
    q: Optional[str] = None,
    minPrice: Optional[float] = Query(None, ge=0),
    maxPrice: Optional[float] = Query(None, ge=0),
    brand: Optional[str] = None,
    featured: Optional[bool] = None,
    isActive: Optional[bool] = None,
    sortBy: str = "createdAt",
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    db: Database = Depends(get_db),
    user=Depends(require_admin),
):
    data = services.list_products(
        db,
        page=page,
        limit=limit,
        category=normalize_category(category),
        search=search or q,
        min_price=minPrice,
        max_price=maxPrice,
        brand=brand,
        featured=featured,
        is_active=isActive,
        sort_by=check_sort(sortBy, PRODUCT_SORT_FIELDS),
        sort_order=sortOrder,
        admin=True,
    )
    return {"success": True, "data": data}


@app.put("/api/admin/products/{product_id}/featured")
def admin_feature_product(product_id: RowId, body: FeaturedToggle, db: Database = Depends(get_db),
                          user=Depends(require_admin)):
    product = services.set_featured(db, product_id, body.isFeatured)
    state = "featured" if body.isFeatured else "unfeatured"
    return {"success": True, "message": f"Product {state} successfully", "data": {"product": product}}


@app.get("/api/admin/orders")
def admin_orders(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(ADMIN_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[OrderStatus] = None,
    paymentStatus: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
    sortBy: str = "createdAt",
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    db: Database = Depends(get_db),
    user=Depends(require_admin),
):
    data = services.list_orders(
        db,
        page=page,
        limit=limit,
        status=status,
        payment_status=paymentStatus,
        search=search,
        sort_by=check_sort(sortBy, ORDER_SORT_FIELDS),
        sort_order=sortOrder,
    )
    return {"success": True, "data": data}


@app.put("/api/admin/orders/{order_id}/status")
def admin_order_status(order_id: RowId, body: OrderStatusUpdate, db: Database = Depends(get_db),
                       user=Depends(require_admin)):
    order = services.update_order_status(db, order_id, body)
    logger.info("Order id=%s moved to %s by admin id=%s", order_id, body.status, user["id"])
    return {"success": True, "message": "Order status updated successfully", "data": {"order": order}}


@app.get("/api/admin/users")
def admin_users(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(ADMIN_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    role: Optional[str] = None,
    search: Optional[str] = None,
    isActive: Optional[bool] = None,
    sortBy: str = "createdAt",
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    db: Database = Depends(get_db),
    user=Depends(require_admin),
):
    data = services.list_users(
        db,
        page=page,
        limit=limit,
        role=role,
        search=search,
        is_active=isActive,
        sort_by=check_sort(sortBy, USER_SORT_FIELDS),
        sort_order=sortOrder,
    )
    return {"success": True, "data": data}


@app.put("/api/admin/users/{user_id}/role")
def admin_user_role(user_id: RowId, body: RoleUpdate, db: Database = Depends(get_db), user=Depends(require_admin)):
    updated = services.update_user_role(db, user_id, body.role)
    return {"success": True, "message": "User role updated successfully", "data": {"user": updated}}


@app.post("/api/backup")
def create_backup(request: Request, db: Database = Depends(get_db), user=Depends(require_admin)):
    counts = backup_data(db, request.app.state.settings.backup_path)
    return {"success": True, "message": "Backup created", "data": counts}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
