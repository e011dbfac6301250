"""Translate listing query-string values into ``where``/``order``/paging for the models."""
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

PUBLIC_PAGE_SIZE = 12
ADMIN_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
# Keeps the row offset inside a signed 64-bit integer.
MAX_PAGE = 1_000_000

PRODUCT_SEARCH_FIELDS = ("name", "description", "brand", "model", "category")
USER_SEARCH_FIELDS = ("name", "email")
ORDER_SEARCH_FIELDS = ("orderNumber", "customerName", "customerEmail")

PRODUCT_SORT_FIELDS = ("createdAt", "updatedAt", "price", "name", "stock", "brand")
USER_SORT_FIELDS = ("createdAt", "name", "email")
ORDER_SORT_FIELDS = ("createdAt", "total", "orderNumber")


def paginate(page: int, limit: int) -> Tuple[int, int]:
    """Return ``(limit, offset)`` for a 1-based page."""
    if not 1 <= page <= MAX_PAGE:
        raise ValueError(f"page must be between 1 and {MAX_PAGE}")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit, (page - 1) * limit


def search_clause(term: Optional[str], fields: Sequence[str]) -> Optional[List[Dict[str, Any]]]:
    term = (term or "").strip()
    if not term:
        return None
    return [{name: {"$ilike": term}} for name in fields]


def price_range(min_price: Optional[float], max_price: Optional[float]) -> Optional[Dict[str, float]]:
    bounds = {}
    if min_price is not None:
        bounds["$gte"] = float(min_price)
    if max_price is not None:
        bounds["$lte"] = float(max_price)
    return bounds or None


def sort_order(sort_by: str = "createdAt", direction: str = "desc") -> List[Tuple[str, str]]:
    """Single-column order with ``id`` as a tiebreaker so paging is stable."""
    direction = direction.upper()
    order = [(sort_by, direction)]
    if sort_by != "id":
        order.append(("id", direction))
    return order


def build_where(baseline: Optional[Dict[str, Any]] = None, exact: Optional[Dict[str, Any]] = None,
                ranges: Optional[Dict[str, Optional[Dict[str, float]]]] = None,
                search: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    where: Dict[str, Any] = dict(baseline or {})
    for name, value in (exact or {}).items():
        if value is not None:
            where[name] = value
    for name, bounds in (ranges or {}).items():
        if bounds:
            where[name] = bounds
    if search:
        where["$or"] = search
    return where


def listing(where: Dict[str, Any], page: int, limit: int, sort_by: str = "createdAt",
            direction: str = "desc") -> Dict[str, Any]:
    size, offset = paginate(page, limit)
    return {"where": where, "order": sort_order(sort_by, direction), "limit": size, "offset": offset}


def pagination_meta(page: int, limit: int, count: int, label: str) -> Dict[str, int]:
    return {
        "currentPage": page,
        "totalPages": math.ceil(count / limit) if limit else 0,
        f"total{label}": count,
    }
