import pytest

from filters import (
    MAX_PAGE,
    MAX_PAGE_SIZE,
    PRODUCT_SEARCH_FIELDS,
    build_where,
    listing,
    paginate,
    pagination_meta,
    price_range,
    search_clause,
    sort_order,
)


def test_paginate_offsets():
    assert paginate(1, 12) == (12, 0)
    assert paginate(3, 20) == (20, 40)


@pytest.mark.parametrize("page,limit", [(0, 10), (MAX_PAGE + 1, 10), (1, 0), (1, MAX_PAGE_SIZE + 1)])
def test_paginate_rejects_out_of_range(page, limit):
    with pytest.raises(ValueError):
        paginate(page, limit)


def test_search_clause_blank_is_none():
    assert search_clause(None, PRODUCT_SEARCH_FIELDS) is None
    assert search_clause("   ", PRODUCT_SEARCH_FIELDS) is None


def test_search_clause_covers_every_field():
    clause = search_clause("  canon ", ("name", "brand"))
    assert clause == [{"name": {"$ilike": "canon"}}, {"brand": {"$ilike": "canon"}}]


def test_price_range():
    assert price_range(None, None) is None
    assert price_range(1000, None) == {"$gte": 1000.0}
    assert price_range(None, 5) == {"$lte": 5.0}
    assert price_range(0, 10) == {"$gte": 0.0, "$lte": 10.0}


def test_sort_order_adds_id_tiebreak():
    assert sort_order("price", "asc") == [("price", "ASC"), ("id", "ASC")]
    assert sort_order("id", "desc") == [("id", "DESC")]


def test_build_where_skips_unset_values():
    where = build_where(
        {"isActive": True},
        {"category": "cameras", "brand": None},
        {"price": price_range(1000, None), "stock": None},
        search_clause("canon", ("name",)),
    )
    assert where == {
        "isActive": True,
        "category": "cameras",
        "price": {"$gte": 1000.0},
        "$or": [{"name": {"$ilike": "canon"}}],
    }


def test_build_where_does_not_mutate_baseline():
    baseline = {"isActive": True}
    build_where(baseline, {"category": "audio"})
    assert baseline == {"isActive": True}


def test_listing_kwargs():
    assert listing({"isActive": True}, 2, 12) == {
        "where": {"isActive": True},
        "order": [("createdAt", "DESC"), ("id", "DESC")],
        "limit": 12,
        "offset": 12,
    }


@pytest.mark.parametrize("count,expected", [(0, 0), (1, 1), (12, 1), (13, 2), (25, 3)])
def test_pagination_meta_total_pages(count, expected):
    meta = pagination_meta(1, 12, count, "Products")
    assert meta == {"currentPage": 1, "totalPages": expected, "totalProducts": count}
