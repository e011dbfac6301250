import threading

from sqlalchemy import event

from adapter import Include
from factories import make_order, make_product, make_user


def test_include_uses_one_batched_query(sql_db):
    users = [make_user(sql_db, f"user{i}@example.com", name=f"User {i}") for i in range(3)]
    for i in range(9):
        make_order(sql_db, users[i % 3]["id"], f"GST-{i}")

    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(sql_db.backend.engine, "before_cursor_execute", record)
    try:
        rows = sql_db.orders.find_all(include=[Include(sql_db.users, "user", foreign_key="userId")])
    finally:
        event.remove(sql_db.backend.engine, "before_cursor_execute", record)

    assert len(rows) == 9
    assert all(r["user"]["email"].startswith("user") for r in rows)
    user_queries = [s for s in statements if "FROM users" in s]
    order_queries = [s for s in statements if "FROM orders" in s]
    assert len(order_queries) == 1
    assert len(user_queries) == 1


def test_concurrent_adjust_never_oversells(sql_db):
    product = make_product(sql_db, stock=5)
    results = []
    lock = threading.Lock()

    def reserve():
        ok = sql_db.products.adjust(product["id"], "stock", -1, floor=0)
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=reserve) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 5
    assert sql_db.products.find_by_pk(product["id"])["stock"] == 0


def test_bulk_create_keeps_explicit_ids(sql_db):
    rows = [
        {"id": 10, "name": "A", "email": "a@example.com", "password": "h", "role": "user", "isActive": True},
        {"id": 11, "name": "B", "email": "b@example.com", "password": "h", "role": "user", "isActive": True},
    ]
    created = sql_db.users.bulk_create(rows)
    assert [u["id"] for u in created] == [10, 11]
    assert make_user(sql_db, "c@example.com")["id"] == 12


def test_numeric_columns_come_back_as_float(sql_db):
    product = make_product(sql_db, price=1234.5)
    assert isinstance(sql_db.products.find_by_pk(product["id"])["price"], float)
    raw = sql_db.products.find_all(where={"id": product["id"]}, raw=True)[0]
    assert float(raw["price"]) == 1234.5
