import json
from datetime import datetime

from backup import backup_data, restore_data
from factories import make_order, make_product, make_user


def populate(db):
    user = make_user(db, "jane@example.com")
    make_product(db, name="Canon EOS R50", price=85000.5)
    make_product(db, name="Sony WH-1000XM5", category="audio", brand="Sony", price=45000)
    make_order(db, user["id"], "GST-123456-001", total=1234.56)


def test_backup_writes_every_table(sql_db, tmp_path):
    populate(sql_db)
    path = tmp_path / "snapshots" / "backup.json"
    counts = backup_data(sql_db, str(path))
    assert counts == {"users": 1, "products": 2, "orders": 1}

    snapshot = json.loads(path.read_text())
    assert "timestamp" in snapshot
    assert snapshot["products"][0]["price"] == 85000.5
    assert isinstance(snapshot["orders"][0]["createdAt"], str)


def test_restore_into_empty_database(sql_db, mongo_db, tmp_path):
    populate(sql_db)
    path = str(tmp_path / "backup.json")
    backup_data(sql_db, path)

    restored = restore_data(mongo_db, path)
    assert restored == {"users": 1, "products": 2, "orders": 1}
    order = mongo_db.orders.find_one({"orderNumber": "GST-123456-001"})
    assert order["total"] == 1234.56
    assert isinstance(order["createdAt"], datetime)

    # Ids carried over must not be handed out again.
    newest = make_product(mongo_db, name="Fresh product")
    assert newest["id"] > max(p["id"] for p in sql_db.products.find_all())


def test_restore_skips_tables_that_have_rows(sql_db, tmp_path):
    populate(sql_db)
    path = str(tmp_path / "backup.json")
    backup_data(sql_db, path)
    assert restore_data(sql_db, path) == {"users": 0, "products": 0, "orders": 0}
    assert sql_db.products.count() == 2


def test_restore_without_file_is_noop(sql_db, tmp_path):
    assert restore_data(sql_db, str(tmp_path / "missing.json")) == {"users": 0, "products": 0, "orders": 0}
