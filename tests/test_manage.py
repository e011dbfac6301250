import json

from manage import main, postgres_schema


def test_schema_is_postgres_ddl():
    ddl = postgres_schema()
    assert 'CREATE TABLE users' in ddl
    assert 'CREATE TABLE orders' in ddl
    assert '"orderNumber" VARCHAR(32) NOT NULL' in ddl
    assert "NUMERIC(10, 2)" in ddl
    assert "CREATE INDEX ix_products_price" in ddl
    assert "CREATE OR REPLACE FUNCTION sync_id_sequence(table_name text)" in ddl
    assert "'orders'" in ddl
    # Users before orders because of the foreign key.
    assert ddl.index("CREATE TABLE users") < ddl.index("CREATE TABLE orders")


def test_seed_admin_backup_and_restore(env, capsys):
    assert main(["seed-admin", "--email", "Owner@Example.com", "--password", "owner-pass"]) == 0
    seeded = json.loads(capsys.readouterr().out)
    assert seeded["email"] == "owner@example.com"
    assert seeded["role"] == "admin"

    # Running again updates in place instead of duplicating.
    assert main(["seed-admin", "--email", "owner@example.com", "--password", "new-pass"]) == 0
    assert json.loads(capsys.readouterr().out)["id"] == seeded["id"]

    assert main(["backup"]) == 0
    assert json.loads(capsys.readouterr().out)["users"] == 1
    assert (env / "backup.json").exists()

    assert main(["restore"]) == 0
    assert json.loads(capsys.readouterr().out) == {"users": 0, "products": 0, "orders": 0}


def test_seed_admin_rejects_an_address_nobody_can_log_in_with(env):
    assert main(["seed-admin", "--email", "admin@shop.local", "--password", "owner-pass"]) == 2
