"""
Maintenance commands.

    python manage.py seed-admin [--email E --password P --name N]
    python manage.py backup [--path backup.json]
    python manage.py restore [--path backup.json]
    python manage.py schema > schema.sql
"""
import argparse
import json
import logging
import sys

from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from backup import backup_data, restore_data
from config import Settings
from database import connect
from models import metadata
from rest_backend import SEQUENCE_RPC
from services import seed_admin

logger = logging.getLogger("manage")


SEQUENCE_FUNCTION = """\
CREATE OR REPLACE FUNCTION {name}(table_name text) RETURNS bigint
LANGUAGE plpgsql SECURITY DEFINER AS $$
DECLARE
    next_id bigint;
BEGIN
    IF table_name NOT IN ({tables}) THEN
        RAISE EXCEPTION 'unknown table %', table_name;
    END IF;
    EXECUTE format(
        'SELECT setval(pg_get_serial_sequence(%L, ''id''), COALESCE((SELECT MAX(id) FROM %I), 1))',
        quote_ident(table_name), table_name
    ) INTO next_id;
    RETURN next_id;
END;
$$;"""


def postgres_schema() -> str:
    """DDL for the hosted PostgreSQL tables behind the REST backend, plus the
    sequence re-sync function it calls after restoring rows with their ids."""
    dialect = postgresql.dialect()
    statements = []
    for table in metadata.sorted_tables:
        statements.append(str(CreateTable(table).compile(dialect=dialect)).strip() + ";")
        for index in sorted(table.indexes, key=lambda i: i.name):
            statements.append(str(CreateIndex(index).compile(dialect=dialect)).strip() + ";")
    tables = ", ".join(f"'{table.name}'" for table in metadata.sorted_tables)
    statements.append(SEQUENCE_FUNCTION.format(name=SEQUENCE_RPC, tables=tables))
    return "\n\n".join(statements) + "\n"


def cmd_seed_admin(args, settings: Settings) -> int:
    email = args.email or settings.admin_email
    password = args.password or settings.admin_password
    if not email or not password:
        logger.error("Admin email and password are required (flags or ADMIN_EMAIL/ADMIN_PASSWORD)")
        return 2
    db = connect(settings)
    try:
        db.sync()
        admin = seed_admin(db, email, password, args.name or settings.admin_name)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    finally:
        db.close()
    print(json.dumps({"id": admin["id"], "email": admin["email"], "role": admin["role"]}))
    return 0


def cmd_backup(args, settings: Settings) -> int:
    db = connect(settings)
    try:
        counts = backup_data(db, args.path or settings.backup_path)
    finally:
        db.close()
    print(json.dumps(counts))
    return 0


def cmd_restore(args, settings: Settings) -> int:
    db = connect(settings)
    try:
        db.sync()
        restored = restore_data(db, args.path or settings.backup_path)
    finally:
        db.close()
    print(json.dumps(restored))
    return 0


def cmd_schema(args, settings: Settings) -> int:
    sys.stdout.write(postgres_schema())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="manage.py", description="Store maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed-admin", help="Create or update the admin account")
    seed.add_argument("--email")
    seed.add_argument("--password")
    seed.add_argument("--name")
    seed.set_defaults(func=cmd_seed_admin)

    for name, func, text in (
        ("backup", cmd_backup, "Write a JSON snapshot of all tables"),
        ("restore", cmd_restore, "Load a JSON snapshot into empty tables"),
    ):
        command = sub.add_parser(name, help=text)
        command.add_argument("--path", help="Snapshot file (defaults to BACKUP_PATH)")
        command.set_defaults(func=func)

    schema = sub.add_parser("schema", help="Print PostgreSQL DDL for the hosted tables")
    schema.set_defaults(func=cmd_schema)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s [%(name)s] %(message)s")
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
