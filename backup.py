"""
JSON snapshot of the three tables.

``backup_data`` dumps every row; ``restore_data`` loads a snapshot back into
tables that are still empty, so it is safe to run on every startup.
"""
import asyncio
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict

from fastapi.concurrency import run_in_threadpool

from adapter import utcnow
from database import Database

logger = logging.getLogger(__name__)

# Users first: orders reference them.
TABLES = ("users", "products", "orders")


def _default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _revive(row: Dict[str, Any], columns) -> Dict[str, Any]:
    row = dict(row)
    for column in columns:
        value = row.get(column)
        if isinstance(value, str):
            row[column] = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return row


def backup_data(db: Database, path: str) -> Dict[str, int]:
    snapshot: Dict[str, Any] = {name: getattr(db, name).find_all(order=[("id", "ASC")], raw=True) for name in TABLES}
    snapshot["timestamp"] = utcnow().isoformat()

    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2, default=_default)
    os.replace(tmp_path, path)

    counts = {name: len(snapshot[name]) for name in TABLES}
    logger.info("Backup written to %s: %s", path, ", ".join(f"{n} {name}" for name, n in counts.items()))
    return counts


def restore_data(db: Database, path: str) -> Dict[str, int]:
    """Returns the number of rows restored per table."""
    restored = {name: 0 for name in TABLES}
    if not os.path.exists(path):
        logger.info("No backup file at %s, skipping restore", path)
        return restored

    with open(path, encoding="utf-8") as f:
        snapshot = json.load(f)

    for name in TABLES:
        model = getattr(db, name)
        rows = snapshot.get(name) or []
        if not rows:
            continue
        existing = model.count()
        if existing:
            logger.info("%s already has %d rows, skipping restore", name, existing)
            continue
        rows = [_revive(row, model.entity.datetimes) for row in rows]
        created = model.bulk_create(rows, ignore_duplicates=True)
        restored[name] = len(created)
        logger.info("Restored %d of %d %s from %s", len(created), len(rows), name, path)
    return restored


async def periodic_backup(app, interval: float):
    """Back up the database every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(backup_data, app.state.db, app.state.settings.backup_path)
        except Exception:
            logger.exception("Scheduled backup failed")
