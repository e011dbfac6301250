"""Relational backend: SQLAlchemy Core over SQLite or PostgreSQL."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, create_engine, delete, event, func, insert, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from adapter import DuplicateKeyError, Filter, Model, Query
from models import Entity, metadata

logger = logging.getLogger(__name__)


def _like_pattern(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def _register_functions(dbapi_connection, connection_record):
    # SQLite's own lower() and LIKE only fold ASCII.
    dbapi_connection.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)


def _is_duplicate(error: IntegrityError) -> bool:
    code = getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)
    if code == "23505":
        return True
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message


class SQLModel(Model):
    backend = "sql"

    def __init__(self, entity: Entity, engine: Engine):
        super().__init__(entity)
        self.engine = engine
        self.table = entity.table

    def _expression(self, cond):
        column = self.table.c[cond.field]
        if cond.op == "eq":
            return column.is_(None) if cond.value is None else column == cond.value
        if cond.op == "ilike":
            if self.engine.dialect.name == "sqlite":
                pattern = _like_pattern(str(cond.value).lower())
                return func.unicode_lower(column).like(pattern, escape="\\")
            return column.ilike(_like_pattern(cond.value), escape="\\")
        if cond.op == "gte":
            return column >= cond.value
        if cond.op == "lte":
            return column <= cond.value
        if cond.op == "gt":
            return column > cond.value
        if cond.op == "lt":
            return column < cond.value
        if cond.op == "in":
            return column.in_(cond.value)
        raise ValueError(f"Unsupported operator {cond.op!r}")

    def _clause(self, flt: Filter):
        parts = [self._expression(c) for c in flt.conditions]
        if flt.any_of:
            parts.append(or_(*(and_(*(self._expression(c) for c in group)) for group in flt.any_of)))
        return and_(*parts) if parts else None

    def _apply(self, stmt, flt: Filter):
        clause = self._clause(flt)
        return stmt.where(clause) if clause is not None else stmt

    def _select(self, flt: Filter, query: Query) -> List[Dict[str, Any]]:
        columns = [self.table.c[name] for name in query.select] if query.select else [self.table]
        stmt = self._apply(select(*columns), flt)
        for column, direction in query.order:
            col = self.table.c[column]
            stmt = stmt.order_by(col.desc() if direction == "DESC" else col.asc())
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def _count(self, flt: Filter) -> int:
        stmt = self._apply(select(func.count()).select_from(self.table), flt)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def _sum(self, column: str, flt: Filter) -> float:
        stmt = self._apply(select(func.coalesce(func.sum(self.table.c[column]), 0)), flt)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def _get(self, conn, pk) -> Optional[Dict[str, Any]]:
        row = conn.execute(select(self.table).where(self.table.c.id == pk)).first()
        return dict(row._mapping) if row is not None else None

    def _insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(self.table).values(**data))
                if data.get("id"):
                    self._resync_sequence(conn)
                return self._get(conn, result.inserted_primary_key[0])
        except IntegrityError as e:
            if _is_duplicate(e):
                raise DuplicateKeyError(str(e.orig)) from e
            raise

    def _resync_sequence(self, conn):
        # Postgres sequences do not move when ids are inserted explicitly (backup restore).
        if conn.dialect.name != "postgresql":
            return
        name = self.entity.table_name
        conn.execute(text(
            f"SELECT setval(pg_get_serial_sequence('\"{name}\"', 'id'), "
            f"COALESCE((SELECT MAX(id) FROM \"{name}\"), 1))"
        ))

    def _insert_many(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                ids = [conn.execute(insert(self.table).values(**row)).inserted_primary_key[0] for row in rows]
                if any(row.get("id") for row in rows):
                    self._resync_sequence(conn)
                fetched = conn.execute(select(self.table).where(self.table.c.id.in_(ids)).order_by(self.table.c.id))
                return [dict(row._mapping) for row in fetched]
        except IntegrityError as e:
            if _is_duplicate(e):
                raise DuplicateKeyError(str(e.orig)) from e
            raise

    def _update(self, pk: Any, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(update(self.table).where(self.table.c.id == pk).values(**data))
                if result.rowcount == 0:
                    return None
                return self._get(conn, pk)
        except IntegrityError as e:
            if _is_duplicate(e):
                raise DuplicateKeyError(str(e.orig)) from e
            raise

    def _delete(self, pk: Any) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(self.table).where(self.table.c.id == pk)).rowcount

    def adjust(self, pk: Any, column: str, delta: int, floor: Optional[int] = None) -> bool:
        self._check_column(column)
        col = self.table.c[column]
        stmt = update(self.table).where(self.table.c.id == pk).values({column: col + delta})
        if floor is not None:
            stmt = stmt.where(col + delta >= floor)
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1


class SQLBackend:
    name = "sql"

    def __init__(self, url: str, engine: Optional[Engine] = None):
        self.url = url
        if engine is None:
            connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
            engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _register_functions)
        self.engine = engine

    def model(self, entity: Entity) -> SQLModel:
        return SQLModel(entity, self.engine)

    def sync(self):
        metadata.create_all(self.engine)
        logger.info("SQL schema ready (%s)", self.engine.url.render_as_string(hide_password=True))

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self):
        self.engine.dispose()
