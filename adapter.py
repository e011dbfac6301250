"""
Backend-neutral persistence surface.

Every backend exposes the same ``Model`` interface per table: ``find_all``,
``find_and_count_all``, ``find_by_pk``, ``find_one``, ``create``,
``bulk_create``, ``update``, ``destroy``, ``count``, ``sum`` and ``adjust``.
Backends only implement the small set of ``_``-prefixed primitives; filter
parsing, timestamps, projection, numeric coercion and relation embedding
live here so they behave identically everywhere.

Filters use the Mongo-style dialect already used by the route handlers::

    {"isActive": True,
     "price": {"$gte": 1000, "$lte": 500000},
     "$or": [{"name": {"$ilike": "canon"}}, {"brand": {"$ilike": "canon"}}]}

A literal value means equality (``None`` matches missing/null). Supported
operators are ``$ilike`` (case-insensitive substring), ``$gte``, ``$lte``,
``$gt``, ``$lt`` and ``$in``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from models import Entity

logger = logging.getLogger(__name__)

OPERATORS = {
    "$ilike": "ilike",
    "$gte": "gte",
    "$lte": "lte",
    "$gt": "gt",
    "$lt": "lt",
    "$in": "in",
}


class PersistenceError(Exception):
    pass


class DuplicateKeyError(PersistenceError):
    pass


class AggregateLimitError(PersistenceError):
    pass


class Condition(NamedTuple):
    field: str
    op: str
    value: Any


@dataclass
class Filter:
    """A parsed ``where``: ANDed conditions plus one optional OR-group of AND-lists."""

    conditions: List[Condition] = field(default_factory=list)
    any_of: List[List[Condition]] = field(default_factory=list)

    def fields(self) -> List[str]:
        names = [c.field for c in self.conditions]
        for group in self.any_of:
            names.extend(c.field for c in group)
        return names


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(str(k).startswith("$") for k in value)


def _parse_conditions(where: Dict[str, Any]) -> List[Condition]:
    conditions = []
    for name, value in where.items():
        if name.startswith("$"):
            raise ValueError(f"Unsupported top-level operator {name!r}")
        if _is_operator_dict(value):
            for op, operand in value.items():
                if op not in OPERATORS:
                    raise ValueError(f"Unsupported operator {op!r} on {name!r}")
                if op == "$in":
                    operand = list(operand)
                conditions.append(Condition(name, OPERATORS[op], operand))
        else:
            conditions.append(Condition(name, "eq", value))
    return conditions


def parse_where(where: Optional[Dict[str, Any]]) -> Filter:
    if not where:
        return Filter()
    where = dict(where)
    groups = where.pop("$or", None)
    parsed = Filter(conditions=_parse_conditions(where))
    if groups:
        parsed.any_of = [_parse_conditions(group) for group in groups]
    return parsed


@dataclass
class Include:
    """Embed a related row under ``as_``, loaded with one batched ``$in`` query."""

    model: "Model"
    as_: str
    foreign_key: Optional[str] = None
    attributes: Optional[List[str]] = None

    @property
    def key(self) -> str:
        return self.foreign_key or f"{self.as_}Id"


Attributes = Union[List[str], Dict[str, List[str]], None]


@dataclass
class Query:
    where: Optional[Dict[str, Any]] = None
    order: Sequence[Tuple[str, str]] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    attributes: Attributes = None
    include: Sequence[Include] = ()
    raw: bool = False

    @property
    def select(self) -> Optional[List[str]]:
        """Columns to fetch, or ``None`` for all of them."""
        if isinstance(self.attributes, (list, tuple)):
            return list(self.attributes)
        return None

    @property
    def exclude(self) -> List[str]:
        if isinstance(self.attributes, dict):
            return list(self.attributes.get("exclude", []))
        return []


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_direction(direction: str) -> str:
    direction = direction.upper()
    if direction not in ("ASC", "DESC"):
        raise ValueError(f"Invalid sort direction {direction!r}")
    return direction


class Model:
    """CRUD and query operations over one table, independent of the backend."""

    backend = "abstract"

    def __init__(self, entity: Entity):
        self.entity = entity

    def __repr__(self):
        return f"<{type(self).__name__} {self.entity.table_name}>"

    # --- backend primitives -------------------------------------------------

    def _select(self, flt: Filter, query: Query) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _count(self, flt: Filter) -> int:
        raise NotImplementedError

    def _sum(self, column: str, flt: Filter) -> float:
        raise NotImplementedError

    def _insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _insert_many(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _update(self, pk: Any, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _delete(self, pk: Any) -> int:
        raise NotImplementedError

    def adjust(self, pk: Any, column: str, delta: int, floor: Optional[int] = None) -> bool:
        """Atomically apply ``column += delta`` unless the result would drop below ``floor``."""
        raise NotImplementedError

    # --- public interface ---------------------------------------------------

    def find_all(self, **options) -> List[Dict[str, Any]]:
        query = Query(**options)
        flt = self._validated(query.where)
        order = [(column, normalize_direction(direction)) for column, direction in query.order]
        query.order = order
        for column, _ in order:
            self._check_column(column)
        rows = self._select(flt, query)
        for column in query.exclude:
            for row in rows:
                row.pop(column, None)
        if not query.raw:
            rows = [self._coerce(row) for row in rows]
        for include in query.include:
            self._embed(rows, include)
        return rows

    def find_and_count_all(self, **options) -> Dict[str, Any]:
        rows = self.find_all(**options)
        return {"rows": rows, "count": self.count(where=options.get("where"))}

    def find_by_pk(self, pk: Any) -> Optional[Dict[str, Any]]:
        rows = self.find_all(where={"id": pk}, limit=1)
        return rows[0] if rows else None

    def find_one(self, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.find_all(where=where, limit=1)
        return rows[0] if rows else None

    def count(self, where: Optional[Dict[str, Any]] = None) -> int:
        return int(self._count(self._validated(where)))

    def sum(self, column: str, where: Optional[Dict[str, Any]] = None) -> float:
        self._check_column(column)
        total = self._sum(column, self._validated(where))
        return float(total or 0)

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._coerce(self._insert(self._stamp(data)))

    def bulk_create(self, rows: List[Dict[str, Any]], ignore_duplicates: bool = False) -> List[Dict[str, Any]]:
        if not rows:
            return []
        stamped = [self._stamp(row) for row in rows]
        try:
            created = self._insert_many(stamped)
        except DuplicateKeyError:
            if not ignore_duplicates:
                raise
            logger.info("Bulk insert into %s hit a duplicate, retrying row by row", self.entity.table_name)
            created = []
            for row in stamped:
                try:
                    created.append(self._insert(row))
                except DuplicateKeyError as e:
                    logger.warning("Skipping duplicate %s row id=%s: %s", self.entity.name, row.get("id"), e)
        return [self._coerce(row) for row in created]

    def update(self, data: Dict[str, Any], where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pk = self._pk_from(where)
        changes = {k: v for k, v in data.items() if k != "id"}
        for column in changes:
            self._check_column(column)
        changes["updatedAt"] = utcnow()
        row = self._update(pk, changes)
        return self._coerce(row) if row is not None else None

    def destroy(self, where: Dict[str, Any]) -> int:
        return self._delete(self._pk_from(where))

    # --- helpers ------------------------------------------------------------

    def _pk_from(self, where: Dict[str, Any]) -> Any:
        if not where or "id" not in where:
            raise ValueError("update/destroy require where={'id': ...}")
        return where["id"]

    def _check_column(self, column: str):
        if column not in self.entity.columns:
            raise ValueError(f"Unknown column {column!r} on {self.entity.table_name}")

    def _validated(self, where: Optional[Dict[str, Any]]) -> Filter:
        flt = parse_where(where)
        for column in flt.fields():
            self._check_column(column)
        return flt

    def _stamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = {k: v for k, v in data.items() if k in self.entity.columns}
        now = utcnow()
        row.setdefault("createdAt", now)
        row.setdefault("updatedAt", row["createdAt"])
        return row

    def _coerce(self, row: Dict[str, Any]) -> Dict[str, Any]:
        for column in self.entity.numeric:
            value = row.get(column)
            if isinstance(value, (Decimal, str)):
                row[column] = float(value)
        return row

    def _fetch_in(self, column: str, values: List[Any]) -> List[Dict[str, Any]]:
        return self.find_all(where={column: {"$in": values}})

    def _embed(self, rows: List[Dict[str, Any]], include: Include):
        key = include.key
        ids = []
        for row in rows:
            value = row.get(key)
            if value is not None and value not in ids:
                ids.append(value)
        related = {}
        if ids:
            related = {item["id"]: item for item in include.model._fetch_in("id", ids)}
        for row in rows:
            item = related.get(row.get(key))
            if item is not None and include.attributes:
                item = {attr: item[attr] for attr in include.attributes if attr in item}
            row[include.as_] = item
