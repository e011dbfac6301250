"""
Hosted REST backend: a PostgREST endpoint such as Supabase's ``/rest/v1``.

Filters, ordering, paging and counting are pushed into the query string, so
``count`` is computed by the server with the same predicate as the data
query. ``sum`` has no server-side equivalent on a default PostgREST install
and is reduced client-side, page by page, up to ``sum_row_ceiling`` rows.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import requests

from adapter import AggregateLimitError, DuplicateKeyError, Filter, Model, PersistenceError, Query
from models import Entity

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
CAS_ATTEMPTS = 5
# SQL function shipped by ``manage.py schema``; moves a table's id sequence past MAX(id).
SEQUENCE_RPC = "sync_id_sequence"
_RESERVED = set(',.:()"\\ ')


def _encode(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _literal(value: Any) -> str:
    value = _encode(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quoted(value: str) -> str:
    if any(ch in _RESERVED for ch in value):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return value


def _ilike_pattern(value: Any) -> str:
    escaped = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"*{escaped}*"


def _operand(cond) -> str:
    """Render ``op.value`` for a single condition."""
    if cond.op == "eq":
        if cond.value is None:
            return "is.null"
        return f"eq.{_literal(cond.value)}"
    if cond.op == "ilike":
        return f"ilike.{_ilike_pattern(cond.value)}"
    if cond.op == "in":
        return "in.(" + ",".join(_quoted(_literal(v)) for v in cond.value) + ")"
    return f"{cond.op}.{_literal(cond.value)}"


def _embedded(cond) -> str:
    """Render ``field.op.value`` for use inside ``or=(...)``."""
    op, _, value = _operand(cond).partition(".")
    if op in ("in", "is"):
        return f"{cond.field}.{op}.{value}"
    return f"{cond.field}.{op}.{_quoted(value)}"


def filter_params(flt: Filter) -> List[Tuple[str, str]]:
    params = [(c.field, _operand(c)) for c in flt.conditions]
    if flt.any_of:
        groups = []
        for group in flt.any_of:
            rendered = [_embedded(c) for c in group]
            groups.append(rendered[0] if len(rendered) == 1 else "and(" + ",".join(rendered) + ")")
        params.append(("or", "(" + ",".join(groups) + ")"))
    return params


def _content_range_total(header: Optional[str]) -> int:
    if not header or "/" not in header:
        raise PersistenceError(f"Missing count in Content-Range header: {header!r}")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise PersistenceError("Server did not return an exact count")
    return int(total)


def _is_duplicate(response: requests.Response) -> bool:
    try:
        code = response.json().get("code")
    except (ValueError, AttributeError):
        code = None
    if code is not None:
        return code == "23505"
    return response.status_code == 409


class RestClient:
    def __init__(self, base_url: str, api_key: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/") + "/rest/v1"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }

    def request(self, method: str, table: str, params=None, body=None, prefer: Optional[str] = None) -> requests.Response:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        response = self.session.request(
            method,
            f"{self.base_url}/{table}",
            params=params or [],
            json=_encode(body) if body is not None else None,
            headers=headers,
            timeout=self.timeout,
        )
        if response.status_code >= 400 and _is_duplicate(response):
            raise DuplicateKeyError(response.text)
        response.raise_for_status()
        return response


class RestModel(Model):
    backend = "rest"

    def __init__(self, entity: Entity, client: RestClient, sum_row_ceiling: int = 10000):
        super().__init__(entity)
        self.client = client
        self.sum_row_ceiling = sum_row_ceiling

    @property
    def table(self) -> str:
        return self.entity.table_name

    def _select(self, flt: Filter, query: Query) -> List[Dict[str, Any]]:
        params = [("select", ",".join(query.select) if query.select else "*")]
        params.extend(filter_params(flt))
        if query.order:
            params.append(("order", ",".join(f"{c}.{d.lower()}" for c, d in query.order)))
        if query.limit is not None:
            params.append(("limit", str(query.limit)))
        if query.offset:
            params.append(("offset", str(query.offset)))
        return self.client.request("GET", self.table, params=params).json() or []

    def _count(self, flt: Filter) -> int:
        params = [("select", "id")] + filter_params(flt)
        response = self.client.request("HEAD", self.table, params=params, prefer="count=exact")
        return _content_range_total(response.headers.get("Content-Range"))

    def _sum(self, column: str, flt: Filter) -> float:
        total = 0.0
        scanned = 0
        offset = 0
        while True:
            params = [("select", column)] + filter_params(flt)
            params += [("order", "id.asc"), ("limit", str(PAGE_SIZE)), ("offset", str(offset))]
            page = self.client.request("GET", self.table, params=params).json() or []
            for row in page:
                value = row.get(column)
                if value is not None:
                    total += float(value)
            scanned += len(page)
            if scanned > self.sum_row_ceiling:
                raise AggregateLimitError(
                    f"sum({column}) on {self.table} scanned more than {self.sum_row_ceiling} rows"
                )
            if len(page) < PAGE_SIZE:
                return total
            offset += PAGE_SIZE

    def _insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.client.request("POST", self.table, body=data, prefer="return=representation").json()
        if data.get("id"):
            self._resync_sequence()
        return rows[0]

    def _insert_many(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        created = self.client.request("POST", self.table, body=rows, prefer="return=representation").json() or []
        if any(row.get("id") for row in rows):
            self._resync_sequence()
        return created

    def _resync_sequence(self):
        # Rows restored with their ids leave the SERIAL sequence behind.
        self.client.request("POST", f"rpc/{SEQUENCE_RPC}", body={"table_name": self.table})

    def _update(self, pk: Any, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        params = [("id", f"eq.{_literal(pk)}")]
        rows = self.client.request("PATCH", self.table, params=params, body=data, prefer="return=representation").json()
        return rows[0] if rows else None

    def _delete(self, pk: Any) -> int:
        params = [("id", f"eq.{_literal(pk)}")]
        rows = self.client.request("DELETE", self.table, params=params, prefer="return=representation").json()
        return len(rows or [])

    def adjust(self, pk: Any, column: str, delta: int, floor: Optional[int] = None) -> bool:
        # PostgREST cannot express ``column = column + delta``; compare-and-set on the value we read.
        self._check_column(column)
        for _ in range(CAS_ATTEMPTS):
            current = self._read_column(pk, column)
            if current is None:
                return False
            new_value = current + delta
            if floor is not None and new_value < floor:
                return False
            params = [("id", f"eq.{_literal(pk)}"), (column, f"eq.{_literal(current)}")]
            changed = self.client.request(
                "PATCH", self.table, params=params, body={column: new_value}, prefer="return=representation"
            ).json()
            if changed:
                return True
            logger.debug("Concurrent change on %s.%s id=%s, retrying", self.table, column, pk)
        raise PersistenceError(f"Could not adjust {self.table}.{column} for id={pk} after {CAS_ATTEMPTS} attempts")

    def _read_column(self, pk: Any, column: str) -> Optional[Any]:
        params = [("select", f"id,{column}"), ("id", f"eq.{_literal(pk)}"), ("limit", "1")]
        rows = self.client.request("GET", self.table, params=params).json()
        return rows[0][column] if rows else None


class RestBackend:
    name = "rest"

    def __init__(self, url: str, api_key: str, session: Optional[requests.Session] = None,
                 timeout: float = 10.0, sum_row_ceiling: int = 10000):
        self.client = RestClient(url, api_key, session=session, timeout=timeout)
        self.sum_row_ceiling = sum_row_ceiling

    def model(self, entity: Entity) -> RestModel:
        return RestModel(entity, self.client, sum_row_ceiling=self.sum_row_ceiling)

    def sync(self):
        # Tables are managed on the hosted side; ``manage.py schema`` prints the DDL.
        logger.info("REST backend: schema is managed by the hosted database")

    def ping(self) -> bool:
        self.client.request("GET", "products", params=[("select", "id"), ("limit", "1")])
        return True

    def close(self):
        self.client.session.close()
