"""Document backend: MongoDB through pymongo, with integer ids from a counters collection."""
import logging
import re
from typing import Any, Dict, List, Optional

from bson.objectid import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import BulkWriteError
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

from adapter import DuplicateKeyError, Filter, Model, Query
from models import ENTITIES, Entity

logger = logging.getLogger(__name__)

COUNTERS = "counters"


def _expression(cond) -> Dict[str, Any]:
    if cond.op == "eq":
        return {cond.field: cond.value}
    if cond.op == "ilike":
        return {cond.field: {"$regex": re.escape(str(cond.value)), "$options": "i"}}
    return {cond.field: {f"${cond.op}": cond.value}}


def to_mongo(flt: Filter) -> Dict[str, Any]:
    clauses = [_expression(c) for c in flt.conditions]
    if flt.any_of:
        clauses.append({"$or": [{"$and": [_expression(c) for c in group]} for group in flt.any_of]})
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _is_duplicate_bulk(error: BulkWriteError) -> bool:
    details = error.details or {}
    if any(e.get("code") == 11000 for e in details.get("writeErrors", [])):
        return True
    return "duplicate key" in str(error).lower()


class MongoModel(Model):
    backend = "mongo"

    def __init__(self, entity: Entity, db):
        super().__init__(entity)
        self.db = db
        self.collection = db[entity.table_name]

    def _shape(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc.pop("_id", None)
        return doc

    def _next_ids(self, n: int) -> List[int]:
        counter = self.db[COUNTERS].find_one_and_update(
            {"_id": self.entity.table_name},
            {"$inc": {"seq": n}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        last = counter["seq"]
        return list(range(last - n + 1, last + 1))

    def _advance_counter(self, pk: int):
        self.db[COUNTERS].update_one({"_id": self.entity.table_name}, {"$max": {"seq": pk}}, upsert=True)

    def _prepare(self, data: Dict[str, Any], pk: int) -> Dict[str, Any]:
        doc = dict(data)
        doc["id"] = pk
        for column in self.entity.columns:
            doc.setdefault(column, None)
        # Sparse unique indexes only skip absent fields, not nulls.
        for column in self.entity.optional_unique:
            if doc.get(column) is None:
                doc.pop(column, None)
        return doc

    def _fill(self, doc: Dict[str, Any], columns) -> Dict[str, Any]:
        for column in columns:
            doc.setdefault(column, None)
        return self._shape(doc)

    def _select(self, flt: Filter, query: Query) -> List[Dict[str, Any]]:
        columns = query.select or list(self.entity.columns)
        projection = {"_id": 0}
        if query.select:
            projection.update({name: 1 for name in query.select})
        cursor = self.collection.find(to_mongo(flt), projection)
        if query.order:
            cursor = cursor.sort([(c, DESCENDING if d == "DESC" else ASCENDING) for c, d in query.order])
        if query.offset:
            cursor = cursor.skip(query.offset)
        if query.limit is not None:
            cursor = cursor.limit(query.limit)
        return [self._fill(doc, columns) for doc in cursor]

    def _count(self, flt: Filter) -> int:
        return self.collection.count_documents(to_mongo(flt))

    def _sum(self, column: str, flt: Filter) -> float:
        pipeline = [
            {"$match": to_mongo(flt)},
            {"$group": {"_id": None, "total": {"$sum": f"${column}"}}},
        ]
        result = list(self.collection.aggregate(pipeline))
        return result[0]["total"] if result else 0

    def _get(self, pk: Any) -> Optional[Dict[str, Any]]:
        doc = self.collection.find_one({"id": pk}, {"_id": 0})
        return self._fill(doc, self.entity.columns) if doc is not None else None

    def _insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("id"):
            # Restored rows keep their ids; later inserts must not reuse them.
            pk = data["id"]
            self._advance_counter(pk)
        else:
            pk = self._next_ids(1)[0]
        doc = self._prepare(data, pk)
        try:
            self.collection.insert_one(doc)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e
        return self._get(doc["id"])

    def _insert_many(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        missing = [row for row in rows if not row.get("id")]
        explicit = [row["id"] for row in rows if row.get("id")]
        if explicit:
            self._advance_counter(max(explicit))
        fresh = iter(self._next_ids(len(missing))) if missing else iter(())
        docs = [self._prepare(row, row.get("id") or next(fresh)) for row in rows]
        for doc in docs:
            doc["_id"] = ObjectId()
        try:
            self.collection.insert_many(docs, ordered=True)
        except (MongoDuplicateKeyError, BulkWriteError) as e:
            # Ordered inserts keep the rows before the failure; undo them so the batch is all-or-nothing.
            self.collection.delete_many({"_id": {"$in": [doc["_id"] for doc in docs]}})
            if isinstance(e, MongoDuplicateKeyError) or _is_duplicate_bulk(e):
                raise DuplicateKeyError(str(e)) from e
            raise
        ids = [doc["id"] for doc in docs]
        found = {doc["id"]: doc for doc in self.collection.find({"id": {"$in": ids}}, {"_id": 0})}
        return [self._fill(found[pk], self.entity.columns) for pk in ids if pk in found]

    def _update(self, pk: Any, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            doc = self.collection.find_one_and_update(
                {"id": pk},
                {"$set": data},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e
        return self._fill(doc, self.entity.columns) if doc is not None else None

    def _delete(self, pk: Any) -> int:
        return self.collection.delete_one({"id": pk}).deleted_count

    def adjust(self, pk: Any, column: str, delta: int, floor: Optional[int] = None) -> bool:
        self._check_column(column)
        match = {"id": pk}
        if floor is not None:
            match[column] = {"$gte": floor - delta}
        return self.collection.update_one(match, {"$inc": {column: delta}}).modified_count == 1


class MongoBackend:
    name = "mongo"

    def __init__(self, url: str, database_name: str, client: Optional[MongoClient] = None):
        self.client = client or MongoClient(url, serverSelectionTimeoutMS=5000)
        self.db = self.client[database_name]

    def model(self, entity: Entity) -> MongoModel:
        return MongoModel(entity, self.db)

    def sync(self):
        for entity in ENTITIES:
            collection = self.db[entity.table_name]
            collection.create_index([("id", ASCENDING)], unique=True)
            for column in entity.unique:
                collection.create_index(
                    [(column, ASCENDING)], unique=True, sparse=column in entity.optional_unique
                )
            collection.create_index([("createdAt", DESCENDING)])
        logger.info("Mongo indexes ready on %s", self.db.name)

    def ping(self) -> bool:
        self.db.command("ping")
        return True

    def close(self):
        self.client.close()
