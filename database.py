"""
Database wiring.

``connect(settings)`` picks one backend at startup and exposes the three
models (``users``, ``products``, ``orders``) behind the same interface.
Business code never branches on which backend is active.
"""
import logging
from typing import Any, Dict, Union

from pydantic import BaseModel

from adapter import Model
from config import Settings
from models import ORDER, PRODUCT, USER

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, backend):
        self.backend = backend
        self.users: Model = backend.model(USER)
        self.products: Model = backend.model(PRODUCT)
        self.orders: Model = backend.model(ORDER)
        self.models: Dict[str, Model] = {"user": self.users, "product": self.products, "order": self.orders}

    @property
    def name(self) -> str:
        return self.backend.name

    def sync(self):
        self.backend.sync()

    def ping(self) -> bool:
        return self.backend.ping()

    def close(self):
        self.backend.close()

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        return self.models[collection_name].create(dict(data))


def connect(settings: Settings) -> Database:
    if settings.database_backend == "rest":
        from rest_backend import RestBackend

        if not (settings.supabase_url and settings.supabase_key):
            raise RuntimeError("REST backend needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        backend = RestBackend(
            settings.supabase_url,
            settings.supabase_key,
            timeout=settings.request_timeout,
            sum_row_ceiling=settings.sum_row_ceiling,
        )
    elif settings.database_backend == "mongo":
        from mongo_backend import MongoBackend

        backend = MongoBackend(settings.database_url, settings.database_name)
    else:
        from sql_backend import SQLBackend

        backend = SQLBackend(settings.database_url)
    logger.info("Using %s database backend", backend.name)
    return Database(backend)
