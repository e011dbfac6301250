import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Database
from factories import ADMIN_EMAIL, ADMIN_PASSWORD, product_payload
from mongo_backend import MongoBackend
from sql_backend import SQLBackend


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY", "DATABASE_NAME"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE_BACKEND", "sql")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'store.db'}")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("BACKUP_PATH", str(tmp_path / "backup.json"))
    monkeypatch.setenv("BACKUP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("RESTORE_ON_STARTUP", "false")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10000")
    return tmp_path


@pytest.fixture
def client(env):
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['data']['token']}"}


@pytest.fixture
def register(client):
    def _register(email="jane@example.com", name="Jane Wanjiru", password="secret123"):
        res = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        return data["user"], {"Authorization": f"Bearer {data['token']}"}

    return _register


@pytest.fixture
def create_product(client, admin_headers):
    def _create(**overrides):
        res = client.post("/api/products", json=product_payload(**overrides), headers=admin_headers)
        assert res.status_code == 201, res.text
        return res.json()["data"]["product"]

    return _create


@pytest.fixture
def sql_db(tmp_path):
    db = Database(SQLBackend(f"sqlite:///{tmp_path / 'models.db'}"))
    db.sync()
    yield db
    db.close()


@pytest.fixture
def mongo_db():
    db = Database(MongoBackend("mongodb://localhost:27017", "store_test", client=mongomock.MongoClient()))
    db.sync()
    yield db
    db.close()


@pytest.fixture(params=["sql", "mongo"])
def db(request):
    return request.getfixturevalue(f"{request.param}_db")
