from fastapi.testclient import TestClient

from ratelimit import RateLimiter


def test_fixed_window_counts_per_key():
    limiter = RateLimiter(window=60, max_requests=2)
    assert limiter.hit("a", now=0) == (True, 1, 60)
    assert limiter.hit("a", now=1) == (True, 0, 60)
    assert limiter.hit("a", now=2) == (False, 0, 60)
    assert limiter.hit("b", now=2)[0] is True


def test_window_resets():
    limiter = RateLimiter(window=10, max_requests=1)
    limiter.hit("a", now=0)
    assert limiter.hit("a", now=5)[0] is False
    allowed, remaining, reset_at = limiter.hit("a", now=10)
    assert allowed and remaining == 0 and reset_at == 20


def test_expired_windows_are_dropped_on_later_hits():
    limiter = RateLimiter(window=10, max_requests=5)
    for i in range(50):
        limiter.hit(f"10.0.0.{i}", now=0)
    limiter.hit("recent", now=8)
    assert len(limiter) == 51

    limiter.hit("late", now=12)
    assert len(limiter) == 2


def test_api_limiter_stays_bounded_without_backups(env, monkeypatch):
    monkeypatch.setenv("BACKUP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "60000")
    from main import app

    with TestClient(app) as client:
        limiter = client.app.state.rate_limiter
        for i in range(50):
            limiter.hit(f"198.51.100.{i}", now=0)
        assert len(limiter) == 50
        assert client.get("/api/health").status_code == 200
        assert len(limiter) == 1


def test_api_returns_429_with_retry_after(env, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "3")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "60000")
    from main import app

    with TestClient(app) as client:
        for _ in range(3):
            assert client.get("/api/products").status_code == 200
        res = client.get("/api/products")
        assert res.status_code == 429
        assert res.json()["success"] is False
        assert 1 <= int(res.headers["Retry-After"]) <= 60
        # Non-API routes are not limited.
        assert client.get("/").status_code == 200
