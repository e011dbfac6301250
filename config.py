import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

BACKENDS = ("sql", "rest", "mongo")


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_backend: str = "sql"
    database_url: str = "sqlite:///./store.db"
    database_name: str = "store"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    request_timeout: float = 10.0
    jwt_secret: str = "devsecret"
    jwt_expire_days: int = 7
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Admin User"
    allowed_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    rate_limit_window: float = 15 * 60
    rate_limit_max: int = 1000
    backup_path: str = "backup.json"
    backup_interval: float = 3600
    restore_on_startup: bool = True
    sum_row_ceiling: int = 10000
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        supabase_url = os.getenv("SUPABASE_URL")
        supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")
        database_url = os.getenv("DATABASE_URL") or "sqlite:///./store.db"

        backend = (os.getenv("DATABASE_BACKEND") or "").strip().lower()
        if not backend:
            if supabase_url and supabase_key:
                backend = "rest"
            elif database_url.startswith("mongodb"):
                backend = "mongo"
            else:
                backend = "sql"
        if backend not in BACKENDS:
            raise ValueError(f"DATABASE_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}")

        origins = tuple(o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip())

        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            database_backend=backend,
            database_url=database_url,
            database_name=os.getenv("DATABASE_NAME", "store"),
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "10")),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            jwt_expire_days=int(os.getenv("JWT_EXPIRE_DAYS", "7")),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            admin_name=os.getenv("ADMIN_NAME", "Admin User"),
            allowed_origins=origins or ("*",),
            rate_limit_window=int(os.getenv("RATE_LIMIT_WINDOW_MS", str(15 * 60 * 1000))) / 1000,
            rate_limit_max=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "1000")),
            backup_path=os.getenv("BACKUP_PATH", "backup.json"),
            backup_interval=float(os.getenv("BACKUP_INTERVAL_SECONDS", "3600")),
            restore_on_startup=_flag(os.getenv("RESTORE_ON_STARTUP"), True),
            sum_row_ceiling=int(os.getenv("SUM_ROW_CEILING", "10000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
