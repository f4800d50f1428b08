import json
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "wishkeep API"
    frontend_url: str = "http://localhost:3000"
    environment: str = "local"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./wishkeep.db (dev) | postgresql+asyncpg://... (prod)
    database_url: str = "sqlite+aiosqlite:///./wishkeep.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    redis_dsn: str = "redis://localhost:6379/0"

    access_token_expire_minutes: int = 60 * 24 * 7
    # SECURITY: override via JWT_SECRET_KEY env var; app refuses to start with default outside local
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # Password-protected list unlock cookie
    list_access_cookie_name: str = "wk_list_access"
    list_access_ttl_seconds: int = 60 * 60 * 24

    # Reservations
    reservation_tx_timeout_seconds: float = 10.0
    reveal_reserved_flag_to_owner: bool = False
    bulk_max_ids: int = 100
    reminder_after_days: int = 30

    # Personal API tokens
    token_cache_ttl_seconds: int = 60
    token_cache_max_items: int = 1000

    # SMTP settings (optional)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "noreply@wishkeep.local"
    smtp_use_tls: bool = True
    email_notifications_enabled: bool = True

    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"  # memory | redis

    log_level: str = "INFO"
    log_file: str = ""

    @property
    def is_local(self) -> bool:
        return (self.environment or "local").lower() == "local"


settings = Settings()
