import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class Settings:
    environment: str = "development"
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    redis_url: str = "redis://localhost:6379/0"
    cache_timeout: float = 0.5

    jwt_secret: str = "supersecretkey"
    jwt_refresh_secret: str = "supersecretrefreshkey"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    bcrypt_rounds: int = 12

    product_cache_ttl: int = 60 * 5
    order_cache_ttl: int = 60 * 5
    cart_inactivity_ttl: int = 60 * 30
    cart_flush_grace: int = 60
    blacklist_ttl: int = 60 * 60
    cart_write_mode: str = "sync"

    product_chunk: int = 2000
    bulk_max_workers: int = 4
    pagination_max_limit: int = 100

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit_max: int = 100
    rate_limit_window: int = 15 * 60
    login_rate_limit_max: int = 5
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def write_back(self) -> bool:
        return self.cart_write_mode == "write_back"

    @classmethod
    def from_env(cls) -> "Settings":
        environment = os.getenv("APP_ENV", "development")
        production = environment == "production"
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            environment=environment,
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            cache_timeout=float(os.getenv("CACHE_TIMEOUT", "0.5")),
            jwt_secret=os.getenv("JWT_SECRET", "supersecretkey"),
            jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "supersecretrefreshkey"),
            access_token_expire_minutes=_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 15),
            refresh_token_expire_days=_int_env("REFRESH_TOKEN_EXPIRE_DAYS", 7),
            bcrypt_rounds=_int_env("BCRYPT_ROUNDS", 12),
            product_cache_ttl=_int_env("PRODUCT_CACHE_TTL", 60 * 5),
            order_cache_ttl=_int_env("ORDER_CACHE_TTL", 60 * 5),
            cart_inactivity_ttl=_int_env("CART_INACTIVITY_TTL", 60 * 30),
            cart_flush_grace=_int_env("CART_FLUSH_GRACE", 60),
            blacklist_ttl=_int_env("BLACKLIST_TTL", 60 * 60),
            cart_write_mode=os.getenv("CART_WRITE_MODE", "sync"),
            product_chunk=_int_env("PRODUCT_CHUNK", 200 if production else 2000),
            bulk_max_workers=_int_env("BULK_MAX_WORKERS", 4),
            pagination_max_limit=_int_env("PAGINATION_MAX_LIMIT", 100),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            rate_limit_max=_int_env("RATE_LIMIT_MAX", 100),
            rate_limit_window=_int_env("RATE_LIMIT_WINDOW", 15 * 60),
            login_rate_limit_max=_int_env("LOGIN_RATE_LIMIT_MAX", 5),
            port=_int_env("PORT", 8000),
        )


def configure_logging(settings: Settings) -> None:
    level = logging.WARNING if settings.is_production else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


settings = Settings.from_env()
