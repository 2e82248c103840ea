from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_CORS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if s.startswith("["):
        import orjson
        try:
            out = orjson.loads(s)
        except orjson.JSONDecodeError:
            return _DEFAULT_CORS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Persistence
    store_backend: Literal["mongo", "memory"] = Field(default="mongo", alias="STORE_BACKEND")
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="proxyshop", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; the conditional balance
    # update stays atomic without them.
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Upstream proxy provider
    provisioning_base_url: str = Field(
        default="http://global.rotgbapi.711proxy.com:8089",
        alias="PROVISIONING_BASE_URL",
    )
    provisioning_timeout_seconds: float = Field(default=30.0, alias="PROVISIONING_TIMEOUT_SECONDS")
    proxy_ttl_days: int = Field(default=30, alias="PROXY_TTL_DAYS")
    stalled_order_minutes: int = Field(default=15, alias="STALLED_ORDER_MINUTES")

    # Cryptomus
    cryptomus_merchant_id: str = Field(default="", alias="CRYPTOMUS_MERCHANT_ID")
    cryptomus_api_key: str = Field(default="", alias="CRYPTOMUS_API_KEY")
    cryptomus_base_url: str = Field(default="https://api.cryptomus.com", alias="CRYPTOMUS_BASE_URL")
    payment_lifetime_seconds: int = Field(default=7200, alias="PAYMENT_LIFETIME_SECONDS")
    payment_timeout_seconds: float = Field(default=15.0, alias="PAYMENT_TIMEOUT_SECONDS")
    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(self.cors_origins_raw)

    @property
    def payments_configured(self) -> bool:
        return bool(self.cryptomus_merchant_id and self.cryptomus_api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
