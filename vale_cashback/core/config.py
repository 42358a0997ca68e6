from __future__ import annotations
from decimal import Decimal
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field("sqlite+aiosqlite:///./vale_cashback.db", alias="DATABASE_URL")

    auth_jwks_url: str = Field("http://localhost:8001/.well-known/jwks.json", alias="AUTH_JWKS_URL")

    # QR payment tokens
    qr_ttl_seconds: int = Field(default=900, alias="QR_TTL_SECONDS")
    merchant_min_payment: Decimal = Field(default=Decimal("5.00"), alias="MERCHANT_MIN_PAYMENT")
    platform_fee_rate: Decimal = Field(default=Decimal("0.05"), alias="PLATFORM_FEE_RATE")
    client_cashback_rate: Decimal = Field(default=Decimal("0.02"), alias="CLIENT_CASHBACK_RATE")
    bonus_balance_ratio: Decimal = Field(default=Decimal("0.30"), alias="BONUS_BALANCE_RATIO")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=30, alias="RL_MAX_REQS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_settled: str = Field("payments.settled", alias="NATS_SUBJECT_SETTLED")
    enable_nats_events: bool = Field(default=True, alias="ENABLE_NATS_EVENTS")

    # expiry sweep
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")
    expiry_sweep_interval_sec: int = Field(default=300, alias="EXPIRY_SWEEP_INTERVAL_SEC")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False
        extra = "ignore"

class OfflineSettings(BaseSettings):
    cache_name: str = Field("vale-cashback-v1.0.5", alias="OFFLINE_CACHE_NAME")
    upstream_url: str = Field("http://localhost:5173", alias="OFFLINE_UPSTREAM_URL")
    precache: list[str] = Field(
        default=["/", "/index.html", "/manifest.json", "/favicon.ico", "/offline.html"],
        alias="OFFLINE_PRECACHE",
    )
    excluded_prefixes: list[str] = Field(default=["/api/", "/downloads/"], alias="OFFLINE_EXCLUDED_PREFIXES")
    cache_backend: str = Field("memory", alias="OFFLINE_CACHE_BACKEND")  # memory | redis
    network_timeout: float = Field(default=5.0, alias="OFFLINE_NETWORK_TIMEOUT")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False
        extra = "ignore"

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

_offline_settings: OfflineSettings | None = None
def get_offline_settings() -> OfflineSettings:
    global _offline_settings
    if _offline_settings is None:
        _offline_settings = OfflineSettings()
    return _offline_settings
