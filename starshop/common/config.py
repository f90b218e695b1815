"""Environment-driven settings for the storefront payment core.

Each process builds one `ShopSettings` at startup (see `get_settings`) and hands
it to the services it constructs. Nothing reads configuration ad hoc.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ShopSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "starshop"
    log_level: str = "INFO"
    app_origin: str = "http://localhost:3000"
    # Client-facing gateway base; normally the same-origin proxy.
    gateway_base_url: str = "http://localhost:3001/api"
    gateway_api_key: str = ""
    # Used by the proxy only.
    upstream_api_url: str = "https://pay.xrocket.tg/api"
    upstream_api_key: str = ""
    rate_source_url: str = "https://api.coingecko.com/api/v3/simple/price"
    rate_asset_id: str = "the-open-network"
    fiat_currency: str = "rub"
    fallback_rate: float = 350.0
    settlement_currency: str = "TONCOIN"
    invoice_expiry_minutes: int = 30
    create_timeout_seconds: float = 30.0
    status_timeout_seconds: float = 10.0
    rate_timeout_seconds: float = 10.0
    proxy_timeout_seconds: float = 30.0
    max_attempts: int = 3
    status_poll_interval_seconds: float = 5.0
    status_poll_max_checks: int = 12
    # Per-user checkout sessions kept in memory by the storefront.
    max_sessions: int = 10000
    webhook_secret: str = ""
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> ShopSettings:
    """Process-wide settings, loaded on first use."""

    return ShopSettings()
