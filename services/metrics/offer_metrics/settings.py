"""Application settings via Pydantic Settings."""

from functools import lru_cache
import json

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "Offer Metrics API"
    app_version: str = "0.1.0"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Redis (session cache backend)
    redis_url: str = "redis://localhost:6379/0"
    cache_backend: str = Field(
        default="redis",
        validation_alias=AliasChoices("CACHE_BACKEND"),
        description="'redis' or 'memory'",
    )

    # CORS
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        validation_alias=AliasChoices("CORS_ORIGINS", "ALLOWED_ORIGINS"),
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v: object) -> list[str]:
        """
        Accept either:
        - JSON array string: '["https://a.com","http://localhost:3000"]'
        - Comma-separated string: "https://a.com,http://localhost:3000"
        - Already-parsed list[str]
        """
        if v is None:
            return []
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x).strip()]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError:
                    parsed = s.split(",")
                if isinstance(parsed, list):
                    return [str(x).strip() for x in parsed if str(x).strip()]
                return [str(parsed).strip()]
            return [part.strip() for part in s.split(",") if part.strip()]
        return [str(v).strip()] if str(v).strip() else []

    @field_validator("cache_backend")
    @classmethod
    def _validate_cache_backend(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ("redis", "memory"):
            raise ValueError(f"cache_backend must be 'redis' or 'memory', got '{v}'")
        return value

    # External endpoints
    analytics_url: str = Field(
        default="http://localhost:8090/query",
        validation_alias=AliasChoices("ANALYTICS_URL", "CORE_URL"),
    )
    stock_feed_url: str = Field(
        default="",
        validation_alias=AliasChoices("STOCK_FEED_URL"),
        description="Full catalog export (CSV: sku,name,quantity,price,category)",
    )
    catalog_api_url: str = Field(
        default="http://localhost:8081",
        validation_alias=AliasChoices("CATALOG_API_URL"),
    )
    catalog_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("CATALOG_API_KEY"),
    )

    # Analytics retry (leads, zones, statuses, stock feed)
    analytics_timeout_s: float = Field(default=60.0, gt=0)
    analytics_max_retries: int = Field(default=2, ge=0, le=4)
    analytics_backoff_base_s: float = Field(default=1.5, ge=0)

    # Sales forecaster
    forecast_months: int = Field(default=12, ge=1, le=36)
    forecast_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    forecast_min_samples: int = Field(default=10, ge=1)
    forecast_floor: float = Field(default=0.1, gt=0.0)
    forecast_request_delay_s: float = Field(default=0.5, ge=0)
    forecast_request_timeout_s: float = Field(default=20.0, gt=0)
    forecast_max_retries: int = Field(default=2, ge=0, le=4)
    forecast_backoff_base_s: float = Field(default=1.5, ge=0)

    # Stock
    stock_excluded_category: str = Field(
        default="Архів",
        validation_alias=AliasChoices("STOCK_EXCLUDED_CATEGORY"),
    )

    # Zones
    zones_batch_size: int = Field(default=1000, ge=1)

    # Leads / rating
    leads_batch_size: int = Field(default=200, ge=1)
    rating_default_base: float = Field(default=3.5, gt=0)
    operator_active_days: int = Field(default=14, ge=1)
    status_chunk_size: int = Field(default=500, ge=1)

    # Session cache
    cache_version: int = Field(default=3, ge=1)
    cache_ttl_s: int = Field(default=300, ge=1)
    cache_key_prefix: str = "offers:"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
