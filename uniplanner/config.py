import os
from typing import Optional

from pydantic import BaseModel


class AppSettings(BaseModel):
    # Core
    environment: str = os.getenv("ENVIRONMENT", "local")
    config_version: str = os.getenv("CONFIG_VERSION", "2025-10-01")

    # Network
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))

    # Queue / Redis (default to local on dev)
    redis_url: str = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")
    refresh_debounce_ttl_seconds: int = int(os.getenv("REFRESH_DEBOUNCE_TTL_SECONDS", "10"))

    # Cache
    snapshot_cache_ttl_seconds: int = int(os.getenv("SNAPSHOT_CACHE_TTL_SECONDS", "900"))

    # Database (Postgres)
    # Note: asyncpg expects plain 'postgresql://' or 'postgres://'. Leave empty to go through Supabase REST.
    database_url: str = os.getenv("DATABASE_URL", "")

    # Supabase
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_anon_key: Optional[str] = os.getenv("SUPABASE_ANON_KEY")
    supabase_service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_KEY")
    supabase_timeout_seconds: float = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "30"))

    # Scoring
    improvement_bump: float = float(os.getenv("IMPROVEMENT_BUMP", "5"))
    dashboard_fallback_universities: int = int(os.getenv("DASHBOARD_FALLBACK_UNIVERSITIES", "3"))

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and (self.supabase_service_key or self.supabase_anon_key))


settings = AppSettings()
