from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Needed to write grant tables behind RLS

    # Access resolution caches (seconds)
    permission_cache_ttl_sec: int = 60
    module_cache_ttl_sec: int = 60
    role_cache_ttl_sec: int = 60
    auth_cache_ttl_sec: int = 60
    cache_max_size: int = 1000

    # Preferences / progress persistence
    preference_backend: str = "supabase"  # supabase | memory
    user_storage_table: str = "user_storage"
    module_progress_limit: int = 10

    # Routing
    dashboard_path: str = "/dashboard"
    root_path: str = "/"
    routing_session_max: int = 1000
    routing_session_idle_sec: int = 1800  # Idle routing engines are dropped after this

    # Error reporting side channel
    error_report_buffer: int = 100

    # App
    app_name: str = "carehub-access"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )


settings = Settings()
