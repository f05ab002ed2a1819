from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunkmerge"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 5000
    upload_root: str = "./uploads"
    staging_root: str = "./staging"
    public_url_prefix: str = "uploads"
    access_keys: str = "your_secure_key_1,your_secure_key_2"
    admin_keys: str = ""
    cors_allow_origins: str = "*"
    tracing_enabled: bool = False
    tracing_service_name: str = "chunkmerge"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_max_attempts: int = 5
    cleanup_backoff_seconds: float = 1.0
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_session_ttl_seconds: int = 86400


def parse_key_list(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


settings = Settings()
