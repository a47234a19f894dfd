from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Upstream model provider (deployment-scoped secret, never sent by callers)
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    default_model: str = "gemini-2.5-flash"
    upstream_timeout_seconds: float = 300.0

    # Gateway client
    gateway_url: str = "http://localhost:8000/api/v1/generate"
    client_max_concurrent: int = 3
    client_max_retries: int = 3
    client_retry_base_delay: float = 1.0  # seconds, doubled per retry
    client_timeout_seconds: float | None = None  # no client-side timeout unless set

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.app_env == "production":
        if not settings.gemini_api_key:
            errors.append("GEMINI_API_KEY must be set in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if settings.client_max_concurrent < 1:
        errors.append("CLIENT_MAX_CONCURRENT must be at least 1")
    if settings.client_max_retries < 0:
        errors.append("CLIENT_MAX_RETRIES must not be negative")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
