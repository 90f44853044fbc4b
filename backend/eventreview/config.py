import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _parse_list(value, *, lowercase: bool = False) -> list[str]:
    def _clean(item) -> str:
        text = str(item).strip()
        return text.lower() if lowercase else text

    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return [_clean(item) for item in parsed if _clean(item)]
        except json.JSONDecodeError:
            pass
        return [_clean(item) for item in value.split(",") if _clean(item)]

    if isinstance(value, (list, tuple)):
        return [_clean(item) for item in value if _clean(item)]

    raise ValueError("expected a list or a comma-separated string")


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_minutes: int = 60 * 24 * 30
    password_reset_token_minutes: int = 60
    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    admin_emails: list[str] = []
    auto_create_tables: bool = False
    auto_run_migrations: bool = False
    log_level: str = "INFO"

    email_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    smtp_use_tls: bool = True

    task_queue_enabled: bool = False
    task_queue_poll_interval_seconds: float = 1.0
    task_queue_max_attempts: int = 3
    task_queue_stale_after_seconds: int = 300

    auth_rate_limit: int = 20
    auth_rate_window_seconds: int = 60

    recommendation_generation_limit: int = 20
    recommendation_top_limit: int = 5
    recommendation_retention_days: int = 7
    # Upper bound of the random bonus added to each score; 0 keeps scoring deterministic.
    recommendation_score_jitter: float = 0.0
    popular_events_limit: int = 10

    notification_retention_days: int = 30
    background_cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 3600

    # `allowed_origins` / `admin_emails` accept comma-separated strings or JSON lists; disable
    # pydantic-settings JSON decoding so the validators handle both formats.
    model_config = SettingsConfigDict(
        env_file=".topsecret",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):
        if value is None or value == "":
            return list(DEFAULT_ALLOWED_ORIGINS)
        try:
            return _parse_list(value)
        except ValueError:
            raise ValueError("allowed_origins must be a list or comma-separated string")

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_admin_emails(cls, value):
        if value is None or value == "":
            return []
        try:
            return _parse_list(value, lowercase=True)
        except ValueError:
            raise ValueError("admin_emails must be a list or comma-separated string")

    @field_validator("recommendation_score_jitter")
    @classmethod
    def validate_jitter(cls, value: float) -> float:
        if value < 0:
            raise ValueError("recommendation_score_jitter must not be negative")
        return value


settings = Settings()
