from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SECRET_KEY = "change-me-in-production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./account_guard.db"
    secret_key: str = DEV_SECRET_KEY
    app_env: str = "development"  # "production" enables strict checks (SECRET_KEY)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 10  # 10 days
    refresh_token_expire_days: int = 7
    email_verification_expire_hours: int = 24
    password_reset_expire_minutes: int = 60
    # Login revokes every earlier refresh token of the user (one active session)
    revoke_sessions_on_login: bool = True

    # Fixed-window guard in front of login, forgot-password and refresh (per client address)
    rate_limit_max_requests: int = 5
    rate_limit_window_seconds: int = 60
    # App-wide slowapi limit applied to every route
    global_rate_limit: str = "200/minute"
    global_rate_limit_enabled: bool = True

    # Links embedded in notification emails
    frontend_url: str = "http://localhost:3000"
    smtp_host: str = ""  # empty: log emails instead of sending
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""
    mail_from_name: str = "Account Guard"
    notification_workers: int = 2
    notification_queue_size: int = 100

    token_cleanup_interval_minutes: int = 60
    cors_origins: str = "http://localhost:3000"
    enable_hsts: bool = False  # Set True in production behind HTTPS
    debug: bool = False

    @property
    def sync_database_url(self) -> str:
        """Database URL for sync drivers (Alembic)."""
        return self.database_url.replace("+asyncpg", "", 1).replace("+aiosqlite", "", 1)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def validate_security_config(self) -> None:
        """Raise if production config is unsafe (e.g. development signing key)."""
        if self.app_env != "production":
            return
        if not self.secret_key.strip() or self.secret_key == DEV_SECRET_KEY:
            raise RuntimeError("SECRET_KEY must be set in production")
        if len(self.secret_key) < 32:
            raise RuntimeError("SECRET_KEY must be at least 32 characters in production")


settings = Settings()
