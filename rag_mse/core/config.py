"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.03.00"

    # Public site (used for links in emails and as sender display name)
    APP_NAME: str = "RAG Schießsport MSE"
    APP_URL: str = ""
    APP_TIMEZONE: str = "Europe/Berlin"

    # Proxy/Load Balancer Settings
    # Forwarded headers are only honoured when the direct peer is listed here
    TRUSTED_PROXY_IPS: str = "127.0.0.0/8,10.0.0.0/8,172.16.0.0/12,192.168.0.0/16"

    # Database
    DATABASE_URL: str

    # Session Token (issued by the identity provider, verified here)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # Password hashing
    BCRYPT_ROUNDS: int = 10

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # SMTP transport
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_TIMEOUT_SECONDS: float = 30.0
    SMTP_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # Dev mode mail: log and/or write .eml files instead of sending
    EMAIL_DEV_MODE: bool = False
    EMAIL_DEV_LOG_METHOD: str = "console"  # console, file, both
    EMAIL_DEV_LOG_DIR: str = "logs/emails"

    # Outbox dispatcher
    OUTBOX_POLL_INTERVAL_SECONDS: float = 10.0
    OUTBOX_BATCH_SIZE: int = 10
    OUTBOX_LOCK_SECONDS: int = 300
    OUTBOX_MAX_ATTEMPTS: int = 8
    OUTBOX_BACKOFF_BASE_SECONDS: int = 60
    OUTBOX_BACKOFF_MAX_SECONDS: int = 3600
    OUTBOX_BACKOFF_JITTER: float = 0.2

    # Token validity
    PASSWORD_RESET_VALIDITY_HOURS: int = 24
    INVITATION_VALIDITY_DAYS: int = 14
    NOTIFICATION_TOKEN_VALIDITY_DAYS: int = 60

    # Event reminders
    REMINDER_POLL_INTERVAL_SECONDS: float = 3600.0

    # Contact form recipients (comma-separated)
    ADMIN_EMAILS: str = ""

    # Geocoding proxy
    GEOCODE_URL: str = "https://nominatim.openstreetmap.org/search"
    GEOCODE_TIMEOUT_SECONDS: float = 10.0

    # Rate Limiting (requests per minute, general API)
    RATE_LIMIT_API: int = 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def admin_emails_list(self) -> list[str]:
        """Parse ADMIN_EMAILS into lowercase list."""
        return [e.strip().lower() for e in self.ADMIN_EMAILS.split(",") if e.strip()]

    @property
    def trusted_proxies_list(self) -> list[str]:
        """Parse TRUSTED_PROXY_IPS into a list of CIDRs/addresses."""
        return [p.strip() for p in self.TRUSTED_PROXY_IPS.split(",") if p.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def app_url(self) -> str:
        """APP_URL without trailing slash."""
        return self.APP_URL.strip().rstrip("/")


settings = Settings()


def validate_production_settings(config: Settings = settings) -> list[str]:
    """
    Return a list of configuration problems for production deployments.

    Empty outside production.
    """
    if config.ENV != "production":
        return []

    problems: list[str] = []
    if not config.EMAIL_DEV_MODE:
        for name in ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "SMTP_FROM"):
            if not getattr(config, name):
                problems.append(f"{name} is required in production")
    if not config.admin_emails_list:
        problems.append("ADMIN_EMAILS is required in production")
    if not config.app_url.startswith("https://"):
        problems.append("APP_URL must be an https URL in production")
    if config.JWT_SECRET == "change-this-in-production":
        problems.append("JWT_SECRET must be changed in production")
    return problems
