"""Application configuration with environment variables."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Proxy/Load Balancer Settings
    # Set to True when running behind nginx/Cloudflare to trust forwarded headers
    TRUST_PROXY_HEADERS: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./formguard.db"

    # Redis (unset or memory:// keeps CSRF/rate-limit state in process)
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_TIMEOUT_SECONDS: float = 2.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error tracking
    SENTRY_DSN: str = ""

    # File storage (must not be served directly by the web server)
    STORAGE_ROOT: str = "./storage"
    DEFAULT_MAX_FILE_SIZE_MB: float = 10
    STAGED_FILE_TTL_SECONDS: int = 3600
    ORPHAN_GRACE_SECONDS: int = 86400

    # CSRF
    CSRF_ENABLED: bool = True
    CSRF_TOKEN_LIFETIME_SECONDS: int = 3600
    SESSION_COOKIE_NAME: str = "fg_session"
    SESSION_COOKIE_MAX_AGE_SECONDS: int = 86400

    # Sliding-window limits enforced inside the pipeline
    SUBMISSION_RATE_LIMIT_MAX: int = 10
    SUBMISSION_RATE_LIMIT_WINDOW_SECONDS: int = 300
    UPLOAD_RATE_LIMIT_MAX: int = 20
    UPLOAD_RATE_LIMIT_WINDOW_SECONDS: int = 300

    # Route limits (requests per minute, slowapi)
    RATE_LIMIT_PUBLIC_FORMS: int = 30
    RATE_LIMIT_PUBLIC_UPLOADS: int = 30
    RATE_LIMIT_PUBLIC_READ: int = 120

    # Validation
    DISPOSABLE_EMAIL_DOMAINS: str = "tempmail.org,10minutemail.com,guerrillamail.com"

    SUCCESS_MESSAGE: str = "Thank you for your submission!"

    # Audit
    AUDIT_RETENTION_DAYS: int = 90

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def disposable_domains_list(self) -> list[str]:
        """Parse DISPOSABLE_EMAIL_DOMAINS into lowercase list."""
        return [d.strip().lower() for d in self.DISPOSABLE_EMAIL_DOMAINS.split(",") if d.strip()]

    @property
    def default_max_file_size_bytes(self) -> int:
        return int(self.DEFAULT_MAX_FILE_SIZE_MB * 1024 * 1024)

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies only in production."""
        return self.ENV != "dev"

    @property
    def temp_dir(self) -> str:
        return os.path.join(self.STORAGE_ROOT, "temp")

    @property
    def pending_dir(self) -> str:
        return os.path.join(self.STORAGE_ROOT, "pending")

    @property
    def files_dir(self) -> str:
        return os.path.join(self.STORAGE_ROOT, "files")


settings = Settings()
