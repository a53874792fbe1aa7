from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings (content, subscribers, tokens, scheduler, dispatch queue)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT_S: float = 5.0

    # Optional second content backend: read fallback + write mirror
    CONTENT_MIRROR_REDIS_URL: str | None = None

    # Public site
    PUBLIC_SITE_URL: str = "https://www.grayson-wills.com"
    EMAIL_BRAND_LOGO_URL: str | None = None

    # Email transport (Resend)
    RESEND_API_KEY: str | None = None
    EMAIL_FROM_ADDRESS: str | None = None
    EMAIL_SEND_TIMEOUT_S: float = 10.0
    EMAIL_NOTIFICATIONS_ENABLED: bool = True
    EMAIL_SEND_ALLOWLIST: str | None = None

    # Subscriptions
    SUBSCRIBE_ALLOWED_TOPICS: str = "blog_posts,major_updates"
    DEFAULT_NOTIFY_TOPIC: str = "blog_posts"

    # Scheduler bridge
    SCHEDULER_GROUP_NAME: str = "portfolio-email"
    SCHEDULER_TARGET_URL: str | None = None
    SCHEDULER_WEBHOOK_SECRET: str | None = None
    SCHEDULER_INVOKE_TIMEOUT_S: float = 10.0
    SCHEDULER_MAX_ATTEMPTS: int = 3
    SCHEDULER_RETRY_DELAY_S: int = 60

    # Dispatch queue
    DISPATCH_QUEUE_ENABLED: bool = False
    DISPATCH_QUEUE_NAME: str = "portfolio-email-dispatch"
    DISPATCH_QUEUE_FIFO: bool = False
    DISPATCH_QUEUE_SEND_TIMEOUT_S: float = 5.0
    DISPATCH_QUEUE_DEDUP_WINDOW_S: int = 300
    DISPATCH_QUEUE_VISIBILITY_TIMEOUT_S: int = 300
    DISPATCH_QUEUE_MAX_RECEIVE_COUNT: int = 5
    DISPATCH_CONSUMER_NAME: str = "consumer-1"
    DISPATCH_CONSUMER_MAX_BATCHES: int = 50

    DIRECT_SEND_CONCURRENCY: int = 10

    # Secondary-index lag guard
    CONTENT_INDEX_LAG_MAX_WAIT_MS: int = 2500
    CONTENT_INDEX_LAG_SEED_MS: int = 120
    CONTENT_INDEX_LAG_CAP_MS: int = 1000

    # Webhooks and admin auth
    FEEDBACK_WEBHOOK_SECRET: str | None = None
    AUTH_JWKS_URL: str | None = None
    AUTH_AUDIENCE: str | None = None
    AUTH_ISSUER: str | None = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("PUBLIC_SITE_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def site_url(self) -> str:
        return self.PUBLIC_SITE_URL.rstrip("/")

    def brand_logo_url(self) -> str:
        """Logo used in email headers, falling back to the site favicon."""
        if self.EMAIL_BRAND_LOGO_URL and self.EMAIL_BRAND_LOGO_URL.strip():
            return self.EMAIL_BRAND_LOGO_URL.strip()
        return f"{self.site_url()}/favicon.png"

    def send_allowlist(self) -> list[str] | None:
        """
        Lowercased rollout allow-list, or None when every recipient is allowed.
        """
        if not self.EMAIL_SEND_ALLOWLIST:
            return None
        entries = [e.strip().lower() for e in self.EMAIL_SEND_ALLOWLIST.split(",")]
        entries = [e for e in entries if e]
        return entries or None

    def allowed_topics(self) -> list[str]:
        topics = [t.strip().lower() for t in self.SUBSCRIBE_ALLOWED_TOPICS.split(",")]
        return [t for t in topics if t]

    def get_index_lag_config(self) -> dict:
        """Backoff parameters for the secondary-index lag guard."""
        return {
            "max_wait_ms": self.CONTENT_INDEX_LAG_MAX_WAIT_MS,
            "seed_ms": self.CONTENT_INDEX_LAG_SEED_MS,
            "cap_ms": self.CONTENT_INDEX_LAG_CAP_MS,
        }


settings = Settings()
