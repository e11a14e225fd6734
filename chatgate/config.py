"""Configuration management for the chatgate service.

Settings are read from environment variables and an optional ``.env`` file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from chatgate.persona import DEFAULT_PERSONA

# Settings that must be non-empty before the service may start.
REQUIRED_CREDENTIALS = (
    "telegram_bot_token",
    "openai_api_key",
    "stripe_secret_key",
    "stripe_webhook_secret",
    "database_url",
    "public_base_url",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        app_name: Application name
        debug: Debug mode flag
        port: HTTP port for FastAPI
        log_level: Root log level
        telegram_bot_token: Telegram Bot API token
        telegram_webhook_path: Chat push endpoint path
        openai_api_key: Completion API key
        openai_base_url: Optional OpenAI-compatible gateway URL
        completion_model: Model used for completions
        completion_max_tokens: Output length bound per completion
        completion_temperature: Sampling temperature (near-deterministic)
        stripe_secret_key: Stripe secret API key
        stripe_webhook_secret: Stripe webhook signing secret
        stripe_webhook_path: Stripe webhook endpoint path
        stripe_monthly_price_id: Price selector for the monthly plan
        stripe_yearly_price_id: Price selector for the yearly plan
        customer_portal_url: Link for managing an existing subscription
        database_url: Store connection string
        public_base_url: Public URL this service is reachable at
        free_message_limit: Completions allowed before a subscription is required
        history_limit: Prior turns included in each completion request
        upstream_timeout_seconds: Bound on every completion/payment call
        persona_prompt: System instruction sent ahead of every conversation
        parse_mode: The single markup dialect used for outbound text
        invoice_paid_reasserts_active: Whether "invoice paid" re-marks the account active
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "chatgate"
    debug: bool = False
    port: int = 8000
    log_level: str = "INFO"

    # Telegram
    telegram_bot_token: str = ""
    telegram_webhook_path: str = "/webhook"

    # Completion API
    openai_api_key: str = ""
    openai_base_url: str | None = None
    completion_model: str = "gpt-4o-mini"
    completion_max_tokens: int = 500
    completion_temperature: float = 0.2

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_path: str = "/stripe/webhook"
    stripe_monthly_price_id: str = ""
    stripe_yearly_price_id: str = ""
    customer_portal_url: str = ""

    # Database
    database_url: str = ""

    # Public callback base
    public_base_url: str = ""

    # Conversation and metering
    free_message_limit: int = 10
    history_limit: int = 5
    upstream_timeout_seconds: float = 30.0
    persona_prompt: str = DEFAULT_PERSONA
    parse_mode: str = "Markdown"
    invoice_paid_reasserts_active: bool = True

    @property
    def async_database_url(self) -> str:
        """Database URL converted to an async driver form.

        Railway and Heroku hand out ``postgres://`` URLs, but SQLAlchemy async
        requires ``postgresql+asyncpg://``.
        """
        url = self.database_url
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def checkout_success_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/checkout/success"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/checkout/cancel"

    def missing_credentials(self) -> list[str]:
        """Return the names of required settings that are empty."""
        return [name for name in REQUIRED_CREDENTIALS if not getattr(self, name)]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings

    Example:
        >>> settings = get_settings()
        >>> print(settings.free_message_limit)
    """
    return Settings()
