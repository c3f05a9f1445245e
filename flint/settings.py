from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "dev"
    port: int = 8000
    log_level: str = "INFO"

    # Mongo
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "flint"

    # Sessions / admin
    session_secret: str = "dev-session-secret"
    # Fernet key for stored provider credentials
    encryption_key: str | None = None
    admin_emails: str = ""  # comma separated

    # Teller.io (banks, cards, payments)
    teller_application_id: str | None = None
    teller_environment: str = "sandbox"
    teller_api_url: str = "https://api.teller.io"
    # mTLS client certificate, required outside sandbox
    teller_cert_path: str | None = None
    teller_key_path: str | None = None

    # SnapTrade (brokerage, crypto, trading)
    snaptrade_client_id: str | None = None
    snaptrade_consumer_key: str | None = None
    snaptrade_redirect_uri: str = "http://localhost:5000/snaptrade/callback"

    # Market data providers
    polygon_api_key: str | None = None
    polygon_api_url: str = "https://api.polygon.io"
    alpaca_api_key_id: str | None = None
    alpaca_api_secret: str | None = None
    alpaca_data_url: str = "https://data.alpaca.markets"
    alpha_vantage_api_key: str | None = None
    alpha_vantage_api_url: str = "https://www.alphavantage.co"
    market_data_ttl_seconds: float = 5.0
    market_data_providers: str = "snaptrade,polygon,alpaca,alpha_vantage,static"
    http_timeout_seconds: float = 10.0

    # Long-running operation polling (payments, trades)
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 30
    poll_timeout_seconds: float | None = 60.0

    # Background account refresh
    sync_interval_minutes: int = 15

    # IMPORTANT: ignore extra keys in .env to avoid crashes
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def admin_email_list(self) -> List[str]:
        return [e.strip().lower() for e in self.admin_emails.split(",") if e.strip()]

    @property
    def market_data_provider_list(self) -> List[str]:
        return [p.strip().lower() for p in self.market_data_providers.split(",") if p.strip()]

    @property
    def teller_configured(self) -> bool:
        return bool(self.teller_application_id)

    @property
    def snaptrade_configured(self) -> bool:
        return bool(self.snaptrade_client_id and self.snaptrade_consumer_key)


settings = Settings()
