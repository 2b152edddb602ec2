from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "ABM Insights"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Runtime
    abm_mode: str = "online"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_connect_timeout_seconds: int = 10
    db_statement_timeout_ms: int = 15000

    # Providers
    youcom_api_key: str | None = None
    youcom_base_url: str = "https://api.you.com"
    youcom_timeout_seconds: float = 20.0
    openai_api_key: str | None = None
    openai_timeout_seconds: float = 60.0
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    generation_model: str = "gpt-4o-mini"
    generation_temperature: float = 0.7

    # Scraper
    scrape_timeout_seconds: float = 10.0
    scrape_user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    # Retrieval
    rag_match_threshold: float = 0.7
    rag_match_count: int = 5
    research_max_citations: int = 8

    # Outbound notifier
    n8n_webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0

    # CLI output
    report_output_dir: str = "output"

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "abm"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    @property
    def is_online(self) -> bool:
        """Return True when real providers should be called."""
        return self.abm_mode.strip().lower() == "online"

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
