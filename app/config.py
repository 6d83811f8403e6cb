from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # GitHub App settings
    GITHUB_WEBHOOK_SECRET: str | None = None
    GITHUB_APP_ID: str | None = None
    GITHUB_APP_PRIVATE_KEY: str | None = None
    GITHUB_API_URL: str = "https://api.github.com"

    # AI provider settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    OPENAI_MAX_TOKENS: int = 8192
    OPENAI_TEMPERATURE: float = 0.0

    # Escrow / ledger settings
    ESCROW_API_URL: str | None = None
    ESCROW_API_KEY: str | None = None
    HORIZON_URL: str = "https://horizon-testnet.stellar.org"

    # Database settings
    DATABASE_URL: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # JOB QUEUE SETTINGS
    # =================================================================
    JOB_QUEUE_MAX_CONCURRENT: int = 3
    JOB_QUEUE_MAX_RETRIES: int = 2
    JOB_QUEUE_RETRY_BASE_SECONDS: float = 1.0
    JOB_QUEUE_RETRY_MAX_SECONDS: float = 300.0
    JOB_QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    JOB_TIMEOUT_SECONDS: float = 600.0  # 10 minutes
    JOB_RETENTION_SECONDS: float = 86400.0  # finished jobs kept for lookups
    JOB_CLEANUP_INTERVAL_SECONDS: float = 300.0

    # Per-call timeout for GitHub, AI and escrow requests
    COLLABORATOR_TIMEOUT_SECONDS: float = 30.0

    # Optional README/CONTRIBUTING + vector search enrichment
    CONTEXT_ENRICHMENT_ENABLED: bool = False
    CONTEXT_CHUNK_LIMIT: int = 10
    CONTEXT_SIMILARITY_THRESHOLD: float = 0.6

    # =================================================================
    # CIRCUIT BREAKER SETTINGS
    # =================================================================
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT_SECONDS: float = 60.0
    CIRCUIT_HALF_OPEN_MAX_CALLS: int = 3

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config

    def missing_settings(self, *names: str) -> list[str]:
        """Return the subset of ``names`` that are unset or empty."""
        return [name for name in names if not getattr(self, name, None)]

    def github_app_configured(self) -> bool:
        return not self.missing_settings("GITHUB_APP_ID", "GITHUB_APP_PRIVATE_KEY")


settings = Settings()
