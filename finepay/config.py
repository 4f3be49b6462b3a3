"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. This keeps secrets out of source code: the .env file is gitignored,
and .env.example provides a safe template for developers.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from finepay.config import settings
    print(settings.REGISTRATION_LOCK_SECONDS)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the FinePay service.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to sign JWT tokens
      - CARD_ENCRYPTION_KEY: Fernet key for encrypting stored ILS passwords
      - GATEWAY_SECRET: Shared secret for verifying payment gateway callbacks
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "FinePay"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # --- Database ---
    # SQLite for single-node deployments; use a PostgreSQL URL (asyncpg) in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/finepay.db"

    # --- Authentication ---
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Library card encryption ---
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    CARD_ENCRYPTION_KEY: str

    # --- Payment gateway ---
    GATEWAY_SECRET: str

    # --- ILS ---
    ILS_BASE_URL: str = "http://localhost:8080/ils"
    # Every ILS call holds the registration lock, keep this well below the lock TTL
    ILS_TIMEOUT_SECONDS: float = 30.0

    # --- Registration and monitoring ---
    REGISTRATION_LOCK_SECONDS: int = 120
    FAILED_TRANSACTION_MIN_PAID_AGE: int = 120
    REGISTRATION_EXPIRE_HOURS: int = 3
    UNRESOLVED_REPORT_INTERVAL_HOURS: int = 4
    TRANSACTION_MAX_DURATION_MINUTES: int = 30

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    SERVER_NAME: str = "finepay"

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
