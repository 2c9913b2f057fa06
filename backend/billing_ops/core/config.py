import json
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "billing-ops"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/billing_ops.db"

    # Billing provider accounts
    stripe_api_key: str = ""
    STRIPE_LIST: str = ""  # JSON: {"acct": {"name": ..., "id": ..., "key": ...}}

    # Invoice metadata keys that carry the correlation id (first one is written)
    CORRELATION_ID_KEYS: str = "InvoiceUID,invoiceUID"
    DEFAULT_CURRENCY: str = "usd"
    INVOICE_LIST_LIMIT: int = 100

    # Settlement concurrency
    SETTLEMENT_LOCK_TIMEOUT_SECONDS: float = 30.0
    METADATA_WRITE_ATTEMPTS: int = 3

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def correlation_id_keys(self) -> list[str]:
        return [k.strip() for k in self.CORRELATION_ID_KEYS.split(",") if k.strip()]

    @property
    def stripe_accounts(self) -> dict[str, dict[str, Any]]:
        """Parse STRIPE_LIST, falling back to a single ``default`` account."""
        if self.STRIPE_LIST:
            try:
                accounts = json.loads(self.STRIPE_LIST)
            except json.JSONDecodeError as e:
                raise ValueError("STRIPE_LIST is not valid JSON") from e
            if not isinstance(accounts, dict):
                raise ValueError("STRIPE_LIST must be a JSON object keyed by account id")
            return accounts
        if self.stripe_api_key:
            return {"default": {"name": "Default", "id": "default", "key": self.stripe_api_key}}
        return {}


settings = Settings()
