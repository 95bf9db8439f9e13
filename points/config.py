import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

PRODUCTION_LIKE_ENVIRONMENTS = ("production", "staging")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """
    Runtime configuration, resolved once at start-up and passed to the
    components that need it.
    """

    environment: str = "development"

    webhook_enabled: bool = True
    webhook_secret: Optional[str] = None
    webhook_allow_unsigned: bool = False
    webhook_fallback_enabled: bool = True
    webhook_fallback_minutes: int = Field(default=5, ge=0)
    webhook_idempotency_window_minutes: int = Field(default=60, ge=1)

    release_pending_on_failure: bool = False
    order_expiry_minutes: int = Field(default=20, ge=1)

    gateway_base_url: Optional[str] = None
    gateway_api_key: Optional[str] = None
    gateway_timeout_seconds: float = Field(default=15.0, gt=0)
    gateway_create_timeout_seconds: float = Field(default=30.0, gt=0)
    internal_wallet_address: str = ""

    log_level: str = "INFO"
    log_json: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in PRODUCTION_LIKE_ENVIRONMENTS

    @property
    def gateway_configured(self) -> bool:
        return bool(self.gateway_base_url and self.gateway_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("APP_ENV", "development"),
            webhook_enabled=_env_bool("WEBHOOK_ENABLED", True),
            webhook_secret=os.getenv("ALFRED_PAY_WEBHOOK_SECRET") or None,
            webhook_allow_unsigned=_env_bool("WEBHOOK_ALLOW_UNSIGNED", False),
            webhook_fallback_enabled=_env_bool("WEBHOOK_FALLBACK_ENABLED", True),
            webhook_idempotency_window_minutes=int(os.getenv("WEBHOOK_IDEMPOTENCY_WINDOW_MINUTES", "60")),
            release_pending_on_failure=_env_bool("RELEASE_PENDING_ON_FAILURE", False),
            order_expiry_minutes=int(os.getenv("ORDER_EXPIRY_MINUTES", "20")),
            gateway_base_url=os.getenv("ALFRED_PAY_BASE_URL") or None,
            gateway_api_key=os.getenv("ALFRED_PAY_API_KEY") or None,
            gateway_timeout_seconds=float(os.getenv("ALFRED_PAY_TIMEOUT_SECONDS", "15")),
            gateway_create_timeout_seconds=float(os.getenv("ALFRED_PAY_CREATE_TIMEOUT_SECONDS", "30")),
            internal_wallet_address=os.getenv("INTERNAL_WALLET_ADDRESS", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", False),
        )
