from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_SIGNING_SECRET = "settlement-dev-token-secret-change-me"
DEFAULT_ADMIN_API_KEY = "settle-admin-dev-key"
DEFAULT_SYSTEM_API_KEY = "settle-system-dev-key"
GATEWAY_PLACEHOLDER_KEY = "sk_test_placeholder"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="SETTLE_", extra="ignore")

    app_name: str = "Marketplace Settlement Engine"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./settlement.db"
    test_database_url: str = "sqlite+pysqlite:///:memory:"

    # Payment gateway: no secret key (or the placeholder) selects simulation mode.
    gateway_secret_key: str | None = None
    gateway_live_base_url: str = "https://api.checkout.com"
    gateway_sandbox_base_url: str = "https://api.sandbox.checkout.com"
    gateway_timeout_seconds: int = 30
    currency: str = "AED"

    delivery_fee_fils: int = Field(default=5000, ge=0, description="flat delivery fee, int fils")
    default_commission_rate_bps: int = Field(default=1200, ge=0, le=10000)
    # Commission posting: inline (same unit of work as capture) | queue
    commission_mode: str = "inline"

    reconcile_after_seconds: int = 900

    auth_enabled: bool = True
    token_signing_secret: str = DEFAULT_TOKEN_SIGNING_SECRET
    access_token_ttl_seconds: int = 3600
    admin_api_key: str = DEFAULT_ADMIN_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    admin_actor_id: str = "admin-001"
    system_actor_id: str = "system-001"

    page_limit_default: int = 20
    page_limit_max: int = 100

    @property
    def gateway_simulated(self) -> bool:
        key = (self.gateway_secret_key or "").strip()
        return not key or key == GATEWAY_PLACEHOLDER_KEY

    @property
    def gateway_base_url(self) -> str:
        if (self.gateway_secret_key or "").startswith("sk_test_"):
            return self.gateway_sandbox_base_url
        return self.gateway_live_base_url

    def model_post_init(self, __context) -> None:
        if self.commission_mode not in {"inline", "queue"}:
            raise ValueError(f"unsupported commission_mode: {self.commission_mode}")

        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.token_signing_secret == DEFAULT_TOKEN_SIGNING_SECRET:
            insecure_items.append("SETTLE_TOKEN_SIGNING_SECRET")
        if self.admin_api_key == DEFAULT_ADMIN_API_KEY:
            insecure_items.append("SETTLE_ADMIN_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("SETTLE_SYSTEM_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
