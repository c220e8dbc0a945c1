from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OPERATOR_API_KEY = "od-operator-dev-key"
DEFAULT_SYSTEM_API_KEY = "od-system-dev-key"
DEFAULT_STRIPE_WEBHOOK_SECRET = "whsec_dev_change_me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OD_", extra="ignore")

    app_name: str = "orderdesk"
    env: str = "dev"
    log_level: str = "INFO"
    site_url: str = "http://localhost:3000"

    database_url: str = "sqlite+pysqlite:///./orderdesk.db"

    auth_enabled: bool = True
    operator_api_key: str = DEFAULT_OPERATOR_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    operator_actor_id: str = "operator-001"
    system_actor_id: str = "system-001"

    # Payment provider (Stripe REST)
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str = DEFAULT_STRIPE_WEBHOOK_SECRET
    stripe_api_base: str = "https://api.stripe.com"
    stripe_timeout_seconds: int = 15
    stripe_webhook_tolerance_seconds: int = 300

    # Line-item reconciliation
    shipping_line_synonyms: list[str] = Field(
        default_factory=lambda: ["zásilkovna", "doručení", "doprava"],
        description="Case-insensitive substrings marking a freight line",
    )
    size_labels: list[str] = Field(default_factory=lambda: ["Velikost", "Size"])
    product_code_hints: dict[str, str] = Field(
        default_factory=dict,
        description="Description substring -> product id, last-resort mapping",
    )
    shipping_matcher: str = "product_type"  # product_type | textual

    # Carrier (Packeta XML REST)
    packeta_api_password: str | None = None
    packeta_api_url: str = "https://www.zasilkovna.cz/api/rest"
    packeta_eshop: str | None = None
    packeta_home_delivery_carrier_id: int = 106
    packeta_timeout_seconds: float = 30.0
    packeta_max_attempts: int = 3
    packeta_backoff_seconds: float = 1.0
    label_format_single: str = "A6 on A6"
    label_format_batch: str = "A6 on A4"
    label_fallback_concurrency: int = Field(default=1, ge=1, le=8)
    packeta_status_sync_pause_seconds: float = 0.2
    default_parcel_weight_kg: float = 1.0
    currency: str = "CZK"

    # Label storage: minio | local
    label_backend: str = "minio"
    labels_dir: Path = Path("/tmp/orderdesk/labels")
    labels_public_base_url: str | None = None
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "labels"
    minio_secure: bool = False
    minio_url_expiry_seconds: int = 3600

    # Notifications
    email_enabled: bool = True
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_sender: str = "obchod@example.com"
    telegram_enabled: bool = True
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    notification_timeout_seconds: int = 10

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.operator_api_key == DEFAULT_OPERATOR_API_KEY:
            insecure_items.append("OD_OPERATOR_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("OD_SYSTEM_API_KEY")
        if self.stripe_webhook_secret == DEFAULT_STRIPE_WEBHOOK_SECRET:
            insecure_items.append("OD_STRIPE_WEBHOOK_SECRET")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
