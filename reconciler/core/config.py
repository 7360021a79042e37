from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings

# .env lives at the project root: reconciler/core/config.py -> reconciler/core -> reconciler -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"

# Merchant order codes: 6-12 uppercase alphanumerics containing at least one letter and one digit.
DEFAULT_ORDER_CODE_PATTERN = r"(?<![A-Z0-9])(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{6,12}(?![A-Z0-9])"


class MembershipPlan(BaseModel):
    tier: str
    duration_days: int


DEFAULT_MEMBERSHIP_PLANS: dict[str, MembershipPlan] = {
    "plus_month": MembershipPlan(tier="plus", duration_days=30),
    "pro_month": MembershipPlan(tier="pro", duration_days=30),
    "pro_year": MembershipPlan(tier="pro", duration_days=365),
    "business_month": MembershipPlan(tier="business", duration_days=30),
}


class Settings(BaseSettings):
    database_url: str = "sqlite:///./reconciler.db"
    environment: str = "development"
    # Per client IP, applied to the webhook route only
    rate_limit_per_minute: int = 120
    # Providers accepted under POST /payments/<provider>/webhook, comma separated
    webhook_providers: str = "sepay"
    # Comma separated; several keys may be active during rotation
    webhook_api_keys: str = ""
    webhook_api_key: str = ""  # legacy single key, merged into webhook_api_keys
    webhook_allow_query_key: bool = False
    # Exact IPv4/IPv6 addresses or CIDR ranges, comma separated. Empty disables the check.
    webhook_ip_allowlist: str = ""
    # Proxies whose X-Forwarded-For is trusted when resolving the client IP
    forwarded_allow_ips: str = "127.0.0.1"
    webhook_store_raw_payload: bool = True
    webhook_fingerprint_missing_id: bool = False
    payment_account_number: str = ""
    payment_amount_tolerance_vnd: int = 0
    order_code_pattern: str = DEFAULT_ORDER_CODE_PATTERN
    membership_plans: dict[str, MembershipPlan] = DEFAULT_MEMBERSHIP_PLANS
    admin_secret: str = ""

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator("webhook_api_keys", "webhook_api_key", "webhook_ip_allowlist", mode="before")
    @classmethod
    def strip_value(cls, v: str | None) -> str:
        return (v or "").strip()

    @field_validator("payment_amount_tolerance_vnd", mode="before")
    @classmethod
    def clamp_tolerance(cls, v) -> int:
        try:
            return max(0, int(v or 0))
        except (TypeError, ValueError):
            return 0


settings = Settings()


def _split_csv(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def get_webhook_api_keys() -> list[str]:
    """Active webhook keys: WEBHOOK_API_KEYS plus the legacy WEBHOOK_API_KEY when not already listed."""
    keys = _split_csv(settings.webhook_api_keys)
    legacy = (settings.webhook_api_key or "").strip()
    if legacy and legacy not in keys:
        keys.append(legacy)
    return keys


def get_ip_allowlist() -> list[str]:
    return _split_csv(settings.webhook_ip_allowlist)


def get_enabled_providers() -> list[str]:
    return [p.lower() for p in _split_csv(settings.webhook_providers)]


def get_forwarded_allow_ips() -> list[str]:
    return _split_csv(settings.forwarded_allow_ips) or ["127.0.0.1"]
