"""Application configuration utilities."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_AUTHORIZATION_ENDPOINT = "https://appcenter.intuit.com/connect/oauth2"
_TOKEN_ENDPOINT = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
_API_BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"


@dataclass(frozen=True, slots=True)
class MerchantProfile:
    """Merchant details printed on every receipt."""

    name: str
    address_lines: tuple[str, ...]
    phone: str | None
    email: str | None
    tax_number: str | None
    payment_lines: tuple[str, ...]


def _split_lines(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split("|") if part.strip())


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    qbo_client_id: str | None = Field(default=None, alias="QBO_CLIENT_ID")
    qbo_client_secret: str | None = Field(default=None, alias="QBO_CLIENT_SECRET")
    qbo_environment: str = Field(default="sandbox", alias="QBO_ENVIRONMENT")
    qbo_redirect_uri: str = Field(
        default="http://localhost:8000/api/oauth/callback", alias="QBO_REDIRECT_URI"
    )
    qbo_minor_version: int = Field(default=75, alias="QBO_MINOR_VERSION")

    session_secret: str = Field(default="change-me", alias="SESSION_SECRET")
    session_backend: str = Field(default="memory", alias="SESSION_BACKEND")
    session_ttl_seconds: int = Field(
        default=60 * 60 * 24 * 7, alias="SESSION_TTL_SECONDS"
    )
    session_cookie_name: str = Field(default="till_sid", alias="SESSION_COOKIE_NAME")
    session_cookie_secure: bool = Field(default=False, alias="SESSION_COOKIE_SECURE")
    session_write_timeout_seconds: float = Field(
        default=5.0, alias="SESSION_WRITE_TIMEOUT_SECONDS"
    )
    token_exchange_timeout_seconds: float = Field(
        default=10.0, alias="TOKEN_EXCHANGE_TIMEOUT_SECONDS"
    )
    api_timeout_seconds: float = Field(default=15.0, alias="API_TIMEOUT_SECONDS")

    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    database_url: str = Field(
        default="sqlite:///./sessions.db", alias="DATABASE_URL"
    )
    app_home_url: str = Field(default="/", alias="APP_HOME_URL")

    currency_symbol: str = Field(default="R", alias="CURRENCY_SYMBOL")
    merchant_name: str = Field(default="TIMBER 4 U CC", alias="MERCHANT_NAME")
    merchant_address: str = Field(
        default="14 Lekkerwater Road|Sunnydale, Noordhoek|Western Cape 7975 ZA",
        alias="MERCHANT_ADDRESS",
    )
    merchant_phone: str | None = Field(default="+10217855006", alias="MERCHANT_PHONE")
    merchant_email: str | None = Field(
        default="info@realkey.co.za", alias="MERCHANT_EMAIL"
    )
    merchant_tax_number: str | None = Field(
        default="4910248089", alias="MERCHANT_TAX_NUMBER"
    )
    merchant_payment_lines: str = Field(
        default="STD BANK - CT BR|ACC NO: 071 265 430|BR CODE: 051001",
        alias="MERCHANT_PAYMENT_LINES",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def authorization_endpoint(self) -> str:
        return _AUTHORIZATION_ENDPOINT

    @property
    def token_endpoint(self) -> str:
        return _TOKEN_ENDPOINT

    @property
    def api_base_url(self) -> str:
        """Return the accounting API host for the configured environment."""

        environment = self.qbo_environment.strip().lower()
        try:
            return _API_BASE_URLS[environment]
        except KeyError as exc:
            raise ValueError(
                f"QBO_ENVIRONMENT must be one of {sorted(_API_BASE_URLS)}"
            ) from exc

    @property
    def merchant(self) -> MerchantProfile:
        return MerchantProfile(
            name=self.merchant_name,
            address_lines=_split_lines(self.merchant_address),
            phone=self.merchant_phone or None,
            email=self.merchant_email or None,
            tax_number=self.merchant_tax_number or None,
            payment_lines=_split_lines(self.merchant_payment_lines),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["ACCOUNTING_SCOPE", "MerchantProfile", "Settings", "get_settings"]
