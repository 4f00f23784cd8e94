from functools import lru_cache
from typing import List, Optional

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "CompatBio API"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    database_url: str = Field(...)
    redis_url: str = Field(...)

    # JWT
    jwt_secret_key: Optional[str] = Field(default=None)
    jwt_private_key: Optional[str] = Field(default=None)  # dev/test only
    jwt_public_key: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_minutes: int = Field(default=60 * 12)
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_audience: Optional[str] = Field(default=None)
    jwt_clock_skew_seconds: int = Field(default=30)

    cors_origins: List[AnyHttpUrl] = Field(default_factory=list)

    # Stripe
    stripe_secret_key: Optional[str] = Field(default=None)
    stripe_webhook_secret: str = Field(...)
    stripe_webhook_tolerance_seconds: int = Field(default=300)
    stripe_api_version: str = Field(default="2023-08-16")

    # SMTP (notificações); envio desativado quando incompleto
    email_host: Optional[str] = Field(default=None)
    email_port: Optional[int] = Field(default=None)
    email_secure: bool = Field(default=False)
    email_user: Optional[str] = Field(default=None)
    email_pass: Optional[str] = Field(default=None)
    email_from: Optional[str] = Field(default=None)

    subscription_cache_ttl_seconds: int = Field(default=900)

    # Valores gravados quando o admin publica uma config sem informá-los
    default_request_price_credits: int = Field(default=1)
    default_validity_days: int = Field(default=365)

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_host and self.email_port and self.email_user and self.email_pass)

    @property
    def email_sender(self) -> Optional[str]:
        return self.email_from or self.email_user


@lru_cache()
def get_settings() -> Settings:
    return Settings()
