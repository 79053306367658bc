from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


# Secrets that must never reach production
WEAK_SECRET_KEYS = {
    "changeme",
    "secret",
    "password",
    "development-secret-key-change-in-production",
    "your-secret-key",
    "jwt-secret",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/servicebay"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Auth
    SECRET_KEY: str = "development-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Base URL used in emailed approve/reject links
    PUBLIC_API_URL: str = "http://localhost:8000"

    # Email (Brevo)
    BREVO_API_KEY: str | None = None
    EMAIL_FROM_ADDRESS: str = "noreply@servicebay.app"
    EMAIL_FROM_NAME: str = "ServiceBay"

    # Shop codes look like TG-4F2A
    SHOP_CODE_PREFIX: str = "TG"

    # First service order issued is SO-001001
    SERVICE_ORDER_OFFSET: int = 1000

    # Incentives
    MAX_BONUS_MULTIPLIER: float = 3.0
    DEFAULT_WEEKLY_BONUS_GOAL: float = 500.0

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        """Refuse to boot production with a guessable signing key."""
        if self.ENVIRONMENT == "production":
            if self.SECRET_KEY in WEAK_SECRET_KEYS or len(self.SECRET_KEY) < 32:
                raise ValueError("SECRET_KEY must be a strong value (32+ chars) in production")
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        """SQL echo leaks parameters into logs, so it is never enabled in production."""
        return self.DEBUG and not self.is_production

    @property
    def DOCS_ENABLED(self) -> bool:
        return not self.is_production


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
