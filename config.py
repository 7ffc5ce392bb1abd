from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "change-me"
# RFC 7518 minimum key size for HS256
MIN_JWT_SECRET_BYTES = 32


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "ecommerce_express"
    MONGO_TIMEOUT_MS: int = 5000

    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    RESET_TOKEN_EXPIRE_MINUTES: int = 15
    BCRYPT_ROUNDS: int = 12

    OTP_EXPIRE_MINUTES: int = 15
    # Answer "email sent" for unknown addresses instead of 404
    OTP_CONCEAL_UNKNOWN_EMAIL: bool = False

    RESEND_API_KEY: str = ""
    MAIL_FROM: str = "E-Commerce Express <no-reply@ecommerce-express.com>"
    SUPPORT_EMAIL: str = "support@ecommerce-express.com"
    COMPANY_NAME: str = "E-Commerce Express"
    ADMIN_PANEL_URL: str = "https://admin.ecommerce-express.com"

    ENVIRONMENT: str = "production"
    CORS_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def has_weak_jwt_secret(self) -> bool:
        return self.JWT_SECRET == DEFAULT_JWT_SECRET or len(self.JWT_SECRET.encode()) < MIN_JWT_SECRET_BYTES


@lru_cache
def get_settings() -> Settings:
    return Settings()
