from pydantic_settings import BaseSettings
from typing import List, Union
from pydantic import field_validator
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "WhatsApp Verify Auth API"
    ENVIRONMENT: str = "production"

    # Database Settings
    POSTGRES_USER: str = "user"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "verify_auth_db"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Redis Settings (Celery broker, optional shared state backend)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Signed session tokens
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "whatsapp-auth-system"
    JWT_AUDIENCE: str = "auth-app"
    SESSION_TOKEN_TTL_SECONDS: int = 60 * 60
    VERIFICATION_TOKEN_TTL_SECONDS: int = 24 * 60 * 60

    # Cookies and CSRF
    AUTH_COOKIE_NAME: str = "auth_token"
    CSRF_COOKIE_NAME: str = "csrf-token"
    CSRF_HEADER_NAME: str = "x-csrf-token"
    CSRF_TOKEN_TTL_SECONDS: int = 10 * 60
    COOKIE_SECURE: bool = True

    # Verification codes
    VERIFICATION_CODE_TTL_MINUTES: int = 10
    MAX_CODE_GENERATION_ATTEMPTS: int = 10

    # WhatsApp Cloud API
    WHATSAPP_APP_SECRET: str = ""
    WHATSAPP_VERIFY_TOKEN: str = ""
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v18.0"
    WHATSAPP_SEND_TIMEOUT_SECONDS: float = 10.0

    # Webhook hardening
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1024 * 1024
    WEBHOOK_FAILURE_DELAY_SECONDS: float = 1.0
    DEDUP_RETENTION_SECONDS: int = 24 * 60 * 60
    SENDER_MAX_MESSAGES_PER_MINUTE: int = 5

    # Ephemeral state (rate limits, CSRF, dedup)
    STATE_BACKEND: str = "memory"
    SWEEP_INTERVAL_SECONDS: int = 5 * 60

    # Logging
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # CORS Settings - can be set as JSON string in .env
    BACKEND_CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Union[List[str], str]) -> List[str]:
        """Parse CORS origins from JSON string or list"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not valid JSON, split by comma
                return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("STATE_BACKEND")
    @classmethod
    def normalize_state_backend(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
