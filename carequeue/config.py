# carequeue/config.py - environment driven settings
from dotenv import load_dotenv

load_dotenv()
from typing import Union
from functools import lru_cache

import json
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://localhost:8000"]


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "CareQueue Hospital Operations"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Storage
    storage_backend: str = Field(default="memory", alias="STORAGE_BACKEND")
    database_url: str = Field(default="sqlite://", alias="DATABASE_URL")

    # Security
    secret_key: str = Field(default="change-me-development-secret-key-0123456789", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=480, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=DEFAULT_CORS_ORIGINS, alias="CORS_ORIGINS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")

    # Startup data
    seed_sample_data: bool = Field(default=False, alias="SEED_SAMPLE_DATA")
    admin_username: str = Field(default="admin", alias="ADMIN_USERNAME")
    admin_password: str = Field(default="Admin@12345", alias="ADMIN_PASSWORD")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return DEFAULT_CORS_ORIGINS
            if v.strip().startswith("["):
                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        v = v.lower().strip()
        if v not in ("memory", "sql"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'sql'")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Environment-specific configurations
class DevelopmentConfig(Settings):
    debug: bool = True
    environment: str = "development"
    seed_sample_data: bool = True


class ProductionConfig(Settings):
    debug: bool = False
    environment: str = "production"
    json_logs: bool = True


class TestingConfig(Settings):
    debug: bool = True
    environment: str = "testing"
    storage_backend: str = "memory"
    seed_sample_data: bool = False


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()
