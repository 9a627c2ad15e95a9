"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildflow.storage.url import DatabaseUrl, parse_database_url


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The signing secret and database password use SecretStr to prevent
    accidental logging. The main database is either a raw ``DATABASE_URL``
    (passwords with unescaped special characters are tolerated) or the
    individual ``POSTGRES_*`` components used by the official Docker image.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"

    # --- CORS ---
    cors_allowed_origins: list[str] = []
    cors_allow_credentials: bool = False
    cors_allowed_methods: list[str] = [
        "GET",
        "POST",
        "PUT",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ]
    cors_allowed_headers: list[str] = [
        "Content-Type",
        "Authorization",
        "X-Agency-Database",
        "X-Requested-With",
        "X-API-Key",
    ]
    cors_max_age: int = 86400

    # --- PostgreSQL (main database) ---
    database_url: SecretStr | None = None
    postgres_user: str = "postgres"
    postgres_password: SecretStr = SecretStr("admin")
    postgres_db: str = "buildflow_db"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_application_name: str = "buildflow-api"

    # --- Connection pools ---
    pool_main_max_connections: int = 20
    pool_agency_max_connections: int = 5
    pool_max_agency_pools: int = 50
    pool_acquire_timeout_seconds: float = 10.0
    pool_statement_timeout_seconds: float = 30.0
    pool_connection_idle_seconds: int = 30
    pool_recycle_seconds: int = 1800
    pool_idle_eviction_seconds: int = 1800
    pool_cleanup_interval_seconds: int = 60
    pool_shutdown_timeout_seconds: float = 10.0

    # --- Session tokens ---
    jwt_secret: SecretStr | None = None
    jwt_issuer: str = "buildflow"
    jwt_audience: str = "buildflow-api"
    jwt_algorithm: str = "HS256"
    jwt_expires_seconds: int = 24 * 60 * 60

    # --- Rate limiting ---
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 1000
    rate_limit_auth_max_requests: int = 5

    # --- Requests ---
    max_body_bytes: int = 50 * 1024 * 1024

    # --- Agency registry ---
    agency_cache_ttl_seconds: float = 60.0

    def main_database(self) -> DatabaseUrl:
        """Connection components of the main database.

        ``DATABASE_URL`` wins when it parses; otherwise the URL is
        assembled from the ``POSTGRES_*`` components.
        """
        if self.database_url is not None:
            parsed = parse_database_url(self.database_url.get_secret_value())
            if parsed is not None:
                return parsed
        return DatabaseUrl(
            scheme="postgresql",
            host=self.postgres_host,
            port=self.postgres_port,
            user=self.postgres_user,
            password=self.postgres_password.get_secret_value(),
            database=self.postgres_db,
        )

    @property
    def main_database_name(self) -> str:
        return self.main_database().database or self.postgres_db

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from buildflow.config import get_settings
        settings = get_settings()
    """
    return Settings()


settings = get_settings()
