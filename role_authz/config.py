from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from role_authz.models.system_roles import SystemRoles


class Settings(BaseSettings):
    """
    Authorization core settings loaded from environment variables.

    All settings can be configured via .env file or environment variables.
    """

    # Database
    DATABASE_URL: str = "sqlite:///./role_authz.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Application
    APP_NAME: str = "Role Authorization Core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["console", "json"] = "json"

    # Roles
    OWNER_ROLE_NAME: str = "Owner"
    ADMIN_ROLE_NAME: str = "Admin"
    USER_ROLE_NAME: str = "User"
    NEW_USER_DEFAULT_ROLE: str = "User"  # Validated against live roles before use

    # Locking
    LOCK_TIMEOUT_SECONDS: float = 30.0  # Process lock wait before StoreUnavailableException

    # Reporting
    STATS_USE_AGGREGATE_QUERY: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def system_roles(self) -> SystemRoles:
        """Build the system role set from the configured names"""
        return SystemRoles(
            owner=self.OWNER_ROLE_NAME,
            admin=self.ADMIN_ROLE_NAME,
            user=self.USER_ROLE_NAME,
        )


# Global settings instance
settings = Settings()
