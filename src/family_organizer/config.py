"""Configuration module for Family Organizer.

This module provides configuration bootstrapping for the family organizer core.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the `FAMILY_ORGANIZER_CONFIG_PATH`
environment variable, (2) `.organizer` in the project root, (3) `.env` in the project root, (4) fallback
to environment variables only. This allows the core to run with just environment variables when no
config file is available, which is how containerized deployments and CI run it.

Settings:
---------
The `Settings` class uses Pydantic's `BaseSettings` to load all configuration from the environment or
config file, and allows extra environment variables without error.

Domain limits (family code length, collision retries, bulk batch size, pagination caps, lockout policy)
live here rather than as module constants so a deployment can tune them without a code change.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
ORGANIZER_FILENAME: str = ".organizer"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "FAMILY_ORGANIZER_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable FAMILY_ORGANIZER_CONFIG_PATH
    2. .organizer in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    organizer_path: Path = PROJECT_ROOT / ORGANIZER_FILENAME
    if organizer_path.exists():
        return str(organizer_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .organizer/.env file.
    If no config file is found, falls back to environment variables only.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Runtime
    ENV: str = "dev"
    APP_NAME: str = "Family_Organizer"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "family_organizer"
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_MAX_POOL_SIZE: int = 50
    MONGODB_MIN_POOL_SIZE: int = 5

    # Collections
    USERS_COLLECTION: str = "users"
    FAMILIES_COLLECTION: str = "families"
    TODOS_COLLECTION: str = "todos"

    # Family admission
    FAMILY_CODE_LENGTH: int = 6
    FAMILY_CODE_MAX_ATTEMPTS: int = 3  # Total code draws before giving up
    DEFAULT_MAX_MEMBERS: int = 50
    MEMBER_PREVIEW_LIMIT: int = 10
    FRONTEND_URL: str = "http://localhost:3000"
    APP_DEEP_LINK_SCHEME: str = "family-organizer"

    # Task workflow and queries
    BULK_UPDATE_MAX_BATCH: int = 50
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100
    MIN_SEARCH_QUERY_LENGTH: int = 2
    MAX_UPCOMING_DAYS: int = 365

    # Account lockout
    MAX_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15
    BCRYPT_ROUNDS: int = 12

    @field_validator("MONGODB_URL", "MONGODB_DATABASE", mode="before")
    @classmethod
    def no_blank_mongo_settings(cls, v, info):
        if v is None or not str(v).strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v

    @field_validator("FAMILY_CODE_LENGTH", mode="before")
    @classmethod
    def family_code_length_is_fixed(cls, v):
        # Stored codes and the join flow assume six characters
        if int(v) != 6:
            raise ValueError("FAMILY_CODE_LENGTH must be 6")
        return v

    @field_validator(
        "FAMILY_CODE_MAX_ATTEMPTS",
        "DEFAULT_MAX_MEMBERS",
        "MEMBER_PREVIEW_LIMIT",
        "BULK_UPDATE_MAX_BATCH",
        "DEFAULT_PAGE_SIZE",
        "MAX_PAGE_SIZE",
        "MIN_SEARCH_QUERY_LENGTH",
        "MAX_UPCOMING_DAYS",
        "MAX_LOGIN_ATTEMPTS",
        "LOCKOUT_DURATION_MINUTES",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        if int(v) <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENV.lower() == "production"


settings = Settings()
