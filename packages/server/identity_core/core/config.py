"""
Identity core configuration loaded from environment variables.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Identity core configuration."""

    model_config = SettingsConfigDict(env_prefix="IDC_", env_file=".env", extra="ignore")

    # Database (SQL document store)
    database_url: str = "sqlite+aiosqlite:///./identity.db"

    # Redis (event fan-out)
    redis_url: str = "redis://localhost:6379/0"
    event_channel: str = "idc:events:pubsub"
    event_buffer_key_prefix: str = "idc:events:buffer:"
    event_buffer_size: int = 500
    event_buffer_ttl_seconds: int = 86400

    # Tokens
    jwt_algorithm: str = "HS256"
    reset_token_ttl_minutes: int = 60
    reset_password_host: str = "localhost"

    # Passwords
    password_min_length: int = 6
    default_hash_algorithm: str = "SHA2-256"
    bcrypt_rounds: int = 12

    # Reversible cipher for reset links
    cipher_salt: str = "IdentityCoreResetLink"
    cipher_iterations: int = 100_000

    # Role cache
    role_cache_ttl_seconds: int = 300

    # Logging
    debug: bool = False
    log_level: str = "info"
    log_format: Literal["json", "text"] = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
