"""
Configuration settings for the Reading Strategy Bandit

Manages all configuration parameters including:
- Storage backend selection (memory, Redis, SQL)
- Redis cache settings
- Bandit and attribution parameters
- API settings
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.config import AttributionConfig, BanditConfig, CacheConfig, DatabaseConfig

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage settings
    storage_backend: str = Field(
        default="memory",
        description="Where bandit models and events live: memory, redis or sql"
    )
    database_url: str = Field(
        default="sqlite:///bandit.db",
        description="SQLAlchemy database URL used by the sql backend"
    )

    # Redis settings
    redis_host: str = Field(
        default="localhost",
        description="Redis server host"
    )
    redis_port: int = Field(
        default=6379,
        description="Redis server port"
    )
    redis_password: Optional[str] = Field(
        default=None,
        description="Redis server password"
    )
    redis_db: int = Field(
        default=0,
        description="Redis logical database"
    )

    # Contextual Bandit settings
    bandit_alpha: float = Field(
        default=0.1,
        description="Exploration parameter for LinUCB algorithm"
    )
    regularization: float = Field(
        default=1.0,
        description="L2 regularization parameter (seeds A = lambda * I)"
    )
    feature_dim: int = Field(
        default=44,
        description="Context vector dimension"
    )
    fallback_arm: str = Field(
        default="semantic_similarity",
        description="Strategy served when every arm fails"
    )
    merge_policy: str = Field(
        default="merge",
        description="Anonymous to authenticated migration policy"
    )

    # Reward attribution settings
    attribution_window_hours: float = Field(
        default=168.0,
        description="Lookback window for matching actions to impressions"
    )
    reward_decay_hours: float = Field(
        default=48.0,
        description="Time constant of the exponential reward decay"
    )
    recency_bonus: float = Field(
        default=1.1,
        description="Multiplier favouring the most recent matched impression"
    )
    normalize_recency_bonus: bool = Field(
        default=True,
        description="Share one action's credit across all matched impressions"
    )
    min_view_duration_ms: float = Field(
        default=2000.0,
        description="Minimum view duration that earns the engaged-view reward"
    )

    # Cache settings
    cache_ttl: int = Field(
        default=60,
        description="Model cache time-to-live in seconds"
    )

    # API settings
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Log file path"
    )

    # Monitoring settings
    enable_metrics: bool = Field(
        default=True,
        description="Enable performance metrics collection"
    )

    def bandit_config(self) -> BanditConfig:
        return BanditConfig(
            alpha=self.bandit_alpha,
            regularization=self.regularization,
            feature_dim=self.feature_dim,
            fallback_arm=self.fallback_arm,
            merge_policy=self.merge_policy,
        )

    def attribution_config(self) -> AttributionConfig:
        return AttributionConfig(
            window_hours=self.attribution_window_hours,
            decay_hours=self.reward_decay_hours,
            recency_bonus=self.recency_bonus,
            normalize_recency=self.normalize_recency_bonus,
            min_view_duration_ms=self.min_view_duration_ms,
        )

    def cache_config(self) -> CacheConfig:
        return CacheConfig(ttl_seconds=self.cache_ttl)

    def database_config(self) -> DatabaseConfig:
        return DatabaseConfig(url=self.database_url, echo=self.debug)


# Global settings instance
_settings = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def update_settings(**kwargs) -> Settings:
    """Update settings with new values."""
    global _settings
    if _settings is None:
        _settings = Settings()

    for key, value in kwargs.items():
        if hasattr(_settings, key):
            setattr(_settings, key, value)

    return _settings


# Environment-specific configurations
class DevelopmentSettings(Settings):
    """Development environment settings."""
    debug: bool = True
    log_level: str = "DEBUG"


class ProductionSettings(Settings):
    """Production environment settings."""
    debug: bool = False
    log_level: str = "WARNING"
    storage_backend: str = "sql"
    cache_ttl: int = 300


class TestingSettings(Settings):
    """Testing environment settings."""
    debug: bool = True
    log_level: str = "DEBUG"
    storage_backend: str = "memory"
    cache_ttl: int = 0


def get_environment_settings(environment: str = None) -> Settings:
    """Get settings for a specific environment."""
    if environment is None:
        environment = os.getenv("ENVIRONMENT", "development")

    if environment == "production":
        return ProductionSettings()
    elif environment == "testing":
        return TestingSettings()
    else:
        return DevelopmentSettings()


# Configuration validation
def validate_settings(settings: Settings) -> bool:
    """Validate configuration settings."""
    errors = []

    if settings.storage_backend not in ("memory", "redis", "sql"):
        errors.append(f"Unknown storage backend '{settings.storage_backend}'")

    # Validate Redis settings
    if not (0 <= settings.redis_port <= 65535):
        errors.append("Invalid Redis port number")

    # Validate bandit parameters
    if not (0 <= settings.bandit_alpha <= 10):
        errors.append("Bandit alpha must be between 0 and 10")

    if settings.regularization <= 0:
        errors.append("Regularization must be positive")

    if settings.feature_dim != 44:
        errors.append("Feature dimension must match the 44-dimension context encoding")

    if settings.merge_policy not in ("merge", "keep_authenticated", "keep_anonymous"):
        errors.append(f"Unknown merge policy '{settings.merge_policy}'")

    # Validate attribution parameters
    if settings.attribution_window_hours <= 0:
        errors.append("Attribution window must be positive")

    if settings.reward_decay_hours <= 0:
        errors.append("Reward decay must be positive")

    if settings.recency_bonus <= 0:
        errors.append("Recency bonus must be positive")

    if settings.cache_ttl < 0:
        errors.append("Cache TTL cannot be negative")

    # Validate API settings
    if not (1 <= settings.api_port <= 65535):
        errors.append("Invalid API port number")

    if errors:
        raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

    return True


# Default configuration for quick setup
DEFAULT_CONFIG = {
    "storage_backend": "memory",
    "database_url": "sqlite:///bandit.db",
    "redis_host": "localhost",
    "redis_port": 6379,
    "bandit_alpha": 0.1,
    "regularization": 1.0,
    "attribution_window_hours": 168,
    "reward_decay_hours": 48,
    "recency_bonus": 1.1,
    "cache_ttl": 60,
    "api_host": "0.0.0.0",
    "api_port": 8000,
    "debug": False,
    "log_level": "INFO",
    "enable_metrics": True
}


def create_default_config_file(filepath: str = ".env"):
    """Create a default configuration file."""
    config_content = []

    for key, value in DEFAULT_CONFIG.items():
        if isinstance(value, str):
            config_content.append(f'{key.upper()}="{value}"')
        else:
            config_content.append(f'{key.upper()}={value}')

    config_content.extend([
        "",
        "# Optional: Redis password",
        "# REDIS_PASSWORD=",
        "",
        "# Optional: Environment",
        "# ENVIRONMENT=development"
    ])

    with open(filepath, 'w') as f:
        f.write('\n'.join(config_content))

    print(f"Default configuration file created: {filepath}")


if __name__ == "__main__":
    create_default_config_file()

    settings = get_settings()
    print("Current settings:")
    print(f"Storage backend: {settings.storage_backend}")
    print(f"Redis Host: {settings.redis_host}:{settings.redis_port}")
    print(f"Bandit Alpha: {settings.bandit_alpha}")
    print(f"API Port: {settings.api_port}")

    try:
        validate_settings(settings)
        print("Settings validation: PASSED")
    except ValueError as e:
        print(f"Settings validation: FAILED - {e}")
