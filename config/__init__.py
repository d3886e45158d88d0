from config.config import (
    AttributionConfig,
    BanditConfig,
    CacheConfig,
    DatabaseConfig,
    EncoderConfig,
)

__all__ = [
    'AttributionConfig',
    'BanditConfig',
    'CacheConfig',
    'DatabaseConfig',
    'EncoderConfig',
]
