"""
Tests for environment settings and configuration objects.
"""

import pytest

from config.config import AttributionConfig, BanditConfig, DatabaseConfig
from config.settings import (
    Settings,
    create_default_config_file,
    get_environment_settings,
    validate_settings,
)


class TestSettings:
    """Test environment backed settings."""

    def test_defaults(self):
        settings = Settings()
        assert settings.storage_backend == "memory"
        assert settings.bandit_alpha == 0.1
        assert settings.attribution_window_hours == 168.0
        assert validate_settings(settings)

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("BANDIT_ALPHA", "0.3")
        monkeypatch.setenv("STORAGE_BACKEND", "sql")
        monkeypatch.setenv("NORMALIZE_RECENCY_BONUS", "false")

        settings = Settings()
        assert settings.bandit_alpha == 0.3
        assert settings.storage_backend == "sql"
        assert settings.attribution_config().normalize_recency is False

    def test_validation_collects_errors(self):
        settings = Settings(storage_backend="mongo", regularization=0, feature_dim=40)
        with pytest.raises(ValueError) as excinfo:
            validate_settings(settings)

        message = str(excinfo.value)
        assert "Unknown storage backend 'mongo'" in message
        assert "Regularization must be positive" in message
        assert "44-dimension" in message

    def test_builders(self):
        settings = Settings(bandit_alpha=0.25, reward_decay_hours=24, cache_ttl=5,
                            database_url="sqlite:///other.db")

        assert settings.bandit_config().alpha == 0.25
        assert settings.attribution_config().decay_hours == 24
        assert settings.cache_config().ttl_seconds == 5
        assert settings.database_config().get_database_url() == "sqlite:///other.db"

    def test_testing_environment(self):
        settings = get_environment_settings("testing")
        assert settings.storage_backend == "memory"
        assert settings.cache_ttl == 0

    def test_default_config_file(self, tmp_path):
        path = tmp_path / ".env"
        create_default_config_file(str(path))

        content = path.read_text()
        assert 'STORAGE_BACKEND="memory"' in content
        assert "BANDIT_ALPHA=0.1" in content


class TestConfigObjects:
    """Test dataclass configuration."""

    def test_bandit_config_defaults(self):
        config = BanditConfig()
        assert config.arm_ids[0] == "semantic_similarity"
        assert len(config.arm_ids) == 6
        assert config.arm_name("trending_popular") == "Trending"
        assert config.resolve_fallback_arm() == "semantic_similarity"

    def test_bandit_config_rejects_bad_values(self):
        with pytest.raises(ValueError):
            BanditConfig(regularization=0)
        with pytest.raises(ValueError):
            BanditConfig(alpha=-1)
        with pytest.raises(ValueError):
            BanditConfig(arms=[])
        with pytest.raises(ValueError):
            BanditConfig(merge_policy="coin_flip")

    def test_configs_do_not_share_state(self):
        first = AttributionConfig()
        first.base_rewards["click"] = 5.0
        assert AttributionConfig().base_rewards["click"] == 1.0

        first_arms = BanditConfig()
        first_arms.arms[0]["name"] = "Changed"
        assert BanditConfig().arm_name("semantic_similarity") == "Content-Based"

    def test_database_engine_kwargs(self):
        assert "pool_recycle" not in DatabaseConfig().get_engine_kwargs()
        kwargs = DatabaseConfig(url="postgresql://localhost/bandit", ssl_ca="/ca.pem").get_engine_kwargs()
        assert kwargs["pool_recycle"] == 3600
        assert kwargs["connect_args"] == {"sslrootcert": "/ca.pem"}
