"""Tests for settings loading."""

from vault_api.config import Settings
from weightvault.codec import BackendType, CompressionLevel


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.database_url.startswith("sqlite+aiosqlite")
    assert settings.cleanup_max_age_ms == 30 * 24 * 60 * 60 * 1000
    options = settings.default_options()
    assert options.level == CompressionLevel.BALANCED
    assert options.pruning
    assert not options.weight_sharing
    assert options.backend == BackendType.AUTO


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("WEIGHTVAULT_COMPRESSION_LEVEL", "maximum")
    monkeypatch.setenv("weightvault_enable_weight_sharing", "true")
    monkeypatch.setenv("WEIGHTVAULT_PARALLEL_MIN_TOTAL_WEIGHTS", "500")
    monkeypatch.setenv("WEIGHTVAULT_CORS_ORIGINS", "https://a.example, https://b.example")
    settings = Settings(_env_file=None)

    assert settings.default_options().level == CompressionLevel.MAXIMUM
    assert settings.default_options().weight_sharing
    assert settings.coordinator_config().parallel_min_total_weights == 500
    assert settings.cors_origins_list == ["https://a.example", "https://b.example"]


def test_production_flag():
    assert Settings(_env_file=None, app_env="Production").is_production
    assert not Settings(_env_file=None).is_production
