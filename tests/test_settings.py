"""Tests for settings configuration."""

import pytest
from pydantic import ValidationError

from ampel.conf.cache import CacheSettings
from ampel.conf.merge import MergeSettings
from ampel.conf.providers import ProviderSettings
from ampel.conf.settings import CredentialSettings, Settings
from ampel.models import MergeStrategy
from ampel.settings import settings


def test_settings_is_settings_class():
    """Test that the shared settings object is an instance of Settings."""
    assert isinstance(settings, Settings)


def test_settings_composes_every_section():
    """Settings combines the cache, provider, merge and credential sections."""
    for section in (CacheSettings, ProviderSettings, MergeSettings, CredentialSettings):
        assert issubclass(Settings, section)


def test_settings_defaults():
    test_settings = Settings()

    assert test_settings.project_name == "ampel"
    assert test_settings.debug is False
    assert test_settings.cache_redis_port == 6379
    assert test_settings.merge_max_batch_size == 50
    assert test_settings.merge_rate_limit_max_attempts == 3
    assert test_settings.merge_concurrent_repositories is True
    assert test_settings.default_merge_strategy == MergeStrategy.SQUASH
    assert test_settings.delete_branch_default is False
    assert test_settings.github_api_url == "https://api.github.com"
    assert test_settings.gitlab_url == "https://gitlab.com"
    assert test_settings.bitbucket_api_url == "https://api.bitbucket.org/2.0"
    assert test_settings.provider_page_size == 100


def test_credential_key_is_secret():
    """The encryption key loaded by conftest never shows up in the settings repr."""
    test_settings = Settings()

    assert test_settings.credential_encryption_key is not None
    assert test_settings.credential_encryption_key.get_secret_value() not in repr(test_settings)


def test_cache_enabled_from_env(monkeypatch):
    monkeypatch.setenv("CACHE_ENABLED", "true")

    assert Settings().cache_enabled is True


def test_cache_redis_host_from_env(monkeypatch):
    monkeypatch.setenv("CACHE_REDIS_HOST", "redis.example.com")
    monkeypatch.setenv("CACHE_REDIS_PORT", "6380")

    test_settings = Settings()
    assert test_settings.cache_redis_host == "redis.example.com"
    assert test_settings.cache_redis_port == 6380


def test_merge_settings_from_env(monkeypatch):
    monkeypatch.setenv("MERGE_DELAY_SECONDS", "2.5")
    monkeypatch.setenv("DEFAULT_MERGE_STRATEGY", "rebase")
    monkeypatch.setenv("MERGE_CONCURRENT_REPOSITORIES", "false")

    test_settings = Settings()
    assert test_settings.merge_delay_seconds == 2.5
    assert test_settings.default_merge_strategy == MergeStrategy.REBASE
    assert test_settings.merge_concurrent_repositories is False


def test_gitlab_url_from_env(monkeypatch):
    monkeypatch.setenv("GITLAB_URL", "https://gitlab.internal")

    assert Settings().gitlab_url == "https://gitlab.internal"


@pytest.mark.parametrize(
    "field,value",
    [
        ("merge_delay_seconds", -1),
        ("merge_delay_seconds", 301),
        ("merge_max_batch_size", 0),
        ("merge_rate_limit_max_attempts", 0),
        ("merge_backoff_base_seconds", -0.5),
        ("provider_page_size", 101),
        ("provider_request_timeout", 0),
    ],
)
def test_settings_reject_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_settings_validates_types(monkeypatch):
    monkeypatch.setenv("CACHE_REDIS_PORT", "not-a-number")

    with pytest.raises(ValidationError):
        Settings()
