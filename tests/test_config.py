"""
Configuration loading from environment variables
"""

import os
from pathlib import Path

import pytest

from forge3d.config import ConfigurationError, load_config, validate_required_env


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FORGE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    config = load_config(refresh=True)

    assert config["FORGE_WORKERS"] == 5
    assert config["FORGE_QUEUE_SIZE"] == 100
    assert config["FORGE_POLL_INTERVAL_S"] == 10.0
    assert config["FORGE_SUBMIT_TIMEOUT_S"] == 300.0
    assert config["FORGE_QUERY_TIMEOUT_S"] == 60.0
    assert config["FORGE_POLL_MAX_SECONDS"] == 0.0
    assert config["FORGE_CACHE_TTL_S"] == 86400.0
    assert config["FORGE_PROVIDER_RESULT_FORMAT"] == "OBJ"
    assert config["FORGE_PROVIDER_ENABLE_PBR"] is False
    assert config["FORGE_JOBS_DIR"] == Path("forge_data") / "jobs"


def test_overrides_and_inline_comments(clean_env):
    clean_env.setenv("FORGE_DATA_DIR", "/srv/forge")
    clean_env.setenv("FORGE_WORKERS", "8  # tuned for prod")
    clean_env.setenv("FORGE_PROVIDER_RESULT_FORMAT", "glb")
    clean_env.setenv("FORGE_PROVIDER_ENABLE_PBR", "True")

    config = load_config(refresh=True)

    assert config["FORGE_WORKERS"] == 8
    assert config["FORGE_CACHE_DIR"] == Path("/srv/forge") / "cache"
    assert config["FORGE_PROVIDER_RESULT_FORMAT"] == "GLB"
    assert config["FORGE_PROVIDER_ENABLE_PBR"] is True


def test_malformed_numbers_fall_back(clean_env):
    clean_env.setenv("FORGE_QUEUE_SIZE", "lots")
    clean_env.setenv("FORGE_CACHE_TTL_S", "a day")

    config = load_config(refresh=True)

    assert config["FORGE_QUEUE_SIZE"] == 100
    assert config["FORGE_CACHE_TTL_S"] == 86400.0


def test_config_is_cached_until_refresh(clean_env):
    first = load_config(refresh=True)
    clean_env.setenv("FORGE_WORKERS", "11")

    assert load_config() is first
    assert load_config(refresh=True)["FORGE_WORKERS"] == 11


def test_validate_required_env(clean_env):
    with pytest.raises(ConfigurationError) as exc_info:
        validate_required_env()
    assert "FORGE_PROVIDER_BASE_URL" in str(exc_info.value)
    assert "FORGE_PROVIDER_API_KEY" in str(exc_info.value)

    clean_env.setenv("FORGE_PROVIDER_BASE_URL", "https://provider.test")
    clean_env.setenv("FORGE_PROVIDER_API_KEY", "secret")
    validate_required_env()
