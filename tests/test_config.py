from pathlib import Path

import pytest

from deployinfra import config
from deployinfra.config import CREDENTIAL_ENV_VARS, credentials_from_env, load_settings
from deployinfra.errors import ValidationError
from deployinfra.types import INTEGRATION_TYPES


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for variables in CREDENTIAL_ENV_VARS.values():
        for env_var in variables.values():
            monkeypatch.delenv(env_var, raising=False)
    for name in ("DEPLOYINFRA_STATE_DIR", "DEPLOYINFRA_LOG_LEVEL", "DEPLOYINFRA_PLAYBOOK_DIR"):
        monkeypatch.delenv(name, raising=False)


def test_every_vendor_has_env_vars():
    assert set(CREDENTIAL_ENV_VARS) == set(INTEGRATION_TYPES)


def test_default_settings():
    settings = load_settings()
    assert settings.state_dir == Path(".deployinfra")
    assert settings.log_level == "INFO"
    assert settings.playbook_dir == Path("playbooks")


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DEPLOYINFRA_STATE_DIR", "/var/lib/deployinfra")
    monkeypatch.setenv("DEPLOYINFRA_LOG_LEVEL", "debug")
    settings = load_settings()
    assert settings.state_dir == Path("/var/lib/deployinfra")
    assert settings.log_level == "DEBUG"


def test_cloudflare_from_env(monkeypatch):
    monkeypatch.setenv("CLOUDFLARE_EMAIL", "ops@example.com")
    monkeypatch.setenv("CLOUDFLARE_API_KEY", "global-key")

    integration = credentials_from_env("cloudflare")

    assert integration.type == "cloudflare"
    assert integration.credentials.email == "ops@example.com"
    assert integration.is_configured


def test_optional_region(monkeypatch):
    monkeypatch.setenv("SCW_ACCESS_KEY", "AK")
    monkeypatch.setenv("SCW_SECRET_KEY", "SK")
    assert credentials_from_env("scaleway").credentials.scaleway_region == "fr-par"

    monkeypatch.setenv("SCW_DEFAULT_REGION", "pl-waw")
    assert credentials_from_env("scaleway").credentials.scaleway_region == "pl-waw"


def test_missing_variables_are_listed(monkeypatch):
    monkeypatch.setenv("DROPBOX_APP_KEY", "key")
    with pytest.raises(ValidationError) as exc_info:
        credentials_from_env("dropbox")
    assert "DROPBOX_APP_SECRET" in exc_info.value.message
    assert "DROPBOX_REFRESH_TOKEN" in exc_info.value.message
    assert "DROPBOX_APP_KEY" not in exc_info.value.message


def test_empty_variable_counts_as_missing(monkeypatch):
    monkeypatch.setenv("HETZNER_TOKEN", "")
    with pytest.raises(ValidationError):
        credentials_from_env("hetzner")
