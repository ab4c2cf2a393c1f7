"""Configuration from environment variables and an optional ``.env`` file."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ValidationError
from .models import Integration
from .types import IntegrationType
from .utils import log

DEFAULT_STATE_DIR = ".deployinfra"
DEFAULT_PLAYBOOK_DIR = "playbooks"

# Environment variable per credential field, by integration type
CREDENTIAL_ENV_VARS: dict[IntegrationType, dict[str, str]] = {
    "cloudflare": {"email": "CLOUDFLARE_EMAIL", "global_api_key": "CLOUDFLARE_API_KEY"},
    "digitalocean": {"token": "DIGITALOCEAN_TOKEN"},
    "hetzner": {"token": "HETZNER_TOKEN"},
    "hetzner_dns": {"token": "HETZNER_DNS_TOKEN"},
    "bunny": {"api_key": "BUNNY_API_KEY"},
    "vultr": {"token": "VULTR_API_KEY"},
    "linode": {"token": "LINODE_TOKEN"},
    "github": {"token": "GITHUB_TOKEN"},
    "scaleway": {
        "access_key": "SCW_ACCESS_KEY",
        "secret_key": "SCW_SECRET_KEY",
        "region": "SCW_DEFAULT_REGION",
    },
    "dropbox": {
        "app_key": "DROPBOX_APP_KEY",
        "app_secret": "DROPBOX_APP_SECRET",
        "refresh_token": "DROPBOX_REFRESH_TOKEN",
    },
}

OPTIONAL_ENV_FIELDS = {"region"}


@dataclass
class Settings:
    state_dir: Path
    log_level: str
    playbook_dir: Path


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        state_dir=Path(os.getenv("DEPLOYINFRA_STATE_DIR", DEFAULT_STATE_DIR)),
        log_level=os.getenv("DEPLOYINFRA_LOG_LEVEL", "INFO").upper(),
        playbook_dir=Path(os.getenv("DEPLOYINFRA_PLAYBOOK_DIR", DEFAULT_PLAYBOOK_DIR)),
    )


def credentials_from_env(integration_type: IntegrationType) -> Integration:
    """Build an integration from the vendor's environment variables.

    :raises ValidationError: If a required variable is unset or empty
    """
    load_dotenv()
    variables = CREDENTIAL_ENV_VARS[integration_type]
    values = {}
    missing = []
    for param, env_var in variables.items():
        value = os.getenv(env_var)
        if value:
            values[param] = value
        elif param not in OPTIONAL_ENV_FIELDS:
            missing.append(env_var)
    if missing:
        raise ValidationError(
            "credentials",
            f"Missing environment variables: {', '.join(missing)}",
            "Set them in your shell or in a .env file.",
        )
    log(f"Loaded {integration_type} credentials from environment")
    return getattr(Integration, integration_type)(**values)
