"""Credential validation: one read-only probe per vendor before saving an integration."""

from dataclasses import replace

import httpx

from .accounts import DropboxProvider, GitHubProvider
from .cloudflare import CloudflareProvider
from .dns_providers import BunnyDNSProvider, HetznerDNSProvider
from .errors import DropboxError, ProviderError
from .models import Credentials, Integration
from .storage import ScalewayProvider
from .utils import log
from .vps_providers import get_vps_provider


async def validate_integration(
    integration: Integration,
    derive_r2: bool = True,
    *,
    http: httpx.AsyncClient | None = None,
) -> Credentials:
    """Probe the vendor with the integration's credentials.

    Every probe is the cheapest call that fails on bad credentials. The one
    write is Cloudflare R2 key derivation, skipped with ``derive_r2=False``
    (e.g. when editing an integration that already has R2 keys).

    :param http: Shared ``httpx.AsyncClient``, mainly for tests
    :return: Credentials to persist, including any derived R2 keys
    :raises ProviderError: If the vendor rejects the credentials
    """
    creds = integration.credentials
    kind = integration.type
    log(f"Validating {integration.display_name} credentials...")

    if kind == "cloudflare":
        provider = CloudflareProvider.from_integration(integration, http=http)
        try:
            await provider.list_zones()
            if derive_r2 and not creds.has_r2_credentials:
                account_id = await provider.get_account_id()
                access_key_id, secret_access_key = await provider.create_r2_token(account_id)
                return replace(creds, r2_access_key_id=access_key_id, r2_secret_access_key=secret_access_key)
        finally:
            await provider.aclose()

    elif kind in ("hetzner_dns", "bunny"):
        provider_class = HetznerDNSProvider if kind == "hetzner_dns" else BunnyDNSProvider
        provider = provider_class.from_integration(integration, http=http)
        try:
            await provider.list_zones()
        finally:
            await provider.aclose()

    elif kind in ("digitalocean", "hetzner", "linode", "vultr"):
        provider = get_vps_provider(integration, http=http)
        try:
            await provider.validate_token()
        finally:
            await provider.aclose()

    elif kind == "scaleway":
        provider = ScalewayProvider.from_integration(integration, http=http)
        try:
            await provider.validate_credentials()
        finally:
            await provider.aclose()

    elif kind == "github":
        provider = GitHubProvider.from_integration(integration, http=http)
        try:
            user = await provider.validate_token()
            log(f"GitHub token belongs to '{user.login}'")
        finally:
            await provider.aclose()

    elif kind == "dropbox":
        if not creds.is_valid("dropbox"):
            raise DropboxError("invalid_credentials")
        provider = DropboxProvider(http=http)
        try:
            await provider.validate_credentials(
                creds.dropbox_app_key, creds.dropbox_app_secret, creds.dropbox_refresh_token
            )
        finally:
            await provider.aclose()

    else:
        raise ProviderError("api_error", f"No validation available for '{kind}'")

    return replace(creds)
