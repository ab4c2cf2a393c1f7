"""Capability protocols and factories keyed by integration.

Orchestration code depends only on these protocols; the concrete adapter is
picked from the integration's vendor type.
"""

from typing import Protocol

import httpx

from .cloudflare import CloudflareProvider
from .dns_providers import (
    BunnyDNSProvider,
    DigitalOceanDNSProvider,
    HetznerDNSProvider,
    LinodeDNSProvider,
    VultrDNSProvider,
)
from .errors import ProviderError
from .models import DNSRecord, DNSZone, IngressRule, Integration, ServerRegion, ServerSize, TunnelInfo, VendorServer
from .storage import ScalewayProvider
from .vps_providers import get_vps_provider


class DNSProvider(Protocol):
    async def list_zones(self) -> list[DNSZone]: ...

    async def list_dns_records(
        self,
        zone_id: str,
        type: str | None = None,
        name: str | None = None,
        content: str | None = None,
    ) -> list[DNSRecord]: ...

    async def create_dns_record(
        self,
        zone_id: str,
        type: str,
        name: str,
        content: str,
        proxied: bool = False,
        ttl: int = 1,
    ) -> DNSRecord: ...

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None: ...

    async def aclose(self) -> None: ...


class TunnelProvider(DNSProvider, Protocol):
    async def create_tunnel(self, name: str) -> TunnelInfo: ...

    async def get_tunnel(self, tunnel_id: str) -> TunnelInfo: ...

    async def get_tunnel_token(self, tunnel_id: str) -> str: ...

    async def list_tunnels(self) -> list[TunnelInfo]: ...

    async def delete_tunnel(self, tunnel_id: str) -> None: ...

    async def get_tunnel_configuration(self, tunnel_id: str) -> list[IngressRule]: ...

    async def configure_tunnel_ingress(self, tunnel_id: str, rules: list[IngressRule]) -> None: ...

    async def add_http_route(self, tunnel_id: str, hostname: str, port: int = 80) -> bool: ...

    async def remove_http_route(self, tunnel_id: str, hostname: str) -> bool: ...


class VPSProvider(Protocol):
    async def validate_token(self) -> None: ...

    async def list_regions(self) -> list[ServerRegion]: ...

    async def list_sizes(self) -> list[ServerSize]: ...

    async def upload_ssh_key(self, name: str, public_key: str) -> str: ...

    async def get_latest_debian_image(self) -> str: ...

    async def create_server(self, name: str, region: str, size: str, image: str, ssh_key_id: str) -> VendorServer: ...

    async def get_server(self, server_id: str) -> VendorServer: ...

    async def delete_server(self, server_id: str) -> None: ...

    async def wait_for_server_active(
        self, server_id: str, max_wait: int = 300, poll_interval: float = 5
    ) -> VendorServer: ...

    async def aclose(self) -> None: ...


class ObjectStorageProvider(Protocol):
    async def list_buckets(self) -> list[str]: ...

    async def bucket_exists(self, name: str) -> bool: ...

    async def create_bucket(self, name: str) -> None: ...

    async def aclose(self) -> None: ...


DNS_PROVIDERS = {
    "cloudflare": CloudflareProvider,
    "hetzner_dns": HetznerDNSProvider,
    "digitalocean": DigitalOceanDNSProvider,
    "vultr": VultrDNSProvider,
    "linode": LinodeDNSProvider,
    "bunny": BunnyDNSProvider,
}


def _unsupported(integration: Integration, capability: str) -> ProviderError:
    return ProviderError(
        "api_error",
        f"{integration.display_name} does not provide {capability}",
        service=integration.display_name,
    )


def get_dns_provider(integration: Integration, *, http: httpx.AsyncClient | None = None) -> DNSProvider:
    """DNS adapter for an integration that declares ``dns-provider``.

    :raises ProviderError: If the vendor has no DNS adapter
    """
    provider_class = DNS_PROVIDERS.get(integration.type)
    if provider_class is None or not integration.supports("dns-provider"):
        raise _unsupported(integration, "DNS")
    return provider_class.from_integration(integration, http=http)


def get_tunnel_provider(integration: Integration, *, http: httpx.AsyncClient | None = None) -> TunnelProvider:
    if integration.type != "cloudflare" or not integration.supports("tunnel"):
        raise _unsupported(integration, "tunnels")
    return CloudflareProvider.from_integration(integration, http=http)


def get_storage_provider(integration: Integration, *, http: httpx.AsyncClient | None = None) -> ObjectStorageProvider:
    if integration.type != "scaleway" or not integration.supports("object-storage"):
        raise _unsupported(integration, "S3-compatible buckets")
    return ScalewayProvider.from_integration(integration, http=http)


def get_server_provider(integration: Integration, *, http: httpx.AsyncClient | None = None) -> VPSProvider:
    if not integration.supports("vps-provider"):
        raise _unsupported(integration, "servers")
    return get_vps_provider(integration, http=http)
