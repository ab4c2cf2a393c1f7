"""Type definitions for deployinfra."""

from typing import Literal, TypedDict

IntegrationType = Literal[
    "cloudflare",
    "digitalocean",
    "hetzner",
    "hetzner_dns",
    "bunny",
    "vultr",
    "linode",
    "github",
    "scaleway",
    "dropbox",
]

INTEGRATION_TYPES: tuple[IntegrationType, ...] = (
    "cloudflare",
    "digitalocean",
    "hetzner",
    "hetzner_dns",
    "bunny",
    "vultr",
    "linode",
    "github",
    "scaleway",
    "dropbox",
)

Capability = Literal[
    "dns-provider", "vps-provider", "tunnel", "object-storage", "backup", "cicd"
]

AuthMethod = Literal[
    "email_and_global_key", "bearer_token", "api_key", "access_key_and_secret", "oauth2"
]

SSHAuthMethod = Literal["key", "password"]

VendorServerStatus = Literal["active", "pending", "off", "error"]

ScalewayRegion = Literal["fr-par", "nl-ams", "pl-waw"]


class IngressRuleData(TypedDict, total=False):
    """Ingress rule as sent to and received from Cloudflare."""

    hostname: str
    service: str


class DNSRecordData(TypedDict, total=False):
    """DNS record shape produced and consumed by every DNS adapter."""

    id: str
    zone_id: str
    type: str
    name: str
    content: str
    proxied: bool
    ttl: int
    created_on: str
    modified_on: str
