"""Tunnel + DNS sagas for SSH access to servers.

Creating a tunnel touches two independent remote resources (the tunnel and a
CNAME record). ``setup_tunnel_for_server`` deletes the tunnel again if any
later step fails, so a failed setup leaves nothing behind. Cancellation does
not trigger that rollback.
"""

import re

from .errors import CloudflareError, ValidationError
from .ingress import ssh_ingress
from .models import TunnelRecord
from .providers import TunnelProvider
from .utils import log, sanitize_hostname, warn

TUNNEL_ID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
ZONE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]$")
SUBDOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
TUNNEL_NAME_PREFIX = "deployinfra-"
MAX_LABEL_LENGTH = 63


def validate_tunnel_id(tunnel_id: str) -> None:
    if not TUNNEL_ID_PATTERN.match(tunnel_id):
        raise ValidationError(
            "tunnel_id",
            f"Invalid tunnel ID format: '{tunnel_id}'",
            "Tunnel IDs are UUIDs such as 'c1744f8b-faa1-48a4-9e5c-02ac921467fa'.",
        )


def validate_zone_name(zone_name: str) -> None:
    if not zone_name or any(c.isspace() for c in zone_name) or not ZONE_NAME_PATTERN.match(zone_name):
        raise ValidationError(
            "zone_name",
            f"Invalid zone name: '{zone_name}'",
            "Use a bare domain such as 'example.com'.",
        )


def validate_subdomain(subdomain: str) -> None:
    if not subdomain or len(subdomain) > MAX_LABEL_LENGTH or not SUBDOMAIN_PATTERN.match(subdomain):
        raise ValidationError(
            "subdomain",
            f"Invalid subdomain: '{subdomain}'",
            "Use 1-63 letters, digits or hyphens, not starting or ending with a hyphen.",
        )


def tunnel_name(server_name: str) -> str:
    """Tunnel name derived from a server name, e.g. ``deployinfra-web-1``.

    :raises ValidationError: If the name is empty after sanitizing or too long
    """
    slug = sanitize_hostname(server_name)
    if not slug:
        raise ValidationError("server_name", f"Server name '{server_name}' has no usable characters")
    name = f"{TUNNEL_NAME_PREFIX}{slug}"
    if len(name) > MAX_LABEL_LENGTH:
        raise ValidationError(
            "server_name",
            f"Tunnel name '{name}' is longer than {MAX_LABEL_LENGTH} characters",
            "Choose a shorter server name.",
        )
    return name


async def setup_tunnel_for_server(
    provider: TunnelProvider,
    server_name: str,
    zone_id: str,
    zone_name: str,
    subdomain: str,
    *,
    integration_id: str | None = None,
    server_id: str | None = None,
) -> TunnelRecord:
    """Create a tunnel routing ``{subdomain}.{zone_name}`` to the server's SSH port.

    Steps: create tunnel, configure SSH ingress, check the hostname is free,
    create a proxied CNAME. If any step after the first fails, the tunnel is
    deleted and the original error is raised.

    :raises ValidationError: Before any remote call, on malformed input
    :raises CloudflareError: ``record_conflict`` if the hostname already has a record
    """
    validate_zone_name(zone_name)
    validate_subdomain(subdomain)
    name = tunnel_name(server_name)
    hostname = f"{subdomain}.{zone_name}"

    tunnel = await provider.create_tunnel(name)
    try:
        token = tunnel.token or await provider.get_tunnel_token(tunnel.id)
        await provider.configure_tunnel_ingress(tunnel.id, ssh_ingress(hostname))

        existing = await provider.list_dns_records(zone_id, name=hostname)
        if existing:
            raise CloudflareError("record_conflict", f"DNS record {hostname} already exists")

        # Last remote step, so the record itself is never rolled back
        record = await provider.create_dns_record(
            zone_id, "CNAME", hostname, tunnel.cname_target, proxied=True
        )
    except Exception:
        log(f"Tunnel setup for '{hostname}' failed, deleting tunnel '{tunnel.id}'")
        try:
            await provider.delete_tunnel(tunnel.id)
        except Exception as cleanup_error:
            warn(f"Could not delete tunnel '{tunnel.id}' after failed setup: {cleanup_error}")
        raise

    log(f"Tunnel '{name}' routes '{hostname}' to SSH")
    return TunnelRecord(
        tunnel_id=tunnel.id,
        name=tunnel.name,
        token=token,
        zone_id=zone_id,
        zone_name=zone_name,
        subdomain=subdomain,
        dns_record_id=record.id,
        integration_id=integration_id,
        server_id=server_id,
    )


async def remove_tunnel_for_server(provider: TunnelProvider, record: TunnelRecord) -> None:
    """Delete the CNAME record and the tunnel.

    Both deletions are attempted even if the first one fails.

    :raises ProviderError: The first failure, after both attempts
    """
    errors: list[Exception] = []

    try:
        await provider.delete_dns_record(record.zone_id, record.dns_record_id)
    except Exception as e:
        warn(f"Failed to delete DNS record '{record.ssh_hostname}': {e}")
        errors.append(e)

    try:
        await provider.delete_tunnel(record.tunnel_id)
    except Exception as e:
        warn(f"Failed to delete tunnel '{record.tunnel_id}': {e}")
        errors.append(e)

    if errors:
        raise errors[0]
    log(f"Removed tunnel '{record.name}' and DNS record '{record.ssh_hostname}'")
