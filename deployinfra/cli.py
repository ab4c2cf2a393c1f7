#!/usr/bin/env python3
"""Provision servers, tunnels and DNS across cloud vendors.

Credentials come from the environment or a .env file (see config.py).

Usage: uv run deployinfra <noun> <verb> [options]

Examples:
    uv run deployinfra integration add cloudflare
    uv run deployinfra dns zones cloudflare
    uv run deployinfra server create hetzner fsn1 cx22 --name web-1 --tunnel-zone example.com
    uv run deployinfra server provision web-1
    uv run deployinfra tunnel add-route web-1 app.example.com --port 8000
"""

import asyncio
from contextlib import aclosing
from pathlib import Path

import cyclopts
from rich import print

from .accounts import DropboxProvider, dropbox_authorization_url
from .cloudflare import CloudflareProvider
from .config import credentials_from_env, load_settings
from .errors import ProviderError, ServerLifecycleError, ValidationError
from .models import Integration, TunnelRecord, integrations_with
from .providers import get_dns_provider, get_server_provider, get_storage_provider, get_tunnel_provider
from .server import AnsibleRunner, ServerCoordinator, TunnelRequest, load_local_ssh_key
from .storage import backup_settings, remove_backup_env, write_backup_env
from .store import JSONStore
from .tunnels import validate_tunnel_id
from .types import IntegrationType
from .utils import error, log, setup_logging, warn
from .validation import validate_integration

app = cyclopts.App(
    name="deployinfra", help="Provision servers, tunnels and DNS across cloud vendors", sort_key=None
)

integration_app = cyclopts.App(name="integration", help="Manage vendor integrations", sort_key=1)
server_app = cyclopts.App(name="server", help="Create, provision and delete servers", sort_key=2)
tunnel_app = cyclopts.App(name="tunnel", help="Manage SSH tunnels and their routes", sort_key=3)
dns_app = cyclopts.App(name="dns", help="Manage DNS zones and records", sort_key=4)
storage_app = cyclopts.App(name="storage", help="Object storage buckets and backups", sort_key=5)

app.command(integration_app)
app.command(server_app)
app.command(tunnel_app)
app.command(dns_app)
app.command(storage_app)


def _store() -> JSONStore:
    return JSONStore(load_settings().state_dir)


def _coordinator() -> ServerCoordinator:
    settings = load_settings()
    return ServerCoordinator(JSONStore(settings.state_dir), AnsibleRunner(settings.playbook_dir))


def _integrations() -> list[Integration]:
    return [Integration.from_dict(d) for d in _store().all("integration")]


def _integration(id_or_type: str) -> Integration:
    """Look up an integration by id, or the first one of a vendor type."""
    data = _store().get("integration", id_or_type)
    if data is not None:
        return Integration.from_dict(data)
    for integration in _integrations():
        if integration.type == id_or_type:
            return integration
    error(f"No integration found for '{id_or_type}', add one with 'deployinfra integration add'")


def _print_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    print("  " + "  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    print("  " + "  ".join("-" * w for w in widths))
    for row in rows:
        print("  " + "  ".join(c.ljust(w) for c, w in zip(row, widths)))


# Integrations


@integration_app.command(name="add")
def add_integration(integration_type: IntegrationType, *, no_validate: bool = False):
    """Add an integration using credentials from the environment.

    :param integration_type: Vendor type, e.g. cloudflare, hetzner, scaleway
    :param no_validate: Save without probing the vendor
    """
    integration = credentials_from_env(integration_type)
    if not no_validate:
        credentials = asyncio.run(validate_integration(integration))
        integration.set_credentials(credentials)
    _store().set("integration", integration.id, integration.to_dict())
    log(f"Saved {integration.display_name} integration '{integration.id}'")
    print(f"  Capabilities: {', '.join(integration.capabilities)}")


@integration_app.command(name="list")
def list_integrations():
    """List saved integrations."""
    integrations = _integrations()
    if not integrations:
        log("No integrations saved")
        return
    rows = [
        [i.id, i.display_name, ", ".join(i.capabilities), "yes" if i.is_configured else "no"]
        for i in integrations
    ]
    _print_table(["ID", "VENDOR", "CAPABILITIES", "CONFIGURED"], rows)


@integration_app.command(name="remove")
def remove_integration(integration_id: str):
    """Remove a saved integration.

    :param integration_id: Integration id
    """
    store = _store()
    if store.get("integration", integration_id) is None:
        error(f"Integration not found: '{integration_id}'")
    store.delete("integration", integration_id)
    log(f"Removed integration '{integration_id}'")


@integration_app.command(name="check")
def check_integration(target: str):
    """Re-validate an integration's credentials against its vendor.

    :param target: Integration id or vendor type
    """
    integration = _integration(target)
    asyncio.run(validate_integration(integration, derive_r2=False))
    log(f"{integration.display_name} credentials are valid")


@integration_app.command(name="dropbox-auth")
def dropbox_auth(app_key: str, app_secret: str, *, code: str | None = None):
    """Authorize a Dropbox app for backups.

    Without ``--code``, prints the URL to open. With it, exchanges the code
    for a refresh token to put in DROPBOX_REFRESH_TOKEN.

    :param code: Authorization code shown by Dropbox after approval
    """
    if code is None:
        print("Open this URL, approve the app, then re-run with --code:")
        print(f"  {dropbox_authorization_url(app_key)}")
        return

    async def exchange() -> str:
        async with aclosing(DropboxProvider()) as provider:
            return await provider.exchange_code(code, app_key, app_secret)

    refresh_token = asyncio.run(exchange())
    print(f"DROPBOX_REFRESH_TOKEN={refresh_token}")


# DNS


@dns_app.command(name="zones")
def list_zones(target: str):
    """List DNS zones.

    :param target: Integration id or vendor type
    """
    integration = _integration(target)

    async def fetch():
        async with aclosing(get_dns_provider(integration)) as provider:
            return await provider.list_zones()

    zones = asyncio.run(fetch())
    if not zones:
        log(f"No zones found at {integration.display_name}")
        return
    _print_table(["ID", "NAME", "STATUS"], [[z.id, z.name, z.status] for z in zones])


@dns_app.command(name="records")
def list_records(target: str, zone_id: str, *, type: str | None = None, name: str | None = None):
    """List DNS records in a zone.

    :param target: Integration id or vendor type
    :param zone_id: Zone id (the domain name for DigitalOcean and Vultr)
    :param type: Only records of this type
    :param name: Only records with this name
    """
    integration = _integration(target)

    async def fetch():
        async with aclosing(get_dns_provider(integration)) as provider:
            return await provider.list_dns_records(zone_id, type=type, name=name)

    records = asyncio.run(fetch())
    rows = [
        [r.id, r.type, r.name, r.content, "tunnel" if r.is_tunnel_record else ""] for r in records
    ]
    if not rows:
        log("No matching records")
        return
    _print_table(["ID", "TYPE", "NAME", "CONTENT", ""], rows)


@dns_app.command(name="create")
def create_record(
    target: str,
    zone_id: str,
    type: str,
    name: str,
    content: str,
    *,
    proxied: bool = False,
    ttl: int | None = None,
):
    """Create a DNS record.

    :param target: Integration id or vendor type
    :param proxied: Proxy through Cloudflare (Cloudflare only)
    :param ttl: Time to live in seconds (vendor default if omitted)
    """
    integration = _integration(target)

    async def create():
        async with aclosing(get_dns_provider(integration)) as provider:
            kwargs = {"ttl": ttl} if ttl else {}
            return await provider.create_dns_record(zone_id, type.upper(), name, content, proxied=proxied, **kwargs)

    record = asyncio.run(create())
    print(f"  {record.type} {record.name} -> {record.content} ({record.id})")


@dns_app.command(name="delete")
def delete_record(target: str, zone_id: str, record_id: str):
    """Delete a DNS record.

    :param target: Integration id or vendor type
    """
    integration = _integration(target)

    async def delete():
        async with aclosing(get_dns_provider(integration)) as provider:
            await provider.delete_dns_record(zone_id, record_id)

    asyncio.run(delete())
    log(f"Deleted record '{record_id}'")


@dns_app.command(name="nameservers")
def check_nameservers(target: str, zone_id: str):
    """Check that a zone is delegated to the vendor's name servers.

    :param target: Integration id or vendor type
    """
    integration = _integration(target)
    if integration.type == "cloudflare":
        error("Cloudflare assigns name servers per zone, see the zone in the Cloudflare dashboard")

    async def check():
        async with aclosing(get_dns_provider(integration)) as provider:
            return await provider.check_nameservers(zone_id)

    delegated, live, expected = asyncio.run(check())
    print(f"{integration.display_name} name servers:")
    for ns in expected:
        print(f"  {ns}")
    print("Currently delegated to:")
    for ns in live or ["(none found)"]:
        print(f"  {ns}")
    if delegated:
        log("Zone is delegated correctly")
    else:
        warn("Zone is not delegated yet, update the name servers at your registrar")


# Tunnels


@tunnel_app.command(name="setup")
def setup_tunnel(server: str, zone_id: str, zone_name: str, *, subdomain: str = "ssh", integration: str = "cloudflare"):
    """Create a tunnel exposing a server's SSH port at ``{subdomain}.{zone_name}``.

    :param server: Server id or name
    :param zone_id: Cloudflare zone id
    :param zone_name: Zone domain, e.g. example.com
    :param subdomain: SSH hostname label
    :param integration: Cloudflare integration id
    """
    cloudflare = _integration(integration)
    request = TunnelRequest(cloudflare.id, zone_id, zone_name, subdomain)
    record = asyncio.run(_coordinator().add_tunnel(server, request))
    log(f"Tunnel ready: ssh via '{record.ssh_hostname}'")


@tunnel_app.command(name="teardown")
def teardown_tunnel(record_id: str):
    """Delete a tunnel and its DNS record, including orphaned ones.

    :param record_id: Local tunnel record id (see 'tunnel list')
    """
    asyncio.run(_coordinator().remove_tunnel(record_id))


@tunnel_app.command(name="list")
def list_tunnels(*, integration: str = "cloudflare"):
    """List tunnels at Cloudflare alongside local tunnel records.

    :param integration: Cloudflare integration id
    """
    cloudflare = _integration(integration)

    async def fetch():
        async with aclosing(get_tunnel_provider(cloudflare)) as provider:
            return await provider.list_tunnels()

    tunnels = asyncio.run(fetch())
    records = {r["tunnel_id"]: TunnelRecord.from_dict(r) for r in _store().all("tunnel")}
    if not tunnels and not records:
        log("No tunnels found")
        return
    rows = []
    for t in tunnels:
        record = records.pop(t.id, None)
        hostname = record.ssh_hostname if record else ""
        owner = (record.server_id or "orphaned") if record else "not managed"
        rows.append([t.id, t.name, t.status or "", hostname, owner])
    for record in records.values():
        rows.append([record.tunnel_id, record.name, "missing", record.ssh_hostname, record.server_id or "orphaned"])
    _print_table(["TUNNEL ID", "NAME", "STATUS", "SSH HOSTNAME", "SERVER"], rows)


def _tunnel_id_for(target: str) -> str:
    try:
        validate_tunnel_id(target)
        return target
    except ValidationError:
        server = _coordinator().get_server(target)
        record = _coordinator().get_tunnel(server)
        if record is None:
            error(f"Server '{target}' has no tunnel")
        return record.tunnel_id


@tunnel_app.command(name="add-route")
def add_route(target: str, hostname: str, *, port: int = 80, integration: str = "cloudflare"):
    """Route a public hostname to a local HTTP port through a tunnel.

    :param target: Tunnel id, or server id or name
    :param hostname: Public hostname, e.g. app.example.com
    :param port: Local HTTP port on the server
    :param integration: Cloudflare integration id
    """
    tunnel_id = _tunnel_id_for(target)
    cloudflare = _integration(integration)

    async def add():
        async with aclosing(CloudflareProvider.from_integration(cloudflare)) as provider:
            return await provider.add_http_route(tunnel_id, hostname, port)

    if not asyncio.run(add()):
        log("Nothing to do")


@tunnel_app.command(name="remove-route")
def remove_route(target: str, hostname: str, *, integration: str = "cloudflare"):
    """Remove a hostname route from a tunnel.

    :param target: Tunnel id, or server id or name
    :param integration: Cloudflare integration id
    """
    tunnel_id = _tunnel_id_for(target)
    cloudflare = _integration(integration)

    async def remove():
        async with aclosing(CloudflareProvider.from_integration(cloudflare)) as provider:
            return await provider.remove_http_route(tunnel_id, hostname)

    if not asyncio.run(remove()):
        log("Nothing to do")


# Servers


def _tunnel_request(zone_name: str | None, zone_id: str | None, subdomain: str, integration: str) -> TunnelRequest | None:
    if zone_name is None:
        return None
    if zone_id is None:
        error("--tunnel-zone-id is required with --tunnel-zone")
    return TunnelRequest(_integration(integration).id, zone_id, zone_name, subdomain)


@server_app.command(name="create")
def create_server(
    target: str,
    region: str,
    size: str,
    *,
    name: str | None = None,
    tunnel_zone: str | None = None,
    tunnel_zone_id: str | None = None,
    tunnel_subdomain: str = "ssh",
    tunnel_integration: str = "cloudflare",
    no_provision: bool = False,
):
    """Create a server at a VPS vendor, then provision it.

    :param target: VPS integration id or vendor type (hetzner, digitalocean, vultr, linode)
    :param region: Region id (see 'server regions')
    :param size: Size id (see 'server sizes')
    :param name: Server name
    :param tunnel_zone: Zone for an SSH tunnel hostname, e.g. example.com
    :param tunnel_zone_id: Cloudflare zone id of --tunnel-zone
    :param tunnel_subdomain: SSH hostname label
    :param no_provision: Only create the server
    """
    integration = _integration(target)
    private_key, public_key = load_local_ssh_key()
    tunnel = _tunnel_request(tunnel_zone, tunnel_zone_id, tunnel_subdomain, tunnel_integration)
    coordinator = _coordinator()

    async def create():
        server = await coordinator.create_server_from_integration(
            integration.id,
            region,
            size,
            ssh_private_key=private_key,
            ssh_public_key=public_key,
            name=name,
            tunnel=tunnel,
        )
        if not no_provision:
            server = await coordinator.provision(server.id)
        return server

    server = asyncio.run(create())
    print(f"  Server: {server.name or server.id} ({server.status.value})")
    if server.host:
        print(f"  SSH: ssh {server.username}@{server.host}")


@server_app.command(name="add")
def add_server(
    host: str,
    username: str,
    *,
    name: str | None = None,
    port: int = 22,
    key_file: Path | None = None,
    password: str | None = None,
    sudo_password: str | None = None,
    tunnel_zone: str | None = None,
    tunnel_zone_id: str | None = None,
    tunnel_subdomain: str = "ssh",
    tunnel_integration: str = "cloudflare",
    no_provision: bool = False,
):
    """Add an existing host, then provision it.

    :param host: IP address or hostname
    :param username: SSH user
    :param key_file: Private key file (its .pub must sit next to it)
    :param password: SSH password, when not using a key
    :param sudo_password: Sudo password, defaults to the SSH password
    """
    private_key = public_key = None
    if key_file is not None:
        private_key = key_file.read_text()
        pub = key_file.with_name(key_file.name + ".pub")
        public_key = pub.read_text().strip() if pub.exists() else None
    elif password is None:
        private_key, public_key = load_local_ssh_key()
    tunnel = _tunnel_request(tunnel_zone, tunnel_zone_id, tunnel_subdomain, tunnel_integration)
    coordinator = _coordinator()

    async def add():
        server = await coordinator.create_custom_server(
            host,
            username,
            name=name,
            port=port,
            ssh_private_key=private_key,
            ssh_public_key=public_key,
            password=password,
            sudo_password=sudo_password,
            tunnel=tunnel,
        )
        if not no_provision:
            server = await coordinator.provision(server.id)
        return server

    server = asyncio.run(add())
    print(f"  Server: {server.name or server.host} ({server.status.value})")


@server_app.command(name="provision")
def provision_server(target: str):
    """Provision a created server.

    :param target: Server id or name
    """
    server = asyncio.run(_coordinator().provision(target))
    print(f"  Server: {server.name or server.host} ({server.status.value}, {server.architecture})")


@server_app.command(name="retry")
def retry_server(target: str):
    """Retry provisioning of a failed server.

    :param target: Server id or name
    """
    server = asyncio.run(_coordinator().retry(target))
    print(f"  Server: {server.name or server.host} ({server.status.value})")


@server_app.command(name="delete")
def delete_server(target: str, *, force: bool = False):
    """Delete a server, its tunnel and the vendor resource.

    :param target: Server id or name
    :param force: Continue if the tunnel cannot be deleted, leaving it orphaned
    """
    asyncio.run(_coordinator().delete_server(target, accept_orphans=force))


@server_app.command(name="list")
def list_servers():
    """List servers."""
    coordinator = _coordinator()
    servers = coordinator.list_servers()
    if not servers:
        log("No servers saved")
        return
    rows = []
    for s in servers:
        tunnel = coordinator.get_tunnel(s)
        rows.append(
            [
                s.name or "-",
                s.connection_host(tunnel) or "-",
                s.status.value,
                s.architecture or "-",
                s.id,
            ]
        )
    _print_table(["NAME", "HOST", "STATUS", "ARCH", "ID"], rows)


@server_app.command(name="regions")
def list_regions(target: str):
    """List regions of a VPS vendor.

    :param target: VPS integration id or vendor type
    """
    integration = _integration(target)

    async def fetch():
        async with aclosing(get_server_provider(integration)) as provider:
            return await provider.list_regions()

    regions = asyncio.run(fetch())
    _print_table(
        ["ID", "NAME", "COUNTRY"],
        [[r.id, r.name, r.country or ""] for r in regions if r.available],
    )


@server_app.command(name="sizes")
def list_sizes(target: str):
    """List server sizes of a VPS vendor.

    :param target: VPS integration id or vendor type
    """
    integration = _integration(target)

    async def fetch():
        async with aclosing(get_server_provider(integration)) as provider:
            return await provider.list_sizes()

    sizes = asyncio.run(fetch())
    rows = [
        [
            s.id,
            str(s.vcpus),
            f"{s.memory_mb / 1024:g} GB",
            f"{s.disk_gb} GB",
            f"${s.price_monthly:.2f}" if s.price_monthly is not None else "",
        ]
        for s in sizes
    ]
    _print_table(["ID", "VCPUS", "MEMORY", "DISK", "MONTHLY"], rows)


# Storage


@storage_app.command(name="buckets")
def list_buckets(target: str = "scaleway"):
    """List Scaleway buckets.

    :param target: Scaleway integration id
    """
    integration = _integration(target)

    async def fetch():
        async with aclosing(get_storage_provider(integration)) as provider:
            return await provider.list_buckets()

    for name in asyncio.run(fetch()):
        print(f"  {name}")


@storage_app.command(name="create-bucket")
def create_bucket(name: str, *, target: str = "scaleway"):
    """Create a Scaleway bucket, or an R2 bucket with a Cloudflare target.

    :param name: Bucket name (globally unique)
    :param target: Scaleway or Cloudflare integration id
    """
    integration = _integration(target)

    async def create():
        if integration.type == "cloudflare":
            async with aclosing(CloudflareProvider.from_integration(integration)) as provider:
                await provider.create_r2_bucket(await provider.get_account_id(), name)
            return
        async with aclosing(get_storage_provider(integration)) as provider:
            await provider.create_bucket(name)

    asyncio.run(create())


@storage_app.command(name="r2-buckets")
def list_r2_buckets(*, target: str = "cloudflare", s3: bool = False):
    """List R2 buckets of the Cloudflare account.

    :param target: Cloudflare integration id
    :param s3: List through the S3 API with the derived R2 keys instead
    """
    integration = _integration(target)
    creds = integration.credentials

    async def fetch():
        async with aclosing(CloudflareProvider.from_integration(integration)) as provider:
            account_id = await provider.get_account_id()
            if not s3:
                return await provider.list_r2_buckets(account_id)
            if not creds.has_r2_credentials:
                error("No R2 keys derived yet, run 'deployinfra integration add cloudflare'")
            return await provider.verify_r2_credentials(
                account_id, creds.r2_access_key_id, creds.r2_secret_access_key
            )

    for name in asyncio.run(fetch()):
        print(f"  {name}")


@storage_app.command(name="backup-env")
def backup_env(project_slug: str, *, target: str | None = None, env_file: Path = Path(".env"), remove: bool = False):
    """Write (or remove) the BACKUP_* settings for a project in an env file.

    :param project_slug: Project name used as the backup path
    :param target: Backup integration id or vendor type (default: first backup integration)
    :param env_file: Env file to update
    :param remove: Remove the backup settings instead
    """
    if remove:
        remove_backup_env(env_file)
        log(f"Removed backup settings from '{env_file}'")
        return

    if target is None:
        candidates = integrations_with("backup", _integrations())
        if not candidates:
            error("No backup integration saved (cloudflare, scaleway or dropbox)")
        integration = candidates[0]
    else:
        integration = _integration(target)

    account_id = None
    if integration.type == "cloudflare":

        async def account():
            async with aclosing(CloudflareProvider.from_integration(integration)) as provider:
                return await provider.get_account_id()

        account_id = asyncio.run(account())
    write_backup_env(env_file, backup_settings(integration, project_slug, account_id))


def _report(e: ProviderError | ServerLifecycleError | ValidationError) -> None:
    message = e.description
    reason = getattr(e, "failure_reason", None)
    if reason and reason != message:
        message += f"\n  {reason}"
    if e.recovery_suggestion:
        message += f"\n  {e.recovery_suggestion}"
    error(message)


def main():
    settings = load_settings()
    setup_logging(settings.log_level)
    try:
        app()
    except (ProviderError, ServerLifecycleError, ValidationError) as e:
        _report(e)


if __name__ == "__main__":
    main()
