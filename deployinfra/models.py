"""Data model: integrations and their credentials, DNS, tunnels and servers."""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum

from .types import AuthMethod, Capability, IntegrationType

TUNNEL_CNAME_SUFFIX = "cfargotunnel.com"
CATCH_ALL_SERVICE = "http_status:404"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IntegrationMetadata:
    display_name: str
    capabilities: tuple[Capability, ...]
    auth_method: AuthMethod
    api_base_url: str


INTEGRATION_METADATA: dict[IntegrationType, IntegrationMetadata] = {
    "cloudflare": IntegrationMetadata(
        "Cloudflare",
        ("dns-provider", "tunnel", "object-storage", "backup"),
        "email_and_global_key",
        "https://api.cloudflare.com/client/v4",
    ),
    "digitalocean": IntegrationMetadata(
        "DigitalOcean",
        ("dns-provider", "vps-provider"),
        "bearer_token",
        "https://api.digitalocean.com/v2",
    ),
    "hetzner": IntegrationMetadata(
        "Hetzner Cloud", ("vps-provider",), "bearer_token", "https://api.hetzner.cloud/v1"
    ),
    "hetzner_dns": IntegrationMetadata(
        "Hetzner DNS", ("dns-provider",), "bearer_token", "https://dns.hetzner.com/api/v1"
    ),
    "bunny": IntegrationMetadata(
        "Bunny", ("dns-provider",), "api_key", "https://api.bunny.net"
    ),
    "vultr": IntegrationMetadata(
        "Vultr",
        ("dns-provider", "vps-provider"),
        "bearer_token",
        "https://api.vultr.com/v2",
    ),
    "linode": IntegrationMetadata(
        "Linode",
        ("dns-provider", "vps-provider"),
        "bearer_token",
        "https://api.linode.com/v4",
    ),
    "github": IntegrationMetadata(
        "GitHub", ("cicd",), "bearer_token", "https://api.github.com"
    ),
    # Scaleway endpoints are regional, see storage.scaleway_endpoint()
    "scaleway": IntegrationMetadata(
        "Scaleway", ("object-storage", "backup"), "access_key_and_secret", ""
    ),
    "dropbox": IntegrationMetadata(
        "Dropbox", ("backup",), "oauth2", "https://api.dropboxapi.com/2"
    ),
}

# Single source of truth for "is this integration usable"
REQUIRED_CREDENTIAL_FIELDS: dict[AuthMethod, tuple[str, ...]] = {
    "email_and_global_key": ("email", "global_api_key"),
    "bearer_token": ("token",),
    "api_key": ("api_key",),
    "access_key_and_secret": ("access_key", "secret_key"),
    "oauth2": ("dropbox_app_key", "dropbox_app_secret", "dropbox_refresh_token"),
}

PRIMARY_CREDENTIAL_FIELD: dict[AuthMethod, str] = {
    "email_and_global_key": "global_api_key",
    "bearer_token": "token",
    "api_key": "api_key",
    "access_key_and_secret": "access_key",
    "oauth2": "dropbox_refresh_token",
}


@dataclass
class Credentials:
    """Flat credential payload wide enough for every vendor.

    Only the fields relevant to the owning integration type are meaningful.
    """

    email: str | None = None
    global_api_key: str | None = None
    token: str | None = None
    api_key: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    scaleway_region: str | None = None
    dropbox_app_key: str | None = None
    dropbox_app_secret: str | None = None
    dropbox_refresh_token: str | None = None

    def is_valid(self, integration_type: IntegrationType) -> bool:
        auth_method = INTEGRATION_METADATA[integration_type].auth_method
        return all(getattr(self, name) for name in REQUIRED_CREDENTIAL_FIELDS[auth_method])

    def primary_token(self, integration_type: IntegrationType) -> str | None:
        auth_method = INTEGRATION_METADATA[integration_type].auth_method
        return getattr(self, PRIMARY_CREDENTIAL_FIELD[auth_method])

    @property
    def has_r2_credentials(self) -> bool:
        return bool(self.r2_access_key_id and self.r2_secret_access_key)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "Credentials":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Integration:
    """A configured connection to one vendor."""

    type: IntegrationType
    credentials: Credentials = field(default_factory=Credentials)
    capabilities: list[Capability] | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.capabilities is None:
            self.capabilities = list(INTEGRATION_METADATA[self.type].capabilities)

    @property
    def metadata(self) -> IntegrationMetadata:
        return INTEGRATION_METADATA[self.type]

    @property
    def display_name(self) -> str:
        return self.metadata.display_name

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_valid(self.type)

    def supports(self, capability: Capability) -> bool:
        return capability in (self.capabilities or [])

    def set_credentials(self, credentials: Credentials) -> None:
        self.credentials = credentials
        self.updated_at = _now()

    def update_credentials(self, **values: str | None) -> None:
        """Replace individual credential fields, e.g. after deriving R2 keys."""
        for name, value in values.items():
            if not hasattr(self.credentials, name):
                raise AttributeError(f"Unknown credential field: '{name}'")
            setattr(self.credentials, name, value)
        self.updated_at = _now()

    def set_capabilities(self, capabilities: list[Capability]) -> None:
        self.capabilities = list(capabilities)
        self.updated_at = _now()

    # Factory functions populate only the fields relevant to their vendor

    @classmethod
    def cloudflare(cls, email: str, global_api_key: str) -> "Integration":
        return cls("cloudflare", Credentials(email=email, global_api_key=global_api_key))

    @classmethod
    def digitalocean(cls, token: str) -> "Integration":
        return cls("digitalocean", Credentials(token=token))

    @classmethod
    def hetzner(cls, token: str) -> "Integration":
        return cls("hetzner", Credentials(token=token))

    @classmethod
    def hetzner_dns(cls, token: str) -> "Integration":
        return cls("hetzner_dns", Credentials(token=token))

    @classmethod
    def bunny(cls, api_key: str) -> "Integration":
        return cls("bunny", Credentials(api_key=api_key))

    @classmethod
    def vultr(cls, token: str) -> "Integration":
        return cls("vultr", Credentials(token=token))

    @classmethod
    def linode(cls, token: str) -> "Integration":
        return cls("linode", Credentials(token=token))

    @classmethod
    def github(cls, token: str) -> "Integration":
        return cls("github", Credentials(token=token))

    @classmethod
    def scaleway(cls, access_key: str, secret_key: str, region: str = "fr-par") -> "Integration":
        return cls(
            "scaleway",
            Credentials(access_key=access_key, secret_key=secret_key, scaleway_region=region),
        )

    @classmethod
    def dropbox(cls, app_key: str, app_secret: str, refresh_token: str) -> "Integration":
        return cls(
            "dropbox",
            Credentials(
                dropbox_app_key=app_key,
                dropbox_app_secret=app_secret,
                dropbox_refresh_token=refresh_token,
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "capabilities": list(self.capabilities or []),
            "credentials": self.credentials.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Integration":
        return cls(
            type=data["type"],
            credentials=Credentials.from_dict(data.get("credentials", {})),
            capabilities=data.get("capabilities"),
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def integrations_with(capability: Capability, integrations: list[Integration]) -> list[Integration]:
    """Configured integrations that declare ``capability``."""
    return [i for i in integrations if i.supports(capability) and i.is_configured]


@dataclass
class DNSZone:
    id: str
    name: str
    status: str = "active"
    name_servers: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class DNSRecord:
    id: str
    type: str
    name: str
    content: str
    proxied: bool = False
    ttl: int = 1
    zone_id: str | None = None
    created_on: str | None = None
    modified_on: str | None = None

    @property
    def is_tunnel_record(self) -> bool:
        return self.content.rstrip(".").endswith(f".{TUNNEL_CNAME_SUFFIX}")

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class IngressRule:
    """Tunnel routing entry. A rule with no hostname is the catch-all."""

    hostname: str | None
    service: str

    @property
    def is_catch_all(self) -> bool:
        return self.hostname is None

    @classmethod
    def catch_all(cls) -> "IngressRule":
        return cls(None, CATCH_ALL_SERVICE)

    def to_dict(self) -> dict:
        if self.hostname is None:
            return {"service": self.service}
        return {"hostname": self.hostname, "service": self.service}

    @classmethod
    def from_dict(cls, data: dict) -> "IngressRule":
        return cls(data.get("hostname") or None, data["service"])


@dataclass
class TunnelInfo:
    """Tunnel as reported by Cloudflare."""

    id: str
    name: str
    token: str | None = None
    status: str | None = None
    created_at: str | None = None

    @property
    def cname_target(self) -> str:
        return f"{self.id}.{TUNNEL_CNAME_SUFFIX}"


@dataclass
class TunnelRecord:
    """Local bookkeeping for a tunnel created for a server."""

    tunnel_id: str
    name: str
    token: str
    zone_id: str
    zone_name: str
    subdomain: str
    dns_record_id: str
    integration_id: str | None = None
    server_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def ssh_hostname(self) -> str:
        return f"{self.subdomain}.{self.zone_name}"

    @property
    def cname_target(self) -> str:
        """FQDN form, with the trailing dot some DNS vendors require."""
        return f"{self.tunnel_id}.{TUNNEL_CNAME_SUFFIX}."

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TunnelRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ServerStatus(str, Enum):
    CREATED = "created"
    WAITING_FOR_IP = "waiting_for_ip"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"


@dataclass
class Server:
    """Target host driven through the lifecycle by ServerCoordinator."""

    name: str | None = None
    integration_id: str | None = None
    integration_server_id: str | None = None
    status: ServerStatus = ServerStatus.CREATED
    architecture: str | None = None
    username: str | None = None
    host: str | None = None
    port: int | None = None
    use_ssh_key: bool | None = None
    password: str | None = None
    sudo_password: str | None = None
    ssh_private_key: str | None = None
    ssh_public_key: str | None = None
    tunnel_id: str | None = None
    project_ids: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_managed(self) -> bool:
        return self.integration_id is not None and self.integration_server_id is not None

    @property
    def is_custom(self) -> bool:
        return self.integration_id is None

    @property
    def has_complete_config(self) -> bool:
        return self.username is not None and self.port is not None and self.use_ssh_key is not None

    @property
    def effective_sudo_password(self) -> str | None:
        return self.sudo_password or self.password

    def connection_host(self, tunnel: TunnelRecord | None = None) -> str | None:
        """Tunnel hostname once ready, otherwise the direct IP."""
        if tunnel is not None and self.status == ServerStatus.READY:
            return tunnel.ssh_hostname
        return self.host

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Server":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ServerStatus(values.get("status", "created"))
        return cls(**values)


@dataclass
class ServerRegion:
    id: str
    name: str
    country: str | None = None
    available: bool = True


@dataclass
class ServerSize:
    id: str
    vcpus: int
    memory_mb: int
    disk_gb: int
    price_monthly: float | None = None
    description: str | None = None


@dataclass
class VendorServer:
    """Server as reported by a VPS vendor, with normalized status."""

    id: str
    name: str
    status: str
    ipv4: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active" and bool(self.ipv4)


@dataclass
class PageInfo:
    page: int
    per_page: int
    total_pages: int
    total_count: int | None = None
