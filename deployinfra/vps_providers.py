"""VPS adapters for Hetzner Cloud, DigitalOcean, Vultr and Linode.

Every adapter maps its vendor's server status onto ``active | pending | off |
error`` and exposes the same lifecycle: regions, sizes, token probe, SSH key
upload, latest Debian image, create/get/delete and wait-until-active.
"""

import asyncio
import re
import secrets
from abc import ABC, abstractmethod

import httpx

from .api_client import APIClient, BaseProvider, body_message
from .dns_providers import DigitalOceanDNSAPI, LinodeAPI, VultrAPI, vultr_collect
from .errors import CloudProviderError
from .models import INTEGRATION_METADATA, Integration, ServerRegion, ServerSize, VendorServer
from .utils import log, ssh_key_fingerprint

SERVER_ACTIVE_TIMEOUT = 300
SERVER_POLL_INTERVAL = 5


def _version_key(text: str) -> int:
    digits = re.findall(r"\d+", text)
    return int(digits[0]) if digits else -1


class VPSAdapter(ABC):
    api_class: type[BaseProvider] = BaseProvider

    def __init__(self, token: str, *, http: httpx.AsyncClient | None = None):
        self.api = self.api_class(token)
        self.client = APIClient(self.api, http=http)

    @classmethod
    def from_integration(cls, integration: Integration, *, http: httpx.AsyncClient | None = None):
        token = integration.credentials.token
        if not token:
            raise CloudProviderError("invalid_credentials", service=integration.display_name)
        return cls(token, http=http)

    @property
    def service(self) -> str:
        return self.api.service

    async def aclose(self) -> None:
        await self.client.aclose()

    def should_retry(self, err: CloudProviderError) -> bool:
        return self.client.should_retry(err)

    async def validate_token(self) -> None:
        """Cheapest read-only call that fails on a bad token."""
        await self.list_regions()

    @abstractmethod
    async def list_regions(self) -> list[ServerRegion]: ...

    @abstractmethod
    async def list_sizes(self) -> list[ServerSize]: ...

    @abstractmethod
    async def get_server(self, server_id: str) -> VendorServer: ...

    async def wait_for_server_active(
        self,
        server_id: str,
        max_wait: int = SERVER_ACTIVE_TIMEOUT,
        poll_interval: float = SERVER_POLL_INTERVAL,
    ) -> VendorServer:
        """Poll until the server is active and has a public IPv4 address.

        :raises CloudProviderError: ``timeout`` after ``max_wait`` seconds, or
            ``server_creation_failed`` if the vendor reports an error state
        """
        attempts = max(1, int(max_wait // poll_interval)) if poll_interval else max(1, max_wait)
        for attempt in range(1, attempts + 1):
            server = await self.get_server(server_id)
            if server.is_active:
                log(f"Server '{server.name}' is active at '{server.ipv4}'")
                return server
            if server.status == "error":
                raise CloudProviderError(
                    "server_creation_failed", f"server '{server_id}' is in an error state", service=self.service
                )
            log(f"Waiting for server '{server_id}' ({server.status}, attempt {attempt}/{attempts})...")
            await asyncio.sleep(poll_interval)
        raise CloudProviderError(
            "timeout", f"server '{server_id}' not active after {max_wait}s", service=self.service
        )


# Hetzner Cloud


class HetznerCloudAPI(BaseProvider):
    base_url = "https://api.hetzner.cloud/v1/"
    error_class = CloudProviderError
    service = "Hetzner Cloud"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {self.token}"

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 422:
            raise self.error("unprocessable", body_message(data) or "Validation error", code=status)
        super().handle_http_status(status, data)


HETZNER_STATUS = {
    "running": "active",
    "initializing": "pending",
    "starting": "pending",
    "off": "off",
    "stopping": "off",
}


class HetznerVPSProvider(VPSAdapter):
    api_class = HetznerCloudAPI

    async def list_regions(self) -> list[ServerRegion]:
        data = await self.client.request("locations")
        return [
            ServerRegion(id=loc["name"], name=loc.get("city") or loc["description"], country=loc.get("country"))
            for loc in data.get("locations") or []
        ]

    async def list_sizes(self) -> list[ServerSize]:
        data = await self.client.request("server_types")
        sizes = []
        for t in data.get("server_types") or []:
            if t.get("deprecated"):
                continue
            prices = t.get("prices") or []
            price = float(prices[0]["price_monthly"]["gross"]) if prices else None
            sizes.append(
                ServerSize(
                    id=t["name"],
                    vcpus=t["cores"],
                    memory_mb=int(float(t["memory"]) * 1024),
                    disk_gb=t["disk"],
                    price_monthly=price,
                    description=t.get("description"),
                )
            )
        return sizes

    async def get_latest_debian_image(self) -> str:
        data = await self.client.request("images", params={"type": "system"})
        debian = [
            i for i in data.get("images") or []
            if i.get("os_flavor") == "debian" and str(i.get("os_version", "")).isdigit()
        ]
        if not debian:
            raise CloudProviderError("invalid_parameters", "No Debian image available", service=self.service)
        return max(debian, key=lambda i: int(i["os_version"]))["name"]

    async def upload_ssh_key(self, name: str, public_key: str) -> str:
        fingerprint = ssh_key_fingerprint(public_key)
        data = await self.client.request("ssh_keys")
        existing = next((k for k in data.get("ssh_keys") or [] if k["fingerprint"] == fingerprint), None)
        if existing:
            log(f"Found matching SSH key in Hetzner: '{existing['name']}'")
            return str(existing["id"])
        log("Uploading SSH key to Hetzner...")
        data = await self.client.request("ssh_keys", "POST", {"name": name, "public_key": public_key})
        return str(data["ssh_key"]["id"])

    @staticmethod
    def _parse_server(data: dict) -> VendorServer:
        ipv4 = ((data.get("public_net") or {}).get("ipv4") or {}).get("ip")
        return VendorServer(
            id=str(data["id"]),
            name=data["name"],
            status=HETZNER_STATUS.get(data.get("status", ""), "error"),
            ipv4=ipv4,
        )

    async def create_server(self, name: str, region: str, size: str, image: str, ssh_key_id: str) -> VendorServer:
        body = {
            "name": name,
            "location": region,
            "server_type": size,
            "image": image,
            "ssh_keys": [int(ssh_key_id)] if ssh_key_id.isdigit() else [ssh_key_id],
            "start_after_create": True,
        }
        data = await self.client.request("servers", "POST", body)
        return self._parse_server(data["server"])

    async def get_server(self, server_id: str) -> VendorServer:
        data = await self.client.request(f"servers/{server_id}")
        return self._parse_server(data["server"])

    async def delete_server(self, server_id: str) -> None:
        await self.client.request(f"servers/{server_id}", "DELETE")
        log(f"Deleted Hetzner server '{server_id}'")


# DigitalOcean


class DigitalOceanCloudAPI(DigitalOceanDNSAPI):
    error_class = CloudProviderError


DIGITALOCEAN_STATUS = {"active": "active", "new": "pending", "off": "off"}


class DigitalOceanVPSProvider(VPSAdapter):
    api_class = DigitalOceanCloudAPI

    async def list_regions(self) -> list[ServerRegion]:
        data = await self.client.request("regions", params={"per_page": 200})
        return [
            ServerRegion(id=r["slug"], name=r["name"], available=r.get("available", True))
            for r in data.get("regions") or []
        ]

    async def list_sizes(self) -> list[ServerSize]:
        data = await self.client.request("sizes", params={"per_page": 200})
        return [
            ServerSize(
                id=s["slug"],
                vcpus=s["vcpus"],
                memory_mb=s["memory"],
                disk_gb=s["disk"],
                price_monthly=s.get("price_monthly"),
                description=s.get("description"),
            )
            for s in data.get("sizes") or []
            if s.get("available", True)
        ]

    async def get_latest_debian_image(self) -> str:
        data = await self.client.request("images", params={"type": "distribution", "per_page": 100})
        debian = [
            i["slug"] for i in data.get("images") or []
            if (i.get("distribution") or "").lower() == "debian" and i.get("type") == "base" and i.get("slug")
        ]
        if not debian:
            raise CloudProviderError("invalid_parameters", "No Debian image available", service=self.service)
        return max(debian, key=_version_key)

    async def upload_ssh_key(self, name: str, public_key: str) -> str:
        fingerprint = ssh_key_fingerprint(public_key)
        data = await self.client.request("account/keys", params={"per_page": 200})
        existing = next((k for k in data.get("ssh_keys") or [] if k["fingerprint"] == fingerprint), None)
        if existing:
            log(f"Found matching SSH key in DigitalOcean: '{existing['name']}'")
            return str(existing["id"])
        log("Uploading SSH key to DigitalOcean...")
        data = await self.client.request("account/keys", "POST", {"name": name, "public_key": public_key})
        return str(data["ssh_key"]["id"])

    @staticmethod
    def _parse_server(data: dict) -> VendorServer:
        ipv4 = next(
            (n["ip_address"] for n in (data.get("networks") or {}).get("v4") or [] if n.get("type") == "public"),
            None,
        )
        return VendorServer(
            id=str(data["id"]),
            name=data["name"],
            status=DIGITALOCEAN_STATUS.get(data.get("status", ""), "error"),
            ipv4=ipv4,
        )

    async def create_server(self, name: str, region: str, size: str, image: str, ssh_key_id: str) -> VendorServer:
        body = {
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "ssh_keys": [int(ssh_key_id)] if ssh_key_id.isdigit() else [ssh_key_id],
            "backups": False,
            "ipv6": True,
            "monitoring": True,
        }
        data = await self.client.request("droplets", "POST", body)
        return self._parse_server(data["droplet"])

    async def get_server(self, server_id: str) -> VendorServer:
        data = await self.client.request(f"droplets/{server_id}")
        return self._parse_server(data["droplet"])

    async def delete_server(self, server_id: str) -> None:
        await self.client.request(f"droplets/{server_id}", "DELETE")
        log(f"Deleted DigitalOcean droplet '{server_id}'")


# Vultr


class VultrCloudAPI(VultrAPI):
    error_class = CloudProviderError


VULTR_PENDING = {"pending", "installing", "resizing"}


def vultr_status(status: str, power_status: str | None) -> str:
    if status == "active":
        return "active" if power_status == "running" else "off"
    if status in VULTR_PENDING:
        return "pending"
    if status in ("stopped", "suspended"):
        return "off"
    return "error"


class VultrVPSProvider(VPSAdapter):
    api_class = VultrCloudAPI

    async def validate_token(self) -> None:
        await self.client.request("instances", params={"per_page": 1})
        await self.client.request("domains", params={"per_page": 1})

    async def list_regions(self) -> list[ServerRegion]:
        regions = await vultr_collect(self.client, "regions", "regions")
        return [ServerRegion(id=r["id"], name=r.get("city", r["id"]), country=r.get("country")) for r in regions]

    async def list_sizes(self) -> list[ServerSize]:
        data = await self.client.request("plans", params={"type": "vc2", "per_page": 500})
        return [
            ServerSize(
                id=p["id"],
                vcpus=p["vcpu_count"],
                memory_mb=p["ram"],
                disk_gb=p["disk"],
                price_monthly=p.get("monthly_cost"),
            )
            for p in data.get("plans") or []
        ]

    async def get_latest_debian_image(self) -> str:
        systems = await vultr_collect(self.client, "os", "os")
        debian = [o for o in systems if (o.get("family") or "").lower() == "debian"]
        if not debian:
            raise CloudProviderError("invalid_parameters", "No Debian image available", service=self.service)
        return str(max(debian, key=lambda o: int(o["id"]))["id"])

    async def upload_ssh_key(self, name: str, public_key: str) -> str:
        keys = await vultr_collect(self.client, "ssh-keys", "ssh_keys")
        match = next((k for k in keys if k["ssh_key"].strip() == public_key.strip()), None)
        if match:
            log(f"Found matching SSH key in Vultr: '{match['name']}'")
            return match["id"]
        log("Uploading SSH key to Vultr...")
        data = await self.client.request("ssh-keys", "POST", {"name": name, "ssh_key": public_key})
        return data["ssh_key"]["id"]

    @staticmethod
    def _parse_server(data: dict) -> VendorServer:
        ip = data.get("main_ip")
        return VendorServer(
            id=data["id"],
            name=data.get("label", ""),
            status=vultr_status(data.get("status", ""), data.get("power_status")),
            ipv4=ip if ip and ip != "0.0.0.0" else None,
        )

    async def create_server(self, name: str, region: str, size: str, image: str, ssh_key_id: str) -> VendorServer:
        body = {
            "label": name,
            "hostname": name,
            "region": region,
            "plan": size,
            "os_id": int(image),
            "sshkey_id": [ssh_key_id],
            "backups": "disabled",
            "enable_ipv6": True,
        }
        data = await self.client.request("instances", "POST", body)
        return self._parse_server(data["instance"])

    async def get_server(self, server_id: str) -> VendorServer:
        data = await self.client.request(f"instances/{server_id}")
        return self._parse_server(data["instance"])

    async def delete_server(self, server_id: str) -> None:
        await self.client.request(f"instances/{server_id}", "DELETE")
        log(f"Deleted Vultr instance '{server_id}'")


# Linode


class LinodeCloudAPI(LinodeAPI):
    error_class = CloudProviderError


LINODE_PENDING = {"provisioning", "booting", "rebooting", "rebuilding", "migrating", "resizing"}


def linode_status(status: str) -> str:
    if status == "running":
        return "active"
    if status in LINODE_PENDING:
        return "pending"
    if status in ("offline", "shutting_down"):
        return "off"
    return "error"


class LinodeVPSProvider(VPSAdapter):
    """Linode has no SSH key ids at create time: keys are passed by content."""

    api_class = LinodeCloudAPI

    async def validate_token(self) -> None:
        await self.client.request("linode/instances", params={"page_size": 25})
        await self.client.request("domains", params={"page_size": 25})

    async def list_regions(self) -> list[ServerRegion]:
        data = await self.client.request("regions")
        return [
            ServerRegion(
                id=r["id"],
                name=r.get("label", r["id"]),
                country=r.get("country"),
                available=r.get("status", "ok") == "ok",
            )
            for r in data.get("data") or []
        ]

    async def list_sizes(self) -> list[ServerSize]:
        data = await self.client.request("linode/types")
        return [
            ServerSize(
                id=t["id"],
                vcpus=t["vcpus"],
                memory_mb=t["memory"],
                disk_gb=t["disk"] // 1024,
                price_monthly=(t.get("price") or {}).get("monthly"),
                description=t.get("label"),
            )
            for t in data.get("data") or []
        ]

    async def get_latest_debian_image(self) -> str:
        data = await self.client.request("images", params={"page_size": 500})
        debian = [
            i["id"] for i in data.get("data") or []
            if i["id"].startswith("linode/debian") and not i.get("deprecated")
        ]
        if not debian:
            raise CloudProviderError("invalid_parameters", "No Debian image available", service=self.service)
        return max(debian, key=_version_key)

    async def upload_ssh_key(self, name: str, public_key: str) -> str:
        """:return: The key content itself, used as ``authorized_keys`` on create"""
        data = await self.client.request("profile/sshkeys")
        if not any(k["ssh_key"].strip() == public_key.strip() for k in data.get("data") or []):
            log("Uploading SSH key to Linode...")
            await self.client.request("profile/sshkeys", "POST", {"label": name, "ssh_key": public_key})
        return public_key.strip()

    @staticmethod
    def _parse_server(data: dict) -> VendorServer:
        ipv4 = data.get("ipv4") or []
        return VendorServer(
            id=str(data["id"]),
            name=data.get("label", ""),
            status=linode_status(data.get("status", "")),
            ipv4=ipv4[0] if ipv4 else None,
        )

    async def create_server(self, name: str, region: str, size: str, image: str, ssh_key_id: str) -> VendorServer:
        body = {
            "label": name,
            "region": region,
            "type": size,
            "image": image,
            "root_pass": secrets.token_urlsafe(24),
            "authorized_keys": [ssh_key_id],
            "backups_enabled": False,
        }
        data = await self.client.request("linode/instances", "POST", body)
        return self._parse_server(data)

    async def get_server(self, server_id: str) -> VendorServer:
        data = await self.client.request(f"linode/instances/{server_id}")
        return self._parse_server(data)

    async def delete_server(self, server_id: str) -> None:
        await self.client.request(f"linode/instances/{server_id}", "DELETE")
        log(f"Deleted Linode instance '{server_id}'")


VPS_PROVIDERS: dict[str, type[VPSAdapter]] = {
    "digitalocean": DigitalOceanVPSProvider,
    "hetzner": HetznerVPSProvider,
    "linode": LinodeVPSProvider,
    "vultr": VultrVPSProvider,
}


def get_vps_provider(integration: Integration, *, http: httpx.AsyncClient | None = None) -> VPSAdapter:
    """VPS adapter for an integration.

    :raises CloudProviderError: ``unsupported_provider`` for non-VPS vendors
    """
    provider_class = VPS_PROVIDERS.get(integration.type)
    if provider_class is None:
        raise CloudProviderError("unsupported_provider", INTEGRATION_METADATA[integration.type].display_name)
    return provider_class.from_integration(integration, http=http)
