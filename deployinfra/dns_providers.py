"""DNS adapters for Hetzner DNS, DigitalOcean, Vultr, Linode and Bunny.

All adapters speak the same contract as ``CloudflareProvider`` for DNS:
``list_zones``, ``list_dns_records(zone_id, type, name, content)``,
``create_dns_record`` and ``delete_dns_record``. Records always come back
with fully qualified names. Vendors without server-side record filters are
filtered locally.
"""

import json
from abc import ABC, abstractmethod

import dns.asyncresolver
import dns.exception
import httpx

from .api_client import APIClient, BaseProvider, body_message, paginate
from .errors import DNSError
from .models import DNSRecord, DNSZone, Integration, PageInfo
from .utils import log

DEFAULT_TTL = 300


def fqdn(name: str, zone: str) -> str:
    """Fully qualified record name, without trailing dot."""
    name = name.rstrip(".").lower()
    zone = zone.rstrip(".").lower()
    if name in ("", "@") or name == zone:
        return zone
    if name.endswith(f".{zone}"):
        return name
    return f"{name}.{zone}"


def relative_name(name: str, zone: str, apex: str = "@") -> str:
    """Record name relative to ``zone``; the apex is spelled ``apex``."""
    full = fqdn(name, zone)
    zone = zone.rstrip(".").lower()
    if full == zone:
        return apex
    return full[: -len(zone) - 1]


def filter_records(
    records: list[DNSRecord],
    zone: str,
    type: str | None = None,
    name: str | None = None,
    content: str | None = None,
) -> list[DNSRecord]:
    result = records
    if type:
        result = [r for r in result if r.type.upper() == type.upper()]
    if name:
        wanted = fqdn(name, zone)
        result = [r for r in result if fqdn(r.name, zone) == wanted]
    if content:
        wanted_content = content.rstrip(".")
        result = [r for r in result if r.content.rstrip(".") == wanted_content]
    return result


async def resolve_nameservers(domain: str, nameserver: str = "8.8.8.8") -> list[str]:
    """Live NS set of ``domain`` as seen by a public resolver.

    :return: Sorted lowercase host names, empty if the lookup fails
    """
    try:
        resolver = dns.asyncresolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = await resolver.resolve(domain, "NS")
        return sorted(str(r.target).rstrip(".").lower() for r in answer)
    except dns.exception.DNSException:
        return []


class DNSAdapter(ABC):
    """Shared plumbing for token-authenticated DNS vendors."""

    api_class: type[BaseProvider] = BaseProvider
    NAME_SERVERS: list[str] = []
    APEX = "@"

    def __init__(self, token: str, *, http: httpx.AsyncClient | None = None):
        self.api = self.api_class(token)
        self.client = APIClient(self.api, http=http)
        self._zone_names: dict[str, str] = {}

    @classmethod
    def from_integration(cls, integration: Integration, *, http: httpx.AsyncClient | None = None):
        token = integration.credentials.primary_token(integration.type)
        if not token:
            raise DNSError("unauthorized", service=cls.api_class.service)
        return cls(token, http=http)

    async def aclose(self) -> None:
        await self.client.aclose()

    def should_retry(self, err: DNSError) -> bool:
        return self.client.should_retry(err)

    async def zone_name(self, zone_id: str) -> str:
        if zone_id not in self._zone_names:
            self._zone_names[zone_id] = await self._fetch_zone_name(zone_id)
        return self._zone_names[zone_id]

    async def _fetch_zone_name(self, zone_id: str) -> str:
        return zone_id

    @abstractmethod
    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]: ...

    async def list_dns_records(
        self,
        zone_id: str,
        type: str | None = None,
        name: str | None = None,
        content: str | None = None,
    ) -> list[DNSRecord]:
        zone = await self.zone_name(zone_id)
        records = await self._fetch_records(zone_id, zone)
        return filter_records(records, zone, type, name, content)

    async def expected_nameservers(self, zone_id: str) -> list[str]:
        return list(self.NAME_SERVERS)

    async def check_nameservers(self, zone_id: str) -> tuple[bool, list[str], list[str]]:
        """Compare the delegated NS set with the one the vendor assigned.

        :return: (delegated, live_nameservers, expected_nameservers)
        """
        zone = await self.zone_name(zone_id)
        expected = sorted(ns.rstrip(".").lower() for ns in await self.expected_nameservers(zone_id))
        live = await resolve_nameservers(zone)
        return bool(live) and set(expected) <= set(live), live, expected


# Hetzner DNS


class HetznerDNSAPI(BaseProvider):
    base_url = "https://dns.hetzner.com/api/v1/"
    error_class = DNSError
    service = "Hetzner DNS"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Auth-API-Token"] = self.token

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 422:
            raise self.error("unprocessable", body_message(data) or "Validation error", code=status)
        super().handle_http_status(status, data)


class HetznerDNSProvider(DNSAdapter):
    api_class = HetznerDNSAPI
    NAME_SERVERS = ["hydrogen.ns.hetzner.com", "oxygen.ns.hetzner.com", "helium.ns.hetzner.de"]

    async def list_zones(self) -> list[DNSZone]:
        async def fetch(page: int):
            data = await self.client.request("zones", params={"per_page": 100, "page": page})
            zones = [self._parse_zone(z) for z in data.get("zones") or []]
            return zones, self._page_info(data)

        try:
            return await paginate(fetch)
        except DNSError as e:
            if e.kind == "not_found":
                return []
            raise

    @staticmethod
    def _page_info(data: dict) -> PageInfo | None:
        pagination = (data.get("meta") or {}).get("pagination")
        if not pagination:
            return None
        return PageInfo(
            page=pagination.get("page", 1),
            per_page=pagination.get("per_page", 100),
            total_pages=pagination.get("last_page", 1),
            total_count=pagination.get("total_entries"),
        )

    @staticmethod
    def _parse_zone(data: dict) -> DNSZone:
        status = data.get("status", "")
        return DNSZone(
            id=data["id"],
            name=data["name"],
            status="active" if status == "verified" else status,
            name_servers=data.get("ns") or [],
        )

    async def _fetch_zone_name(self, zone_id: str) -> str:
        data = await self.client.request(f"zones/{zone_id}")
        return data["zone"]["name"]

    async def expected_nameservers(self, zone_id: str) -> list[str]:
        data = await self.client.request(f"zones/{zone_id}")
        return data["zone"].get("ns") or self.NAME_SERVERS

    def _parse_record(self, data: dict, zone: str) -> DNSRecord:
        return DNSRecord(
            id=data["id"],
            type=data["type"],
            name=fqdn(data["name"], zone),
            content=data["value"],
            ttl=data.get("ttl") or DEFAULT_TTL,
            zone_id=data.get("zone_id"),
            created_on=data.get("created"),
            modified_on=data.get("modified"),
        )

    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]:
        async def fetch(page: int):
            data = await self.client.request(
                "records", params={"zone_id": zone_id, "per_page": 100, "page": page}
            )
            records = [self._parse_record(r, zone) for r in data.get("records") or []]
            return records, self._page_info(data)

        return await paginate(fetch)

    async def create_dns_record(
        self, zone_id: str, type: str, name: str, content: str, proxied: bool = False, ttl: int = DEFAULT_TTL
    ) -> DNSRecord:
        zone = await self.zone_name(zone_id)
        body = {
            "name": relative_name(name, zone),
            "type": type,
            "value": content,
            "zone_id": zone_id,
            "ttl": ttl,
        }
        data = await self.client.request("records", "POST", body)
        record = self._parse_record(data["record"], zone)
        log(f"Created {type} record '{record.name}' on Hetzner DNS")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self.client.request(f"records/{record_id}", "DELETE")


# DigitalOcean


class DigitalOceanDNSAPI(BaseProvider):
    base_url = "https://api.digitalocean.com/v2/"
    error_class = DNSError
    service = "DigitalOcean"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {self.token}"

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 422:
            raise self.error("unprocessable", body_message(data) or "Validation error", code=status)
        super().handle_http_status(status, data)


def digitalocean_page_info(data: dict, page: int, per_page: int) -> PageInfo:
    """DigitalOcean only says whether a next page exists."""
    pages = (data.get("links") or {}).get("pages") or {}
    return PageInfo(page=page, per_page=per_page, total_pages=page + 1 if pages.get("next") else page)


class DigitalOceanDNSProvider(DNSAdapter):
    """Zone ids are the domain names themselves."""

    api_class = DigitalOceanDNSAPI
    NAME_SERVERS = ["ns1.digitalocean.com", "ns2.digitalocean.com", "ns3.digitalocean.com"]

    async def list_zones(self) -> list[DNSZone]:
        async def fetch(page: int):
            data = await self.client.request("domains", params={"per_page": 100, "page": page})
            zones = [DNSZone(id=d["name"], name=d["name"], name_servers=self.NAME_SERVERS) for d in data.get("domains") or []]
            return zones, digitalocean_page_info(data, page, 100)

        return await paginate(fetch)

    @staticmethod
    def _parse_record(data: dict, zone: str) -> DNSRecord:
        return DNSRecord(
            id=str(data["id"]),
            type=data["type"],
            name=fqdn(data["name"], zone),
            content=data.get("data", ""),
            ttl=data.get("ttl") or DEFAULT_TTL,
            zone_id=zone,
        )

    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]:
        async def fetch(page: int):
            data = await self.client.request(
                f"domains/{zone_id}/records", params={"per_page": 100, "page": page}
            )
            records = [self._parse_record(r, zone) for r in data.get("domain_records") or []]
            return records, digitalocean_page_info(data, page, 100)

        return await paginate(fetch)

    async def create_dns_record(
        self, zone_id: str, type: str, name: str, content: str, proxied: bool = False, ttl: int = 1800
    ) -> DNSRecord:
        body = {
            "type": type,
            "name": relative_name(name, zone_id),
            "data": content,
            "priority": None,
            "port": None,
            "ttl": ttl,
            "weight": None,
            "flags": None,
            "tag": None,
        }
        data = await self.client.request(f"domains/{zone_id}/records", "POST", body)
        record = self._parse_record(data["domain_record"], zone_id)
        log(f"Created {type} record '{record.name}' on DigitalOcean")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self.client.request(f"domains/{zone_id}/records/{record_id}", "DELETE")


# Vultr


class VultrAPI(BaseProvider):
    base_url = "https://api.vultr.com/v2/"
    error_class = DNSError
    service = "Vultr"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {self.token}"

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 403:
            raise self.error("forbidden", "Insufficient permissions for this operation", code=status)
        if status == 400:
            raise self.error("validation", body_message(data, "error") or "Bad request", code=status)
        super().handle_http_status(status, data)


async def vultr_collect(client: APIClient, endpoint: str, key: str) -> list[dict]:
    """Follow Vultr's cursor pagination (``meta.links.next``)."""
    items: list[dict] = []
    params: dict = {"per_page": 100}
    while True:
        data = await client.request(endpoint, params=params)
        items.extend(data.get(key) or [])
        cursor = ((data.get("meta") or {}).get("links") or {}).get("next")
        if not cursor:
            return items
        params = {"per_page": 100, "cursor": cursor}


class VultrDNSProvider(DNSAdapter):
    """Zone ids are the domain names themselves."""

    api_class = VultrAPI
    NAME_SERVERS = ["ns1.vultr.com", "ns2.vultr.com"]
    APEX = ""

    async def list_zones(self) -> list[DNSZone]:
        domains = await vultr_collect(self.client, "domains", "domains")
        return [DNSZone(id=d["domain"], name=d["domain"], name_servers=self.NAME_SERVERS) for d in domains]

    @staticmethod
    def _parse_record(data: dict, zone: str) -> DNSRecord:
        return DNSRecord(
            id=data["id"],
            type=data["type"],
            name=fqdn(data["name"], zone),
            content=data.get("data", ""),
            ttl=data.get("ttl") or DEFAULT_TTL,
            zone_id=zone,
        )

    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]:
        records = await vultr_collect(self.client, f"domains/{zone_id}/records", "records")
        return [self._parse_record(r, zone) for r in records]

    async def create_dns_record(
        self, zone_id: str, type: str, name: str, content: str, proxied: bool = False, ttl: int = DEFAULT_TTL
    ) -> DNSRecord:
        body = {
            "type": type,
            "name": relative_name(name, zone_id, apex=self.APEX),
            "data": content,
            "ttl": ttl,
            "priority": 0,
        }
        data = await self.client.request(f"domains/{zone_id}/records", "POST", body)
        record = self._parse_record(data["record"], zone_id)
        log(f"Created {type} record '{record.name}' on Vultr")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self.client.request(f"domains/{zone_id}/records/{record_id}", "DELETE")


# Linode


class LinodeAPI(BaseProvider):
    base_url = "https://api.linode.com/v4/"
    error_class = DNSError
    service = "Linode"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {self.token}"

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 400:
            raise self.error("validation", linode_error_reason(data) or "Bad request", code=status)
        super().handle_http_status(status, data)


def linode_error_reason(data: bytes) -> str | None:
    try:
        errors = json.loads(data).get("errors") or []
    except (ValueError, AttributeError):
        return None
    return errors[0].get("reason") if errors else None


def linode_page_info(data: dict) -> PageInfo | None:
    if "pages" not in data:
        return None
    return PageInfo(
        page=data.get("page", 1),
        per_page=100,
        total_pages=data["pages"],
        total_count=data.get("results"),
    )


class LinodeDNSProvider(DNSAdapter):
    api_class = LinodeAPI
    NAME_SERVERS = [f"ns{i}.linode.com" for i in range(1, 6)]
    APEX = ""

    async def list_zones(self) -> list[DNSZone]:
        async def fetch(page: int):
            data = await self.client.request("domains", params={"page_size": 100, "page": page})
            zones = [
                DNSZone(
                    id=str(d["id"]),
                    name=d["domain"],
                    status=d.get("status", "active"),
                    name_servers=self.NAME_SERVERS,
                )
                for d in data.get("data") or []
            ]
            return zones, linode_page_info(data)

        return await paginate(fetch)

    async def _fetch_zone_name(self, zone_id: str) -> str:
        data = await self.client.request(f"domains/{zone_id}")
        return data["domain"]

    @staticmethod
    def _parse_record(data: dict, zone: str, zone_id: str) -> DNSRecord:
        return DNSRecord(
            id=str(data["id"]),
            type=data["type"],
            name=fqdn(data.get("name") or "", zone),
            content=data.get("target", ""),
            ttl=data.get("ttl_sec") or DEFAULT_TTL,
            zone_id=zone_id,
            created_on=data.get("created"),
            modified_on=data.get("updated"),
        )

    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]:
        async def fetch(page: int):
            data = await self.client.request(
                f"domains/{zone_id}/records", params={"page_size": 100, "page": page}
            )
            records = [self._parse_record(r, zone, zone_id) for r in data.get("data") or []]
            return records, linode_page_info(data)

        return await paginate(fetch)

    async def create_dns_record(
        self, zone_id: str, type: str, name: str, content: str, proxied: bool = False, ttl: int = DEFAULT_TTL
    ) -> DNSRecord:
        zone = await self.zone_name(zone_id)
        body = {
            "type": type,
            "name": relative_name(name, zone, apex=self.APEX),
            "target": content,
            "ttl_sec": ttl,
        }
        data = await self.client.request(f"domains/{zone_id}/records", "POST", body)
        record = self._parse_record(data, zone, zone_id)
        log(f"Created {type} record '{record.name}' on Linode")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self.client.request(f"domains/{zone_id}/records/{record_id}", "DELETE")


# Bunny

BUNNY_RECORD_TYPES = {
    "A": 0,
    "AAAA": 1,
    "CNAME": 2,
    "TXT": 3,
    "MX": 4,
    "REDIRECT": 5,
    "FLATTEN": 6,
    "PULLZONE": 7,
    "SRV": 8,
    "CAA": 9,
    "PTR": 10,
    "SCRIPT": 11,
    "NS": 12,
}
BUNNY_TYPE_NAMES = {
    0: "A",
    1: "AAAA",
    2: "CNAME",
    3: "TXT",
    4: "MX",
    5: "Redirect",
    6: "Flatten",
    7: "PullZone",
    8: "SRV",
    9: "CAA",
    10: "PTR",
    11: "Script",
    12: "NS",
}


class BunnyAPI(BaseProvider):
    base_url = "https://api.bunny.net/"
    error_class = DNSError
    service = "Bunny"

    def __init__(self, api_key: str):
        self.api_key = api_key

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["AccessKey"] = self.api_key
        headers["Accept"] = "application/json"

    def handle_http_status(self, status: int, data: bytes) -> None:
        if status == 400:
            raise self.error("validation", body_message(data, "Message", "message") or "Validation error", code=status)
        super().handle_http_status(status, data)


class BunnyDNSProvider(DNSAdapter):
    api_class = BunnyAPI
    NAME_SERVERS = ["kiki.bunny.net", "coco.bunny.net"]
    APEX = ""

    async def list_zones(self) -> list[DNSZone]:
        async def fetch(page: int):
            data = await self.client.request("dnszone", params={"page": page, "perPage": 100})
            zones = [self._parse_zone(z) for z in data.get("Items") or []]
            info = PageInfo(page=page, per_page=100, total_pages=page + 1 if data.get("HasMoreItems") else page)
            return zones, info

        return await paginate(fetch)

    def _parse_zone(self, data: dict) -> DNSZone:
        name_servers = [data[k] for k in ("Nameserver1", "Nameserver2") if data.get(k)]
        return DNSZone(id=str(data["Id"]), name=data["Domain"], name_servers=name_servers or self.NAME_SERVERS)

    async def get_zone(self, zone_id: str) -> dict:
        return await self.client.request(f"dnszone/{zone_id}")

    async def _fetch_zone_name(self, zone_id: str) -> str:
        return (await self.get_zone(zone_id))["Domain"]

    @staticmethod
    def _parse_record(data: dict, zone: str, zone_id: str) -> DNSRecord:
        return DNSRecord(
            id=str(data["Id"]),
            type=BUNNY_TYPE_NAMES.get(data["Type"], str(data["Type"])),
            name=fqdn(data.get("Name") or "", zone),
            content=data.get("Value", ""),
            ttl=data.get("Ttl") or DEFAULT_TTL,
            zone_id=zone_id,
        )

    async def _fetch_records(self, zone_id: str, zone: str) -> list[DNSRecord]:
        data = await self.get_zone(zone_id)
        return [self._parse_record(r, zone, zone_id) for r in data.get("Records") or []]

    async def create_dns_record(
        self, zone_id: str, type: str, name: str, content: str, proxied: bool = False, ttl: int = DEFAULT_TTL
    ) -> DNSRecord:
        type_code = BUNNY_RECORD_TYPES.get(type.upper())
        if type_code is None:
            raise DNSError("unsupported_record_type", type, service="Bunny")
        zone = await self.zone_name(zone_id)
        body = {
            "Type": type_code,
            "Name": relative_name(name, zone, apex=self.APEX),
            "Value": content,
            "Ttl": ttl,
            "Priority": 0,
        }
        data = await self.client.request(f"dnszone/{zone_id}/records", "PUT", body)
        record = self._parse_record(data, zone, zone_id)
        log(f"Created {type} record '{record.name}' on Bunny")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self.client.request(f"dnszone/{zone_id}/records/{record_id}", "DELETE")
