"""Cloudflare adapter: zones, DNS records, tunnels and R2 object storage.

Every Cloudflare response is wrapped in an envelope::

    {"success": bool, "errors": [{"code", "message"}], "messages": [...],
     "result": ..., "result_info": {"page", "per_page", "total_count", "total_pages"}}

so the HTTP status classifier only short-circuits transport-level failures
and leaves other 4xx responses to the envelope decoder.
"""

import asyncio
from typing import Any

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from . import ingress
from .api_client import APIClient, BaseProvider, paginate
from .errors import CloudflareError
from .models import DNSRecord, DNSZone, IngressRule, Integration, PageInfo, TunnelInfo
from .utils import log, sha256_hex

R2_PERMISSION_GROUP = "Workers R2 Storage Write"
R2_TOKEN_NAME = "deployinfra Backups"

# Error codes with a friendlier message than the one Cloudflare returns
AUTH_ERROR_CODES = {9103, 10000}
ERROR_CODE_MESSAGES = {
    9103: "Invalid Cloudflare credentials. Please check your email and API key.",
    10000: "Invalid Cloudflare credentials. Please check your email and API key.",
    9106: "Malformed request to Cloudflare API.",
    9109: "Access denied. Your account doesn't have permission to perform this action.",
}


class CloudflareAPI(BaseProvider):
    base_url = "https://api.cloudflare.com/client/v4/"
    error_class = CloudflareError
    service = "Cloudflare"

    def __init__(self, email: str, api_key: str):
        self.email = email
        self.api_key = api_key

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["X-Auth-Email"] = self.email
        headers["X-Auth-Key"] = self.api_key

    def handle_http_status(self, status: int, data: bytes) -> None:
        if 200 <= status < 300:
            return
        if status in (401, 403):
            raise self.error("unauthorized", code=status)
        if status == 429:
            raise self.error("rate_limited", code=status)
        if status >= 500:
            raise self.error("server_error", code=status)
        # Other 4xx carry a regular envelope with success=false


def error_message(errors: list[dict]) -> str:
    if not errors:
        return "Unknown error occurred"
    return "; ".join(ERROR_CODE_MESSAGES.get(e.get("code"), e.get("message", "")) for e in errors)


def envelope_error(payload: dict) -> CloudflareError:
    """Classify an envelope with ``success: false``."""
    errors = payload.get("errors") or []
    code = errors[0].get("code", 0) if errors else 0
    message = error_message(errors)
    if code in AUTH_ERROR_CODES:
        return CloudflareError("unauthorized", message, code=code)
    return CloudflareError("api_error", message, code=code)


def dns_create_error(payload: dict) -> CloudflareError:
    """Classify a failed DNS record creation by its message text."""
    errors = payload.get("errors") or []
    code = errors[0].get("code", 0) if errors else 0
    message = error_message(errors)
    lowered = message.lower()
    if "conflict" in lowered:
        return CloudflareError("record_conflict", message, code=code)
    if "invalid" in lowered and "type" in lowered:
        return CloudflareError("invalid_record_type", message, code=code)
    if "dnssec" in lowered:
        return CloudflareError("dnssec_error", message, code=code)
    if "locked" in lowered:
        return CloudflareError("zone_locked", message, code=code)
    return envelope_error(payload)


def parse_page_info(payload: dict) -> PageInfo | None:
    info = payload.get("result_info")
    if not info or "total_pages" not in info:
        return None
    return PageInfo(
        page=info.get("page", 1),
        per_page=info.get("per_page", 0),
        total_pages=info["total_pages"],
        total_count=info.get("total_count"),
    )


def parse_zone(data: dict) -> DNSZone:
    return DNSZone(
        id=data["id"],
        name=data["name"],
        status=data.get("status", "active"),
        name_servers=data.get("name_servers") or [],
    )


def parse_dns_record(data: dict) -> DNSRecord:
    return DNSRecord(
        id=data["id"],
        type=data["type"],
        name=data["name"],
        content=data["content"],
        proxied=data.get("proxied", False),
        ttl=data.get("ttl", 1),
        zone_id=data.get("zone_id"),
        created_on=data.get("created_on"),
        modified_on=data.get("modified_on"),
    )


def parse_tunnel(data: dict) -> TunnelInfo:
    return TunnelInfo(
        id=data["id"],
        name=data["name"],
        token=data.get("token"),
        status=data.get("status"),
        created_at=data.get("created_at"),
    )


class CloudflareProvider:
    """DNS, tunnel and R2 operations for one Cloudflare account.

    The account id is looked up on first use and cached, unless given.

    :param email: Cloudflare account email
    :param api_key: Global API Key (not an API Token)
    :param http: Shared ``httpx.AsyncClient``, mainly for tests
    """

    def __init__(
        self,
        email: str,
        api_key: str,
        *,
        account_id: str | None = None,
        http: httpx.AsyncClient | None = None,
    ):
        self.api = CloudflareAPI(email, api_key)
        self.client = APIClient(self.api, http=http)
        self._account_id = account_id

    @classmethod
    def from_integration(cls, integration: Integration, *, http: httpx.AsyncClient | None = None) -> "CloudflareProvider":
        creds = integration.credentials
        if not (creds.email and creds.global_api_key):
            raise CloudflareError("unauthorized", "Missing Cloudflare email or Global API Key")
        return cls(creds.email, creds.global_api_key, http=http)

    async def aclose(self) -> None:
        await self.client.aclose()

    def should_retry(self, err: CloudflareError) -> bool:
        return self.client.should_retry(err)

    async def _call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: dict | None = None,
        *,
        require_result: bool = True,
    ) -> tuple[Any, dict]:
        payload = await self.client.request(endpoint, method, body, params)
        if not isinstance(payload, dict):
            raise CloudflareError("invalid_response")
        if not payload.get("success", False):
            raise envelope_error(payload)
        result = payload.get("result")
        if require_result and result is None:
            raise CloudflareError("invalid_response", "Response has no result")
        return result, payload

    # Account and zones

    async def get_account_id(self) -> str:
        if self._account_id:
            return self._account_id
        payload = await self.client.request("accounts")
        accounts = payload.get("result") if isinstance(payload, dict) else None
        if not (isinstance(payload, dict) and payload.get("success")) or not accounts:
            raise CloudflareError("no_account_found")
        self._account_id = accounts[0]["id"]
        return self._account_id

    async def list_zones(self) -> list[DNSZone]:
        async def fetch(page: int):
            result, payload = await self._call(
                "zones",
                params={"status": "active", "per_page": 50, "page": page, "order": "name"},
            )
            return [parse_zone(z) for z in result], parse_page_info(payload)

        return await paginate(fetch)

    async def get_zone(self, zone_id: str) -> DNSZone:
        result, _ = await self._call(f"zones/{zone_id}")
        return parse_zone(result)

    # Tunnels

    async def create_tunnel(self, name: str) -> TunnelInfo:
        account_id = await self.get_account_id()
        result, _ = await self._call(
            f"accounts/{account_id}/cfd_tunnel",
            "POST",
            {"name": name, "config_src": "cloudflare"},
        )
        tunnel = parse_tunnel(result)
        log(f"Created Cloudflare tunnel '{tunnel.name}' ('{tunnel.id}')")
        return tunnel

    async def get_tunnel(self, tunnel_id: str) -> TunnelInfo:
        account_id = await self.get_account_id()
        result, _ = await self._call(f"accounts/{account_id}/cfd_tunnel/{tunnel_id}")
        return parse_tunnel(result)

    async def get_tunnel_token(self, tunnel_id: str) -> str:
        """Connector token for ``cloudflared tunnel run --token``."""
        account_id = await self.get_account_id()
        result, _ = await self._call(f"accounts/{account_id}/cfd_tunnel/{tunnel_id}/token")
        return result

    async def list_tunnels(self) -> list[TunnelInfo]:
        account_id = await self.get_account_id()

        async def fetch(page: int):
            result, payload = await self._call(
                f"accounts/{account_id}/cfd_tunnel",
                params={"is_deleted": "false", "per_page": 50, "page": page},
            )
            return [parse_tunnel(t) for t in result], parse_page_info(payload)

        return await paginate(fetch)

    async def delete_tunnel(self, tunnel_id: str) -> None:
        account_id = await self.get_account_id()
        await self._call(
            f"accounts/{account_id}/cfd_tunnel/{tunnel_id}",
            "DELETE",
            params={"cascade": "true"},
            require_result=False,
        )
        log(f"Deleted Cloudflare tunnel '{tunnel_id}'")

    async def get_tunnel_configuration(self, tunnel_id: str) -> list[IngressRule]:
        account_id = await self.get_account_id()
        result, _ = await self._call(f"accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations")
        config = result.get("config") or {}
        return [IngressRule.from_dict(r) for r in config.get("ingress") or []]

    async def configure_tunnel_ingress(self, tunnel_id: str, rules: list[IngressRule]) -> None:
        """Replace the full ingress configuration of a tunnel."""
        account_id = await self.get_account_id()
        await self._call(
            f"accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations",
            "PUT",
            {"config": {"ingress": [r.to_dict() for r in rules]}},
            require_result=False,
        )

    async def add_http_route(self, tunnel_id: str, hostname: str, port: int = 80) -> bool:
        return await ingress.add_http_route(self, tunnel_id, hostname, port)

    async def remove_http_route(self, tunnel_id: str, hostname: str) -> bool:
        return await ingress.remove_http_route(self, tunnel_id, hostname)

    # DNS records

    async def list_dns_records(
        self,
        zone_id: str,
        type: str | None = None,
        name: str | None = None,
        content: str | None = None,
    ) -> list[DNSRecord]:
        filters = {k: v for k, v in {"type": type, "name": name, "content": content}.items() if v}

        async def fetch(page: int):
            result, payload = await self._call(
                f"zones/{zone_id}/dns_records",
                params={"per_page": 100, "page": page, **filters},
            )
            return [parse_dns_record(r) for r in result], parse_page_info(payload)

        return await paginate(fetch)

    async def create_dns_record(
        self,
        zone_id: str,
        type: str,
        name: str,
        content: str,
        proxied: bool = False,
        ttl: int = 1,
    ) -> DNSRecord:
        payload = await self.client.request(
            f"zones/{zone_id}/dns_records",
            "POST",
            {"type": type, "name": name, "content": content, "proxied": proxied, "ttl": ttl},
        )
        if not isinstance(payload, dict):
            raise CloudflareError("invalid_response")
        if not payload.get("success") or payload.get("result") is None:
            raise dns_create_error(payload)
        record = parse_dns_record(payload["result"])
        log(f"Created {type} record '{record.name}' -> '{content}'")
        return record

    async def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        await self._call(f"zones/{zone_id}/dns_records/{record_id}", "DELETE", require_result=False)
        log(f"Deleted DNS record '{record_id}'")

    # R2 object storage

    async def get_r2_permission_group_id(self, account_id: str) -> str:
        result, _ = await self._call(f"accounts/{account_id}/tokens/permission_groups")
        group = next((g for g in result if g.get("name") == R2_PERMISSION_GROUP), None)
        if group is None:
            raise CloudflareError("api_error", "R2 Storage Write permission group not found", code=0)
        return group["id"]

    async def create_r2_token(self, account_id: str) -> tuple[str, str]:
        """Create an account-scoped R2 write token and derive S3 credentials.

        :return: (access_key_id, secret_access_key), where the access key is the
            token id and the secret is the SHA-256 hex digest of the token value
        """
        group_id = await self.get_r2_permission_group_id(account_id)
        body = {
            "name": R2_TOKEN_NAME,
            "policies": [
                {
                    "effect": "allow",
                    "resources": {f"com.cloudflare.api.account.{account_id}": "*"},
                    "permission_groups": [{"id": group_id}],
                }
            ],
        }
        result, payload = await self._call("user/tokens", "POST", body)
        if not result.get("value"):
            raise envelope_error(payload)
        log(f"Created R2 API token '{result['id']}'")
        return result["id"], sha256_hex(result["value"])

    async def list_r2_buckets(self, account_id: str) -> list[str]:
        result, _ = await self._call(f"accounts/{account_id}/r2/buckets")
        return [b["name"] for b in result.get("buckets") or []]

    async def create_r2_bucket(self, account_id: str, name: str) -> str:
        result, _ = await self._call(f"accounts/{account_id}/r2/buckets", "POST", {"name": name})
        log(f"Created R2 bucket '{result['name']}'")
        return result["name"]

    async def verify_r2_credentials(
        self, account_id: str, access_key_id: str, secret_access_key: str
    ) -> list[str]:
        """Prove derived R2 keys work by listing buckets over the S3 API.

        :return: Bucket names visible to the keys
        """
        return await asyncio.to_thread(
            list_r2_buckets_s3, account_id, access_key_id, secret_access_key
        )


def r2_endpoint(account_id: str) -> str:
    return f"https://{account_id}.r2.cloudflarestorage.com"


def list_r2_buckets_s3(account_id: str, access_key_id: str, secret_access_key: str) -> list[str]:
    s3 = boto3.client(
        "s3",
        endpoint_url=r2_endpoint(account_id),
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name="auto",
        config=Config(retries={"max_attempts": 1}),
    )
    try:
        response = s3.list_buckets()
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code in ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"):
            raise CloudflareError("unauthorized", f"R2 rejected the derived keys ({error_code})") from e
        raise CloudflareError("api_error", f"R2 error ({error_code}): {e}") from e
    except BotoCoreError as e:
        raise CloudflareError("network_error", str(e)) from e
    return [b["Name"] for b in response.get("Buckets", [])]
