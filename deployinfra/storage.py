"""Object storage: Scaleway buckets over SigV4, and backup settings for projects."""

import re
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import CloudflareError, ProviderError, ScalewayError
from .models import Integration
from .sigv4 import sign_request
from .types import ScalewayRegion
from .utils import log

SCALEWAY_REGIONS: dict[ScalewayRegion, str] = {
    "fr-par": "Paris",
    "nl-ams": "Amsterdam",
    "pl-waw": "Warsaw",
}

BACKUP_BUCKET = "deployinfra-backups"
BACKUP_RETENTION_DAYS = 7
BUCKET_NAME_PATTERN = re.compile(r"<Name>([^<]+)</Name>")


def scaleway_host(region: str) -> str:
    return f"s3.{region}.scw.cloud"


def scaleway_endpoint(region: str) -> str:
    return f"https://{scaleway_host(region)}"


class ScalewayProvider:
    """Bucket operations on Scaleway Object Storage.

    Requests are signed with ``sigv4.sign_request`` for service ``s3`` in the
    bucket's region.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str = "fr-par",
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        if region not in SCALEWAY_REGIONS:
            raise ScalewayError("invalid_region", region)
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_integration(cls, integration: Integration, *, http: httpx.AsyncClient | None = None) -> "ScalewayProvider":
        creds = integration.credentials
        if not (creds.access_key and creds.secret_key):
            raise ScalewayError("invalid_credentials")
        return cls(creds.access_key, creds.secret_key, creds.scaleway_region or "fr-par", http=http)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _send(self, method: str, path: str) -> httpx.Response:
        host = scaleway_host(self.region)
        signed = sign_request(method, path, host, self.region, "s3", self.access_key, self.secret_key)
        try:
            return await self.http.request(method, f"https://{host}{path}", headers=signed.headers)
        except httpx.TimeoutException as e:
            raise ScalewayError("timeout", str(e)) from e
        except httpx.TransportError as e:
            raise ScalewayError("network_error", str(e) or type(e).__name__) from e

    @staticmethod
    def _failed(response: httpx.Response, fallback: str = "Unknown error") -> ScalewayError:
        message = response.text.strip() or fallback
        return ScalewayError("request_failed", message, code=response.status_code)

    async def list_buckets(self) -> list[str]:
        response = await self._send("GET", "/")
        if response.status_code == 403:
            raise ScalewayError("access_denied", code=403)
        if not response.is_success:
            raise self._failed(response)
        return BUCKET_NAME_PATTERN.findall(response.text)

    async def bucket_exists(self, name: str) -> bool:
        response = await self._send("HEAD", f"/{name}")
        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        if response.status_code == 403:
            raise ScalewayError("access_denied", code=403)
        raise self._failed(response, "HeadBucket failed")

    async def create_bucket(self, name: str) -> None:
        response = await self._send("PUT", f"/{name}")
        if response.status_code == 409:
            raise ScalewayError("bucket_already_exists", name, code=409)
        if response.status_code == 403:
            raise ScalewayError("access_denied", code=403)
        if not response.is_success:
            raise self._failed(response)
        log(f"Created Scaleway bucket '{name}' in '{self.region}'")

    async def ensure_bucket(self, name: str = BACKUP_BUCKET) -> bool:
        """:return: True if the bucket was created, False if it already existed"""
        if await self.bucket_exists(name):
            return False
        await self.create_bucket(name)
        return True

    async def validate_credentials(self) -> None:
        await self.list_buckets()


@dataclass
class BackupSettings:
    comment: str
    variables: list[tuple[str, str]]

    def render(self) -> str:
        lines = [self.comment]
        lines.extend(f"{key}={value}" for key, value in self.variables)
        return "\n".join(lines)


def backup_settings(integration: Integration, project_slug: str, account_id: str | None = None) -> BackupSettings:
    """``BACKUP_*`` environment variables for a project backed up to ``integration``.

    :param account_id: Cloudflare account id, required for R2
    :raises ProviderError: If the integration cannot hold backups
    """
    creds = integration.credentials
    if integration.type == "cloudflare":
        if not account_id:
            raise CloudflareError("no_account_found")
        if not creds.has_r2_credentials:
            raise CloudflareError("api_error", "R2 credentials have not been derived yet")
        return BackupSettings(
            "# Backup Configuration (Cloudflare R2)",
            [
                ("BACKUP_S3_BUCKET", BACKUP_BUCKET),
                ("BACKUP_S3_PATH", project_slug),
                ("BACKUP_AWS_ACCESS_KEY_ID", creds.r2_access_key_id or ""),
                ("BACKUP_AWS_SECRET_ACCESS_KEY", creds.r2_secret_access_key or ""),
                ("BACKUP_AWS_ENDPOINT", f"{account_id}.r2.cloudflarestorage.com"),
                ("BACKUP_RETENTION_DAYS", str(BACKUP_RETENTION_DAYS)),
            ],
        )
    if integration.type == "scaleway":
        region = creds.scaleway_region or "fr-par"
        return BackupSettings(
            "# Backup Configuration (Scaleway Object Storage)",
            [
                ("BACKUP_S3_BUCKET", BACKUP_BUCKET),
                ("BACKUP_S3_PATH", project_slug),
                ("BACKUP_AWS_ACCESS_KEY_ID", creds.access_key or ""),
                ("BACKUP_AWS_SECRET_ACCESS_KEY", creds.secret_key or ""),
                ("BACKUP_AWS_ENDPOINT", scaleway_host(region)),
                ("BACKUP_AWS_DEFAULT_REGION", region),
                ("BACKUP_RETENTION_DAYS", str(BACKUP_RETENTION_DAYS)),
            ],
        )
    if integration.type == "dropbox":
        return BackupSettings(
            "# Backup Configuration (Dropbox)",
            [
                ("BACKUP_DROPBOX_APP_KEY", creds.dropbox_app_key or ""),
                ("BACKUP_DROPBOX_APP_SECRET", creds.dropbox_app_secret or ""),
                ("BACKUP_DROPBOX_REFRESH_TOKEN", creds.dropbox_refresh_token or ""),
                ("BACKUP_DROPBOX_REMOTE_PATH", f"/{BACKUP_BUCKET}/{project_slug}"),
            ],
        )
    raise ProviderError("api_error", f"{integration.display_name} does not support backups")


def _strip_backup_lines(lines: list[str]) -> list[str]:
    kept = []
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("# Backup Configuration"):
            continue
        if "=" in stripped and stripped.split("=", 1)[0].startswith("BACKUP_"):
            continue
        kept.append(line)
    while kept and not kept[-1].strip():
        kept.pop()
    return kept


def remove_backup_env(env_path: Path) -> None:
    """Remove every ``BACKUP_*`` variable and backup section comment."""
    if not env_path.exists():
        return
    lines = _strip_backup_lines(env_path.read_text().splitlines())
    env_path.write_text("\n".join(lines) + "\n" if lines else "")


def write_backup_env(env_path: Path, settings: BackupSettings) -> None:
    """Replace the backup section of an env file with ``settings``."""
    lines = _strip_backup_lines(env_path.read_text().splitlines()) if env_path.exists() else []
    if lines:
        lines.append("")
    lines.append(settings.render())
    env_path.write_text("\n".join(lines) + "\n")
    log(f"Wrote backup settings to '{env_path}'")
