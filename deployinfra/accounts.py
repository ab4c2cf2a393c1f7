"""Credential probes for account-only vendors: GitHub and Dropbox."""

from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from .api_client import APIClient, BaseProvider
from .errors import DropboxError, GitHubError
from .models import Integration


class GitHubAPI(BaseProvider):
    base_url = "https://api.github.com"
    error_class = GitHubError
    service = "GitHub"

    def __init__(self, token: str):
        self.token = token

    def configure_auth(self, headers: dict[str, str]) -> None:
        headers["Authorization"] = f"Bearer {self.token}"
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"


@dataclass
class GitHubUser:
    login: str
    id: int
    name: str | None = None


class GitHubProvider:
    def __init__(self, token: str, *, http: httpx.AsyncClient | None = None):
        self.client = APIClient(GitHubAPI(token), http=http)

    @classmethod
    def from_integration(cls, integration: Integration, *, http: httpx.AsyncClient | None = None) -> "GitHubProvider":
        if not integration.credentials.token:
            raise GitHubError("unauthorized")
        return cls(integration.credentials.token, http=http)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def validate_token(self) -> GitHubUser:
        data = await self.client.request("/user")
        return GitHubUser(login=data["login"], id=data["id"], name=data.get("name"))


DROPBOX_AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
DROPBOX_TOKEN_URL = "https://api.dropbox.com/oauth2/token"
DROPBOX_ACCOUNT_URL = "https://api.dropboxapi.com/2/users/get_current_account"


def dropbox_authorization_url(app_key: str) -> str:
    """URL the user opens to obtain an authorization code (offline access)."""
    query = urlencode({"client_id": app_key, "token_access_type": "offline", "response_type": "code"})
    return f"{DROPBOX_AUTHORIZE_URL}?{query}"


class DropboxProvider:
    """OAuth2 flow for Dropbox backups: code -> refresh token -> access token."""

    def __init__(self, *, http: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise DropboxError("timeout", str(e)) from e
        except httpx.TransportError as e:
            raise DropboxError("network_error", str(e) or type(e).__name__) from e

    async def _token(self, form: dict[str, str]) -> dict:
        response = await self._post(DROPBOX_TOKEN_URL, data=form)
        if response.status_code in (400, 401):
            raise DropboxError("invalid_credentials", code=response.status_code)
        if not response.is_success:
            raise DropboxError("api_error", response.text or "Unknown error", code=response.status_code)
        return response.json()

    async def exchange_code(self, code: str, app_key: str, app_secret: str) -> str:
        """:return: Long-lived refresh token"""
        data = await self._token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": app_key,
                "client_secret": app_secret,
            }
        )
        refresh_token = data.get("refresh_token")
        if not refresh_token:
            raise DropboxError("invalid_response", "No refresh token in response")
        return refresh_token

    async def get_access_token(self, app_key: str, app_secret: str, refresh_token: str) -> str:
        data = await self._token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": app_key,
                "client_secret": app_secret,
            }
        )
        access_token = data.get("access_token")
        if not access_token:
            raise DropboxError("invalid_response", "No access token in response")
        return access_token

    async def validate_credentials(self, app_key: str, app_secret: str, refresh_token: str) -> dict:
        """:return: The account description Dropbox returns for the token"""
        access_token = await self.get_access_token(app_key, app_secret, refresh_token)
        response = await self._post(DROPBOX_ACCOUNT_URL, headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code == 401:
            raise DropboxError("token_expired", code=401)
        if not response.is_success:
            raise DropboxError("api_error", response.text or "Unknown error", code=response.status_code)
        return response.json()
