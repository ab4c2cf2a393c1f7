"""Generic async HTTP pipeline shared by every vendor adapter.

Each vendor supplies an ``APIProvider``: its base URL, how to inject auth
headers, how to classify raw HTTP status codes, and which errors are worth
retrying. The client itself never retries; ``should_retry`` is exposed so the
caller can apply its own backoff policy.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

import httpx

from .errors import ProviderError
from .models import PageInfo

logger = logging.getLogger("deployinfra")

USER_AGENT = "deployinfra/0.1 (python-httpx)"
DEFAULT_TIMEOUT = 30.0

T = TypeVar("T")


class APIProvider(Protocol):
    base_url: str
    error_class: type[ProviderError]

    def configure_auth(self, headers: dict[str, str]) -> None: ...

    def handle_http_status(self, status: int, data: bytes) -> None: ...

    def should_retry(self, err: ProviderError) -> bool: ...


class BaseProvider:
    """Defaults shared by the vendor providers.

    Subclasses set ``base_url``, ``error_class`` and ``service`` and override
    ``configure_auth`` and ``handle_http_status``.
    """

    base_url = ""
    error_class: type[ProviderError] = ProviderError
    service = "Provider"

    def configure_auth(self, headers: dict[str, str]) -> None:
        pass

    def handle_http_status(self, status: int, data: bytes) -> None:
        if 200 <= status < 300:
            return
        if status == 401:
            raise self.error("unauthorized", code=status)
        if status == 403:
            raise self.error("forbidden", body_message(data), code=status)
        if status == 404:
            raise self.error("not_found", body_message(data), code=status)
        if status == 429:
            raise self.error("rate_limited", code=status)
        if status >= 500:
            raise self.error("server_error", code=status)
        raise self.error("api_error", body_message(data) or f"HTTP {status}", code=status)

    def should_retry(self, err: ProviderError) -> bool:
        return err.retryable

    def error(self, kind: str, message: str | None = None, code: int | str | None = None) -> ProviderError:
        return self.error_class(kind, message, code=code, service=self.service)


def body_message(data: bytes, *keys: str) -> str | None:
    """Best-effort extraction of a human message from an error body."""
    keys = keys or ("message", "error", "detail")
    try:
        payload = json.loads(data) if data else None
    except ValueError:
        text = data.decode(errors="replace").strip()
        return text[:200] or None
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return None


class APIClient:
    """Request/response pipeline parameterized by an ``APIProvider``.

    :param provider: Vendor-specific auth and status classification
    :param http: Shared ``httpx.AsyncClient``; a private one is created if omitted
    :param timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        provider: APIProvider,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.provider = provider
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    def should_retry(self, err: ProviderError) -> bool:
        return self.provider.should_retry(err)

    async def send(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Issue a request with auth injected and status classified.

        :return: The raw response, for vendors that answer with non-JSON bodies
        :raises ProviderError: On transport failures or a failing status
        """
        url = self.provider.base_url + endpoint
        request_headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        self.provider.configure_auth(request_headers)
        if headers:
            request_headers.update(headers)

        content = None
        if body is not None:
            content = json.dumps(body).encode()
            logger.debug(f"[{method}] {url} - Body: {content.decode()}")
        else:
            logger.debug(f"[{method}] {url}")

        try:
            response = await self.http.request(
                method,
                url,
                content=content,
                params=params,
                headers=request_headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise self._error("timeout", str(e)) from e
        except httpx.TransportError as e:
            raise self._error("network_error", str(e) or type(e).__name__) from e

        logger.debug(f"[{method}] {url} -> {response.status_code}")
        self.provider.handle_http_status(response.status_code, response.content)
        return response

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: dict | None = None,
    ) -> Any:
        """Send a request and decode the JSON body.

        An empty body (e.g. 204 No Content) decodes to ``{}``.

        :raises ProviderError: ``invalid_response`` if the body is not JSON
        """
        response = await self.send(endpoint, method, body, params)
        if response.status_code == 204 or not response.content.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise self._error("invalid_response", str(e)) from e

    def _error(self, kind: str, message: str | None = None) -> ProviderError:
        if hasattr(self.provider, "error"):
            return self.provider.error(kind, message)
        return self.provider.error_class(kind, message)


async def paginate(fetch_page: Callable[[int], Awaitable[tuple[list[T], PageInfo | None]]]) -> list[T]:
    """Accumulate every page of a list endpoint, starting at page 1.

    Pages are counted locally and the loop stops once the counter reaches the
    reported ``total_pages``, or as soon as a page carries no pagination
    metadata (single-page response). The page number echoed by the vendor is
    not trusted.
    """
    results: list[T] = []
    page = 1
    while True:
        items, info = await fetch_page(page)
        results.extend(items)
        if info is None or page >= info.total_pages or not items:
            return results
        page += 1
