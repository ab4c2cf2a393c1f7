"""Shared fixtures: an in-memory Cloudflare API behind httpx.MockTransport."""

import json
import uuid

import httpx
import pytest

from deployinfra.cloudflare import CloudflareProvider
from deployinfra.store import JSONStore

ACCOUNT_ID = "5f2c1b0a9e8d7c6b5a4f3e2d1c0b9a8f"
ZONE_ID = "023e105f4ecef8ad9ca31a8372d0c353"


def envelope(result, result_info: dict | None = None) -> dict:
    payload = {"success": True, "errors": [], "messages": [], "result": result}
    if result_info is not None:
        payload["result_info"] = result_info
    return payload


def failure(code: int = 1000, message: str = "Something went wrong") -> dict:
    return {"success": False, "errors": [{"code": code, "message": message}], "messages": [], "result": None}


def page_of(items: list, request: httpx.Request, default_per_page: int = 20) -> dict:
    page = int(request.url.params.get("page", 1))
    per_page = int(request.url.params.get("per_page", default_per_page))
    total_pages = max(1, -(-len(items) // per_page))
    chunk = items[(page - 1) * per_page : page * per_page]
    info = {"page": page, "per_page": per_page, "count": len(chunk), "total_count": len(items), "total_pages": total_pages}
    return envelope(chunk, info)


class FakeCloudflare:
    """Stateful stand-in for the slice of the Cloudflare API used here.

    ``fail(op, ...)`` makes the next call of an operation answer with an
    error envelope. Operations: create_tunnel, get_tunnel_token,
    configure_ingress, list_dns_records, create_dns_record,
    delete_dns_record, delete_tunnel.
    """

    def __init__(self):
        self.zones = [
            {
                "id": ZONE_ID,
                "name": "example.com",
                "status": "active",
                "name_servers": ["ada.ns.cloudflare.com", "bob.ns.cloudflare.com"],
            }
        ]
        self.tunnels: dict[str, dict] = {}
        self.configs: dict[str, list[dict]] = {}
        self.records: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, tuple[int, dict]] = {}
        self.omit_token = False

    def fail(self, op: str, status: int = 400, code: int = 1000, message: str = "Something went wrong") -> None:
        self.failures[op] = (status, failure(code, message))

    def add_record(self, name: str, type: str = "A", content: str = "203.0.113.10") -> dict:
        record = {"id": uuid.uuid4().hex, "zone_id": ZONE_ID, "type": type, "name": name, "content": content, "proxied": False, "ttl": 1}
        self.records[record["id"]] = record
        return record

    def ops(self) -> list[str]:
        return [op for _, op in self.calls]

    def _respond(self, op: str, method: str, result_fn) -> httpx.Response:
        self.calls.append((method, op))
        if op in self.failures:
            status, payload = self.failures.pop(op)
            return httpx.Response(status, json=payload)
        return httpx.Response(200, json=result_fn())

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/client/v4/")
        parts = path.split("/")
        body = json.loads(request.content) if request.content else None

        if path == "accounts":
            return self._respond("get_accounts", method, lambda: envelope([{"id": ACCOUNT_ID, "name": "Test"}]))
        if path == "zones":
            return self._respond("list_zones", method, lambda: page_of(self.zones, request))

        if parts[0] == "accounts" and parts[2] == "cfd_tunnel":
            tunnel_id = parts[3] if len(parts) > 3 else None
            if tunnel_id is None and method == "POST":
                return self._respond("create_tunnel", method, lambda: envelope(self._create_tunnel(body["name"])))
            if tunnel_id is None:
                return self._respond("list_tunnels", method, lambda: page_of(list(self.tunnels.values()), request))
            if path.endswith("/token"):
                return self._respond("get_tunnel_token", method, lambda: envelope(f"token-{tunnel_id}"))
            if path.endswith("/configurations") and method == "PUT":
                return self._respond("configure_ingress", method, lambda: self._configure(tunnel_id, body))
            if path.endswith("/configurations"):
                config = {"ingress": self.configs.get(tunnel_id, [])}
                return self._respond("get_configuration", method, lambda: envelope({"tunnel_id": tunnel_id, "config": config}))
            if method == "DELETE":
                return self._respond("delete_tunnel", method, lambda: self._delete_tunnel(tunnel_id))

        if parts[0] == "zones" and len(parts) >= 3 and parts[2] == "dns_records":
            if len(parts) == 4 and method == "DELETE":
                return self._respond("delete_dns_record", method, lambda: self._delete_record(parts[3]))
            if method == "POST":
                return self._respond("create_dns_record", method, lambda: envelope(self._create_record(body)))
            return self._respond("list_dns_records", method, lambda: page_of(self._filter_records(request), request))

        return httpx.Response(404, json=failure(7003, f"No route for {method} {path}"))

    def _create_tunnel(self, name: str) -> dict:
        tunnel_id = str(uuid.uuid4())
        tunnel = {"id": tunnel_id, "name": name, "status": "inactive", "created_at": "2024-01-01T00:00:00Z"}
        self.tunnels[tunnel_id] = tunnel
        if self.omit_token:
            return dict(tunnel)
        return {**tunnel, "token": f"token-{tunnel_id}"}

    def _configure(self, tunnel_id: str, body: dict) -> dict:
        self.configs[tunnel_id] = body["config"]["ingress"]
        return envelope({"tunnel_id": tunnel_id, "version": 1})

    def _delete_tunnel(self, tunnel_id: str) -> dict:
        self.tunnels.pop(tunnel_id, None)
        self.configs.pop(tunnel_id, None)
        return envelope({"id": tunnel_id})

    def _create_record(self, body: dict) -> dict:
        record = {"id": uuid.uuid4().hex, "zone_id": ZONE_ID, **body}
        self.records[record["id"]] = record
        return record

    def _delete_record(self, record_id: str) -> dict:
        self.records.pop(record_id, None)
        return envelope({"id": record_id})

    def _filter_records(self, request: httpx.Request) -> list[dict]:
        params = request.url.params
        return [
            r
            for r in self.records.values()
            if all(r.get(key) == params[key] for key in ("type", "name", "content") if key in params)
        ]


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_cloudflare():
    return FakeCloudflare()


@pytest.fixture
def cloudflare(fake_cloudflare):
    return CloudflareProvider("ops@example.com", "global-key", http=mock_http(fake_cloudflare.handler))


@pytest.fixture
def store(tmp_path):
    return JSONStore(tmp_path / "state")
