"""Idempotent add/remove of routes on a tunnel's ingress rule list.

Cloudflare only supports replacing the whole ingress configuration, so every
change is a read-modify-write: fetch the current list, derive the new list
from that fresh snapshot, then PUT it back. There is no version check on the
write; two callers mutating the same tunnel concurrently race and the last
writer wins. Callers must keep a single writer per tunnel.
"""

from typing import Protocol

from .models import CATCH_ALL_SERVICE, IngressRule
from .utils import log

SSH_SERVICE = "ssh://localhost:22"


class IngressBackend(Protocol):
    async def get_tunnel_configuration(self, tunnel_id: str) -> list[IngressRule]: ...

    async def configure_tunnel_ingress(self, tunnel_id: str, rules: list[IngressRule]) -> None: ...


def http_service(port: int) -> str:
    return f"http://localhost:{port}"


def ssh_ingress(hostname: str) -> list[IngressRule]:
    """Initial configuration for a server tunnel: SSH only, then the catch-all."""
    return [IngressRule(hostname, SSH_SERVICE), IngressRule.catch_all()]


def _with_catch_all(rules: list[IngressRule], catch_all: IngressRule) -> list[IngressRule]:
    routes = [r for r in rules if not r.is_catch_all]
    return routes + [catch_all]


def _existing_catch_all(rules: list[IngressRule]) -> IngressRule:
    if rules and rules[-1].is_catch_all:
        return rules[-1]
    return IngressRule(None, CATCH_ALL_SERVICE)


def add_route(rules: list[IngressRule], hostname: str, port: int) -> list[IngressRule] | None:
    """Rule list with an HTTP route for ``hostname`` inserted before the catch-all.

    :return: The new list, or None if ``hostname`` is already routed
    """
    if any(r.hostname == hostname for r in rules):
        return None
    routes = [r for r in rules if not r.is_catch_all]
    routes.append(IngressRule(hostname, http_service(port)))
    return _with_catch_all(routes, _existing_catch_all(rules))


def remove_route(rules: list[IngressRule], hostname: str) -> list[IngressRule] | None:
    """Rule list without ``hostname``, still ending in exactly one catch-all.

    :return: The new list, or None if ``hostname`` is not routed
    """
    if not any(r.hostname == hostname for r in rules):
        return None
    remaining = [r for r in rules if r.hostname != hostname]
    return _with_catch_all(remaining, _existing_catch_all(rules))


async def add_http_route(backend: IngressBackend, tunnel_id: str, hostname: str, port: int = 80) -> bool:
    """Route ``hostname`` to a local HTTP port on the tunnel.

    :return: True if the configuration was changed, False if already routed
    """
    current = await backend.get_tunnel_configuration(tunnel_id)
    updated = add_route(current, hostname, port)
    if updated is None:
        log(f"Route for '{hostname}' already present on tunnel '{tunnel_id}'")
        return False
    await backend.configure_tunnel_ingress(tunnel_id, updated)
    log(f"Added route '{hostname}' -> '{http_service(port)}' on tunnel '{tunnel_id}'")
    return True


async def remove_http_route(backend: IngressBackend, tunnel_id: str, hostname: str) -> bool:
    """Drop the route for ``hostname`` from the tunnel.

    :return: True if the configuration was changed, False if not routed
    """
    current = await backend.get_tunnel_configuration(tunnel_id)
    updated = remove_route(current, hostname)
    if updated is None:
        log(f"No route for '{hostname}' on tunnel '{tunnel_id}'")
        return False
    await backend.configure_tunnel_ingress(tunnel_id, updated)
    log(f"Removed route '{hostname}' from tunnel '{tunnel_id}'")
    return True
