"""Live tests against the real Cloudflare API.

Each test cleans up what it creates. Run with:

    CLOUDFLARE_EMAIL=... CLOUDFLARE_API_KEY=... CLOUDFLARE_TEST_ZONE=example.com \
        uv run pytest tests/ -m integration
"""

import os
import uuid

import pytest
import pytest_asyncio

from deployinfra.cloudflare import CloudflareProvider
from deployinfra.ingress import SSH_SERVICE
from deployinfra.tunnels import remove_tunnel_for_server, setup_tunnel_for_server

EMAIL = os.environ.get("CLOUDFLARE_EMAIL")
API_KEY = os.environ.get("CLOUDFLARE_API_KEY")
TEST_ZONE = os.environ.get("CLOUDFLARE_TEST_ZONE")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not (EMAIL and API_KEY), reason="CLOUDFLARE_EMAIL and CLOUDFLARE_API_KEY not set"),
]


@pytest_asyncio.fixture
async def provider():
    provider = CloudflareProvider(EMAIL, API_KEY)
    yield provider
    await provider.aclose()


@pytest.mark.asyncio
class TestCloudflareLive:
    async def test_account_and_zones(self, provider):
        assert await provider.get_account_id()
        zones = await provider.list_zones()
        assert all(zone.id and zone.name for zone in zones)

    async def test_tunnel_round_trip(self, provider):
        if not TEST_ZONE:
            pytest.skip("CLOUDFLARE_TEST_ZONE not set")
        zones = {zone.name: zone for zone in await provider.list_zones()}
        assert TEST_ZONE in zones, f"zone '{TEST_ZONE}' not in account"
        zone = zones[TEST_ZONE]
        suffix = uuid.uuid4().hex[:8]

        record = await setup_tunnel_for_server(provider, f"pytest-{suffix}", zone.id, zone.name, f"ssh-{suffix}")
        try:
            rules = await provider.get_tunnel_configuration(record.tunnel_id)
            assert rules[0].hostname == record.ssh_hostname
            assert rules[0].service == SSH_SERVICE

            records = await provider.list_dns_records(zone.id, name=record.ssh_hostname)
            assert [r.id for r in records] == [record.dns_record_id]
        finally:
            await remove_tunnel_for_server(provider, record)

        assert await provider.list_dns_records(zone.id, name=record.ssh_hostname) == []
