import pytest

from deployinfra.errors import CloudflareError, ValidationError
from deployinfra.models import TunnelRecord
from deployinfra.tunnels import (
    remove_tunnel_for_server,
    setup_tunnel_for_server,
    tunnel_name,
    validate_subdomain,
    validate_tunnel_id,
    validate_zone_name,
)

from .conftest import ZONE_ID


class TestValidation:
    def test_tunnel_id_accepts_uuid(self):
        validate_tunnel_id("c1744f8b-faa1-48a4-9e5c-02ac921467fa")

    @pytest.mark.parametrize("value", ["", "not-a-uuid", "c1744f8b-faa1-48a4-9e5c-02ac921467f", "../etc/passwd"])
    def test_tunnel_id_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            validate_tunnel_id(value)

    @pytest.mark.parametrize("value", ["", "example .com", "-example.com", "example.com-", "exa mple.com"])
    def test_zone_name_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            validate_zone_name(value)

    def test_subdomain_length_limit(self):
        validate_subdomain("a" * 63)
        with pytest.raises(ValidationError):
            validate_subdomain("a" * 64)

    @pytest.mark.parametrize("value", ["", "-ssh", "ssh-", "ssh.box", "ssh_box"])
    def test_subdomain_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            validate_subdomain(value)

    def test_tunnel_name_sanitizes(self):
        assert tunnel_name("Web Server #1") == "deployinfra-web-server-1"

    def test_tunnel_name_rejects_unusable(self):
        with pytest.raises(ValidationError):
            tunnel_name("!!!")


@pytest.mark.asyncio
class TestSetupTunnel:
    async def test_creates_tunnel_ingress_and_cname(self, cloudflare, fake_cloudflare):
        record = await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh", server_id="srv-1")

        assert record.ssh_hostname == "ssh.example.com"
        assert record.name == "deployinfra-web-1"
        assert record.server_id == "srv-1"
        assert record.token == f"token-{record.tunnel_id}"

        assert record.tunnel_id in fake_cloudflare.tunnels
        assert fake_cloudflare.configs[record.tunnel_id] == [
            {"hostname": "ssh.example.com", "service": "ssh://localhost:22"},
            {"service": "http_status:404"},
        ]
        cname = fake_cloudflare.records[record.dns_record_id]
        assert cname["type"] == "CNAME"
        assert cname["name"] == "ssh.example.com"
        assert cname["content"] == f"{record.tunnel_id}.cfargotunnel.com"
        assert cname["proxied"] is True

    async def test_fetches_token_when_not_returned(self, cloudflare, fake_cloudflare):
        fake_cloudflare.omit_token = True
        record = await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")
        assert record.token == f"token-{record.tunnel_id}"
        assert "get_tunnel_token" in fake_cloudflare.ops()

    async def test_invalid_input_makes_no_remote_call(self, cloudflare, fake_cloudflare):
        with pytest.raises(ValidationError):
            await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "-bad")
        assert fake_cloudflare.calls == []

    async def test_existing_record_conflicts_and_rolls_back(self, cloudflare, fake_cloudflare):
        existing = fake_cloudflare.add_record("ssh.example.com")

        with pytest.raises(CloudflareError) as exc_info:
            await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")

        assert exc_info.value.kind == "record_conflict"
        assert fake_cloudflare.tunnels == {}
        assert list(fake_cloudflare.records) == [existing["id"]]
        assert "create_dns_record" not in fake_cloudflare.ops()

    @pytest.mark.parametrize("op", ["configure_ingress", "list_dns_records", "create_dns_record"])
    async def test_failure_after_create_deletes_tunnel(self, cloudflare, fake_cloudflare, op):
        fake_cloudflare.fail(op, message="Upstream broke")

        with pytest.raises(CloudflareError):
            await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")

        assert fake_cloudflare.tunnels == {}
        assert fake_cloudflare.records == {}
        assert fake_cloudflare.ops()[-1] == "delete_tunnel"

    async def test_token_failure_leaves_no_dns_record(self, cloudflare, fake_cloudflare):
        fake_cloudflare.omit_token = True
        fake_cloudflare.fail("get_tunnel_token")

        with pytest.raises(CloudflareError):
            await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")

        assert fake_cloudflare.tunnels == {}
        assert fake_cloudflare.records == {}

    async def test_rollback_failure_raises_original_error(self, cloudflare, fake_cloudflare):
        fake_cloudflare.fail("create_dns_record", message="Record quota exceeded")
        fake_cloudflare.fail("delete_tunnel", message="Tunnel busy")

        with pytest.raises(CloudflareError) as exc_info:
            await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")

        assert "Record quota exceeded" in str(exc_info.value)


@pytest.mark.asyncio
class TestRemoveTunnel:
    async def test_removes_record_and_tunnel(self, cloudflare, fake_cloudflare):
        record = await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")

        await remove_tunnel_for_server(cloudflare, record)

        assert fake_cloudflare.tunnels == {}
        assert fake_cloudflare.records == {}

    async def test_attempts_tunnel_delete_when_record_delete_fails(self, cloudflare, fake_cloudflare):
        record = await setup_tunnel_for_server(cloudflare, "web-1", ZONE_ID, "example.com", "ssh")
        fake_cloudflare.fail("delete_dns_record", message="Zone locked")

        with pytest.raises(CloudflareError) as exc_info:
            await remove_tunnel_for_server(cloudflare, record)

        assert "Zone locked" in str(exc_info.value)
        assert fake_cloudflare.tunnels == {}
        assert record.dns_record_id in fake_cloudflare.records

    async def test_raises_first_error_when_both_fail(self, cloudflare, fake_cloudflare):
        record = TunnelRecord(
            tunnel_id="c1744f8b-faa1-48a4-9e5c-02ac921467fa",
            name="deployinfra-web-1",
            token="t",
            zone_id=ZONE_ID,
            zone_name="example.com",
            subdomain="ssh",
            dns_record_id="missing",
        )
        fake_cloudflare.fail("delete_dns_record", message="first")
        fake_cloudflare.fail("delete_tunnel", message="second")

        with pytest.raises(CloudflareError) as exc_info:
            await remove_tunnel_for_server(cloudflare, record)

        assert exc_info.value.message == "first"
        assert fake_cloudflare.ops() == ["delete_dns_record", "get_accounts", "delete_tunnel"]
