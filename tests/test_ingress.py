from deployinfra.ingress import add_route, http_service, remove_route, ssh_ingress
from deployinfra.models import IngressRule

CATCH_ALL = IngressRule.catch_all()


def test_ssh_ingress_ends_with_catch_all():
    rules = ssh_ingress("ssh.example.com")
    assert rules == [IngressRule("ssh.example.com", "ssh://localhost:22"), CATCH_ALL]


def test_add_route_inserts_before_catch_all():
    rules = ssh_ingress("ssh.example.com")
    updated = add_route(rules, "app.example.com", 3000)
    assert updated == [
        IngressRule("ssh.example.com", "ssh://localhost:22"),
        IngressRule("app.example.com", http_service(3000)),
        CATCH_ALL,
    ]


def test_add_route_is_idempotent():
    rules = add_route(ssh_ingress("ssh.example.com"), "app.example.com", 3000)
    assert add_route(rules, "app.example.com", 3000) is None
    assert add_route(rules, "app.example.com", 4000) is None


def test_add_route_appends_missing_catch_all():
    updated = add_route([IngressRule("ssh.example.com", "ssh://localhost:22")], "app.example.com", 80)
    assert updated[-1] == CATCH_ALL
    assert sum(r.is_catch_all for r in updated) == 1


def test_add_route_keeps_custom_catch_all():
    custom = IngressRule(None, "http_status:503")
    updated = add_route([custom], "app.example.com", 80)
    assert updated == [IngressRule("app.example.com", "http://localhost:80"), custom]


def test_add_route_to_empty_configuration():
    assert add_route([], "app.example.com", 80) == [IngressRule("app.example.com", "http://localhost:80"), CATCH_ALL]


def test_remove_route():
    rules = add_route(ssh_ingress("ssh.example.com"), "app.example.com", 3000)
    assert remove_route(rules, "app.example.com") == ssh_ingress("ssh.example.com")


def test_remove_missing_route():
    assert remove_route(ssh_ingress("ssh.example.com"), "app.example.com") is None


def test_remove_last_route_leaves_only_catch_all():
    assert remove_route(ssh_ingress("ssh.example.com"), "ssh.example.com") == [CATCH_ALL]


def test_rule_serialization_omits_catch_all_hostname():
    assert CATCH_ALL.to_dict() == {"service": "http_status:404"}
    assert IngressRule.from_dict({"hostname": "", "service": "http_status:404"}).is_catch_all
