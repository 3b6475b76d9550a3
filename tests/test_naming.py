"""Tests for hostname and Service Name derivation."""

import pytest

from vipingress.naming import hostname_for, hostname_for_service, requested_host, resolve, service_name_for

from fakes import make_ingress


class TestNaming:

    @pytest.mark.parametrize("host,expected", [
        ("my-svc", "my-svc.ts.net"),
        ("my-svc.ts.net", "my-svc.ts.net"),
        ("my-other-svc.tailnetxyz.ts.net", "my-other-svc.ts.net"),
        ("api.example.com", "api.ts.net"),
    ])
    def test_hostname_keeps_leftmost_label(self, host, expected):
        assert hostname_for(host, "ts.net") == expected

    def test_suffix_dots_are_trimmed(self):
        assert hostname_for("web", ".tail1234.ts.net.") == "web.tail1234.ts.net"

    def test_service_name(self):
        assert service_name_for("my-svc.ts.net") == "svc:my-svc"
        assert hostname_for_service("svc:my-svc", "ts.net") == "my-svc.ts.net"

    def test_default_host_without_tls(self):
        ingress = make_ingress(name="web", namespace="shop", host=None)

        assert requested_host(ingress) == "shop-web"
        assert resolve(ingress, "ts.net") == ("shop-web.ts.net", "svc:shop-web")

    def test_resolution_is_deterministic(self):
        """The same host always maps to the same Service Name."""
        a = make_ingress(name="a", host="my-svc")
        b = make_ingress(name="b", namespace="other", host="my-svc.example.com")

        assert resolve(a, "ts.net") == resolve(b, "ts.net") == ("my-svc.ts.net", "svc:my-svc")
