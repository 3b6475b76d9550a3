"""Tests for the tailnet control API and tailscaled clients."""

import json

import httpx
import pytest

from vipingress.errors import NotFoundError, TransientBackendError
from vipingress.models import OperatorConfig, VIPService
from vipingress.tailnet import DirectoryClient, TailnetStatusClient, load_api_token


def directory_with(handler):
    return DirectoryClient("https://api.example.com", "example.com", "tskey-api",
                           timeout=5, transport=httpx.MockTransport(handler))


class TestDirectoryClient:

    def test_get_decodes_record(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "name": "svc:my-svc",
                "addrs": ["100.100.100.1"],
                "annotations": {"tailscale.com/owner-references": '{"ownerrefs":[]}'},
                "ports": ["tcp:443"],
                "tags": ["tag:k8s"],
            })

        svc = directory_with(handler).get_vip_service("svc:my-svc")

        assert svc.addrs == ["100.100.100.1"]
        assert svc.tags == ["tag:k8s"]
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/api/v2/tailnet/example.com/vip-services/svc:my-svc"
        assert seen[0].headers["Authorization"] == "Bearer tskey-api"

    def test_put_sends_whole_record(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        directory_with(handler).create_or_update_vip_service(
            VIPService(name="svc:my-svc", ports=["tcp:443"], tags=["tag:k8s"]))

        assert bodies[0]["name"] == "svc:my-svc"
        assert bodies[0]["ports"] == ["tcp:443"]
        assert bodies[0]["tags"] == ["tag:k8s"]

    def test_delete(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(200)

        directory_with(handler).delete_vip_service("svc:my-svc")

        assert methods == ["DELETE"]

    def test_missing_record_is_not_found(self):
        client = directory_with(lambda request: httpx.Response(404, json={"message": "not found"}))

        with pytest.raises(NotFoundError) as exc_info:
            client.get_vip_service("svc:gone")
        assert exc_info.value.name == "svc:gone"

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_errors_are_transient(self, status):
        client = directory_with(lambda request: httpx.Response(status, text="try later"))

        with pytest.raises(TransientBackendError):
            client.create_or_update_vip_service(VIPService(name="svc:my-svc"))

    def test_connection_errors_are_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientBackendError):
            directory_with(handler).get_vip_service("svc:my-svc")


class TestTailnetStatusClient:

    def status_client(self, body, status=200):
        transport = httpx.MockTransport(lambda request: httpx.Response(status, json=body))
        return TailnetStatusClient("/tmp/tailscaled.sock", timeout=5, transport=transport)

    def test_dns_suffix(self):
        client = self.status_client({"CurrentTailnet": {"MagicDNSSuffix": "tails-scales.ts.net"}})

        assert client.dns_suffix() == "tails-scales.ts.net"

    def test_missing_suffix_is_not_found(self):
        with pytest.raises(NotFoundError):
            self.status_client({"CurrentTailnet": None}).dns_suffix()

    def test_local_api_failure_is_transient(self):
        with pytest.raises(TransientBackendError):
            self.status_client({}, status=502).status()


class TestLoadApiToken:

    def test_environment_wins(self, monkeypatch, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("from-file\n")
        monkeypatch.setenv("TS_API_TOKEN", "from-env")

        assert load_api_token(OperatorConfig(api_token_file=str(token_file))) == "from-env"

    def test_file(self, monkeypatch, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("from-file\n")
        monkeypatch.delenv("TS_API_TOKEN", raising=False)

        assert load_api_token(OperatorConfig(api_token_file=str(token_file))) == "from-file"

    def test_no_token(self, monkeypatch):
        monkeypatch.delenv("TS_API_TOKEN", raising=False)

        with pytest.raises(ValueError):
            load_api_token(OperatorConfig())
