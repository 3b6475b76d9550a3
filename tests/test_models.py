"""Tests for vipingress models."""

import json

import pytest
from pydantic import ValidationError

from vipingress.models import (
    OWNER_ANNOTATION,
    HTTPHandler,
    IngressIntent,
    OperatorConfig,
    OwnerAnnotation,
    OwnerRef,
    ServeConfig,
    ServiceConfig,
    TCPPortHandler,
    VIPService,
    WebServerConfig,
)


class TestOperatorConfig:
    """Tests for OperatorConfig model."""

    def test_default_operator_config(self):
        """Test default operator configuration."""
        config = OperatorConfig()

        assert config.operator_namespace == "tailscale"
        assert config.ingress_class == "tailscale"
        assert config.default_tags == ["tag:k8s"]
        assert config.tailnet == "-"
        assert config.kubeconfig_path is None
        assert config.workers == 4
        assert config.backoff_max_seconds == 300.0

    def test_custom_operator_config(self):
        """Test custom operator configuration."""
        config = OperatorConfig(
            operator_namespace="operator-ns",
            operator_id="operator-1",
            default_tags=["tag:prod"],
            workers=8,
            request_timeout=3,
        )

        assert config.operator_namespace == "operator-ns"
        assert config.operator_id == "operator-1"
        assert config.default_tags == ["tag:prod"]
        assert config.workers == 8
        assert config.request_timeout == 3.0

    def test_invalid_operator_config(self):
        """Test validation errors for invalid values."""
        with pytest.raises(ValidationError):
            OperatorConfig(workers="many")


class TestOwnerAnnotation:
    """Tests for the owner-references annotation value."""

    def test_parse(self):
        annotations = {OWNER_ANNOTATION: '{"ownerrefs":[{"operatorID":"operator-2"}]}'}

        owners = OwnerAnnotation.from_annotations(annotations)

        assert owners.operator_ids() == ["operator-2"]
        assert owners.owner_refs[0].resource is None

    def test_absent(self):
        assert OwnerAnnotation.from_annotations({}) is None
        assert OwnerAnnotation.from_annotations(None) is None

    def test_serialized_with_wire_names(self):
        owners = OwnerAnnotation(owner_refs=[OwnerRef(operator_id="a"), OwnerRef(operator_id="b")])

        assert json.loads(owners.to_annotation()) == {
            "ownerrefs": [{"operatorID": "a"}, {"operatorID": "b"}],
        }

    def test_resource_reference(self):
        raw = '{"ownerrefs":[{"operatorID":"x","resource":{"kind":"Service","name":"web"}}]}'

        owners = OwnerAnnotation.from_annotations({OWNER_ANNOTATION: raw})

        assert owners.owner_refs[0].resource.kind == "Service"
        assert owners.owner_refs[0].resource.name == "web"


class TestServeConfig:
    """Tests for the serve config document."""

    def test_empty(self):
        assert ServeConfig.from_json(b"").services == {}
        assert ServeConfig.from_json(b'{"Services":{}}').services == {}

    def test_json_shape(self):
        svc = ServiceConfig(
            tcp={443: TCPPortHandler(https=True)},
            web={"my-svc.ts.net:443": WebServerConfig(handlers={"/": HTTPHandler(proxy="http://a:80/")})},
        )
        cfg = ServeConfig(services={"svc:my-svc": svc})

        assert json.loads(cfg.to_json()) == {
            "Services": {
                "svc:my-svc": {
                    "TCP": {"443": {"HTTPS": True}},
                    "Web": {"my-svc.ts.net:443": {"Handlers": {"/": {"Proxy": "http://a:80/"}}}},
                },
            },
        }

    def test_parse_keeps_port_numbers(self):
        raw = b'{"Services":{"svc:a":{"TCP":{"80":{"HTTP":true},"443":{"HTTPS":true}},"Web":{"a.ts.net:443":{}}}}}'

        svc = ServeConfig.from_json(raw).services["svc:a"]

        assert svc.ports() == [443, 80]
        assert svc.hostname() == "a.ts.net"

    def test_unknown_top_level_fields_survive(self):
        cfg = ServeConfig.from_json(b'{"Services":{},"Foreground":{"x":1}}')

        assert json.loads(cfg.to_json())["Foreground"] == {"x": 1}


class TestIngressIntent:
    """Tests for IngressIntent model."""

    def test_vip_ports(self):
        intent = IngressIntent(namespace="default", name="web", proxy_group="pg",
                               hostname="web.ts.net", service_name="svc:web")

        assert intent.key == "default/web"
        assert intent.vip_ports() == ["tcp:443"]
        assert intent.model_copy(update={"http_enabled": True}).vip_ports() == ["tcp:443", "tcp:80"]


class TestVIPService:
    def test_defaults(self):
        svc = VIPService(name="svc:web")

        assert svc.addrs == []
        assert svc.annotations == {}
        assert svc.comment == ""
