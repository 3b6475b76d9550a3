"""Data models for vipingress."""

import json
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Ingress annotations consumed by the reconciler.
ANNOTATION_PROXY_GROUP = "tailscale.com/proxy-group"
ANNOTATION_TAGS = "tailscale.com/tags"
ANNOTATION_HTTP_ENDPOINT = "tailscale.com/http-endpoint"

# Service Name an Ingress was last provisioned under; written with the finalizer.
ANNOTATION_SERVICE_NAME = "tailscale.com/vip-service-name"

# JSON-encoded OwnerAnnotation on VIP service records.
OWNER_ANNOTATION = "tailscale.com/owner-references"

FINALIZER = "tailscale.com/ingress-pg-finalizer"

LABEL_MANAGED = "tailscale.com/managed"
LABEL_PARENT_TYPE = "tailscale.com/parent-resource-type"
LABEL_PARENT_NAME = "tailscale.com/parent-resource"
LABEL_SECRET_TYPE = "tailscale.com/secret-type"
LABEL_PROXY_GROUP = "tailscale.com/proxy-group"
LABEL_DOMAIN = "tailscale.com/domain"

PROXY_GROUP_TYPE_INGRESS = "ingress"
PROXY_GROUP_READY = "ProxyGroupReady"

SERVE_CONFIG_KEY = "serve-config.json"
VIP_SERVICE_COMMENT = "This VIP service is managed by the vipingress operator, do not modify"


class OperatorConfig(BaseModel):
    """Configuration for the operator process."""

    operator_namespace: str = Field("tailscale", description="Namespace holding ProxyGroup config and cert resources")
    operator_id: str = Field("vipingress", description="Identity recorded in VIP service owner references")
    ingress_class: str = Field("tailscale", description="IngressClass handled by this operator")
    default_tags: List[str] = Field(default_factory=lambda: ["tag:k8s"], description="Tags used when an Ingress sets none")
    kubeconfig_path: Optional[str] = Field(None, description="Path to kubeconfig file, in-cluster config if unset")
    context: Optional[str] = Field(None, description="Kubernetes context name")
    tailnet: str = Field("-", description="Tailnet name for control API calls")
    api_base_url: str = Field("https://api.tailscale.com", description="Tailnet control API base URL")
    api_token_file: Optional[str] = Field(None, description="File holding the control API token")
    local_api_socket: str = Field("/var/run/tailscale/tailscaled.sock", description="tailscaled local API socket")
    request_timeout: float = Field(10.0, description="Timeout in seconds for every external call")
    workers: int = Field(4, description="Number of concurrent reconcile workers")
    backoff_base_seconds: float = Field(0.5, description="First retry delay after a failure")
    backoff_max_seconds: float = Field(300.0, description="Upper bound on retry delay")
    warn_after_failures: int = Field(5, description="Consecutive failures before a transient error is logged as warning")
    pending_requeue_seconds: float = Field(10.0, description="Recheck interval while waiting for a service to be served")


class OwnerResource(BaseModel):
    """Kubernetes resource that owns a VIP service on behalf of an operator."""

    kind: str
    name: str
    uid: Optional[str] = None


class OwnerRef(BaseModel):
    """One operator's claim on a VIP service record."""

    model_config = ConfigDict(populate_by_name=True)

    operator_id: str = Field(..., alias="operatorID")
    resource: Optional[OwnerResource] = None


class OwnerAnnotation(BaseModel):
    """Value of the owner-references annotation."""

    model_config = ConfigDict(populate_by_name=True)

    owner_refs: List[OwnerRef] = Field(default_factory=list, alias="ownerrefs")

    def operator_ids(self) -> List[str]:
        return [ref.operator_id for ref in self.owner_refs]

    def to_annotation(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_annotations(cls, annotations: Optional[Dict[str, str]]) -> Optional["OwnerAnnotation"]:
        """Parse the owner annotation, None when absent."""
        raw = (annotations or {}).get(OWNER_ANNOTATION)
        if not raw:
            return None
        return cls.model_validate(json.loads(raw))


class VIPService(BaseModel):
    """Directory record for a VIP service as served by the control API."""

    name: str = Field(..., description="Service Name, svc:<label>")
    addrs: List[str] = Field(default_factory=list, description="Addresses allocated by the control plane")
    comment: str = Field("", description="Free-form comment")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Record annotations")
    ports: List[str] = Field(default_factory=list, description="Advertised ports, e.g. tcp:443")
    tags: List[str] = Field(default_factory=list, description="ACL tags")


class TCPPortHandler(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    https: Optional[bool] = Field(None, alias="HTTPS")
    http: Optional[bool] = Field(None, alias="HTTP")


class HTTPHandler(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proxy: str = Field(..., alias="Proxy")


class WebServerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    handlers: Dict[str, HTTPHandler] = Field(default_factory=dict, alias="Handlers")


class ServiceConfig(BaseModel):
    """Serving configuration of one Service Name."""

    model_config = ConfigDict(populate_by_name=True)

    tcp: Dict[int, TCPPortHandler] = Field(default_factory=dict, alias="TCP")
    web: Dict[str, WebServerConfig] = Field(default_factory=dict, alias="Web")

    def ports(self) -> List[int]:
        """Active ports, HTTPS first."""
        return sorted(self.tcp, key=lambda port: (port != 443, port))

    def hostname(self) -> Optional[str]:
        for host_port in self.web:
            return host_port.rsplit(":", 1)[0]
        return None


class ServeConfig(BaseModel):
    """Shared serving document of a ProxyGroup."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    services: Dict[str, ServiceConfig] = Field(default_factory=dict, alias="Services")

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: Optional[bytes]) -> "ServeConfig":
        if not raw:
            return cls()
        return cls.model_validate_json(raw)


class IngressIntent(BaseModel):
    """What a validated Ingress asks for."""

    namespace: str
    name: str
    proxy_group: str
    hostname: str = Field(..., description="Fully qualified tailnet hostname")
    service_name: str = Field(..., description="svc:<label>")
    tags: List[str] = Field(default_factory=list)
    http_enabled: bool = False
    handlers: Dict[str, HTTPHandler] = Field(default_factory=dict, description="Path to proxy target")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def vip_ports(self) -> List[str]:
        ports = ["tcp:443"]
        if self.http_enabled:
            ports.append("tcp:80")
        return ports
