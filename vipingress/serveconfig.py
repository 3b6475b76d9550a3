"""The shared serve config document of a ProxyGroup.

One ConfigMap per ProxyGroup holds the serving configuration for every
Service Name exposed through it. Several workers may edit it at once, so every
change is a read-modify-write against the resourceVersion that was read.
"""

import copy
from typing import Dict, Iterable, Optional, Tuple

from .errors import NotFoundError
from .logging_config import get_logger
from .models import SERVE_CONFIG_KEY, HTTPHandler, ServeConfig, ServiceConfig, TCPPortHandler, WebServerConfig
from .store import Store, decode_value, encode_value, meta, namespace_of

logger = get_logger(__name__)


def serve_config_map_name(pg_name: str) -> str:
    return f"{pg_name}-ingress-config"


def _resolve_port(store: Store, namespace: str, service_name: str, port: Dict) -> Optional[Tuple[int, str]]:
    """(port number, port name) of an Ingress service backend port."""
    if port.get("number"):
        return int(port["number"]), ""
    port_name = port.get("name")
    if not port_name:
        return None
    svc = store.get_or_none("Service", service_name, namespace)
    if svc is None:
        logger.warning("Backend Service not found", service=service_name, namespace=namespace)
        return None
    for svc_port in (svc.get("spec") or {}).get("ports") or []:
        if svc_port.get("name") == port_name:
            return int(svc_port["port"]), port_name
    logger.warning("Backend Service has no such port", service=service_name, namespace=namespace, port=port_name)
    return None


def backend_target(store: Store, namespace: str, backend: Optional[Dict], path: str) -> Optional[str]:
    """Proxy URL for an Ingress backend, None if it cannot be resolved."""
    service = (backend or {}).get("service")
    if not service:
        return None
    resolved = _resolve_port(store, namespace, service["name"], service.get("port") or {})
    if resolved is None:
        return None
    number, port_name = resolved
    scheme = "https+insecure" if number == 443 or port_name == "https" else "http"
    return f"{scheme}://{service['name']}.{namespace}.svc.cluster.local:{number}{path}"


def handlers_for_ingress(store: Store, ingress: Dict, hostname: str) -> Dict[str, HTTPHandler]:
    """Path handlers from the default backend and the rules for our host."""
    spec = ingress.get("spec") or {}
    namespace = namespace_of(ingress)
    tls = spec.get("tls") or []
    tls_host = tls[0]["hosts"][0] if tls else None

    handlers: Dict[str, HTTPHandler] = {}
    target = backend_target(store, namespace, spec.get("defaultBackend"), "/")
    if target:
        handlers["/"] = HTTPHandler(proxy=target)

    for rule in spec.get("rules") or []:
        if rule.get("host") not in (None, "", tls_host, hostname):
            continue
        for http_path in (rule.get("http") or {}).get("paths") or []:
            path = http_path.get("path") or "/"
            target = backend_target(store, namespace, http_path.get("backend"), path)
            if target:
                handlers[path] = HTTPHandler(proxy=target)
    return handlers


def build_service_config(hostname: str, handlers: Dict[str, HTTPHandler], http_enabled: bool) -> ServiceConfig:
    """HTTPS on 443 always, plain HTTP on 80 when enabled."""
    web = WebServerConfig(handlers=handlers)
    cfg = ServiceConfig(
        tcp={443: TCPPortHandler(https=True)},
        web={f"{hostname}:443": web},
    )
    if http_enabled:
        cfg.tcp[80] = TCPPortHandler(http=True)
        cfg.web[f"{hostname}:80"] = web.model_copy(deep=True)
    return cfg


class ServeConfigMerger:
    """Reads and edits the serve config ConfigMap of a ProxyGroup."""

    def __init__(self, store: Store, namespace: str):
        self.store = store
        self.namespace = namespace

    def read(self, pg_name: str) -> Tuple[Dict, ServeConfig]:
        cm = self.store.get("ConfigMap", serve_config_map_name(pg_name), self.namespace)
        raw = decode_value((cm.get("binaryData") or {}).get(SERVE_CONFIG_KEY))
        return cm, ServeConfig.from_json(raw)

    def _write(self, cm: Dict, cfg: ServeConfig) -> None:
        updated = copy.deepcopy(cm)
        binary_data = dict(updated.get("binaryData") or {})
        binary_data[SERVE_CONFIG_KEY] = encode_value(cfg.to_json())
        updated["binaryData"] = binary_data
        self.store.update("ConfigMap", updated)
        logger.debug("Wrote serve config",
                     config_map=meta(cm).get("name"),
                     services=sorted(cfg.services))

    def load(self, pg_name: str) -> ServeConfig:
        """Current document, raising NotFoundError if the ConfigMap is missing."""
        return self.read(pg_name)[1]

    def load_or_empty(self, pg_name: str) -> ServeConfig:
        try:
            return self.load(pg_name)
        except NotFoundError:
            return ServeConfig()

    def ensure_service(self, pg_name: str, service_name: str, service_config: ServiceConfig) -> bool:
        """Set the entry for ``service_name``. Returns True if a write happened."""
        cm, cfg = self.read(pg_name)
        if cfg.services.get(service_name) == service_config:
            return False
        cfg.services[service_name] = service_config
        self._write(cm, cfg)
        logger.info("Updated serve config entry",
                    proxy_group=pg_name,
                    service=service_name,
                    ports=service_config.ports())
        return True

    def remove_services(self, pg_name: str, service_names: Iterable[str],
                        snapshot: Optional[Tuple[Dict, ServeConfig]] = None) -> bool:
        """Drop entries; a missing ConfigMap counts as nothing to remove.

        With ``snapshot`` (as returned by :meth:`read`) the write is based on
        that version, so it fails with ConflictError if the document changed
        since the caller decided what to remove.
        """
        names = set(service_names)
        if not names:
            return False
        if snapshot is None:
            try:
                snapshot = self.read(pg_name)
            except NotFoundError:
                return False
        cm, cfg = snapshot[0], snapshot[1].model_copy(deep=True)
        present = names & set(cfg.services)
        if not present:
            return False
        for name in present:
            del cfg.services[name]
        self._write(cm, cfg)
        logger.info("Removed serve config entries", proxy_group=pg_name, services=sorted(present))
        return True
