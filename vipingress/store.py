"""Object store access on top of the Kubernetes API.

Objects travel through the reconciler as plain dicts in their API (camelCase)
form. Every update carries the ``metadata.resourceVersion`` it was read at, so
the API server rejects writes based on stale reads with 409, which surfaces
here as :class:`ConflictError`.
"""

import base64
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import ConflictError, NotFoundError, TransientBackendError
from .logging_config import get_logger, log_function_entry, log_function_exit, log_k8s_operation
from .models import OperatorConfig

logger = get_logger(__name__)

PROXY_GROUP_GROUP = "tailscale.com"
PROXY_GROUP_VERSION = "v1alpha1"
PROXY_GROUP_PLURAL = "proxygroups"

# kind -> (API group attribute, method suffix)
_NAMESPACED_KINDS = {
    "ConfigMap": ("core", "config_map"),
    "Secret": ("core", "secret"),
    "Service": ("core", "service"),
    "Event": ("core", "event"),
    "Ingress": ("networking", "ingress"),
    "Role": ("rbac", "role"),
    "RoleBinding": ("rbac", "role_binding"),
}


def meta(obj: Dict) -> Dict:
    return obj.setdefault("metadata", {})


def name_of(obj: Dict) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def namespace_of(obj: Dict) -> Optional[str]:
    return (obj.get("metadata") or {}).get("namespace")


def key_of(obj: Dict) -> str:
    return f"{namespace_of(obj)}/{name_of(obj)}"


def annotations_of(obj: Dict) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def labels_of(obj: Dict) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def is_deleting(obj: Dict) -> bool:
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def decode_value(value: Optional[str]) -> bytes:
    """Decode a base64 ``data``/``binaryData`` value as returned by the API."""
    if not value:
        return b""
    return base64.b64decode(value)


def encode_value(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def matches_labels(obj: Dict, labels: Optional[Dict[str, str]]) -> bool:
    have = labels_of(obj)
    return all(have.get(k) == v for k, v in (labels or {}).items())


class Store:
    """Typed CRUD over the cluster, keyed by Kubernetes kind.

    ``get`` raises NotFoundError, ``update`` raises ConflictError when the
    object changed since it was read.
    """

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Dict:
        raise NotImplementedError

    def list(self, kind: str, namespace: Optional[str] = None,
             labels: Optional[Dict[str, str]] = None) -> List[Dict]:
        raise NotImplementedError

    def create(self, kind: str, obj: Dict) -> Dict:
        raise NotImplementedError

    def update(self, kind: str, obj: Dict) -> Dict:
        raise NotImplementedError

    def update_status(self, kind: str, obj: Dict) -> Dict:
        raise NotImplementedError

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        raise NotImplementedError

    def get_or_none(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict]:
        try:
            return self.get(kind, name, namespace)
        except NotFoundError:
            return None

    def delete_if_present(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """Delete an object, returning False if it was already gone."""
        try:
            self.delete(kind, name, namespace)
        except NotFoundError:
            return False
        return True


@contextmanager
def _api_errors(kind: str, name: Optional[str] = None, namespace: Optional[str] = None):
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(kind, name or "", namespace) from e
        if e.status == 409:
            raise ConflictError(f"{kind} {namespace}/{name}: {e.reason}") from e
        raise TransientBackendError(f"{kind} {namespace}/{name}: {e.status} {e.reason}") from e
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise TransientBackendError(f"{kind} {namespace}/{name}: {e}") from e


class KubeStore(Store):
    """Store backed by the kubernetes Python client."""

    def __init__(self, operator_config: OperatorConfig):
        log_function_entry(logger, "KubeStore.__init__", context=operator_config.context)
        self.operator_config = operator_config
        self._k8s_client: Optional[client.ApiClient] = None
        self._apis: Dict[str, object] = {}
        self._custom_objects: Optional[client.CustomObjectsApi] = None

    def connect(self) -> None:
        """Initialize connection to the Kubernetes cluster."""
        log_function_entry(logger, "connect", kubeconfig_path=self.operator_config.kubeconfig_path)
        try:
            if self.operator_config.kubeconfig_path:
                logger.debug("Loading kubeconfig from file",
                             kubeconfig_path=self.operator_config.kubeconfig_path,
                             context=self.operator_config.context)
                config.load_kube_config(
                    config_file=self.operator_config.kubeconfig_path,
                    context=self.operator_config.context
                )
            else:
                logger.debug("Loading in-cluster config")
                config.load_incluster_config()

            self._k8s_client = client.ApiClient()
            self._apis = {
                "core": client.CoreV1Api(self._k8s_client),
                "networking": client.NetworkingV1Api(self._k8s_client),
                "rbac": client.RbacAuthorizationV1Api(self._k8s_client),
            }
            self._custom_objects = client.CustomObjectsApi(self._k8s_client)
            logger.info("Connected to cluster", context=self.operator_config.context)
            log_function_exit(logger, "connect", status="success")
        except Exception as e:
            logger.error("Failed to connect to cluster",
                         error=str(e),
                         kubeconfig_path=self.operator_config.kubeconfig_path,
                         context=self.operator_config.context)
            log_function_exit(logger, "connect", status="error", error=str(e))
            raise

    def close(self) -> None:
        if self._k8s_client:
            self._k8s_client.close()

    @property
    def _timeout(self) -> float:
        return self.operator_config.request_timeout

    def _method(self, kind: str, verb: str, all_namespaces: bool = False):
        if kind not in _NAMESPACED_KINDS:
            raise ValueError(f"unsupported kind {kind!r}")
        if not self._apis:
            self.connect()
        group, suffix = _NAMESPACED_KINDS[kind]
        if all_namespaces:
            return getattr(self._apis[group], f"{verb}_{suffix}_for_all_namespaces")
        return getattr(self._apis[group], f"{verb}_namespaced_{suffix}")

    def _to_dict(self, obj) -> Dict:
        return self._k8s_client.sanitize_for_serialization(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Dict:
        log_k8s_operation(logger, "get", kind, name=name, namespace=namespace)
        if kind == "ProxyGroup":
            if not self._custom_objects:
                self.connect()
            with _api_errors(kind, name):
                return self._custom_objects.get_cluster_custom_object(
                    group=PROXY_GROUP_GROUP,
                    version=PROXY_GROUP_VERSION,
                    plural=PROXY_GROUP_PLURAL,
                    name=name,
                    _request_timeout=self._timeout,
                )
        read = self._method(kind, "read")
        with _api_errors(kind, name, namespace):
            return self._to_dict(read(name=name, namespace=namespace, _request_timeout=self._timeout))

    def list(self, kind: str, namespace: Optional[str] = None,
             labels: Optional[Dict[str, str]] = None) -> List[Dict]:
        log_k8s_operation(logger, "list", kind, namespace=namespace, labels=labels)
        selector = label_selector(labels) if labels else None
        if kind == "ProxyGroup":
            if not self._custom_objects:
                self.connect()
            with _api_errors(kind):
                response = self._custom_objects.list_cluster_custom_object(
                    group=PROXY_GROUP_GROUP,
                    version=PROXY_GROUP_VERSION,
                    plural=PROXY_GROUP_PLURAL,
                    label_selector=selector,
                    _request_timeout=self._timeout,
                )
            return response.get("items", [])
        kwargs = {"_request_timeout": self._timeout}
        if selector:
            kwargs["label_selector"] = selector
        with _api_errors(kind, namespace=namespace):
            if namespace:
                response = self._method(kind, "list")(namespace=namespace, **kwargs)
            else:
                response = self._method(kind, "list", all_namespaces=True)(**kwargs)
        return [self._to_dict(item) for item in response.items]

    def create(self, kind: str, obj: Dict) -> Dict:
        namespace = namespace_of(obj)
        log_k8s_operation(logger, "create", kind, name=name_of(obj), namespace=namespace)
        create = self._method(kind, "create")
        with _api_errors(kind, name_of(obj), namespace):
            return self._to_dict(create(namespace=namespace, body=obj, _request_timeout=self._timeout))

    def update(self, kind: str, obj: Dict) -> Dict:
        namespace = namespace_of(obj)
        log_k8s_operation(logger, "update", kind, name=name_of(obj), namespace=namespace,
                          resource_version=meta(obj).get("resourceVersion"))
        replace = self._method(kind, "replace")
        with _api_errors(kind, name_of(obj), namespace):
            return self._to_dict(replace(name=name_of(obj), namespace=namespace, body=obj,
                                         _request_timeout=self._timeout))

    def update_status(self, kind: str, obj: Dict) -> Dict:
        if kind != "Ingress":
            raise ValueError(f"status updates are not supported for {kind!r}")
        namespace = namespace_of(obj)
        log_k8s_operation(logger, "update_status", kind, name=name_of(obj), namespace=namespace)
        if not self._apis:
            self.connect()
        with _api_errors(kind, name_of(obj), namespace):
            return self._to_dict(self._apis["networking"].replace_namespaced_ingress_status(
                name=name_of(obj), namespace=namespace, body=obj, _request_timeout=self._timeout))

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        log_k8s_operation(logger, "delete", kind, name=name, namespace=namespace)
        delete = self._method(kind, "delete")
        with _api_errors(kind, name, namespace):
            delete(name=name, namespace=namespace, _request_timeout=self._timeout)

    def watch(self, kind: str, namespace: Optional[str] = None,
              labels: Optional[Dict[str, str]] = None,
              timeout_seconds: int = 300) -> Iterator[Tuple[str, Dict]]:
        """Stream (event type, object) pairs until the server closes the watch."""
        log_k8s_operation(logger, "watch", kind, namespace=namespace, labels=labels)
        w = watch.Watch()
        kwargs = {"timeout_seconds": timeout_seconds}
        if labels:
            kwargs["label_selector"] = label_selector(labels)
        if kind == "ProxyGroup":
            if not self._custom_objects:
                self.connect()
            stream = w.stream(self._custom_objects.list_cluster_custom_object,
                              group=PROXY_GROUP_GROUP, version=PROXY_GROUP_VERSION,
                              plural=PROXY_GROUP_PLURAL, **kwargs)
        elif namespace:
            stream = w.stream(self._method(kind, "list"), namespace=namespace, **kwargs)
        else:
            stream = w.stream(self._method(kind, "list", all_namespaces=True), **kwargs)
        with _api_errors(kind, namespace=namespace):
            for event in stream:
                obj = event["object"]
                if not isinstance(obj, dict):
                    obj = self._to_dict(obj)
                yield event["type"], obj
