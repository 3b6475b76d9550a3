"""Per-hostname TLS Secret and the RBAC that lets ProxyGroup replicas read it."""

import copy
from typing import Dict, Iterable

from .errors import ConflictError, InvariantViolation
from .logging_config import get_logger
from .models import LABEL_DOMAIN, LABEL_MANAGED, LABEL_PROXY_GROUP, LABEL_SECRET_TYPE
from .store import Store, decode_value

logger = get_logger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


def cert_labels(pg_name: str, hostname: str) -> Dict[str, str]:
    return {
        LABEL_MANAGED: "true",
        LABEL_PROXY_GROUP: pg_name,
        LABEL_DOMAIN: hostname,
    }


def cert_secret(pg_name: str, namespace: str, hostname: str) -> Dict:
    labels = cert_labels(pg_name, hostname)
    labels[LABEL_SECRET_TYPE] = "certs"
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": hostname, "namespace": namespace, "labels": labels},
        "type": "kubernetes.io/tls",
    }


def cert_secret_role(pg_name: str, namespace: str, hostname: str) -> Dict:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": hostname, "namespace": namespace, "labels": cert_labels(pg_name, hostname)},
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["secrets"],
                "resourceNames": [hostname],
                "verbs": ["get", "list", "watch"],
            }
        ],
    }


def cert_secret_role_binding(pg_name: str, namespace: str, hostname: str) -> Dict:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": hostname, "namespace": namespace, "labels": cert_labels(pg_name, hostname)},
        "subjects": [
            {"kind": "ServiceAccount", "name": pg_name, "namespace": namespace},
        ],
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": hostname,
        },
    }


class CertProvisioner:
    """Creates and deletes the cert resource set of a hostname."""

    def __init__(self, store: Store, namespace: str):
        self.store = store
        self.namespace = namespace

    def _ensure(self, kind: str, desired: Dict, drift_fields: Iterable[str]) -> bool:
        name = desired["metadata"]["name"]
        existing = self.store.get_or_none(kind, name, self.namespace)
        if existing is None:
            try:
                self.store.create(kind, desired)
            except ConflictError:
                # Created concurrently, the next pass compares it.
                return False
            logger.info("Created cert resource", kind=kind, name=name, namespace=self.namespace)
            return True

        if all(existing.get(field) == desired[field] for field in drift_fields):
            return False
        updated = copy.deepcopy(existing)
        for field in drift_fields:
            updated[field] = desired[field]
        self.store.update(kind, updated)
        logger.info("Updated cert resource", kind=kind, name=name, namespace=self.namespace)
        return True

    def ensure_cert_resources(self, pg_name: str, hostname: str) -> int:
        """Make sure the Secret, Role and RoleBinding for ``hostname`` exist.

        Returns the number of writes performed.
        """
        writes = 0
        writes += self._ensure("Secret", cert_secret(pg_name, self.namespace, hostname), ())
        writes += self._ensure("Role", cert_secret_role(pg_name, self.namespace, hostname), ("rules",))
        writes += self._ensure("RoleBinding", cert_secret_role_binding(pg_name, self.namespace, hostname),
                               ("subjects",))
        return writes

    def cert_ready(self, hostname: str) -> bool:
        """The TLS Secret has been populated with a certificate and key."""
        secret = self.store.get_or_none("Secret", hostname, self.namespace)
        if secret is None:
            return False
        data = secret.get("data") or {}
        return bool(decode_value(data.get(TLS_CERT_KEY))) and bool(decode_value(data.get(TLS_PRIVATE_KEY_KEY)))

    def release_cert_resources(self, pg_name: str, hostname: str, live_hostnames: Iterable[str]) -> int:
        """Delete the cert resource set of ``hostname``.

        ``live_hostnames`` are the hostnames still referenced by live Ingresses
        on the ProxyGroup; releasing one of them is a bookkeeping bug.
        """
        if hostname in set(live_hostnames):
            raise InvariantViolation(
                f"refusing to release cert resources for {hostname} on ProxyGroup {pg_name}: still referenced"
            )
        deleted = 0
        for kind in ("RoleBinding", "Role", "Secret"):
            if self.store.delete_if_present(kind, hostname, self.namespace):
                deleted += 1
        if deleted:
            logger.info("Released cert resources", hostname=hostname, proxy_group=pg_name, deleted=deleted)
        return deleted
