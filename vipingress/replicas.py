"""Keeps the advertised services of every ProxyGroup replica in line."""

import copy
import json
from typing import Dict, Iterable, List

from .logging_config import get_logger
from .models import LABEL_MANAGED, LABEL_PARENT_NAME, LABEL_PARENT_TYPE, LABEL_SECRET_TYPE
from .store import Store, decode_value, encode_value, name_of

logger = get_logger(__name__)

ADVERTISE_SERVICES = "AdvertiseServices"


def pg_secret_labels(pg_name: str, secret_type: str) -> Dict[str, str]:
    return {
        LABEL_MANAGED: "true",
        LABEL_PARENT_TYPE: "proxygroup",
        LABEL_PARENT_NAME: pg_name,
        LABEL_SECRET_TYPE: secret_type,
    }


def pg_config_secret_name(pg_name: str, replica: int) -> str:
    return f"{pg_name}-{replica}-config"


def tailscaled_config_file_name(cap_version: int) -> str:
    return f"cap-{cap_version}.hujson"


def is_tailscaled_config_key(key: str) -> bool:
    return key.startswith("cap-") and key.endswith(".hujson")


def with_advertised(raw: bytes, services: List[str]) -> bytes:
    """Rewrite one tailscaled config blob with the given advertised services."""
    cfg = json.loads(raw or b"{}")
    if services:
        cfg[ADVERTISE_SERVICES] = services
    else:
        cfg.pop(ADVERTISE_SERVICES, None)
    return json.dumps(cfg, separators=(",", ":")).encode("utf-8")


class ReplicaConfigPropagator:
    """Writes AdvertiseServices into each replica's tailscaled config."""

    def __init__(self, store: Store, namespace: str):
        self.store = store
        self.namespace = namespace

    def sync(self, pg_name: str, services: Iterable[str]) -> int:
        """Advertise exactly ``services`` on every replica.

        Returns the number of config Secrets rewritten.
        """
        wanted = sorted(set(services))
        writes = 0
        for secret in self.store.list("Secret", self.namespace, pg_secret_labels(pg_name, "config")):
            data = secret.get("data") or {}
            updated_data = dict(data)
            for key, value in data.items():
                if not is_tailscaled_config_key(key):
                    continue
                raw = decode_value(value)
                current = json.loads(raw or b"{}").get(ADVERTISE_SERVICES) or []
                if current == wanted:
                    continue
                updated_data[key] = encode_value(with_advertised(raw, wanted))
            if updated_data == data:
                continue
            updated = copy.deepcopy(secret)
            updated["data"] = updated_data
            self.store.update("Secret", updated)
            writes += 1
            logger.info("Updated replica advertised services",
                        proxy_group=pg_name,
                        secret=name_of(secret),
                        services=wanted)
        return writes
