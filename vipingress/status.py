"""Ingress status, populated once a replica is actually serving the service."""

import copy
import json
from typing import Dict, List, Optional

from .logging_config import get_logger
from .models import ServiceConfig
from .replicas import ADVERTISE_SERVICES, pg_secret_labels
from .store import Store, decode_value, key_of, name_of

logger = get_logger(__name__)

CURRENT_PROFILE_KEY = "_current-profile"


def load_balancer_ingress(hostname: str, service_config: Optional[ServiceConfig]) -> List[Dict]:
    """Status entries mirroring the active serve config ports."""
    if service_config is None or not service_config.tcp:
        return []
    return [{
        "hostname": hostname,
        "ports": [{"port": port, "protocol": "TCP"} for port in service_config.ports()],
    }]


class StatusReporter:
    """Observes replica state and writes Ingress load balancer status."""

    def __init__(self, store: Store, namespace: str):
        self.store = store
        self.namespace = namespace

    def advertised_by_replica(self, pg_name: str) -> Optional[List[str]]:
        """Services in the live prefs of the representative replica.

        The representative is the first state Secret, by name, with a current
        profile. None when no replica has reported state yet.
        """
        secrets = self.store.list("Secret", self.namespace, pg_secret_labels(pg_name, "state"))
        for secret in sorted(secrets, key=name_of):
            data = secret.get("data") or {}
            profile_key = decode_value(data.get(CURRENT_PROFILE_KEY)).decode("utf-8")
            if not profile_key:
                continue
            raw = decode_value(data.get(profile_key))
            if not raw:
                continue
            prefs = json.loads(raw)
            return list(prefs.get(ADVERTISE_SERVICES) or [])
        return None

    def is_serving(self, pg_name: str, service_name: str) -> bool:
        return service_name in (self.advertised_by_replica(pg_name) or [])

    def update_status(self, ingress: Dict, hostname: str,
                      service_config: Optional[ServiceConfig], serving: bool) -> bool:
        """Write status if it differs from what is wanted. Returns True on write."""
        wanted = load_balancer_ingress(hostname, service_config) if serving else []
        current = ((ingress.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        if current == wanted:
            return False

        updated = copy.deepcopy(ingress)
        load_balancer = {"ingress": wanted} if wanted else {}
        updated["status"] = {"loadBalancer": load_balancer}
        self.store.update_status("Ingress", updated)
        logger.info("Updated Ingress status", ingress=key_of(ingress), serving=serving,
                    ports=[p["port"] for entry in wanted for p in entry["ports"]])
        return True
