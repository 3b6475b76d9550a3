"""Kubernetes Events for user-visible feedback on Ingresses."""

from datetime import datetime, timezone
from typing import Dict, Set, Tuple

from .errors import OperatorError
from .logging_config import get_logger
from .store import Store, meta, name_of, namespace_of

logger = get_logger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

REASON_INVALID_INGRESS = "InvalidIngressConfiguration"

COMPONENT = "vipingress"


class EventRecorder:
    """Records Events against objects, once per object generation and message."""

    def __init__(self, store: Store):
        self.store = store
        self._seen: Set[Tuple[str, int, str, str]] = set()

    def event(self, obj: Dict, event_type: str, reason: str, message: str) -> None:
        metadata = obj.get("metadata") or {}
        dedup_key = (metadata.get("uid", ""), metadata.get("generation", 0), reason, message)
        if dedup_key in self._seen:
            return

        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{name_of(obj)}.",
                "namespace": namespace_of(obj),
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion", "networking.k8s.io/v1"),
                "kind": obj.get("kind", "Ingress"),
                "name": name_of(obj),
                "namespace": namespace_of(obj),
                "uid": metadata.get("uid"),
                "resourceVersion": meta(obj).get("resourceVersion"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": COMPONENT},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.store.create("Event", body)
        except OperatorError as e:
            # Events are advisory, the reconcile outcome does not depend on them.
            logger.warning("Failed to record event",
                           object=f"{namespace_of(obj)}/{name_of(obj)}",
                           reason=reason,
                           error=str(e))
            return
        self._seen.add(dedup_key)
