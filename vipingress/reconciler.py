"""Reconciliation of Ingresses exposed through an ingress ProxyGroup.

Each call to :meth:`IngressReconciler.reconcile` converges one Ingress from
freshly observed state: the Ingress and its siblings, the ProxyGroup, the
serve config document, the VIP service directory and the replica secrets.
Nothing is carried over between calls, so a failed pass is retried by simply
calling it again.
"""

import copy
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from .certs import CertProvisioner
from .errors import IngressValidationError, NotFoundError
from .events import EVENT_TYPE_WARNING, REASON_INVALID_INGRESS, EventRecorder
from .logging_config import get_logger, log_function_entry, log_function_exit, log_reconcile_event
from .models import (
    ANNOTATION_HTTP_ENDPOINT,
    ANNOTATION_PROXY_GROUP,
    ANNOTATION_SERVICE_NAME,
    FINALIZER,
    PROXY_GROUP_TYPE_INGRESS,
    IngressIntent,
    OperatorConfig,
)
from .naming import hostname_for_service, resolve
from .replicas import ReplicaConfigPropagator
from .serveconfig import ServeConfigMerger, build_service_config, handlers_for_ingress
from .state import IngressPhase, StateTracker
from .status import StatusReporter
from .store import Store, annotations_of, is_deleting, key_of, meta, name_of, namespace_of
from .validation import is_well_formed, parse_tags, validate_ingress
from .vipservice import VIPServiceManager

logger = get_logger(__name__)


class ReconcileResult(NamedTuple):
    """Outcome of one pass. ``requeue_after`` asks for another pass later."""

    phase: IngressPhase
    requeue_after: Optional[float] = None


class LiveIndex:
    """Service Names and hostnames referenced by live Ingresses, per ProxyGroup."""

    def __init__(self, by_proxy_group: Dict[str, Dict[str, str]]):
        self.by_proxy_group = by_proxy_group

    def names(self, pg_name: Optional[str] = None) -> Set[str]:
        if pg_name is not None:
            return set(self.by_proxy_group.get(pg_name, {}))
        return {name for services in self.by_proxy_group.values() for name in services}

    def hostnames(self) -> Set[str]:
        return {host for services in self.by_proxy_group.values() for host in services.values()}


class IngressReconciler:
    """Converges Ingresses onto ProxyGroup serve config, VIP services and certs."""

    def __init__(self, store: Store, directory, tailnet, recorder: EventRecorder,
                 operator_config: OperatorConfig, tracker: Optional[StateTracker] = None):
        self.store = store
        self.tailnet = tailnet
        self.recorder = recorder
        self.config = operator_config
        self.tracker = tracker or StateTracker()

        namespace = operator_config.operator_namespace
        self.vip = VIPServiceManager(directory, operator_config.operator_id)
        self.certs = CertProvisioner(store, namespace)
        self.serve = ServeConfigMerger(store, namespace)
        self.replicas = ReplicaConfigPropagator(store, namespace)
        self.status = StatusReporter(store, namespace)

    def is_managed(self, ingress: Dict) -> bool:
        """Ingress of our class that targets a ProxyGroup."""
        class_name = (ingress.get("spec") or {}).get("ingressClassName")
        return class_name == self.config.ingress_class and ANNOTATION_PROXY_GROUP in annotations_of(ingress)

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        key = f"{namespace}/{name}"
        log_function_entry(logger, "reconcile", key=key)

        ingress = self.store.get_or_none("Ingress", name, namespace)
        if ingress is None:
            self.tracker.advance(key, IngressPhase.GONE)
            log_function_exit(logger, "reconcile", key=key, phase=IngressPhase.GONE.value)
            return ReconcileResult(IngressPhase.GONE)

        if is_deleting(ingress) or not self.is_managed(ingress):
            result = self._finalize(ingress)
        else:
            result = self._provision(ingress)

        log_function_exit(logger, "reconcile", key=key, phase=result.phase.value,
                          requeue_after=result.requeue_after)
        return result

    def build_intent(self, ingress: Dict, dns_suffix: str) -> IngressIntent:
        hostname, service_name = resolve(ingress, dns_suffix)
        annotations = annotations_of(ingress)
        return IngressIntent(
            namespace=namespace_of(ingress),
            name=name_of(ingress),
            proxy_group=annotations[ANNOTATION_PROXY_GROUP],
            hostname=hostname,
            service_name=service_name,
            tags=parse_tags(ingress) or list(self.config.default_tags),
            http_enabled=annotations.get(ANNOTATION_HTTP_ENDPOINT) == "enabled",
            handlers=handlers_for_ingress(self.store, ingress, hostname),
        )

    def _provision(self, ingress: Dict) -> ReconcileResult:
        key = key_of(ingress)
        generation = meta(ingress).get("generation")
        self.tracker.advance(key, IngressPhase.UNVALIDATED, generation)

        pg_name = annotations_of(ingress)[ANNOTATION_PROXY_GROUP]
        proxy_group = self.store.get_or_none("ProxyGroup", pg_name)
        siblings = [ing for ing in self.store.list("Ingress") if self.is_managed(ing)]
        try:
            validate_ingress(ingress, proxy_group, siblings)
        except IngressValidationError as e:
            return self._reject(ingress, e)

        dns_suffix = self.tailnet.dns_suffix()
        intent = self.build_intent(ingress, dns_suffix)
        self.tracker.advance(key, IngressPhase.RECONCILING, generation, intent.service_name)
        log_reconcile_event(logger, "provisioning", key,
                            service=intent.service_name,
                            hostname=intent.hostname,
                            proxy_group=pg_name)

        ingress = self._ensure_claim(ingress, intent.service_name)

        try:
            self.vip.upsert(intent.service_name, intent.tags, intent.vip_ports())
        except IngressValidationError as e:
            return self._reject(ingress, e)

        self.certs.ensure_cert_resources(pg_name, intent.hostname)
        service_config = build_service_config(intent.hostname, intent.handlers, intent.http_enabled)
        self.serve.ensure_service(pg_name, intent.service_name, service_config)

        # Covers the previous Service Name of an Ingress whose hostname
        # changed and the previous ProxyGroup of one that was moved.
        for name in self._proxy_group_names(pg_name):
            self._sweep(name, dns_suffix)
        self.replicas.sync(pg_name, self._advertisable(pg_name))

        serving = self.status.is_serving(pg_name, intent.service_name)
        self.status.update_status(ingress, intent.hostname, service_config, serving)

        if not serving:
            self.tracker.advance(key, IngressPhase.PENDING, generation,
                                 message="waiting for replicas to serve the service")
            return ReconcileResult(IngressPhase.PENDING, self.config.pending_requeue_seconds)

        self.tracker.advance(key, IngressPhase.PENDING, generation)
        self.tracker.advance(key, IngressPhase.READY, generation)
        log_reconcile_event(logger, "ready", key, service=intent.service_name)
        return ReconcileResult(IngressPhase.READY)

    def _reject(self, ingress: Dict, err: IngressValidationError) -> ReconcileResult:
        key = key_of(ingress)
        self.tracker.advance(key, IngressPhase.REJECTED, meta(ingress).get("generation"), message=str(err))
        logger.warning("Ingress rejected", ingress=key, reason=err.reason, error=str(err))
        self.recorder.event(ingress, EVENT_TYPE_WARNING, REASON_INVALID_INGRESS, str(err))

        # A ProxyGroup that is missing or not ready cannot be operated on; its
        # Ingresses are picked up again when the ProxyGroup changes.
        if not err.is_proxy_group_problem and FINALIZER in (meta(ingress).get("finalizers") or []):
            self._release_ingress(ingress)
            self._remove_finalizer(ingress)
        return ReconcileResult(IngressPhase.REJECTED)

    def _finalize(self, ingress: Dict) -> ReconcileResult:
        key = key_of(ingress)
        if FINALIZER not in (meta(ingress).get("finalizers") or []):
            self.tracker.advance(key, IngressPhase.GONE)
            return ReconcileResult(IngressPhase.GONE)

        self.tracker.advance(key, IngressPhase.CLEANING_UP)
        log_reconcile_event(logger, "cleanup", key, deleting=is_deleting(ingress))
        self._release_ingress(ingress)
        self._remove_finalizer(ingress)
        self.tracker.advance(key, IngressPhase.GONE)
        log_reconcile_event(logger, "cleaned_up", key)
        return ReconcileResult(IngressPhase.GONE)

    def _release_ingress(self, ingress: Dict) -> None:
        """Release everything the Ingress held that no other live Ingress needs.

        The ProxyGroup annotation may have been edited since provisioning, so
        every ingress ProxyGroup is swept.
        """
        dns_suffix = self.tailnet.dns_suffix()
        exclude = key_of(ingress)
        own: Dict[str, str] = {}
        if is_well_formed(ingress):
            hostname, service_name = resolve(ingress, dns_suffix)
            own[service_name] = hostname

        own_pg = annotations_of(ingress).get(ANNOTATION_PROXY_GROUP)
        for pg_name in self._proxy_group_names(own_pg):
            self._sweep(pg_name, dns_suffix, exclude=exclude)
            self.replicas.sync(pg_name, self._advertisable(pg_name))

        # Claims that never made it into a serve config.
        if own:
            self._release_stale(own, self._live_index(dns_suffix, exclude=exclude), own_pg or "")

    def _proxy_group_names(self, extra: Optional[str] = None) -> List[str]:
        """Names of all ingress ProxyGroups, plus ``extra`` if given."""
        names = {
            name_of(pg) for pg in self.store.list("ProxyGroup")
            if (pg.get("spec") or {}).get("type") == PROXY_GROUP_TYPE_INGRESS
        }
        if extra:
            names.add(extra)
        return sorted(names)

    def _live_index(self, dns_suffix: str, exclude: Optional[str] = None) -> LiveIndex:
        """Index of provisioned Ingresses that are still wanted.

        Only Ingresses carrying the finalizer count: the finalizer is added
        before any serve config entry is written for an Ingress.
        """
        by_pg: Dict[str, Dict[str, str]] = {}
        for ing in self.store.list("Ingress"):
            if key_of(ing) == exclude or is_deleting(ing) or not self.is_managed(ing):
                continue
            if FINALIZER not in (meta(ing).get("finalizers") or []) or not is_well_formed(ing):
                continue
            hostname, service_name = resolve(ing, dns_suffix)
            by_pg.setdefault(annotations_of(ing)[ANNOTATION_PROXY_GROUP], {})[service_name] = hostname
        return LiveIndex(by_pg)

    def _sweep(self, pg_name: str, dns_suffix: str, exclude: Optional[str] = None) -> None:
        """Drop serve config entries of ``pg_name`` that no live Ingress resolves to."""
        try:
            snapshot = self.serve.read(pg_name)
        except NotFoundError:
            return
        # The document is read before Ingresses are listed: an entry present in
        # the snapshot belongs to an Ingress the listing can see, and entries
        # added afterwards make the snapshot-based write below fail.
        live = self._live_index(dns_suffix, exclude=exclude)
        live_here = live.names(pg_name)
        stale = {
            name: svc.hostname() or hostname_for_service(name, dns_suffix)
            for name, svc in snapshot[1].services.items()
            if name not in live_here
        }
        if not stale:
            return

        logger.info("Releasing unreferenced services", proxy_group=pg_name, services=sorted(stale))
        remaining = set(snapshot[1].services) - set(stale)
        self.replicas.sync(pg_name, self._advertisable(pg_name, only=remaining))
        self._release_stale(stale, live, pg_name)
        self.serve.remove_services(pg_name, stale, snapshot=snapshot)

    def _release_stale(self, stale: Dict[str, str], live: LiveIndex, pg_name: str) -> None:
        live_names = live.names()
        live_hostnames = live.hostnames()
        for service_name, hostname in sorted(stale.items()):
            if service_name not in live_names:
                self.vip.release(service_name)
            if hostname not in live_hostnames:
                self.certs.release_cert_resources(pg_name, hostname, live_hostnames)

    def _advertisable(self, pg_name: str, only: Optional[Iterable[str]] = None) -> Set[str]:
        """Serve config services whose certificate is in place."""
        cfg = self.serve.load_or_empty(pg_name)
        wanted = set(cfg.services) if only is None else set(only) & set(cfg.services)
        return {
            name for name in wanted
            if cfg.services[name].hostname() and self.certs.cert_ready(cfg.services[name].hostname())
        }

    def _ensure_claim(self, ingress: Dict, service_name: str) -> Dict:
        """Add the finalizer and record the Service Name the Ingress now holds."""
        finalizers = meta(ingress).get("finalizers") or []
        if FINALIZER in finalizers and annotations_of(ingress).get(ANNOTATION_SERVICE_NAME) == service_name:
            return ingress
        updated = copy.deepcopy(ingress)
        if FINALIZER not in finalizers:
            meta(updated)["finalizers"] = list(finalizers) + [FINALIZER]
        annotations = dict(annotations_of(updated))
        annotations[ANNOTATION_SERVICE_NAME] = service_name
        meta(updated)["annotations"] = annotations
        return self.store.update("Ingress", updated)

    def _remove_finalizer(self, ingress: Dict) -> None:
        finalizers = meta(ingress).get("finalizers") or []
        if FINALIZER not in finalizers:
            return
        updated = copy.deepcopy(ingress)
        meta(updated)["finalizers"] = [f for f in finalizers if f != FINALIZER]
        (meta(updated).get("annotations") or {}).pop(ANNOTATION_SERVICE_NAME, None)
        try:
            self.store.update("Ingress", updated)
        except NotFoundError:
            logger.debug("Ingress gone before finalizer removal", ingress=key_of(ingress))
