"""Work queue, retry policy and watch loops driving the reconciler."""

import asyncio
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import ConflictError, InvariantViolation, NotFoundError, OperatorError, TransientBackendError
from .logging_config import get_logger, log_function_entry, log_function_exit, log_reconcile_event
from .models import ANNOTATION_PROXY_GROUP, LABEL_PARENT_NAME, OperatorConfig
from .reconciler import IngressReconciler, ReconcileResult
from .replicas import pg_secret_labels
from .store import Store, annotations_of, key_of, labels_of, name_of

logger = get_logger(__name__)

WATCH_TIMEOUT_SECONDS = 900
SUPERVISE_INTERVAL_SECONDS = 10
RESYNC_INTERVAL_SECONDS = 600


class RateLimiter:
    """Per-key exponential backoff."""

    def __init__(self, base_delay: float, max_delay: float):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[str, int] = {}

    def when(self, key: str) -> float:
        """Record a failure for ``key`` and return how long to wait."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)


class WorkQueue:
    """Deduplicating queue of Ingress keys.

    A key is handed to at most one worker at a time. Adding a key that is
    being processed marks it dirty; it is queued again once :meth:`done` is
    called for it.
    """

    def __init__(self):
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle = None

        def fire():
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def get(self) -> str:
        key = await self._queue.get()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def shut_down(self) -> None:
        self._shutting_down = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()


def split_key(key: str):
    namespace, _, name = key.partition("/")
    return namespace, name


class Controller:
    """Runs reconcile workers over a work queue fed by Kubernetes watches."""

    def __init__(self, store: Store, reconciler: IngressReconciler, operator_config: OperatorConfig):
        self.store = store
        self.reconciler = reconciler
        self.config = operator_config
        self.queue = WorkQueue()
        self.limiter = RateLimiter(operator_config.backoff_base_seconds, operator_config.backoff_max_seconds)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._watch_threads: Dict[str, threading.Thread] = {}
        self._stopped = threading.Event()

    # Retry policy

    def handle_result(self, key: str, result: ReconcileResult) -> None:
        self.limiter.forget(key)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)

    def handle_error(self, key: str, err: Exception) -> None:
        if isinstance(err, ConflictError):
            logger.debug("Conflict, requeueing", key=key, error=str(err))
            self.queue.add(key)
            return

        delay = self.limiter.when(key)
        if isinstance(err, NotFoundError):
            logger.debug("Dependency not found, retrying", key=key, error=str(err), retry_in=delay)
        elif isinstance(err, TransientBackendError):
            failures = self.limiter.failures(key)
            if failures >= self.config.warn_after_failures:
                logger.warning("Backend still unavailable", key=key, error=str(err),
                               failures=failures, retry_in=delay)
            else:
                logger.info("Backend unavailable, retrying", key=key, error=str(err), retry_in=delay)
        elif isinstance(err, InvariantViolation):
            logger.critical("Invariant violated", key=key, error=str(err), retry_in=delay)
        else:
            logger.error("Reconcile failed", key=key, error=str(err),
                         error_type=type(err).__name__, retry_in=delay)
        self.queue.add_after(key, delay)

    def reconcile_key(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        return self.reconciler.reconcile(namespace, name)

    async def process_next(self) -> str:
        """Take one key off the queue and reconcile it."""
        key = await self.queue.get()
        try:
            result = await asyncio.to_thread(self.reconcile_key, key)
        except OperatorError as e:
            self.handle_error(key, e)
        except Exception as e:
            logger.exception("Unexpected reconcile failure", key=key)
            self.handle_error(key, e)
        else:
            self.handle_result(key, result)
        finally:
            self.queue.done(key)
        return key

    async def _worker(self, index: int) -> None:
        logger.debug("Worker started", worker=index)
        while True:
            await self.process_next()

    # Event mapping

    def ingresses_for_proxy_group(self, pg_name: str) -> List[str]:
        return sorted(
            key_of(ing) for ing in self.store.list("Ingress")
            if annotations_of(ing).get(ANNOTATION_PROXY_GROUP) == pg_name
        )

    def keys_for_ingress_event(self, event_type: str, ingress: Dict) -> List[str]:
        keys = [key_of(ingress)]
        pg_name = annotations_of(ingress).get(ANNOTATION_PROXY_GROUP)
        if event_type == "DELETED" and pg_name:
            keys.extend(k for k in self.ingresses_for_proxy_group(pg_name) if k not in keys)
        return keys

    def keys_for_proxy_group_event(self, event_type: str, proxy_group: Dict) -> List[str]:
        return self.ingresses_for_proxy_group(name_of(proxy_group))

    def keys_for_state_secret_event(self, event_type: str, secret: Dict) -> List[str]:
        pg_name = labels_of(secret).get(LABEL_PARENT_NAME)
        if not pg_name:
            return []
        return self.ingresses_for_proxy_group(pg_name)

    def enqueue(self, keys: Iterable[str]) -> None:
        """Add keys from any thread."""
        for key in keys:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self.queue.add, key)
            else:
                self.queue.add(key)

    # Watches

    def _watch(self, kind: str, mapper: Callable[[str, Dict], List[str]],
               namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> None:
        logger.info("Watching", kind=kind, namespace=namespace, labels=labels)
        while not self._stopped.is_set():
            try:
                for event_type, obj in self.store.watch(kind, namespace, labels, WATCH_TIMEOUT_SECONDS):
                    if self._stopped.is_set():
                        return
                    keys = mapper(event_type, obj)
                    log_reconcile_event(logger, "watch_event", key_of(obj),
                                        kind=kind, type=event_type, enqueued=len(keys))
                    self.enqueue(keys)
            except OperatorError as e:
                logger.warning("Watch interrupted", kind=kind, error=str(e))
                self._stopped.wait(self.config.backoff_base_seconds)

    def _watch_targets(self) -> Dict[str, Callable[[], None]]:
        state_labels = pg_secret_labels("", "state")
        state_labels.pop(LABEL_PARENT_NAME)
        return {
            "watch-ingresses": lambda: self._watch("Ingress", self.keys_for_ingress_event),
            "watch-proxygroups": lambda: self._watch("ProxyGroup", self.keys_for_proxy_group_event),
            "watch-state-secrets": lambda: self._watch(
                "Secret", self.keys_for_state_secret_event,
                namespace=self.config.operator_namespace, labels=state_labels),
        }

    def _start_watch_threads(self) -> None:
        for name, target in self._watch_targets().items():
            thread = self._watch_threads.get(name)
            if thread is not None and thread.is_alive():
                continue
            if thread is not None:
                logger.warning("Restarting watch", watch=name)
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._watch_threads[name] = thread

    async def _supervise(self) -> None:
        """Restart dead watches and periodically requeue every Ingress."""
        last_resync = time.monotonic()
        while not self._stopped.is_set():
            await asyncio.sleep(SUPERVISE_INTERVAL_SECONDS)
            self._start_watch_threads()
            if time.monotonic() - last_resync >= RESYNC_INTERVAL_SECONDS:
                last_resync = time.monotonic()
                try:
                    await self.resync()
                except OperatorError as e:
                    logger.warning("Resync failed", error=str(e))

    # Lifecycle

    async def resync(self) -> int:
        """Enqueue every Ingress in the cluster."""
        ingresses = await asyncio.to_thread(self.store.list, "Ingress")
        for ing in ingresses:
            self.queue.add(key_of(ing))
        logger.info("Resync queued Ingresses", count=len(ingresses))
        return len(ingresses)

    async def start(self) -> None:
        log_function_entry(logger, "Controller.start", workers=self.config.workers)
        self._loop = asyncio.get_running_loop()
        self._stopped.clear()
        await self.resync()
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.config.workers)]
        self._start_watch_threads()
        self._supervisor = asyncio.create_task(self._supervise())
        log_function_exit(logger, "Controller.start", status="running")

    async def stop(self) -> None:
        logger.info("Stopping controller")
        self._stopped.set()
        self.queue.shut_down()
        tasks = list(self._workers)
        if self._supervisor is not None:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._supervisor = None
        # Watch threads are daemons and notice the stop flag on their next event.
        started = time.monotonic()
        for thread in self._watch_threads.values():
            thread.join(timeout=max(0.0, 1.0 - (time.monotonic() - started)))
        self._loop = None
