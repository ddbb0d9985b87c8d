"""
The Controller ties the pieces together: watch threads turn cluster change
notifications into Bundle keys on the work queue and a pool of worker threads
runs one BundleReconciler pass per key.
"""

# Standard
from typing import Dict, Iterable, List, Optional, Tuple
import threading

# First Party
import alog

# Local
from . import config, constants
from .bundle import Bundle, make_key, split_key
from .bundle_reconciler import BundleReconciler, ReconciliationResult, declared_object_refs
from .cluster import ClusterClient, ObjectStore, WatchEvent, WatchEventType
from .exceptions import ClusterApiError, StructuralError
from .plugin import PluginRegistry
from .readiness import ReadinessRegistry
from .speccheck import SpecChecker
from .threads import ThreadBase, WatchThread
from .utils import ObjectRef, get_controller_ref, get_name, get_namespace, parse_kind_names
from .work_queue import WorkQueue

log = alog.use_channel("CTRLR")

# Seconds a worker waits on the queue before checking for shutdown
WORKER_POLL_TIME = 1.0

# The CRD of the Bundle kind itself is never watched as an owned kind
BUNDLE_CRD_NAME = f"{constants.BUNDLE_PLURAL}.{constants.API_GROUP}"


class Controller:  # pylint: disable=too-many-instance-attributes
    """Runs the Bundle control loop"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ObjectStore,
        client: ClusterClient,
        plugins: Optional[PluginRegistry] = None,
        readiness: Optional[ReadinessRegistry] = None,
        spec_checker: Optional[SpecChecker] = None,
        work_queue: Optional[WorkQueue] = None,
        workers: Optional[int] = None,
        namespace: Optional[str] = None,
        owned_kinds: Optional[Iterable[Tuple[str, str]]] = None,
    ):
        """
        Args:
            store:  ObjectStore
                Read access to the cluster
            client:  ClusterClient
                Write access to the cluster
            plugins:  Optional[PluginRegistry]
                The plugins that Bundles may reference
            readiness:  Optional[ReadinessRegistry]
                Readiness predicates. The built-in ones are used if not given.
            spec_checker:  Optional[SpecChecker]
                The drift checker. The default cleanup hooks are used if not
                given.
            work_queue:  Optional[WorkQueue]
                The queue of Bundle keys
            workers:  Optional[int]
                Number of worker threads (config.workers)
            namespace:  Optional[str]
                Only watch Bundles in this namespace (config.bundle_namespace)
            owned_kinds:  Optional[Iterable[Tuple[str, str]]]
                The (apiVersion, kind) pairs of the objects to watch
                (config.owned_kinds)
        """
        self.store = store
        self.client = client
        self.plugins = plugins if plugins is not None else PluginRegistry()
        self.reconciler = BundleReconciler(
            store=store,
            client=client,
            plugins=self.plugins,
            readiness=readiness,
            spec_checker=spec_checker,
        )
        self.queue = work_queue if work_queue is not None else WorkQueue()
        self.num_workers = workers if workers is not None else config.workers
        self.namespace = (namespace if namespace is not None else config.bundle_namespace) or None
        self.owned_kinds = list(
            owned_kinds if owned_kinds is not None else parse_kind_names(config.owned_kinds)
        )

        # Cancellation events of the passes that are currently running
        self._running: Dict[str, threading.Event] = {}
        self._running_lock = threading.Lock()

        self.watch_threads: List[WatchThread] = []
        self.worker_threads: List[WorkerThread] = []

        # Watches of the kinds defined by CRDs, keyed by CRD name
        self.crd_watch_threads: Dict[str, WatchThread] = {}
        self._crd_lock = threading.Lock()
        self._started = False

    ## Lifecycle ###############################################################

    def start(self):
        """Start the watch threads and the workers"""
        log.info(
            "Starting controller with %d workers watching namespace [%s]",
            self.num_workers,
            self.namespace or "*",
        )
        self.watch_threads = [
            WatchThread(
                self.store,
                constants.BUNDLE_API_VERSION,
                constants.BUNDLE_KIND,
                self.on_bundle_event,
                namespace=self.namespace,
            ),
            WatchThread(
                self.store,
                constants.CRD_API_VERSION,
                constants.CRD_KIND,
                self.on_crd_event,
            ),
        ]
        for api_version, kind in self.owned_kinds:
            self.watch_threads.append(
                WatchThread(
                    self.store,
                    api_version,
                    kind,
                    self.on_object_event,
                    namespace=self.namespace,
                )
            )
        self.worker_threads = [WorkerThread(self, idx) for idx in range(self.num_workers)]
        with self._crd_lock:
            self._started = True
            crd_threads = list(self.crd_watch_threads.values())
        for thread in self.watch_threads + crd_threads + self.worker_threads:
            thread.start_thread()

    def stop(self):
        """Cancel the running passes and stop all threads"""
        log.info("Stopping controller")
        with self._running_lock:
            for cancel_event in self._running.values():
                cancel_event.set()
        self.queue.shutdown()
        with self._crd_lock:
            self._started = False
            crd_threads = list(self.crd_watch_threads.values())
        for thread in self.watch_threads + crd_threads + self.worker_threads:
            thread.stop_thread()

    def wait(self, timeout: Optional[float] = None):
        """Wait for all workers to exit"""
        for thread in self.worker_threads:
            thread.join(timeout)

    ## Workers #################################################################

    @alog.logged_function(log.debug2)
    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Process the next key of the queue

        Args:
            timeout:  Optional[float]
                Maximum seconds to wait for a key

        Returns:
            keep_running:  bool
                False once the queue is shutting down
        """
        key, shutdown = self.queue.get(timeout)
        if shutdown:
            return False
        if key is None:
            return True

        cancel_event = threading.Event()
        with self._running_lock:
            self._running[key] = cancel_event
        try:
            self._process_key(key, cancel_event)
        finally:
            with self._running_lock:
                self._running.pop(key, None)
            self.queue.done(key)
        return True

    def cancel(self, key: str) -> bool:
        """Cancel the running pass of a key

        Returns:
            cancelled:  bool
                True if a pass was running
        """
        with self._running_lock:
            cancel_event = self._running.get(key)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def _process_key(self, key: str, cancel_event: threading.Event):
        namespace, name = split_key(key)
        try:
            manifest = self.store.get(
                constants.BUNDLE_API_VERSION, constants.BUNDLE_KIND, namespace, name
            )
        except ClusterApiError as err:
            log.warning("Failed to get Bundle %s: %s", key, err)
            self._handle_result(key, ReconciliationResult(requeue=err.is_retriable, exception=err))
            return
        if manifest is None:
            log.debug("Bundle %s is gone", key)
            self.queue.forget(key)
            return

        try:
            result = self.reconciler.reconcile(manifest, cancel_event)
        except Exception as err:  # pylint: disable=broad-except
            log.error("Unexpected error reconciling Bundle %s: %s", key, err, exc_info=True)
            result = ReconciliationResult(requeue=True, exception=err)
        self._handle_result(key, result)

    def _handle_result(self, key: str, result: ReconciliationResult):
        if result.cancelled:
            log.debug("Pass of %s was cancelled", key)
        elif result.requeue:
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

    ## Change Notifications ####################################################

    def on_bundle_event(self, event: WatchEvent):
        """Enqueue the Bundle that changed"""
        obj = event.obj
        key = make_key(get_namespace(obj) or constants.DEFAULT_NAMESPACE, get_name(obj))
        log.debug2("Bundle event %s for %s", event.type.value, key)
        self.queue.add(key)

    def on_object_event(self, event: WatchEvent):
        """Enqueue the Bundle that controls the object, or else every Bundle
        that declares an object with the same identity
        """
        obj = event.obj
        namespace = get_namespace(obj) or constants.DEFAULT_NAMESPACE
        controller_ref = get_controller_ref(obj)
        if (
            controller_ref
            and controller_ref.get("kind") == constants.BUNDLE_KIND
            and controller_ref.get("apiVersion") == constants.BUNDLE_API_VERSION
        ):
            self.queue.add(make_key(namespace, controller_ref.get("name")))
            return

        ref = ObjectRef.from_object(obj)
        for bundle in self._bundles(namespace):
            if ref in declared_object_refs(bundle, self.plugins):
                log.debug2("Object %s is declared by Bundle %s", ref, bundle.key)
                self.queue.add(bundle.key)

    def on_crd_event(self, event: WatchEvent):
        """Keep a watch on the kind the CRD defines and enqueue every Bundle
        declaring an object of that kind
        """
        crd = event.obj
        if event.type == WatchEventType.DELETED:
            self._unwatch_crd(crd)
        elif not self._ensure_crd_watch(crd):
            return

        spec = crd.get("spec") or {}
        group_kind = (spec.get("group", ""), (spec.get("names") or {}).get("kind"))
        for bundle in self._bundles(self.namespace):
            if any(
                ref.group_kind == group_kind
                for ref in declared_object_refs(bundle, self.plugins)
            ):
                log.debug2("CRD %s is used by Bundle %s", group_kind, bundle.key)
                self.queue.add(bundle.key)

    def _ensure_crd_watch(self, crd: dict) -> bool:
        """Start watching the kind a CRD defines once the CRD is established

        Returns:
            watched:  bool
                True if objects of the CRD's kind are being watched
        """
        crd_name = get_name(crd)
        if crd_name == BUNDLE_CRD_NAME:
            return False
        with self._crd_lock:
            if crd_name in self.crd_watch_threads:
                return True
        for condition_type in ("Established", "NamesAccepted"):
            if not _crd_condition_true(crd, condition_type):
                log.debug(
                    "Not adding a watch for CRD %s because its %s condition is not True",
                    crd_name,
                    condition_type,
                )
                return False

        spec = crd.get("spec") or {}
        version = _crd_version(spec)
        kind = (spec.get("names") or {}).get("kind")
        if not version or not kind:
            log.warning("Not adding a watch for CRD %s without a version and kind", crd_name)
            return False
        group = spec.get("group")
        api_version = f"{group}/{version}" if group else version
        if (api_version, kind) in self.owned_kinds:
            log.debug2("Kind %s/%s of CRD %s is watched already", api_version, kind, crd_name)
            return True

        thread = WatchThread(
            self.store, api_version, kind, self.on_object_event, namespace=self.namespace
        )
        with self._crd_lock:
            if crd_name in self.crd_watch_threads:
                return True
            log.info("Configuring watch for CRD %s (%s/%s)", crd_name, api_version, kind)
            self.crd_watch_threads[crd_name] = thread
            self.store.add_owned_kind(api_version, kind)
            if self._started:
                thread.start_thread()
        return True

    def _unwatch_crd(self, crd: dict):
        with self._crd_lock:
            thread = self.crd_watch_threads.pop(get_name(crd), None)
        if thread is None:
            return
        log.info("Removing watch for CRD %s", get_name(crd))
        thread.stop_thread()
        self.store.remove_owned_kind(thread.api_version, thread.kind)

    def _bundles(self, namespace: Optional[str]) -> List[Bundle]:
        bundles = []
        for manifest in self.store.list(
            constants.BUNDLE_API_VERSION, constants.BUNDLE_KIND, namespace
        ):
            try:
                bundles.append(Bundle.from_dict(manifest))
            except StructuralError as err:
                log.debug3("Skipping malformed Bundle: %s", err)
        return bundles


class WorkerThread(ThreadBase):
    """Pulls keys from the controller's queue until shutdown"""

    def __init__(self, controller: Controller, index: int):
        super().__init__(name=f"worker_{index}", daemon=True)
        self.controller = controller

    def run(self):
        while not self.should_stop():
            if not self.controller.process_next(timeout=WORKER_POLL_TIME):
                return


## Helpers #####################################################################


def _crd_condition_true(crd: dict, condition_type: str) -> bool:
    for condition in (crd.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition.get("status") == "True"
    return False


def _crd_version(spec: dict) -> Optional[str]:
    """The version to watch: the storage version, else the first served one"""
    versions = spec.get("versions") or []
    for version in versions:
        if version.get("storage"):
            return version.get("name")
    for version in versions:
        if version.get("served", True):
            return version.get("name")
    return spec.get("version")
