"""
The BundleReconciler runs one reconciliation pass for a Bundle. A pass
manages the deletion finalizer, orders the resources by their dependencies,
processes each resource, garbage collects objects that left the Bundle and
writes the aggregated status back.
"""

# Standard
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import copy
import threading

# First Party
import alog

# Local
from . import constants, status
from .bundle import Bundle
from .cluster import ClusterClient, ObjectStore
from .dag import Graph
from .exceptions import (
    BundleError,
    ClusterApiError,
    ConflictError,
    DuplicateResourceError,
    NotFoundError,
    PassCancelled,
    StructuralError,
    TransientError,
)
from .log_format import bundle_context, resource_context
from .plugin import PluginRegistry
from .readiness import ReadinessRegistry, default_readiness_registry
from .resource_info import ResourceInfo
from .resource_reconciler import ResourceReconciler
from .speccheck import SpecChecker
from .utils import ObjectRef, get_controller_ref, get_uid, is_being_deleted, sorted_refs

log = alog.use_channel("BNDLR")


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of one pass"""

    # Flag to control requeue of the Bundle with backoff
    requeue: bool
    # The error of the pass, if any
    exception: Optional[Exception] = None
    # The pass was cancelled before it finished
    cancelled: bool = False


class BundleReconciler:
    """Runs reconciliation passes. One instance is shared by all workers; all
    per-pass state lives in the pass itself.
    """

    def __init__(
        self,
        store: ObjectStore,
        client: ClusterClient,
        plugins: Optional[PluginRegistry] = None,
        readiness: Optional[ReadinessRegistry] = None,
        spec_checker: Optional[SpecChecker] = None,
    ):
        self.store = store
        self.client = client
        self.plugins = plugins if plugins is not None else PluginRegistry()
        self.readiness = (
            readiness
            if readiness is not None
            else default_readiness_registry(crd_lookup=self.find_crd)
        )
        self.spec_checker = spec_checker if spec_checker is not None else SpecChecker()

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Reconcile finished in: ")
    def reconcile(
        self, manifest: dict, cancel_event: Optional[threading.Event] = None
    ) -> ReconciliationResult:
        """Run one pass for a Bundle

        Args:
            manifest:  dict
                The Bundle object as read from the cluster
            cancel_event:  Optional[threading.Event]
                When set, the pass stops before its next resource or write

        Returns:
            result:  ReconciliationResult
                Whether to requeue and the error of the pass, if any
        """
        metadata = manifest.get("metadata", {})
        with bundle_context(metadata.get("namespace"), metadata.get("name")):
            bundle_pass = _BundlePass(self, manifest, cancel_event or threading.Event())
            try:
                retriable, error = bundle_pass.run()
            except PassCancelled:
                log.info("Pass cancelled")
                return ReconciliationResult(requeue=False, cancelled=True)

        if error is not None:
            log.warning("Pass finished with error (retriable=%s): %s", retriable, error)
        return ReconciliationResult(requeue=error is not None and retriable, exception=error)

    def find_crd(self, group: str, kind: str) -> Optional[dict]:
        """Find the CustomResourceDefinition for a group/kind in the store"""
        for crd in self.store.list(constants.CRD_API_VERSION, constants.CRD_KIND):
            spec = crd.get("spec") or {}
            if spec.get("group") == group and (spec.get("names") or {}).get("kind") == kind:
                return crd
        return None


def declared_object_refs(bundle: Bundle, plugins: PluginRegistry) -> List[ObjectRef]:
    """The identities of all objects declared by a Bundle. Plugin resources
    with an unknown plugin are skipped.
    """
    refs = []
    for resource in bundle.resources:
        if resource.object is not None:
            refs.append(resource.object_ref())
        elif resource.plugin is not None:
            plugin = plugins.get(resource.plugin.name)
            if plugin is None:
                continue
            description = plugin.describe()
            refs.append(
                ObjectRef(description.api_version, description.kind, resource.plugin.object_name)
            )
    return refs


## Implementation Details ######################################################


class _BundlePass:
    """State of one pass over one Bundle"""

    def __init__(
        self,
        reconciler: BundleReconciler,
        manifest: dict,
        cancel_event: threading.Event,
    ):
        self.reconciler = reconciler
        self.manifest = copy.deepcopy(manifest)
        self.cancel_event = cancel_event
        self.bundle: Optional[Bundle] = None
        self.processed: Dict[str, ResourceInfo] = {}
        self.objects_to_delete: Optional[Dict[ObjectRef, dict]] = None
        self.new_finalizers: Optional[List[str]] = None

    @property
    def store(self) -> ObjectStore:
        return self.reconciler.store

    @property
    def client(self) -> ClusterClient:
        return self.reconciler.client

    def run(self) -> Tuple[bool, Optional[Exception]]:
        try:
            self.bundle = Bundle.from_dict(self.manifest)
        except StructuralError as err:
            # The status is still written from the identity of the manifest
            log.warning("Bundle is malformed: %s", err)
            self.bundle = Bundle.from_dict(_without_resources(self.manifest))
            return self._handle_result(False, err)

        if self.bundle.is_deleted:
            retriable, error = self._process_deleted()
        else:
            retriable, error = self._process_normal()
        return self._handle_result(retriable, error)

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise PassCancelled()

    ## Normal Processing #######################################################

    def _process_normal(self) -> Tuple[bool, Optional[Exception]]:
        bundle = self.bundle

        # A missing finalizer is added first and nothing else happens in this
        # pass
        if not bundle.has_finalizer(constants.FINALIZER_DELETE_RESOURCES):
            log.debug("Adding finalizer %s", constants.FINALIZER_DELETE_RESOURCES)
            self.new_finalizers = bundle.finalizers + [constants.FINALIZER_DELETE_RESOURCES]
            return False, None

        try:
            order = self._sort_resources()
        except StructuralError as err:
            return False, err

        resource_map = {res.name: res for res in bundle.resources}
        resource_reconciler = ResourceReconciler(
            bundle=bundle,
            store=self.store,
            client=self.client,
            spec_checker=self.reconciler.spec_checker,
            readiness=self.reconciler.readiness,
            plugins=self.reconciler.plugins,
            processed=self.processed,
            cancel_event=self.cancel_event,
        )
        for name in order:
            self._check_cancelled()
            with resource_context(name):
                info = resource_reconciler.process(resource_map[name])
            self.processed[name] = info
            if info.is_race:
                # The watch event of the other writer triggers the next pass
                log.info("Race on resource %s, ending the pass: %s", name, info.error)
                return False, info.error

        try:
            self._find_objects_to_delete()
        except ClusterApiError as err:
            return err.is_retriable, err
        if self._is_bundle_ready():
            return self._delete_objects(self.objects_to_delete)
        return False, None

    def _sort_resources(self) -> List[str]:
        """Build the dependency graph and sort it dependencies-first

        Raises:
            StructuralError: On duplicate names, unknown dependencies or cycles
        """
        graph = Graph()
        for resource in self.bundle.resources:
            if resource.name in graph:
                raise DuplicateResourceError(resource.name)
            graph.add_vertex(resource.name)
        try:
            for resource in self.bundle.resources:
                for dependency in resource.depends_on:
                    graph.add_edge(resource.name, dependency)
            order = graph.topological_sort()
        except StructuralError as err:
            raise StructuralError(f"topological sort of resources failed: {err}") from err
        log.debug2("Resource order: %s", order)
        return order

    def _is_bundle_ready(self) -> bool:
        return all(
            res.name in self.processed and self.processed[res.name].is_ready
            for res in self.bundle.resources
        )

    def _controlled_objects(self) -> List[dict]:
        """Live objects whose controller is this Bundle"""
        return [
            obj
            for obj in self.store.objects_owned_by(self.bundle.namespace, self.bundle.uid)
            if (get_controller_ref(obj) or {}).get("uid") == self.bundle.uid
        ]

    def _find_objects_to_delete(self):
        """Collect the controlled objects that the Bundle no longer declares"""
        self.objects_to_delete = {
            ObjectRef.from_object(obj): obj for obj in self._controlled_objects()
        }
        for ref in declared_object_refs(self.bundle, self.reconciler.plugins):
            self.objects_to_delete.pop(ref, None)
        log.debug2("Objects to delete: %s", list(self.objects_to_delete))

    def _delete_objects(self, objects: Dict[ObjectRef, dict]) -> Tuple[bool, Optional[Exception]]:
        """Delete objects with foreground propagation, guarded by their UID.
        Objects that are already gone or were recreated count as deleted.
        """
        first_error = None
        retriable = True
        for ref in sorted_refs(list(objects)):
            obj = objects[ref]
            if is_being_deleted(obj):
                log.debug("Object %s is marked for deletion already", ref)
                continue
            self._check_cancelled()
            log.info("Deleting object %s", ref)
            try:
                self.client.delete(
                    ref.api_version,
                    ref.kind,
                    self.bundle.namespace,
                    ref.name,
                    uid=get_uid(obj),
                    propagation_policy=constants.DELETE_PROPAGATION_FOREGROUND,
                )
            except (NotFoundError, ConflictError) as err:
                # Not found means deleted already, conflict means it was
                # deleted and re-created with another UID
                log.debug("Object %s is gone already: %s", ref, err)
            except ClusterApiError as err:
                if first_error is None:
                    first_error = err
                    retriable = err.is_retriable
                else:
                    log.warning("Failed to delete object %s: %s", ref, err)
        return retriable, first_error

    ## Deleted Processing ######################################################

    def _process_deleted(self) -> Tuple[bool, Optional[Exception]]:
        bundle = self.bundle
        if not bundle.has_finalizer(constants.FINALIZER_DELETE_RESOURCES):
            return False, None

        # Without the foregroundDeletion finalizer the owned objects are
        # deleted manually
        if not bundle.has_finalizer(constants.FOREGROUND_DELETION_FINALIZER):
            try:
                objects = {
                    ObjectRef.from_object(obj): obj for obj in self._controlled_objects()
                }
            except ClusterApiError as err:
                return err.is_retriable, err
            retriable, error = self._delete_objects(objects)
            if error is not None:
                return retriable, error

        self.new_finalizers = [
            fin for fin in bundle.finalizers if fin != constants.FINALIZER_DELETE_RESOURCES
        ]
        return False, None

    ## Results #################################################################

    def _handle_result(
        self, retriable: bool, error: Optional[Exception]
    ) -> Tuple[bool, Optional[Exception]]:
        if self.new_finalizers is not None:
            return self._update_finalizers(retriable, error)
        if not self.bundle.is_deleted:
            return self._update_status(retriable, error)
        return retriable, error

    def _update_finalizers(
        self, retriable: bool, error: Optional[Exception]
    ) -> Tuple[bool, Optional[Exception]]:
        self._check_cancelled()
        manifest = copy.deepcopy(self.bundle.manifest)
        manifest.setdefault("metadata", {})["finalizers"] = self.new_finalizers
        try:
            self.client.update(manifest)
            log.debug("Set bundle finalizers to %s", self.new_finalizers)
        except (ConflictError, NotFoundError) as err:
            log.debug("Bundle changed while updating finalizers: %s", err)
        except ClusterApiError as err:
            if error is None:
                return True, TransientError(f"failed to update bundle: {err}")
            log.error("Error updating Bundle: %s", err)
        return retriable, error

    def _update_status(
        self, retriable: bool, error: Optional[Exception]
    ) -> Tuple[bool, Optional[Exception]]:
        if self.objects_to_delete is None and self.bundle.resources:
            try:
                self._find_objects_to_delete()
            except ClusterApiError as err:
                log.error("Error updating objectsToDelete status field: %s", err)

        new_status = status.make_bundle_status(
            self.bundle,
            self.processed,
            error=error,
            retriable=retriable,
            plugins=self.reconciler.plugins,
            objects_to_delete=(
                list(self.objects_to_delete) if self.objects_to_delete is not None else None
            ),
        )
        if error is None:
            failed = [res.name for res in self.bundle.resources if _failed(self.processed, res.name)]
            if failed:
                # Resource failures are reported as the error of the pass
                error = BundleError(
                    f"error processing resource(s): {failed}",
                    is_retriable=all(self.processed[name].retriable for name in failed),
                )
                retriable = error.is_retriable

        if not status.status_changed(self.bundle.status, new_status):
            log.debug("Status has not changed. No update")
            return retriable, error

        self._check_cancelled()
        manifest = copy.deepcopy(self.bundle.manifest)
        manifest["status"] = new_status
        try:
            self.client.update_status(manifest)
            log.debug("Updated bundle status")
            log.debug4("New status: %s", new_status)
        except (ConflictError, NotFoundError) as err:
            log.debug("Bundle changed while updating status: %s", err)
        except ClusterApiError as err:
            if error is None:
                return True, TransientError(f"failed to update bundle status: {err}")
            log.error("Error updating Bundle status: %s", err)
        return retriable, error


def _failed(processed: Dict[str, ResourceInfo], name: str) -> bool:
    return name in processed and processed[name].is_error


def _without_resources(manifest: dict) -> dict:
    manifest = copy.deepcopy(manifest)
    spec = manifest.get("spec")
    if not isinstance(spec, dict):
        spec = {}
    spec.pop("resources", None)
    manifest["spec"] = spec
    return manifest
