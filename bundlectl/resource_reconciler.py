"""
The ResourceReconciler drives one resource of a Bundle through its state
machine during a pass: gate on dependencies, evaluate the desired object,
create or update it, assert convergence and check readiness.
"""

# Standard
from typing import Any, Dict, List, Optional, Tuple
import base64
import binascii
import copy
import threading

# First Party
import alog

# Local
from . import constants
from .bundle import Bundle, Resource
from .cluster import ClusterClient, ObjectStore
from .exceptions import (
    AlreadyExistsError,
    BundleError,
    ClusterApiError,
    ConflictError,
    NotFoundError,
    PassCancelled,
    RaceError,
    TerminalError,
    TransientError,
    assert_terminal,
)
from .plugin import Dependency, Plugin, PluginContext, PluginRegistry
from .readiness import ReadinessRegistry
from .references import ReferenceResolver
from .resource_info import ResourceInfo
from .speccheck import SpecChecker
from .utils import (
    get_controller_ref,
    get_name,
    get_uid,
    is_being_deleted,
    metadata,
    nested_get,
    split_api_version,
)

log = alog.use_channel("RSRC")


class ResourceReconciler:
    """Processes the resources of one Bundle during one pass. The outcomes of
    processed resources are shared through the processed map so that later
    resources can read them.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        bundle: Bundle,
        store: ObjectStore,
        client: ClusterClient,
        spec_checker: SpecChecker,
        readiness: ReadinessRegistry,
        plugins: PluginRegistry,
        processed: Dict[str, ResourceInfo],
        cache: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            bundle:  Bundle
                The Bundle being reconciled
            store:  ObjectStore
                Read access to live objects
            client:  ClusterClient
                Write access to live objects
            spec_checker:  SpecChecker
                Drift checker used for updates and the convergence assertion
            readiness:  ReadinessRegistry
                Readiness predicates by kind
            plugins:  PluginRegistry
                The plugins available to resources
            processed:  Dict[str, ResourceInfo]
                Outcomes of the resources processed so far in this pass
            cache:  Optional[Dict[str, Any]]
                Memo of resolved reference tokens for this pass
            cancel_event:  Optional[threading.Event]
                Set when the pass must stop
        """
        self.bundle = bundle
        self.store = store
        self.client = client
        self.spec_checker = spec_checker
        self.readiness = readiness
        self.plugins = plugins
        self.processed = processed
        self.cache = cache if cache is not None else {}
        self.cancel_event = cancel_event or threading.Event()

    def process(self, resource: Resource) -> ResourceInfo:
        """Process a single resource

        Args:
            resource:  Resource
                The resource to process. All of its dependencies must have
                been processed already.

        Returns:
            info:  ResourceInfo
                The outcome of the resource in this pass

        Raises:
            PassCancelled: If the pass was cancelled while processing
        """
        log.debug("Processing resource %s", resource.name)
        try:
            info = self._process(resource)
        except BundleError as err:
            info = ResourceInfo.failed(err)
        if info.is_error:
            log.warning(
                "Resource %s failed (retriable=%s): %s",
                resource.name,
                info.retriable,
                info.error,
            )
        else:
            log.info("Done processing resource %s: %s", resource.name, info.state.value)
        return info

    ## Implementation Details ##################################################

    def _process(self, resource: Resource) -> ResourceInfo:
        self._prevalidate(resource)

        # Dependents of failed resources are not attempted
        failed = [
            dep
            for dep in _unique(resource.depends_on)
            if dep in self.processed and self.processed[dep].failed_or_blocked
        ]
        if failed:
            log.debug("Resource %s blocked by failed dependencies %s", resource.name, failed)
            return ResourceInfo.blocked_by_error(failed)

        not_ready = [
            dep
            for dep in _unique(resource.depends_on)
            if dep not in self.processed or not self.processed[dep].is_ready
        ]
        if not_ready:
            log.info(
                "Dependencies required by resource %s but not ready: %s",
                resource.name,
                not_ready,
            )
            return ResourceInfo.dependencies_not_ready(not_ready)

        actual = self._get_actual(resource)
        desired = self._eval_spec(resource, actual)
        updated = self._create_or_update(desired, actual)

        # Detect specs that never converge (e.g. a mutating admission loop)
        recheck = self.spec_checker.compare(desired, updated)
        if not recheck.match:
            log.error(
                "Objects are different after spec re-check: %s", recheck.diff
            )
            raise TerminalError(
                "spec of the created/updated object does not match the desired spec"
            )

        result = self.readiness.check(updated)
        if result.error is not None:
            return ResourceInfo.failed(result.error, result.retriable, actual=updated)
        if not result.ready:
            return ResourceInfo.in_progress(updated, result.message)
        return ResourceInfo.ready(updated, self._aux_objects(updated))

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            log.debug("Pass for %s cancelled", self.bundle.key)
            raise PassCancelled()

    ## Spec Evaluation #########################################################

    def _prevalidate(self, resource: Resource):
        """Validate as much of the spec as possible before any dependency is
        available by resolving references to their defaults
        """
        if resource.object is None and resource.plugin is None:
            raise TerminalError('neither "object" nor "plugin" field is specified')
        assert_terminal(
            resource.object is None or resource.plugin is None,
            'only one of "object" and "plugin" may be specified',
        )

        resolver = ReferenceResolver(
            resource.name,
            resource.depends_on,
            self.processed,
            use_defaults=True,
            skip_missing_defaults=True,
        )
        if resource.object is not None:
            resolver.resolve(resource.object)
            return

        plugin = self._get_plugin(resource)
        example = resolver.resolve(resource.plugin.spec)
        if resolver.skipped:
            log.debug(
                "Not validating %s against schema due to missing defaults", resource.name
            )
            return
        self._validate_plugin_spec(plugin, example)

    def _eval_spec(self, resource: Resource, actual: Optional[dict]) -> dict:
        """Compute the desired object with references resolved and the
        Bundle's labels and owner references stamped
        """
        self._check_cancelled()
        resolver = ReferenceResolver(
            resource.name, resource.depends_on, self.processed, cache=self.cache
        )
        if resource.object is not None:
            desired = resolver.resolve(resource.object)
        else:
            desired = self._eval_plugin(resource, resolver.resolve(resource.plugin.spec), actual)

        meta = metadata(desired)
        owner_refs = []
        for ref in meta.get("ownerReferences") or []:
            assert_terminal(
                not ref.get("controller"),
                f"cannot create resource with controller owner reference {ref}",
            )
            owner_refs.append(dict(ref, blockOwnerDeletion=True))
        owner_refs.append(self.bundle.owner_reference())
        for dep in _unique(resource.depends_on):
            dep_actual = self.processed[dep].actual
            owner_refs.append(
                {
                    "apiVersion": dep_actual.get("apiVersion"),
                    "kind": dep_actual.get("kind"),
                    "name": get_name(dep_actual),
                    "uid": get_uid(dep_actual),
                    "blockOwnerDeletion": True,
                }
            )
        meta["ownerReferences"] = owner_refs

        labels = meta.get("labels") or {}
        labels[constants.BUNDLE_NAME_LABEL] = self.bundle.name
        meta["labels"] = labels

        namespace = meta.get("namespace")
        if not namespace:
            meta["namespace"] = self.bundle.namespace
        elif namespace != self.bundle.namespace:
            raise TerminalError(
                f'namespace was "{namespace}" which is different from the bundle namespace "{self.bundle.namespace}"'
            )

        annotations = meta.get("annotations") or {}
        for key in constants.PROHIBITED_ANNOTATIONS:
            assert_terminal(
                key not in annotations, f'annotation "{key}" cannot be set by the user'
            )

        log.debug4("Desired object for %s: %s", resource.name, desired)
        return desired

    def _eval_plugin(self, resource: Resource, spec: dict, actual: Optional[dict]) -> dict:
        plugin = self._get_plugin(resource)
        self._validate_plugin_spec(plugin, spec)

        context = PluginContext(
            namespace=self.bundle.namespace,
            actual=copy.deepcopy(actual),
            dependencies={
                dep: Dependency(
                    name=dep,
                    actual=copy.deepcopy(self.processed[dep].actual),
                    aux_objects=copy.deepcopy(self.processed[dep].aux_objects),
                )
                for dep in _unique(resource.depends_on)
            },
        )
        try:
            obj = plugin.process(spec, context)
        except BundleError:
            raise
        except Exception as err:  # pylint: disable=broad-except
            log.debug("Plugin %s raised", resource.plugin.name, exc_info=True)
            raise TerminalError(f"plugin {resource.plugin.name!r} failed: {err}") from err

        description = plugin.describe()
        assert_terminal(isinstance(obj, dict), "plugin output must be an object")
        got = (obj.get("apiVersion"), obj.get("kind"))
        wanted = (description.api_version, description.kind)
        assert_terminal(
            got == wanted,
            f"unexpected apiVersion/kind from plugin (wanted {'/'.join(wanted)}, got {got[0]}/{got[1]})",
        )
        obj = copy.deepcopy(obj)
        metadata(obj)["name"] = resource.plugin.object_name
        return obj

    def _get_plugin(self, resource: Resource) -> Plugin:
        plugin = self.plugins.get(resource.plugin.name)
        if plugin is None:
            raise TerminalError(f'no such plugin "{resource.plugin.name}"')
        return plugin

    @staticmethod
    def _validate_plugin_spec(plugin: Plugin, spec: dict):
        problems = plugin.validate_spec(spec)
        if problems:
            raise TerminalError(
                f"spec failed validation against schema: {'; '.join(problems)}"
            )

    ## Cluster Interaction #####################################################

    def _target(self, resource: Resource) -> Tuple[str, str, str]:
        """The apiVersion, kind and name of the object the resource manages"""
        if resource.object is not None:
            return (
                resource.object.get("apiVersion"),
                resource.object.get("kind"),
                get_name(resource.object),
            )
        description = self._get_plugin(resource).describe()
        return description.api_version, description.kind, resource.plugin.object_name

    def _get_actual(self, resource: Resource) -> Optional[dict]:
        """Read the live object and check that this Bundle may manage it"""
        api_version, kind, name = self._target(resource)
        assert_terminal(bool(name), f"resource {resource.name!r} does not name its object")
        try:
            actual = self.store.get(api_version, kind, self.bundle.namespace, name)
        except ClusterApiError as err:
            raise TransientError(f"failed to get object from the Store: {err}") from err
        if actual is None:
            return None

        assert_terminal(not is_being_deleted(actual), "object is marked for deletion")
        ref = get_controller_ref(actual)
        if ref is None:
            raise TerminalError(
                "object is not controlled by the Bundle and does not have a controller at all"
            )
        if ref.get("uid") != self.bundle.uid:
            raise TerminalError(
                f"object is controlled by apiVersion={ref.get('apiVersion')}, kind={ref.get('kind')}, "
                f"name={ref.get('name')}, uid={ref.get('uid')}, not by the Bundle (uid={self.bundle.uid})"
            )
        return actual

    def _create_or_update(self, desired: dict, actual: Optional[dict]) -> dict:
        self._check_cancelled()
        kind, name = desired.get("kind"), get_name(desired)
        if actual is None:
            log.debug("Object %s/%s not found, creating", kind, name)
            try:
                created = self.client.create(self.spec_checker.before_create(desired))
            except AlreadyExistsError as err:
                raise RaceError(
                    "object found, but not in Store yet (will re-process)"
                ) from err
            except ClusterApiError as err:
                raise _unexpected(err, "creating") from err
            log.info("Object %s/%s created", kind, name)
            return created

        result = self.spec_checker.compare(desired, actual)
        merged = result.merged
        match = result.match

        # A leftover deletion marker always forces an update
        annotations = nested_get(merged, "metadata.annotations") or {}
        if constants.DELETION_TIMESTAMP_ANNOTATION in annotations:
            merged = copy.deepcopy(merged)
            merged["metadata"]["annotations"].pop(constants.DELETION_TIMESTAMP_ANNOTATION)
            match = False

        if match:
            log.debug("Object %s/%s has correct spec", kind, name)
            return actual

        log.info("Objects are different, updating %s/%s: %s", kind, name, result.diff)
        try:
            updated = self.client.update(merged)
        except ConflictError as err:
            raise RaceError("object update resulted in conflict (will re-process)") from err
        except NotFoundError as err:
            raise RaceError("object was deleted during update (will re-process)") from err
        except ClusterApiError as err:
            raise _unexpected(err, "updating") from err
        log.info("Object %s/%s updated", kind, name)
        return updated

    ## Auxiliary Objects #######################################################

    def _aux_objects(self, obj: dict) -> Dict[str, dict]:
        """Expose the Secret of a ready ServiceBinding to reference modifiers"""
        group, _ = split_api_version(obj.get("apiVersion"))
        if (group, obj.get("kind")) != (
            constants.SERVICE_CATALOG_GROUP,
            constants.SERVICE_BINDING_KIND,
        ):
            return {}

        secret_name = nested_get(obj, "spec.secretName") or get_name(obj)
        try:
            secret = self.store.get("v1", "Secret", self.bundle.namespace, secret_name)
        except ClusterApiError as err:
            raise TransientError(f"error finding output Secret: {err}") from err
        if secret is None:
            raise TransientError(f"cannot find output Secret {secret_name!r}")

        decoded = {}
        for key, val in (secret.get("data") or {}).items():
            try:
                decoded[key] = base64.b64decode(val)
            except (binascii.Error, ValueError, TypeError) as err:
                raise TerminalError(
                    f"data key {key!r} of Secret {secret_name!r} is not valid base64"
                ) from err
        secret["data"] = decoded
        return {constants.REFERENCE_MODIFIER_BIND_SECRET: secret}


def _unexpected(err: ClusterApiError, action: str) -> BundleError:
    message = f"unexpected error while {action} resource: {err}"
    if err.is_retriable:
        return TransientError(message)
    return TerminalError(message)


def _unique(names: List[str]) -> List[str]:
    """Deduplicate names preserving order"""
    return list(dict.fromkeys(names))
