"""
Kind-specific cleanup hooks used by the drift checker. A hook receives the
object about to be compared (the live object overlaid with the desired spec)
and the live object, and copies fields that the server assigns or defaults
from the live object so that they do not register as drift.
"""

# Standard
from typing import Callable, Dict, Optional, Tuple
import base64
import copy

# First Party
import alog

# Local
from .. import constants
from ..exceptions import TerminalError
from ..utils import split_api_version

log = alog.use_channel("CLEAN")

# (group, kind) -> hook(spec, actual) -> updated spec
GroupKind = Tuple[str, str]
SpecCleanup = Callable[[dict, Optional[dict]], dict]

## Registry ####################################################################


class CleanupRegistry:
    """Lookup of cleanup hooks by group and kind. Kinds without a hook are
    compared unchanged.
    """

    def __init__(
        self,
        *known_types: Dict[GroupKind, SpecCleanup],
        before_create: Optional[Dict[GroupKind, SpecCleanup]] = None,
    ):
        """Merge the given tables of hooks

        Args:
            *known_types:  Dict[GroupKind, SpecCleanup]
                Tables of hooks applied before comparing with a live object
            before_create:  Optional[Dict[GroupKind, SpecCleanup]]
                Hooks applied to an object before it is created. They are
                called without a live object.

        Raises:
            ValueError: If a group/kind appears in more than one table
        """
        self._known_types: Dict[GroupKind, SpecCleanup] = {}
        for table in known_types:
            for group_kind, hook in table.items():
                if group_kind in self._known_types:
                    raise ValueError(f"GroupKind specified more than once: {group_kind}")
                self._known_types[group_kind] = hook
        self._before_create: Dict[GroupKind, SpecCleanup] = dict(before_create or {})

    def get(self, group: str, kind: str) -> Optional[SpecCleanup]:
        return self._known_types.get((group, kind))

    def cleanup(self, spec: dict, actual: dict) -> dict:
        """Apply the hook registered for the spec's kind

        Args:
            spec:  dict
                The object to be compared. It may be mutated.
            actual:  dict
                The live object. It is never mutated.

        Returns:
            updated_spec:  dict
                The object with server managed fields copied over
        """
        hook = self._known_types.get(self._group_kind(spec))
        if hook is None:
            return spec
        log.debug3("Applying cleanup for %s", spec.get("kind"))
        return hook(spec, actual)

    def before_create(self, spec: dict) -> dict:
        """Apply the create hook registered for the spec's kind

        Args:
            spec:  dict
                The object about to be created. It may be mutated.

        Returns:
            updated_spec:  dict
                The object to submit
        """
        hook = self._before_create.get(self._group_kind(spec))
        if hook is None:
            return spec
        log.debug3("Applying create hook for %s", spec.get("kind"))
        return hook(spec, None)

    @staticmethod
    def _group_kind(spec: dict) -> GroupKind:
        group, version = split_api_version(spec.get("apiVersion"))
        kind = spec.get("kind")
        if not kind or not version:
            raise TerminalError(
                f"object has empty kind/version: {spec.get('apiVersion')}/{kind}"
            )
        return group, kind


## Built-in Hooks ##############################################################


def _service_cleanup(spec: dict, actual: dict) -> dict:
    spec_body = spec.setdefault("spec", {})
    actual_body = actual.get("spec") or {}

    # The cluster IP is allocated by the server unless the user asks for one
    for field in ["clusterIP", "clusterIPs"]:
        if field in actual_body and not spec_body.get(field):
            spec_body[field] = copy.deepcopy(actual_body[field])

    # A node port that was left empty gets allocated; keep the allocated value
    # if the port is otherwise unchanged
    spec_ports = spec_body.get("ports") or []
    actual_ports = actual_body.get("ports") or []
    if len(spec_ports) == len(actual_ports):
        for spec_port, actual_port in zip(spec_ports, actual_ports):
            if spec_port.get("nodePort") or "nodePort" not in actual_port:
                continue
            candidate = dict(spec_port, nodePort=actual_port["nodePort"])
            if candidate == actual_port:
                spec_port["nodePort"] = actual_port["nodePort"]
    return spec


def _secret_cleanup(spec: dict, actual: dict) -> dict:
    # stringData is write-only; the server folds it into data
    string_data = spec.pop("stringData", None)
    if string_data:
        data = spec.setdefault("data", {}) or {}
        for key, val in string_data.items():
            data[key] = base64.b64encode(val.encode("utf-8")).decode("ascii")
        spec["data"] = data
    return spec


def _service_binding_cleanup(spec: dict, actual: dict) -> dict:
    actual_body = actual.get("spec") or {}
    if "externalID" in actual_body:
        spec.setdefault("spec", {})["externalID"] = actual_body["externalID"]
    return spec


def _service_instance_cleanup(spec: dict, actual: dict) -> dict:
    spec_body = spec.setdefault("spec", {})
    actual_body = actual.get("spec") or {}

    for field in ["clusterServiceClassName", "clusterServicePlanName"]:
        if spec_body.get(field) and spec_body[field] != actual_body.get(field):
            raise TerminalError(f"{field} has changed when it should be immutable")

    pairs = [
        ("clusterServiceClassExternalName", ["clusterServiceClassRef", "clusterServiceClassName"]),
        ("clusterServicePlanExternalName", ["clusterServicePlanRef", "clusterServicePlanName"]),
    ]
    for external_name, resolved_fields in pairs:
        if actual_body.get(external_name) == spec_body.get(external_name):
            for field in resolved_fields:
                if field in actual_body:
                    spec_body[field] = copy.deepcopy(actual_body[field])

    for field in ["externalID", "userInfo"]:
        if field in actual_body:
            spec_body[field] = copy.deepcopy(actual_body[field])
    return spec


def _deployment_cleanup(spec: dict, actual: Optional[dict]) -> dict:
    spec_body = spec.setdefault("spec", {})

    # The server fills the deprecated field from serviceAccountName
    pod_spec = (spec_body.get("template") or {}).get("spec")
    if pod_spec and pod_spec.get("serviceAccountName"):
        pod_spec["serviceAccount"] = pod_spec["serviceAccountName"]

    if spec_body.get("replicas") is None:
        spec_body["replicas"] = 1
    spec_replicas = spec_body["replicas"]
    metadata = spec.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    metadata["annotations"] = annotations

    actual_annotations = ((actual or {}).get("metadata") or {}).get("annotations") or {}
    last_applied = actual_annotations.get(constants.LAST_APPLIED_REPLICAS_ANNOTATION)
    if last_applied is None:
        annotations[constants.LAST_APPLIED_REPLICAS_ANNOTATION] = str(spec_replicas)
        return spec
    try:
        last_applied_replicas = int(str(last_applied).strip())
    except ValueError:
        log.warning("Overriding unparsable last applied replicas %r", last_applied)
        annotations[constants.LAST_APPLIED_REPLICAS_ANNOTATION] = str(spec_replicas)
        return spec

    if spec_replicas == last_applied_replicas:
        # Unchanged template: keep the replicas set by other controllers
        actual_replicas = ((actual or {}).get("spec") or {}).get("replicas")
        if actual_replicas is not None:
            spec_body["replicas"] = actual_replicas
    else:
        annotations[constants.LAST_APPLIED_REPLICAS_ANNOTATION] = str(spec_replicas)
    return spec


MAIN_KNOWN_TYPES: Dict[GroupKind, SpecCleanup] = {
    ("", "Service"): _service_cleanup,
    ("", "Secret"): _secret_cleanup,
    ("apps", "Deployment"): _deployment_cleanup,
}

# Hooks applied to objects before they are first created
BEFORE_CREATE_KNOWN_TYPES: Dict[GroupKind, SpecCleanup] = {
    ("apps", "Deployment"): _deployment_cleanup,
}

SERVICE_CATALOG_KNOWN_TYPES: Dict[GroupKind, SpecCleanup] = {
    (constants.SERVICE_CATALOG_GROUP, constants.SERVICE_BINDING_KIND): _service_binding_cleanup,
    (constants.SERVICE_CATALOG_GROUP, constants.SERVICE_INSTANCE_KIND): _service_instance_cleanup,
}


def default_cleanup_registry() -> CleanupRegistry:
    """Registry with all built-in hooks"""
    return CleanupRegistry(
        MAIN_KNOWN_TYPES,
        SERVICE_CATALOG_KNOWN_TYPES,
        before_create=BEFORE_CREATE_KNOWN_TYPES,
    )
