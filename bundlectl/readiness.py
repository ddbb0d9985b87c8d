"""
Readiness predicates decide whether an object created or updated by a Bundle
has converged to a usable state. Predicates are looked up by group and kind;
custom resources can also declare readiness through annotations on their
CustomResourceDefinition.
"""

# Standard
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import json

# Third Party
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as parse_jsonpath

# First Party
import alog

# Local
from . import config, constants
from .exceptions import TerminalError, TransientError
from .utils import nested_get, split_api_version

log = alog.use_channel("READY")

GroupKind = Tuple[str, str]

## Results #####################################################################


@dataclass
class ReadinessResult:
    """Outcome of a readiness check. When error is set the object is in a
    failed state and retriable says whether it may recover on its own.
    """

    ready: bool
    message: str = ""
    error: Optional[Exception] = None
    retriable: bool = False

    @classmethod
    def is_ready(cls) -> "ReadinessResult":
        return cls(ready=True)

    @classmethod
    def in_progress(cls, message: str = "") -> "ReadinessResult":
        return cls(ready=False, message=message)

    @classmethod
    def failed(cls, error: Exception, retriable: bool = False) -> "ReadinessResult":
        return cls(ready=False, message=str(error), error=error, retriable=retriable)


ObjectStatusChecker = Callable[[dict], ReadinessResult]

# Looks up the CustomResourceDefinition for a group/kind, None if absent
CrdLookup = Callable[[str, str], Optional[dict]]

## Registry ####################################################################


class ReadinessRegistry:
    """Readiness predicates keyed by group and kind"""

    def __init__(
        self,
        *known_types: Dict[GroupKind, ObjectStatusChecker],
        crd_lookup: Optional[CrdLookup] = None,
        unknown_kinds_ready: Optional[bool] = None,
    ):
        """
        Args:
            *known_types:  Dict[GroupKind, ObjectStatusChecker]
                Tables of predicates. A group/kind may appear only once.
            crd_lookup:  Optional[CrdLookup]
                Function used to find the CRD of kinds without a predicate
            unknown_kinds_ready:  Optional[bool]
                Outcome for kinds with neither a predicate nor CRD annotations.
                Defaults to the readiness.unknown_kinds_ready config value.
        """
        self._known_types: Dict[GroupKind, ObjectStatusChecker] = {}
        for table in known_types:
            for group_kind, checker in table.items():
                if group_kind in self._known_types:
                    raise ValueError(f"GroupKind specified more than once: {group_kind}")
                self._known_types[group_kind] = checker
        self._crd_lookup = crd_lookup
        self._unknown_kinds_ready = (
            config.readiness.unknown_kinds_ready
            if unknown_kinds_ready is None
            else unknown_kinds_ready
        )

    def check(self, obj: dict) -> ReadinessResult:
        """Check the readiness of a live object

        Args:
            obj:  dict
                The live object

        Returns:
            result:  ReadinessResult
                The readiness outcome
        """
        group, version = split_api_version(obj.get("apiVersion"))
        kind = obj.get("kind")
        if not kind or not version:
            return ReadinessResult.failed(
                TerminalError(f"object has empty kind/version: {obj.get('apiVersion')}/{kind}")
            )

        checker = self._known_types.get((group, kind))
        if checker is not None:
            return checker(obj)

        if self._crd_lookup is not None:
            crd = self._crd_lookup(group, kind)
            annotations = (crd or {}).get("metadata", {}).get("annotations") or {}
            path = annotations.get(constants.CR_FIELD_PATH_ANNOTATION)
            value = annotations.get(constants.CR_FIELD_VALUE_ANNOTATION)
            if path and value:
                return _check_path_value(obj, path, value)

        if self._unknown_kinds_ready:
            return ReadinessResult.is_ready()
        return ReadinessResult.in_progress(f"no readiness check known for {group}/{kind}")


## Built-in Checks #############################################################


def _always_ready(_: dict) -> ReadinessResult:
    return ReadinessResult.is_ready()


def _get_condition(obj: dict, condition_type: str) -> Optional[dict]:
    for condition in nested_get(obj, "status.conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _is_deployment_ready(obj: dict) -> ReadinessResult:
    generation = obj.get("metadata", {}).get("generation", 0)
    status = obj.get("status") or {}
    if generation > status.get("observedGeneration", 0):
        return ReadinessResult.in_progress(
            "Waiting for deployment spec update to be observed"
        )

    progressing = _get_condition(obj, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return ReadinessResult.failed(
            TerminalError("deployment exceeded its progress deadline")
        )

    replicas = nested_get(obj, "spec.replicas", 1)
    updated = status.get("updatedReplicas", 0)
    available = status.get("availableReplicas", 0)
    if updated < replicas:
        return ReadinessResult.in_progress(
            f"Number of replicas converging. Requested={replicas}, Updated={updated}"
        )
    if status.get("replicas", 0) > updated:
        return ReadinessResult.in_progress(
            f"Number of replicas converging. Replicas={status.get('replicas')}, Updated={updated}"
        )
    if available < updated:
        return ReadinessResult.in_progress(
            f"Waiting for rollout to finish: {available} of {updated} updated replicas are available"
        )
    return ReadinessResult.is_ready()


# Reasons reported by the service catalog while an operation is in flight
_SC_NON_ERROR_REASONS = [
    "Provisioning",
    "UpdatingInstance",
    "Deprovisioning",
    "ProvisionRequestInFlight",
    "UpdateInstanceRequestInFlight",
    "DeprovisionRequestInFlight",
    "StartingInstanceOrphanMitigation",
    "Binding",
    "BindingRequestInFlight",
]


def _is_service_catalog_ready(obj: dict) -> ReadinessResult:
    ready = _get_condition(obj, "Ready")
    if ready and ready.get("status") == "True":
        return ReadinessResult.is_ready()

    failed = _get_condition(obj, "Failed")
    if failed and failed.get("status") == "True":
        return ReadinessResult.failed(
            TerminalError(f"{failed.get('reason')}: {failed.get('message')}")
        )

    if ready and ready.get("reason") and ready["reason"] not in _SC_NON_ERROR_REASONS:
        return ReadinessResult.failed(
            TransientError(f"{ready.get('reason')}: {ready.get('message')}"),
            retriable=True,
        )
    return ReadinessResult.in_progress((ready or {}).get("message", ""))


def _check_path_value(obj: dict, path: str, value: str) -> ReadinessResult:
    try:
        matches = [match.value for match in parse_jsonpath(path).find(obj)]
    except (JSONPathError, ValueError) as err:
        # The annotation on the CRD is invalid
        return ReadinessResult.failed(
            TerminalError(f"invalid readiness path {path!r}: {err}")
        )
    if not matches or _render_value(matches[0]) != value:
        return ReadinessResult.in_progress(
            f"Path {path!r} for object still missing value {value!r}"
        )
    return ReadinessResult.is_ready()


def _render_value(value) -> str:
    # Non-string values compare by their JSON text, e.g. true or 3
    if isinstance(value, str):
        return value
    return json.dumps(value)


MAIN_KNOWN_TYPES: Dict[GroupKind, ObjectStatusChecker] = {
    ("", "ConfigMap"): _always_ready,
    ("", "Secret"): _always_ready,
    ("", "Service"): _always_ready,
    ("", "ServiceAccount"): _always_ready,
    ("networking.k8s.io", "Ingress"): _always_ready,
    ("policy", "PodDisruptionBudget"): _always_ready,
    ("apps", "Deployment"): _is_deployment_ready,
}

SERVICE_CATALOG_KNOWN_TYPES: Dict[GroupKind, ObjectStatusChecker] = {
    (constants.SERVICE_CATALOG_GROUP, constants.SERVICE_BINDING_KIND): _is_service_catalog_ready,
    (constants.SERVICE_CATALOG_GROUP, constants.SERVICE_INSTANCE_KIND): _is_service_catalog_ready,
}


def default_readiness_registry(
    crd_lookup: Optional[CrdLookup] = None,
    extra_types: Optional[List[Dict[GroupKind, ObjectStatusChecker]]] = None,
) -> ReadinessRegistry:
    """Registry with all built-in predicates plus any extra tables"""
    return ReadinessRegistry(
        MAIN_KNOWN_TYPES,
        SERVICE_CATALOG_KNOWN_TYPES,
        *(extra_types or []),
        crd_lookup=crd_lookup,
    )
