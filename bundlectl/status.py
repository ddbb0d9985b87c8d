"""
This module holds the construction of Bundle status and the change detection
used to decide whether a status write is needed.

The status of a Bundle has the following schema:
{
    "observedGeneration": <generation of the spec that was reconciled>,
    "conditions": [InProgress, Ready, Error],
    "resourceStatuses": [
        {"name": <resource name>, "conditions": [Blocked, InProgress, Ready, Error]},
    ],
    "pluginStatuses": [
        {"name": <plugin>, "group": ..., "version": ..., "kind": ..., "status": "Ok"},
    ],
    "objectsToDelete": [{"group": ..., "version": ..., "kind": ..., "name": ...}],
}
"""

# Standard
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .bundle import Bundle
from .plugin import PluginRegistry
from .resource_info import ResourceInfo, ResourceState
from .utils import ObjectRef, sorted_refs, split_api_version

log = alog.use_channel("STTUS")

## Public ######################################################################

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"

# Bundle condition types
BUNDLE_IN_PROGRESS = "InProgress"
BUNDLE_READY = "Ready"
BUNDLE_ERROR = "Error"

# Resource condition types
RESOURCE_BLOCKED = "Blocked"
RESOURCE_IN_PROGRESS = "InProgress"
RESOURCE_READY = "Ready"
RESOURCE_ERROR = "Error"

# Status keys
OBSERVED_GENERATION = "observedGeneration"
CONDITIONS = "conditions"
RESOURCE_STATUSES = "resourceStatuses"
PLUGIN_STATUSES = "pluginStatuses"
OBJECTS_TO_DELETE = "objectsToDelete"


class ConditionStatus(Enum):
    """The values of a condition's status field"""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Reason(Enum):
    """Reason constants for Bundle and resource conditions"""

    # A dependency has not reached Ready yet
    DEPENDENCIES_NOT_READY = "DependenciesNotReady"

    # A dependency failed, so this resource is not processed
    DEPENDENCIES_FAILED = "DependenciesFailed"

    # The failure will not go away without a change to the Bundle or cluster
    TERMINAL_ERROR = "TerminalError"

    # The failure is expected to go away on a later attempt
    RETRIABLE_ERROR = "RetriableError"


class PluginStatus(Enum):
    """Status of a plugin named by a Bundle"""

    OK = "Ok"
    NO_SUCH_PLUGIN = "NoSuchPlugin"


def make_condition(
    type_name: str,
    status: ConditionStatus = ConditionStatus.FALSE,
    reason: Optional[Reason] = None,
    message: str = "",
    last_transition_time: Optional[datetime] = None,
) -> dict:
    """Convert a condition to the dict representation stored on the Bundle"""
    last_transition_time = last_transition_time or datetime.now()
    condition = {
        "type": type_name,
        "status": status.value,
        TIMESTAMP_KEY: last_transition_time.isoformat(),
    }
    if reason is not None:
        condition["reason"] = reason.value
    if message:
        condition["message"] = message
    return condition


def resource_conditions(info: Optional[ResourceInfo]) -> List[dict]:
    """Compute the four conditions of a resource from its outcome in the pass

    Args:
        info:  Optional[ResourceInfo]
            The outcome of the resource. None if it was not processed.

    Returns:
        conditions:  List[dict]
            The Blocked, InProgress, Ready and Error conditions in that order
    """
    if info is None:
        return [
            make_condition(cond_type, ConditionStatus.UNKNOWN)
            for cond_type in [
                RESOURCE_BLOCKED,
                RESOURCE_IN_PROGRESS,
                RESOURCE_READY,
                RESOURCE_ERROR,
            ]
        ]

    blocked = make_condition(RESOURCE_BLOCKED)
    in_progress = make_condition(RESOURCE_IN_PROGRESS)
    ready = make_condition(RESOURCE_READY)
    error = make_condition(RESOURCE_ERROR)

    if info.state == ResourceState.DEPENDENCIES_NOT_READY:
        blocked = make_condition(
            RESOURCE_BLOCKED,
            ConditionStatus.TRUE,
            Reason.DEPENDENCIES_NOT_READY,
            f"Not ready: {info.names}",
        )
    elif info.state == ResourceState.BLOCKED_BY_ERROR:
        blocked = make_condition(
            RESOURCE_BLOCKED,
            ConditionStatus.TRUE,
            Reason.DEPENDENCIES_FAILED,
            f"Failed dependencies: {info.names}",
        )
    elif info.state == ResourceState.IN_PROGRESS:
        in_progress = make_condition(
            RESOURCE_IN_PROGRESS, ConditionStatus.TRUE, message=info.message
        )
    elif info.state == ResourceState.READY:
        ready = make_condition(RESOURCE_READY, ConditionStatus.TRUE)
    elif info.state == ResourceState.ERROR:
        if info.retriable:
            error = make_condition(
                RESOURCE_ERROR, ConditionStatus.TRUE, Reason.RETRIABLE_ERROR, str(info.error)
            )
            in_progress = make_condition(RESOURCE_IN_PROGRESS, ConditionStatus.TRUE)
        else:
            error = make_condition(
                RESOURCE_ERROR, ConditionStatus.TRUE, Reason.TERMINAL_ERROR, str(info.error)
            )

    return [blocked, in_progress, ready, error]


def bundle_conditions(
    error: Optional[Exception] = None,
    retriable: bool = False,
    ready: bool = False,
) -> List[dict]:
    """Compute the InProgress, Ready and Error conditions of a Bundle"""
    in_progress = make_condition(BUNDLE_IN_PROGRESS)
    ready_cond = make_condition(BUNDLE_READY)
    error_cond = make_condition(BUNDLE_ERROR)

    if error is None:
        if ready:
            ready_cond = make_condition(BUNDLE_READY, ConditionStatus.TRUE)
        else:
            in_progress = make_condition(BUNDLE_IN_PROGRESS, ConditionStatus.TRUE)
    elif retriable:
        error_cond = make_condition(
            BUNDLE_ERROR, ConditionStatus.TRUE, Reason.RETRIABLE_ERROR, str(error)
        )
        in_progress = make_condition(BUNDLE_IN_PROGRESS, ConditionStatus.TRUE)
    else:
        error_cond = make_condition(
            BUNDLE_ERROR, ConditionStatus.TRUE, Reason.TERMINAL_ERROR, str(error)
        )
    return [in_progress, ready_cond, error_cond]


def plugin_statuses(bundle: Bundle, plugins: PluginRegistry) -> List[dict]:
    """Report each plugin named by the Bundle once, in declaration order"""
    statuses = []
    seen = set()
    for resource in bundle.resources:
        if resource.plugin is None or resource.plugin.name in seen:
            continue
        seen.add(resource.plugin.name)
        plugin = plugins.get(resource.plugin.name)
        if plugin is None:
            statuses.append(
                {"name": resource.plugin.name, "status": PluginStatus.NO_SUCH_PLUGIN.value}
            )
            continue
        description = plugin.describe()
        group, version = split_api_version(description.api_version)
        statuses.append(
            {
                "name": resource.plugin.name,
                "group": group,
                "version": version,
                "kind": description.kind,
                "status": PluginStatus.OK.value,
            }
        )
    return statuses


def make_bundle_status(  # pylint: disable=too-many-arguments
    bundle: Bundle,
    processed: Dict[str, ResourceInfo],
    error: Optional[Exception] = None,
    retriable: bool = False,
    plugins: Optional[PluginRegistry] = None,
    objects_to_delete: Optional[List[ObjectRef]] = None,
) -> dict:
    """Create the full status for a Bundle after a pass. Conditions that did
    not change keep the transition time from the current status.

    Args:
        bundle:  Bundle
            The Bundle that was reconciled, holding the current status
        processed:  Dict[str, ResourceInfo]
            The outcome of every processed resource
        error:  Optional[Exception]
            The error of the pass as a whole, if any
        retriable:  bool
            Whether that error is retriable
        plugins:  Optional[PluginRegistry]
            The plugin table used to report plugin statuses
        objects_to_delete:  Optional[List[ObjectRef]]
            Owned objects that are no longer declared by the Bundle

    Returns:
        status:  dict
            The new status
    """
    current_status = bundle.status or {}
    status = {
        key: copy.deepcopy(val)
        for key, val in current_status.items()
        if key not in [CONDITIONS, RESOURCE_STATUSES, PLUGIN_STATUSES, OBJECTS_TO_DELETE]
    }

    resource_statuses = []
    failed_resources = []
    all_retriable = True
    for resource in bundle.resources:
        info = processed.get(resource.name)
        if info is not None and info.is_error:
            failed_resources.append(resource.name)
            all_retriable = all_retriable and info.retriable
        conditions = resource_conditions(info)
        previous = _find_by_name(current_status.get(RESOURCE_STATUSES), resource.name)
        for condition in conditions:
            prepare_condition((previous or {}).get(CONDITIONS), condition)
        resource_statuses.append({"name": resource.name, CONDITIONS: conditions})

    if error is None and failed_resources:
        error = _ResourcesFailed(failed_resources)
        retriable = all_retriable

    ready = error is None and all(
        processed.get(res.name) is not None and processed[res.name].is_ready
        for res in bundle.resources
    )
    conditions = bundle_conditions(error, retriable, ready)
    for condition in conditions:
        prepare_condition(current_status.get(CONDITIONS), condition)

    status[OBSERVED_GENERATION] = bundle.generation
    status[CONDITIONS] = conditions
    status[RESOURCE_STATUSES] = resource_statuses
    if plugins is not None:
        status[PLUGIN_STATUSES] = plugin_statuses(bundle, plugins)
    if objects_to_delete is not None:
        status[OBJECTS_TO_DELETE] = [
            ref.to_dict() for ref in sorted_refs(objects_to_delete)
        ]
    elif OBJECTS_TO_DELETE in current_status:
        status[OBJECTS_TO_DELETE] = copy.deepcopy(current_status[OBJECTS_TO_DELETE])
    return status


def prepare_condition(existing: Optional[List[dict]], condition: dict) -> bool:
    """Keep the transition time of an existing condition of the same type when
    nothing but the timestamp changed

    Returns:
        needs_update:  bool
            True if the condition differs from the existing one
    """
    previous = next(
        (cond for cond in existing or [] if cond.get("type") == condition["type"]),
        None,
    )
    if previous is None:
        return True
    if _without_timestamp(previous) != _without_timestamp(condition):
        return True
    if TIMESTAMP_KEY in previous:
        condition[TIMESTAMP_KEY] = previous[TIMESTAMP_KEY]
    return False


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current Bundle
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True

    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )


def get_condition(type_name: str, conditions: Optional[List[dict]]) -> dict:
    """Extract the given condition type from a list of conditions

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    for cond in conditions or []:
        if cond.get("type") == type_name:
            return cond
    return {}


def get_resource_conditions(status: dict, resource_name: str) -> List[dict]:
    """Get the conditions of one resource from a Bundle status"""
    resource_status = _find_by_name((status or {}).get(RESOURCE_STATUSES), resource_name)
    return (resource_status or {}).get(CONDITIONS, [])


## Implementation Details ######################################################


class _ResourcesFailed(Exception):
    """Aggregate error for a pass in which some resources failed"""

    def __init__(self, names: List[str]):
        super().__init__(f"error processing resource(s): {names}")


def _find_by_name(entries: Optional[List[dict]], name: str) -> Optional[dict]:
    for entry in entries or []:
        if entry.get("name") == name:
            return entry
    return None


def _without_timestamp(condition: dict) -> dict:
    return {key: val for key, val in condition.items() if key != TIMESTAMP_KEY}
