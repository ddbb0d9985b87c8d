"""
Tests for the status construction and change detection
"""
# Standard
from datetime import datetime

# Third Party
import pytest

# Local
from bundlectl import status
from bundlectl.bundle import Bundle
from bundlectl.exceptions import TerminalError, TransientError
from bundlectl.plugin import PluginRegistry
from bundlectl.resource_info import ResourceInfo
from bundlectl.test_helpers.helpers import ConfigMapPlugin, make_bundle, make_resource
from bundlectl.utils import ObjectRef

## Helpers #####################################################################

OLD_TIME = datetime(2020, 1, 1).isoformat()


def condition_map(conditions):
    return {cond["type"]: cond for cond in conditions}


## Conditions ##################################################################


def test_make_condition():
    cond = status.make_condition(
        status.RESOURCE_BLOCKED,
        status.ConditionStatus.TRUE,
        status.Reason.DEPENDENCIES_NOT_READY,
        "waiting",
        datetime(2021, 2, 3),
    )
    assert cond == {
        "type": "Blocked",
        "status": "True",
        "reason": "DependenciesNotReady",
        "message": "waiting",
        "lastTransitionTime": "2021-02-03T00:00:00",
    }
    assert "reason" not in status.make_condition(status.RESOURCE_READY)


@pytest.mark.parametrize(
    ["info", "expected"],
    [
        (None, {"Blocked": "Unknown", "InProgress": "Unknown", "Ready": "Unknown", "Error": "Unknown"}),
        (
            ResourceInfo.dependencies_not_ready(["a"]),
            {"Blocked": "True", "InProgress": "False", "Ready": "False", "Error": "False"},
        ),
        (
            ResourceInfo.blocked_by_error(["a"]),
            {"Blocked": "True", "InProgress": "False", "Ready": "False", "Error": "False"},
        ),
        (
            ResourceInfo.in_progress({}, "rolling"),
            {"Blocked": "False", "InProgress": "True", "Ready": "False", "Error": "False"},
        ),
        (
            ResourceInfo.ready({}),
            {"Blocked": "False", "InProgress": "False", "Ready": "True", "Error": "False"},
        ),
        (
            ResourceInfo.failed(TerminalError("bad")),
            {"Blocked": "False", "InProgress": "False", "Ready": "False", "Error": "True"},
        ),
        (
            ResourceInfo.failed(TransientError("flaky")),
            {"Blocked": "False", "InProgress": "True", "Ready": "False", "Error": "True"},
        ),
    ],
)
def test_resource_conditions(info, expected):
    conditions = status.resource_conditions(info)
    assert [cond["type"] for cond in conditions] == ["Blocked", "InProgress", "Ready", "Error"]
    assert {cond["type"]: cond["status"] for cond in conditions} == expected


def test_resource_conditions_reasons():
    blocked = condition_map(status.resource_conditions(ResourceInfo.blocked_by_error(["a"])))
    assert blocked["Blocked"]["reason"] == "DependenciesFailed"
    assert blocked["Blocked"]["message"] == "Failed dependencies: ['a']"

    error = condition_map(status.resource_conditions(ResourceInfo.failed(TransientError("flaky"))))
    assert error["Error"]["reason"] == "RetriableError"
    assert error["Error"]["message"] == "flaky"

    progress = condition_map(status.resource_conditions(ResourceInfo.in_progress({}, "rolling")))
    assert progress["InProgress"]["message"] == "rolling"


@pytest.mark.parametrize(
    ["kwargs", "expected"],
    [
        ({"ready": True}, {"InProgress": "False", "Ready": "True", "Error": "False"}),
        ({}, {"InProgress": "True", "Ready": "False", "Error": "False"}),
        (
            {"error": TransientError("x"), "retriable": True},
            {"InProgress": "True", "Ready": "False", "Error": "True"},
        ),
        (
            {"error": TerminalError("x")},
            {"InProgress": "False", "Ready": "False", "Error": "True"},
        ),
    ],
)
def test_bundle_conditions(kwargs, expected):
    conditions = status.bundle_conditions(**kwargs)
    assert {cond["type"]: cond["status"] for cond in conditions} == expected


## Bundle Status ###############################################################


def test_make_bundle_status_ready():
    bundle = Bundle.from_dict(make_bundle([make_resource("a")], generation=4))
    new_status = status.make_bundle_status(
        bundle, {"a": ResourceInfo.ready({})}, objects_to_delete=[]
    )
    assert new_status["observedGeneration"] == 4
    assert condition_map(new_status["conditions"])["Ready"]["status"] == "True"
    assert new_status["resourceStatuses"][0]["name"] == "a"
    assert new_status["objectsToDelete"] == []
    assert "pluginStatuses" not in new_status


def test_make_bundle_status_aggregates_failures():
    """Failed resources make the Bundle fail, retriable only if all are"""
    bundle = Bundle.from_dict(make_bundle([make_resource("a"), make_resource("b")]))
    processed = {
        "a": ResourceInfo.failed(TransientError("flaky")),
        "b": ResourceInfo.failed(TerminalError("bad")),
    }
    error = condition_map(status.make_bundle_status(bundle, processed)["conditions"])["Error"]
    assert error["status"] == "True"
    assert error["reason"] == "TerminalError"
    assert "['a', 'b']" in error["message"]

    processed["b"] = ResourceInfo.failed(TransientError("flaky"))
    error = condition_map(status.make_bundle_status(bundle, processed)["conditions"])["Error"]
    assert error["reason"] == "RetriableError"


def test_make_bundle_status_keeps_transition_times():
    """Unchanged conditions keep their timestamp, changed ones get a new one"""
    bundle_manifest = make_bundle([make_resource("a")])
    first = status.make_bundle_status(
        Bundle.from_dict(bundle_manifest), {"a": ResourceInfo.in_progress({})}
    )
    for cond in first["conditions"]:
        cond["lastTransitionTime"] = OLD_TIME
    bundle_manifest["status"] = first

    second = status.make_bundle_status(
        Bundle.from_dict(bundle_manifest), {"a": ResourceInfo.in_progress({})}
    )
    assert all(cond["lastTransitionTime"] == OLD_TIME for cond in second["conditions"])
    assert not status.status_changed(first, second)

    third = status.make_bundle_status(
        Bundle.from_dict(bundle_manifest), {"a": ResourceInfo.ready({})}
    )
    conditions = condition_map(third["conditions"])
    assert conditions["Ready"]["lastTransitionTime"] != OLD_TIME
    assert conditions["Error"]["lastTransitionTime"] == OLD_TIME
    assert status.status_changed(first, third)


def test_make_bundle_status_keeps_other_keys():
    bundle = Bundle.from_dict(make_bundle(status={"custom": "value", "observedGeneration": 0}))
    new_status = status.make_bundle_status(bundle, {})
    assert new_status["custom"] == "value"
    assert new_status["observedGeneration"] == 1


def test_make_bundle_status_objects_to_delete():
    """Objects to delete are sorted, and kept when not recomputed"""
    bundle_manifest = make_bundle()
    refs = [ObjectRef("v1", "Service", "s"), ObjectRef("apps/v1", "Deployment", "d")]
    new_status = status.make_bundle_status(
        Bundle.from_dict(bundle_manifest), {}, objects_to_delete=refs
    )
    assert [entry["kind"] for entry in new_status["objectsToDelete"]] == ["Service", "Deployment"]

    bundle_manifest["status"] = new_status
    kept = status.make_bundle_status(Bundle.from_dict(bundle_manifest), {})
    assert kept["objectsToDelete"] == new_status["objectsToDelete"]


def test_plugin_statuses():
    bundle = Bundle.from_dict(
        make_bundle(
            [
                make_resource("p", plugin={"name": "configmap", "objectName": "a"}),
                make_resource("q", plugin={"name": "configmap", "objectName": "b"}),
                make_resource("r", plugin={"name": "missing", "objectName": "c"}),
            ]
        )
    )
    statuses = status.plugin_statuses(bundle, PluginRegistry([ConfigMapPlugin()]))
    assert statuses == [
        {"name": "configmap", "group": "", "version": "v1", "kind": "ConfigMap", "status": "Ok"},
        {"name": "missing", "status": "NoSuchPlugin"},
    ]


## Helpers #####################################################################


def test_status_changed():
    current = {"conditions": [{"type": "Ready", "status": "True", "lastTransitionTime": "a"}]}
    same = {"conditions": [{"type": "Ready", "status": "True", "lastTransitionTime": "b"}]}
    different = {"conditions": [{"type": "Ready", "status": "False", "lastTransitionTime": "a"}]}
    assert not status.status_changed(current, same)
    assert status.status_changed(current, different)
    assert status.status_changed(None, same)


def test_get_condition():
    conditions = [{"type": "Ready", "status": "True"}]
    assert status.get_condition("Ready", conditions)["status"] == "True"
    assert status.get_condition("Error", conditions) == {}
    assert status.get_condition("Ready", None) == {}


def test_get_resource_conditions():
    current = {"resourceStatuses": [{"name": "a", "conditions": [{"type": "Ready"}]}]}
    assert status.get_resource_conditions(current, "a") == [{"type": "Ready"}]
    assert status.get_resource_conditions(current, "b") == []
    assert status.get_resource_conditions(None, "a") == []
