"""
Test the per-resource state machine
"""
# Standard
import base64
import threading

# Third Party
import pytest

# Local
from bundlectl import constants
from bundlectl.bundle import Bundle
from bundlectl.exceptions import (
    AlreadyExistsError,
    ClusterApiError,
    ConflictError,
    NotFoundError,
    PassCancelled,
    RaceError,
    ReferenceResolutionError,
    TerminalError,
    TransientError,
    UndeclaredReferenceError,
)
from bundlectl.plugin import PluginRegistry
from bundlectl.readiness import default_readiness_registry
from bundlectl.resource_info import ResourceInfo, ResourceState
from bundlectl.resource_reconciler import ResourceReconciler
from bundlectl.speccheck import SpecChecker
from bundlectl.test_helpers.helpers import (
    TEST_BUNDLE_UID,
    TEST_NAMESPACE,
    ConfigMapPlugin,
    make_bundle,
    make_configmap,
    make_deployment,
    make_owned,
    make_resource,
    setup_cluster,
)

## Helpers #####################################################################


def make_reconciler(cluster, processed=None, plugins=None, cancel_event=None, bundle=None):
    return ResourceReconciler(
        bundle=Bundle.from_dict(bundle or make_bundle()),
        store=cluster,
        client=cluster,
        spec_checker=SpecChecker(),
        readiness=default_readiness_registry(),
        plugins=plugins or PluginRegistry(),
        processed=processed if processed is not None else {},
        cancel_event=cancel_event,
    )


def process(cluster, resource, **kwargs):
    return make_reconciler(cluster, **kwargs).process(Bundle.from_dict(make_bundle([resource])).resources[0])


def ready_dependency(cluster, name="a", data=None):
    """Create a live owned ConfigMap and return its ready ResourceInfo"""
    obj = cluster.create(make_owned(make_configmap(name, data=data), make_bundle()))
    return ResourceInfo.ready(obj)


def owned_configmap(name="cm", data=None, **metadata):
    obj = make_configmap(name, data=data, **metadata)
    obj["metadata"]["labels"] = {constants.BUNDLE_NAME_LABEL: make_bundle()["metadata"]["name"]}
    return make_owned(obj, make_bundle())


## Create and Update ###########################################################


def test_create():
    """A missing object is created with the Bundle's label and owner reference"""
    cluster = setup_cluster()
    info = process(cluster, make_resource("cm"))
    assert info.state == ResourceState.READY
    cluster.create.assert_called_once()
    cluster.update.assert_not_called()

    created = cluster.get_obj("ConfigMap", "cm")
    assert created["metadata"]["namespace"] == TEST_NAMESPACE
    assert created["metadata"]["labels"][constants.BUNDLE_NAME_LABEL] == "test-bundle"
    owner_refs = created["metadata"]["ownerReferences"]
    assert len(owner_refs) == 1
    assert owner_refs[0]["uid"] == TEST_BUNDLE_UID
    assert owner_refs[0]["controller"]
    assert info.actual["metadata"]["uid"] == created["metadata"]["uid"]


def test_existing_match_not_updated():
    """A live object that matches is left alone"""
    cluster = setup_cluster(resources=[owned_configmap()])
    info = process(cluster, make_resource("cm"))
    assert info.is_ready
    cluster.create.assert_not_called()
    cluster.update.assert_not_called()


def test_existing_drift_updated():
    cluster = setup_cluster(resources=[owned_configmap(data={"key": "old"})])
    info = process(cluster, make_resource("cm", obj=make_configmap("cm", data={"key": "new"})))
    assert info.is_ready
    cluster.update.assert_called_once()
    assert cluster.get_obj("ConfigMap", "cm")["data"] == {"key": "new"}


def test_deletion_annotation_forces_update():
    """A leftover deletion marker is removed even without other drift"""
    live = owned_configmap()
    live["metadata"]["annotations"] = {constants.DELETION_TIMESTAMP_ANNOTATION: "2020"}
    cluster = setup_cluster(resources=[live])
    info = process(cluster, make_resource("cm"))
    assert info.is_ready
    cluster.update.assert_called_once()
    annotations = cluster.get_obj("ConfigMap", "cm")["metadata"].get("annotations") or {}
    assert constants.DELETION_TIMESTAMP_ANNOTATION not in annotations


def test_recheck_mismatch_terminal():
    """A written object that never matches the desired spec is an error"""

    def mutate(obj):
        obj = dict(obj, data={"mutated": "by admission"})
        return obj

    cluster = setup_cluster(create_fail=mutate)
    info = process(cluster, make_resource("cm"))
    assert info.is_error
    assert isinstance(info.error, TerminalError)
    assert "does not match the desired spec" in str(info.error)


## Ownership ###################################################################


def test_existing_without_controller():
    cluster = setup_cluster(resources=[make_configmap("cm", namespace=TEST_NAMESPACE)])
    info = process(cluster, make_resource("cm"))
    assert info.is_error
    assert not info.retriable
    assert "does not have a controller" in str(info.error)
    cluster.update.assert_not_called()


def test_existing_other_controller():
    other = make_bundle(uid="other-uid", name="other")
    cluster = setup_cluster(resources=[make_owned(make_configmap("cm"), other)])
    info = process(cluster, make_resource("cm"))
    assert info.is_error
    assert "not by the Bundle" in str(info.error)


def test_existing_being_deleted():
    live = owned_configmap(finalizers=["hold"])
    cluster = setup_cluster(resources=[live])
    cluster.delete("v1", "ConfigMap", TEST_NAMESPACE, "cm")
    info = process(cluster, make_resource("cm"))
    assert info.is_error
    assert "marked for deletion" in str(info.error)


def test_template_controller_ref_rejected():
    obj = make_configmap("cm")
    obj["metadata"]["ownerReferences"] = [
        {"apiVersion": "v1", "kind": "X", "name": "x", "uid": "1", "controller": True}
    ]
    info = process(setup_cluster(), make_resource("cm", obj=obj))
    assert isinstance(info.error, TerminalError)


def test_template_owner_refs_block_deletion():
    obj = make_configmap("cm")
    obj["metadata"]["ownerReferences"] = [{"apiVersion": "v1", "kind": "X", "name": "x", "uid": "1"}]
    cluster = setup_cluster()
    assert process(cluster, make_resource("cm", obj=obj)).is_ready
    refs = cluster.get_obj("ConfigMap", "cm")["metadata"]["ownerReferences"]
    assert [ref["uid"] for ref in refs] == ["1", TEST_BUNDLE_UID]
    assert all(ref["blockOwnerDeletion"] for ref in refs)


## Validation ##################################################################


def test_namespace_mismatch():
    info = process(setup_cluster(), make_resource("cm", obj=make_configmap("cm", namespace="other")))
    assert isinstance(info.error, TerminalError)
    assert "different from the bundle namespace" in str(info.error)


def test_prohibited_annotation():
    obj = make_configmap("cm", annotations={constants.DELETION_TIMESTAMP_ANNOTATION: "x"})
    info = process(setup_cluster(), make_resource("cm", obj=obj))
    assert isinstance(info.error, TerminalError)
    assert "cannot be set by the user" in str(info.error)


def test_neither_object_nor_plugin():
    cluster = setup_cluster()
    resource = Bundle.from_dict(make_bundle([{"name": "empty", "spec": {}}])).resources[0]
    info = make_reconciler(cluster).process(resource)
    assert isinstance(info.error, TerminalError)


def test_both_object_and_plugin():
    resource = make_resource("cm", obj=make_configmap("cm"), plugin={"name": "configmap"})
    info = process(setup_cluster(), resource)
    assert isinstance(info.error, TerminalError)


def test_prevalidation_before_dependencies():
    """Reference errors are reported even when dependencies are not ready"""
    obj = make_configmap("cm", data={"key": "{{b#data.key}}"})
    cluster = setup_cluster()
    info = process(cluster, make_resource("cm", obj=obj, depends_on=["a"]))
    assert isinstance(info.error, UndeclaredReferenceError)
    assert isinstance(info.error, ReferenceResolutionError)
    assert not info.retriable
    cluster.create.assert_not_called()


## Dependencies ################################################################


def test_dependency_not_ready():
    """Unready dependencies block without touching the cluster"""
    cluster = setup_cluster()
    processed = {"a": ResourceInfo.in_progress({"kind": "ConfigMap"})}
    info = process(cluster, make_resource("cm", depends_on=["a", "b"]), processed=processed)
    assert info.state == ResourceState.DEPENDENCIES_NOT_READY
    assert info.names == ["a", "b"]
    cluster.create.assert_not_called()
    cluster.get.assert_not_called()


@pytest.mark.parametrize(
    "dep_info",
    [ResourceInfo.failed(TerminalError("boom")), ResourceInfo.blocked_by_error(["z"])],
)
def test_dependency_failed(dep_info):
    cluster = setup_cluster()
    processed = {"a": dep_info, "b": ResourceInfo.in_progress({})}
    info = process(cluster, make_resource("cm", depends_on=["a", "b"]), processed=processed)
    assert info.state == ResourceState.BLOCKED_BY_ERROR
    assert info.names == ["a"]
    cluster.create.assert_not_called()


def test_dependency_reference_and_owner():
    """References read the dependency and the dependency becomes an owner"""
    cluster = setup_cluster()
    dep = ready_dependency(cluster, "a", data={"key": "from-a"})
    obj = make_configmap("cm", data={"copied": "{{a#data.key}}", "port": "p-{{a#metadata.generation}}"})
    info = process(cluster, make_resource("cm", obj=obj, depends_on=["a"]), processed={"a": dep})
    assert info.is_ready
    created = cluster.get_obj("ConfigMap", "cm")
    assert created["data"] == {"copied": "from-a", "port": "p-1"}
    refs = created["metadata"]["ownerReferences"]
    assert refs[1]["uid"] == dep.actual["metadata"]["uid"]
    assert not refs[1].get("controller")


## Cluster Outcomes ############################################################


def test_create_already_exists_race():
    cluster = setup_cluster(create_fail=AlreadyExistsError("exists"))
    info = process(cluster, make_resource("cm"))
    assert info.is_race
    assert isinstance(info.error, RaceError)
    assert not info.retriable


@pytest.mark.parametrize("error", [ConflictError("conflict"), NotFoundError("gone")])
def test_update_race(error):
    cluster = setup_cluster(resources=[owned_configmap(data={"key": "old"})], update_fail=error)
    info = process(cluster, make_resource("cm"))
    assert info.is_race
    assert not info.retriable


@pytest.mark.parametrize(
    ["retriable", "error_type"],
    [(True, TransientError), (False, TerminalError)],
)
def test_create_api_error(retriable, error_type):
    cluster = setup_cluster(create_fail=ClusterApiError("boom", is_retriable=retriable))
    info = process(cluster, make_resource("cm"))
    assert isinstance(info.error, error_type)
    assert info.retriable == retriable
    assert not info.is_race


def test_store_error_transient():
    cluster = setup_cluster(get_fail=ClusterApiError("down"))
    info = process(cluster, make_resource("cm"))
    assert isinstance(info.error, TransientError)
    assert info.retriable


## Readiness ###################################################################


def test_in_progress():
    cluster = setup_cluster()
    deployment = make_deployment("web")
    del deployment["status"]
    deployment["metadata"]["generation"] = 1
    info = process(cluster, make_resource("web", obj=deployment))
    assert info.state == ResourceState.IN_PROGRESS
    assert info.message
    assert info.actual["metadata"]["name"] == "web"


def test_readiness_error():
    deployment = make_deployment(
        "web", conditions=[{"type": "Progressing", "reason": "ProgressDeadlineExceeded"}]
    )
    live = make_owned(deployment, make_bundle())
    live["metadata"]["labels"] = {constants.BUNDLE_NAME_LABEL: "test-bundle"}
    template = make_deployment("web")
    del template["status"]
    cluster = setup_cluster(resources=[live])
    info = process(cluster, make_resource("web", obj=template))
    assert info.is_error
    assert not info.retriable
    assert info.actual is not None


## Plugins #####################################################################


def test_plugin_creates_object():
    plugin = ConfigMapPlugin()
    cluster = setup_cluster()
    dep = ready_dependency(cluster, "a", data={"key": "v"})
    resource = make_resource(
        "p",
        plugin={"name": "configmap", "objectName": "generated", "spec": {"x": "{{a#data.key}}"}},
        depends_on=["a"],
    )
    info = process(cluster, resource, plugins=PluginRegistry([plugin]), processed={"a": dep})
    assert info.is_ready
    assert cluster.get_obj("ConfigMap", "generated")["data"] == {"x": "v"}
    context = plugin.calls[0]
    assert context.namespace == TEST_NAMESPACE
    assert context.actual is None
    assert context.dependencies["a"].actual["data"] == {"key": "v"}


def test_plugin_unknown():
    resource = make_resource("p", plugin={"name": "nope", "objectName": "x"})
    info = process(setup_cluster(), resource)
    assert isinstance(info.error, TerminalError)
    assert 'no such plugin "nope"' in str(info.error)


def test_plugin_validation():
    plugin = ConfigMapPlugin(required_keys=["needed"])
    resource = make_resource("p", plugin={"name": "configmap", "objectName": "x", "spec": {}})
    info = process(setup_cluster(), resource, plugins=PluginRegistry([plugin]))
    assert isinstance(info.error, TerminalError)
    assert "failed validation" in str(info.error)
    assert not plugin.calls


def test_plugin_raises():
    class BrokenPlugin(ConfigMapPlugin):
        def process(self, spec, context):
            raise ValueError("bad input")

    resource = make_resource("p", plugin={"name": "configmap", "objectName": "x"})
    info = process(setup_cluster(), resource, plugins=PluginRegistry([BrokenPlugin()]))
    assert isinstance(info.error, TerminalError)
    assert "bad input" in str(info.error)


def test_plugin_wrong_kind():
    class WrongKindPlugin(ConfigMapPlugin):
        def process(self, spec, context):
            return {"apiVersion": "v1", "kind": "Secret", "metadata": {}}

    resource = make_resource("p", plugin={"name": "configmap", "objectName": "x"})
    info = process(setup_cluster(), resource, plugins=PluginRegistry([WrongKindPlugin()]))
    assert isinstance(info.error, TerminalError)
    assert "unexpected apiVersion/kind" in str(info.error)


## Bound Secrets ###############################################################


def make_binding(secret_name=None):
    binding = {
        "apiVersion": "servicecatalog.k8s.io/v1beta1",
        "kind": "ServiceBinding",
        "metadata": {"name": "binding"},
        "spec": {"instanceRef": {"name": "db"}},
    }
    if secret_name:
        binding["spec"]["secretName"] = secret_name
    return binding


def live_binding(secret_name=None):
    live = make_owned(make_binding(secret_name), make_bundle())
    live["metadata"]["labels"] = {constants.BUNDLE_NAME_LABEL: "test-bundle"}
    live["status"] = {"conditions": [{"type": "Ready", "status": "True"}]}
    return live


def test_binding_secret_exposed():
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "creds", "namespace": TEST_NAMESPACE},
        "data": {"password": base64.b64encode(b"pw").decode("ascii")},
    }
    cluster = setup_cluster(resources=[live_binding("creds"), secret])
    info = process(cluster, make_resource("binding", obj=make_binding("creds")))
    assert info.is_ready
    assert info.aux_objects["bindsecret"]["data"] == {"password": b"pw"}


def test_binding_secret_missing():
    cluster = setup_cluster(resources=[live_binding()])
    info = process(cluster, make_resource("binding", obj=make_binding()))
    assert isinstance(info.error, TransientError)
    assert info.retriable


## Cancellation ################################################################


def test_cancelled():
    cancel_event = threading.Event()
    cancel_event.set()
    cluster = setup_cluster()
    with pytest.raises(PassCancelled):
        process(cluster, make_resource("cm"), cancel_event=cancel_event)
    cluster.create.assert_not_called()


## Deployments #################################################################


def test_deployment_scaled_elsewhere_not_reverted():
    """Replicas set by another controller survive later passes"""
    template = make_deployment("web", replicas=2)
    del template["status"]
    cluster = setup_cluster()
    process(cluster, make_resource("web", obj=template))
    live = cluster.get_obj("Deployment", "web", api_version="apps/v1")
    assert live["metadata"]["annotations"][constants.LAST_APPLIED_REPLICAS_ANNOTATION] == "2"

    live["spec"]["replicas"] = 5
    cluster.update(live)
    cluster.update.reset_mock()
    info = process(cluster, make_resource("web", obj=template))
    assert not info.is_error
    cluster.update.assert_not_called()
    assert cluster.get_obj("Deployment", "web", api_version="apps/v1")["spec"]["replicas"] == 5
