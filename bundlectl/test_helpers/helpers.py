"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import Dict, List, Optional
from unittest import mock
import copy
import inspect
import os

# First Party
import alog

# Local
from bundlectl import constants
from bundlectl.cluster import DryRunCluster
from bundlectl.config import library_config as config_detail_dict
from bundlectl.plugin import Plugin, PluginContext, PluginDescription

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json" if os.environ.get("LOG_JSON", "").lower() == "true" else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAMESPACE = "test"
TEST_BUNDLE_NAME = "test-bundle"
TEST_BUNDLE_UID = "12345678-1234-1234-1234-123456789012"
SOME_OTHER_NAMESPACE = "somewhere"


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val

    try:
        yield
    finally:
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


## Object Factories ############################################################


def make_configmap(
    name: str = "cm",
    data: Optional[Dict[str, str]] = None,
    namespace: Optional[str] = None,
    **metadata,
) -> dict:
    obj = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, **metadata},
        "data": data if data is not None else {"key": "value"},
    }
    if namespace is not None:
        obj["metadata"]["namespace"] = namespace
    return obj


def make_resource(
    name: str,
    obj: Optional[dict] = None,
    depends_on: Optional[List[str]] = None,
    plugin: Optional[dict] = None,
) -> dict:
    """Make a resource entry of a Bundle spec. Without an object or plugin the
    resource holds a ConfigMap of the same name.
    """
    spec = {}
    if plugin is not None:
        spec["plugin"] = plugin
    if obj is not None or plugin is None:
        spec["object"] = obj if obj is not None else make_configmap(name)
    resource = {"name": name, "spec": spec}
    if depends_on:
        resource["dependsOn"] = depends_on
    return resource


def make_bundle(  # pylint: disable=too-many-arguments
    resources: Optional[List[dict]] = None,
    name: str = TEST_BUNDLE_NAME,
    namespace: str = TEST_NAMESPACE,
    uid: Optional[str] = TEST_BUNDLE_UID,
    finalizers: Optional[List[str]] = None,
    generation: int = 1,
    status: Optional[dict] = None,
    deletion_timestamp: Optional[str] = None,
) -> dict:
    """Make a Bundle manifest. The deletion finalizer is present unless
    finalizers are given explicitly.
    """
    metadata = {
        "name": name,
        "namespace": namespace,
        "generation": generation,
        "finalizers": (
            finalizers
            if finalizers is not None
            else [constants.FINALIZER_DELETE_RESOURCES]
        ),
    }
    if uid is not None:
        metadata["uid"] = uid
    if deletion_timestamp is not None:
        metadata["deletionTimestamp"] = deletion_timestamp
    manifest = {
        "apiVersion": constants.BUNDLE_API_VERSION,
        "kind": constants.BUNDLE_KIND,
        "metadata": metadata,
        "spec": {"resources": copy.deepcopy(resources or [])},
    }
    if status is not None:
        manifest["status"] = status
    return manifest


def make_owned(obj: dict, bundle: dict, controller: bool = True) -> dict:
    """Add an owner reference to the given Bundle to an object"""
    obj = copy.deepcopy(obj)
    obj.setdefault("metadata", {}).setdefault("namespace", bundle["metadata"]["namespace"])
    obj["metadata"].setdefault("ownerReferences", []).append(
        {
            "apiVersion": constants.BUNDLE_API_VERSION,
            "kind": constants.BUNDLE_KIND,
            "name": bundle["metadata"]["name"],
            "uid": bundle["metadata"]["uid"],
            "controller": controller,
            "blockOwnerDeletion": True,
        }
    )
    return obj


def make_deployment(
    name: str = "deploy",
    replicas: int = 1,
    updated: Optional[int] = None,
    available: Optional[int] = None,
    generation: int = 1,
    observed_generation: Optional[int] = None,
    conditions: Optional[List[dict]] = None,
) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "generation": generation},
        "spec": {"replicas": replicas},
        "status": {
            "observedGeneration": (
                observed_generation if observed_generation is not None else generation
            ),
            "replicas": replicas,
            "updatedReplicas": updated if updated is not None else replicas,
            "availableReplicas": available if available is not None else replicas,
            "conditions": conditions or [],
        },
    }


## Failure Injection ###########################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4("Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag)

    def failable_method(*args, **kwargs):
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            res = fail_flag(*args, **kwargs)
            if res is not None:
                return res
        elif fail_flag:
            return failure_return
        return method(*args, **kwargs)

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, Exception):
                raise self.fail_val
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        return None


class MockCluster(DryRunCluster):
    """The MockCluster wraps a DryRunCluster in mocks so that tests can assert
    on the calls and inject failures into each operation
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        resources: Optional[List[dict]] = None,
        get_fail=False,
        list_fail=False,
        create_fail=False,
        update_fail=False,
        update_status_fail=False,
        delete_fail=False,
    ):
        super().__init__(resources=resources)
        self.get = mock.Mock(side_effect=get_failable_method(get_fail, super().get, None))
        self.list = mock.Mock(side_effect=get_failable_method(list_fail, super().list, []))
        self.create = mock.Mock(side_effect=get_failable_method(create_fail, super().create))
        self.update = mock.Mock(side_effect=get_failable_method(update_fail, super().update))
        self.update_status = mock.Mock(
            side_effect=get_failable_method(update_status_fail, super().update_status)
        )
        self.delete = mock.Mock(side_effect=get_failable_method(delete_fail, super().delete))

    def get_obj(self, kind: str, name: str, namespace: str = TEST_NAMESPACE, api_version="v1"):
        return DryRunCluster.get(self, api_version, kind, namespace, name)

    def get_bundle(self, name: str = TEST_BUNDLE_NAME, namespace: str = TEST_NAMESPACE):
        return DryRunCluster.get(
            self, constants.BUNDLE_API_VERSION, constants.BUNDLE_KIND, namespace, name
        )


def setup_cluster(bundle: Optional[dict] = None, resources: Optional[List[dict]] = None, **kwargs):
    """Make a MockCluster holding the given Bundle and objects"""
    all_resources = list(resources or [])
    if bundle is not None:
        all_resources.append(bundle)
    return MockCluster(resources=all_resources, **kwargs)


## Plugins #####################################################################


class ConfigMapPlugin(Plugin):
    """Plugin producing a ConfigMap holding the data of its spec"""

    NAME = "configmap"

    def __init__(self, required_keys: Optional[List[str]] = None):
        self.required_keys = required_keys or []
        self.calls: List[PluginContext] = []

    def describe(self):
        return PluginDescription(name=self.NAME, api_version="v1", kind="ConfigMap")

    def validate_spec(self, spec):
        return [f"missing key {key!r}" for key in self.required_keys if key not in spec]

    def process(self, spec, context):
        self.calls.append(context)
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {},
            "data": dict(spec),
        }
