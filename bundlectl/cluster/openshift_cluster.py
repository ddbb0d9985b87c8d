"""
The OpenshiftCluster delegates all cluster operations to the openshift
DynamicClient. It is the implementation used when the controller runs against
a live cluster.
"""

# Standard
from typing import Iterable, Optional, Tuple

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import ConflictError as OpenshiftConflictError
from openshift.dynamic.exceptions import DynamicApiError, ForbiddenError
from openshift.dynamic.exceptions import NotFoundError as OpenshiftNotFoundError
from openshift.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import config
from ..exceptions import (
    AlreadyExistsError,
    ClusterApiError,
    ConflictError,
    NotFoundError,
)
from ..utils import get_name, get_namespace
from .base import ClusterClient, ObjectStore, WatchEvent, WatchEventType

log = alog.use_channel("OSFTC")

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
CLIENT_WATCH_TIMEOUT = 30


class OpenshiftCluster(ObjectStore, ClusterClient):
    """ObjectStore and ClusterClient backed by the openshift DynamicClient"""

    def __init__(self, owned_kinds: Optional[Iterable[Tuple[str, str]]] = None):
        """
        Args:
            owned_kinds:  Optional[Iterable[Tuple[str, str]]]
                The (apiVersion, kind) pairs searched when listing the objects
                owned by a Bundle
        """
        self.owned_kinds = list(owned_kinds or [])
        log.debug("Initializing openshift client")
        self._client = None

    @property
    def client(self):
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## ObjectStore #############################################################

    def get(self, api_version, kind, namespace, name):
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return None
        try:
            return resource_handle.get(name=name, namespace=namespace).to_dict()
        except OpenshiftNotFoundError:
            log.debug2("No object named [%s/%s] found in namespace [%s]", kind, name, namespace)
            return None
        except DynamicApiError as err:
            raise _api_error("get", kind, name, err) from err

    def list(self, api_version, kind, namespace=None):
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return []
        try:
            return resource_handle.get(namespace=namespace).to_dict().get("items", [])
        except ForbiddenError:
            log.debug("Listing objects of kind [%s] forbidden in namespace [%s]", kind, namespace)
            return []
        except DynamicApiError as err:
            raise _api_error("list", kind, "", err) from err

    def objects_owned_by(self, namespace, owner_uid):
        owned = []
        for api_version, kind in list(self.owned_kinds):
            for obj in self.list(api_version, kind, namespace):
                obj.setdefault("apiVersion", api_version)
                obj.setdefault("kind", kind)
                refs = obj.get("metadata", {}).get("ownerReferences") or []
                if any(ref.get("uid") == owner_uid for ref in refs):
                    owned.append(obj)
        return owned

    def add_owned_kind(self, api_version, kind):
        if (api_version, kind) not in self.owned_kinds:
            log.debug("Searching owned objects of kind %s/%s", api_version, kind)
            self.owned_kinds.append((api_version, kind))

    def remove_owned_kind(self, api_version, kind):
        if (api_version, kind) in self.owned_kinds:
            self.owned_kinds.remove((api_version, kind))

    def watch_objects(self, api_version, kind, namespace=None, timeout=None):
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            raise ClusterApiError(f"Failed to fetch resource handle for {api_version}/{kind}")

        timeout = timeout if timeout is not None else config.watch_timeout_seconds
        watch_manager = Watch()
        try:
            for event_obj in watch_manager.stream(
                resource_handle.get,
                namespace=namespace,
                serialize=False,
                timeout_seconds=timeout,
                _request_timeout=CLIENT_WATCH_TIMEOUT,
            ):
                yield WatchEvent(
                    type=WatchEventType(event_obj["type"]), obj=event_obj["object"]
                )
        except client.exceptions.ApiException as exception:
            if exception.status != 410:
                log.info("Unknown ApiException received, re-raising")
                raise
            log.debug2("Resource age expired, ending watch %s/%s", kind, api_version)
        except urllib3.exceptions.ReadTimeoutError:
            log.debug4("Watch Socket closed, ending watch %s/%s", kind, api_version)
        except urllib3.exceptions.ProtocolError:
            log.debug2("Invalid Chunk from server, ending watch %s/%s", kind, api_version)

    ## ClusterClient ###########################################################

    def create(self, obj):
        kind, name = obj.get("kind"), get_name(obj)
        resource_handle = self._require_handle(obj.get("kind"), obj.get("apiVersion"))
        log.debug2("Creating [%s/%s] in %s", kind, name, get_namespace(obj))
        try:
            return resource_handle.create(body=obj, namespace=get_namespace(obj)).to_dict()
        except OpenshiftConflictError as err:
            raise AlreadyExistsError(f"{kind} {name!r} already exists") from err
        except DynamicApiError as err:
            raise _api_error("create", kind, name, err) from err

    def update(self, obj):
        kind, name = obj.get("kind"), get_name(obj)
        resource_handle = self._require_handle(kind, obj.get("apiVersion"))
        log.debug2("Replacing [%s/%s] in %s", kind, name, get_namespace(obj))
        try:
            return resource_handle.replace(body=obj, namespace=get_namespace(obj)).to_dict()
        except OpenshiftConflictError as err:
            raise ConflictError(str(err)) from err
        except OpenshiftNotFoundError as err:
            raise NotFoundError(f"{kind} {name!r} not found") from err
        except DynamicApiError as err:
            raise _api_error("update", kind, name, err) from err

    def update_status(self, obj):
        kind, name = obj.get("kind"), get_name(obj)
        resource_handle = self._require_handle(kind, obj.get("apiVersion"))
        try:
            result = resource_handle.status.replace(
                body=obj, namespace=get_namespace(obj)
            ).to_dict()
        except OpenshiftConflictError as err:
            raise ConflictError(str(err)) from err
        except OpenshiftNotFoundError as err:
            raise NotFoundError(f"{kind} {name!r} not found") from err
        except DynamicApiError as err:
            raise _api_error("update status", kind, name, err) from err
        log.debug2("Successfully set the status for [%s/%s]", kind, name)
        return result

    def delete(  # pylint: disable=too-many-arguments
        self,
        api_version,
        kind,
        namespace,
        name,
        uid=None,
        propagation_policy=None,
    ):
        resource_handle = self._require_handle(kind, api_version)
        body = {}
        if uid is not None:
            body["preconditions"] = {"uid": uid}
        if propagation_policy is not None:
            body["propagationPolicy"] = propagation_policy
        log.debug2("Attempting to delete [%s/%s/%s] from %s", api_version, kind, name, namespace)
        try:
            resource_handle.delete(name=name, namespace=namespace, body=body)
        except OpenshiftNotFoundError as err:
            raise NotFoundError(f"{kind} {name!r} not found") from err
        except OpenshiftConflictError as err:
            raise ConflictError(str(err)) from err
        except DynamicApiError as err:
            raise _api_error("delete", kind, name, err) from err

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the controller
        is running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            return DynamicClient(kubernetes.client.ApiClient(kube_config))

        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(self, kind: str, api_version: str) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        try:
            return self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            log.debug(
                "No objects of kind [%s] found or multiple objects matching request found",
                kind,
            )
            return None

    def _require_handle(self, kind: str, api_version: str) -> Resource:
        resource_handle = self._get_resource_handle(kind, api_version)
        if resource_handle is None:
            raise ClusterApiError(f"unknown kind {api_version}/{kind}", is_retriable=False)
        return resource_handle


def _api_error(verb: str, kind: str, name: str, err: DynamicApiError) -> ClusterApiError:
    # Client errors other than conflicts and misses will not fix themselves
    status = getattr(err, "status", None)
    retriable = status is None or status >= 500 or status == 429
    return ClusterApiError(f"failed to {verb} {kind} {name!r}: {err}", is_retriable=retriable)

