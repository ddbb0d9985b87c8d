"""
The DryRunCluster implements the ObjectStore and ClusterClient interfaces
without a real cluster. It holds the state of the cluster in a local map and
emulates the parts of the API server the reconcilers depend on: UIDs,
resourceVersion conflicts, generations, finalizers and owner based garbage
collection.
"""

# Standard
from datetime import datetime, timedelta
from queue import Empty, Queue
from threading import RLock
from typing import Callable, Iterator, List, Optional, Tuple
import base64
import copy
import itertools
import uuid

# First Party
import alog

# Local
from ..exceptions import AlreadyExistsError, ConflictError, NotFoundError
from ..utils import get_name, get_namespace, get_uid
from .base import ClusterClient, ObjectStore, WatchEvent, WatchEventType

log = alog.use_channel("DRY-RUN")

WatchCallback = Callable[[WatchEvent], None]


class DryRunCluster(ObjectStore, ClusterClient):
    """In-memory cluster for tests and dry runs"""

    def __init__(self, resources: Optional[List[dict]] = None):
        """Construct with an optional list of objects that already exist"""
        self._cluster_content = {}
        self._lock = RLock()
        self._resource_versions = itertools.count(1)
        self._watches = {}

        # Every write operation as (verb, "kind/name")
        self.operations: List[Tuple[str, str]] = []

        for resource in resources or []:
            self._store(copy.deepcopy(resource), new=True)

    ## ObjectStore #############################################################

    def get(self, api_version, kind, namespace, name):
        log.debug2("DRY RUN get [%s/%s/%s] in [%s]", api_version, kind, name, namespace)
        with self._lock:
            obj = self._entries(namespace, kind, api_version).get(name)
            return copy.deepcopy(obj) if obj is not None else None

    def list(self, api_version, kind, namespace=None):
        with self._lock:
            matches = []
            for obj in self._all_objects():
                if obj.get("apiVersion") != api_version or obj.get("kind") != kind:
                    continue
                if namespace is not None and get_namespace(obj) != namespace:
                    continue
                matches.append(copy.deepcopy(obj))
            return matches

    def objects_owned_by(self, namespace, owner_uid):
        with self._lock:
            return [
                copy.deepcopy(obj)
                for obj in self._all_objects()
                if get_namespace(obj) == namespace and _is_owned_by(obj, owner_uid)
            ]

    def watch_objects(self, api_version, kind, namespace=None, timeout=15):
        """Watch for changes by registering a callback that feeds a queue"""
        event_queue = Queue()

        with self._lock:
            initial = self.list(api_version, kind, namespace)
            self.register_watch(api_version, kind, event_queue.put, namespace=namespace)

        for obj in initial:
            yield WatchEvent(type=WatchEventType.ADDED, obj=obj)

        end_time = datetime.max
        if timeout:
            end_time = datetime.now() + timedelta(seconds=timeout)
        try:
            while datetime.now() < end_time:
                wait = min(1.0, max((end_time - datetime.now()).total_seconds(), 0))
                try:
                    event = event_queue.get(timeout=wait or 0.01)
                except Empty:
                    continue
                log.debug2("Yielding event %s", event.type)
                yield event
        finally:
            self.unregister_watch(event_queue.put)

    ## ClusterClient ###########################################################

    def create(self, obj):
        obj = copy.deepcopy(obj)
        name = get_name(obj)
        self.operations.append(("create", f"{obj.get('kind')}/{name}"))
        log.info("DRY RUN create [%s/%s]", obj.get("kind"), name)
        with self._lock:
            entries = self._entries(get_namespace(obj), obj.get("kind"), obj.get("apiVersion"))
            if name in entries:
                raise AlreadyExistsError(f"{obj.get('kind')} {name!r} already exists")
            stored = self._store(obj, new=True)
        self._notify(WatchEventType.ADDED, stored)
        return copy.deepcopy(stored)

    def update(self, obj):
        return self._replace(obj, verb="update")

    def update_status(self, obj):
        return self._replace(obj, verb="update_status")

    def delete(  # pylint: disable=too-many-arguments
        self,
        api_version,
        kind,
        namespace,
        name,
        uid=None,
        propagation_policy=None,
    ):
        self.operations.append(("delete", f"{kind}/{name}"))
        log.info("DRY RUN delete [%s/%s] (%s)", kind, name, propagation_policy)
        with self._lock:
            current = self._entries(namespace, kind, api_version).get(name)
            if current is None:
                raise NotFoundError(f"{kind} {name!r} not found")
            if uid is not None and get_uid(current) != uid:
                raise ConflictError(
                    f"Precondition failed: UID in precondition: {uid}, UID in object meta: {get_uid(current)}"
                )
            if current["metadata"].get("finalizers"):
                if not current["metadata"].get("deletionTimestamp"):
                    current["metadata"]["deletionTimestamp"] = _now()
                    current["metadata"]["resourceVersion"] = self._next_version()
                marked = copy.deepcopy(current)
            else:
                marked = None
        if marked is not None:
            self._notify(WatchEventType.MODIFIED, marked)
        else:
            self._remove(current)

    ## Dry Run Methods #########################################################

    def register_watch(
        self,
        api_version: str,
        kind: str,
        callback: WatchCallback,
        namespace: Optional[str] = None,
    ):
        """Register a callback for all changes of a kind"""
        log.debug("Registering watch for %s/%s in %s", api_version, kind, namespace)
        with self._lock:
            self._watches.setdefault((api_version, kind, namespace), []).append(callback)

    def unregister_watch(self, callback: WatchCallback):
        with self._lock:
            for callbacks in self._watches.values():
                if callback in callbacks:
                    callbacks.remove(callback)

    def writes(self, verb: Optional[str] = None) -> List[Tuple[str, str]]:
        """The recorded write operations, optionally filtered by verb"""
        return [op for op in self.operations if verb is None or op[0] == verb]

    ## Implementation Details ##################################################

    def _entries(self, namespace, kind, api_version) -> dict:
        return (
            self._cluster_content.setdefault(namespace, {})
            .setdefault(kind, {})
            .setdefault(api_version, {})
        )

    def _all_objects(self) -> Iterator[dict]:
        for kinds in self._cluster_content.values():
            for versions in kinds.values():
                for entries in versions.values():
                    yield from entries.values()

    def _next_version(self) -> str:
        return str(next(self._resource_versions))

    def _store(self, obj: dict, new: bool) -> dict:
        metadata = obj.setdefault("metadata", {})
        if obj.get("kind") == "Secret":
            _fold_string_data(obj)
        if new:
            metadata["uid"] = metadata.get("uid") or str(uuid.uuid4())
            metadata["creationTimestamp"] = metadata.get("creationTimestamp") or _now()
            metadata["generation"] = metadata.get("generation") or 1
        metadata["resourceVersion"] = self._next_version()
        entries = self._entries(get_namespace(obj), obj.get("kind"), obj.get("apiVersion"))
        entries[get_name(obj)] = obj
        return obj

    def _replace(self, obj: dict, verb: str) -> dict:
        obj = copy.deepcopy(obj)
        name = get_name(obj)
        self.operations.append((verb, f"{obj.get('kind')}/{name}"))
        log.info("DRY RUN %s [%s/%s]", verb, obj.get("kind"), name)
        with self._lock:
            entries = self._entries(get_namespace(obj), obj.get("kind"), obj.get("apiVersion"))
            current = entries.get(name)
            if current is None:
                raise NotFoundError(f"{obj.get('kind')} {name!r} not found")
            requested_version = obj.get("metadata", {}).get("resourceVersion")
            if requested_version and requested_version != current["metadata"]["resourceVersion"]:
                raise ConflictError(
                    f"the object {name!r} has been modified; please apply your changes to the latest version"
                )

            if verb == "update_status":
                updated = copy.deepcopy(current)
                updated["status"] = obj.get("status")
            else:
                updated = obj
                updated["status"] = copy.deepcopy(current.get("status"))
                if updated["status"] is None:
                    updated.pop("status")
                # Server owned metadata can't be changed by an update
                for field in ["uid", "creationTimestamp", "deletionTimestamp", "generation"]:
                    if field in current["metadata"]:
                        updated["metadata"][field] = current["metadata"][field]
                    else:
                        updated["metadata"].pop(field, None)
                if _content(updated) != _content(current):
                    updated["metadata"]["generation"] = current["metadata"].get("generation", 1) + 1

            stored = self._store(updated, new=False)
            finalized = stored["metadata"].get("deletionTimestamp") and not stored[
                "metadata"
            ].get("finalizers")
        if finalized:
            self._remove(stored)
        else:
            self._notify(WatchEventType.MODIFIED, stored)
        return copy.deepcopy(stored)

    def _remove(self, obj: dict):
        """Remove an object and garbage collect the objects it owns"""
        with self._lock:
            namespace = get_namespace(obj)
            entries = self._entries(namespace, obj.get("kind"), obj.get("apiVersion"))
            entries.pop(get_name(obj), None)
            dependents = [
                dep for dep in self._all_objects() if _is_owned_by(dep, get_uid(obj))
            ]
        self._notify(WatchEventType.DELETED, obj)
        for dependent in dependents:
            log.debug2("DRY RUN garbage collecting %s/%s", dependent.get("kind"), get_name(dependent))
            self._remove(dependent)

    def _notify(self, event_type: WatchEventType, obj: dict):
        api_version, kind, namespace = obj.get("apiVersion"), obj.get("kind"), get_namespace(obj)
        with self._lock:
            callbacks = []
            for key in [(api_version, kind, namespace), (api_version, kind, None)]:
                callbacks.extend(self._watches.get(key, []))
        for callback in callbacks:
            callback(WatchEvent(type=event_type, obj=copy.deepcopy(obj)))


def _is_owned_by(obj: dict, owner_uid: str) -> bool:
    return any(
        ref.get("uid") == owner_uid
        for ref in obj.get("metadata", {}).get("ownerReferences") or []
    )


def _fold_string_data(secret: dict):
    """The server folds the write-only stringData of a Secret into data"""
    string_data = secret.pop("stringData", None) or {}
    data = secret.get("data") or {}
    for key, val in string_data.items():
        data[key] = base64.b64encode(val.encode("utf-8")).decode("ascii")
    if data:
        secret["data"] = data


def _content(obj: dict) -> dict:
    """The parts of an object that count towards its generation"""
    return {key: val for key, val in obj.items() if key not in ["metadata", "status"]}


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%SZ")
