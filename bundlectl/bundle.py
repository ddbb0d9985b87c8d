"""
Data model for the Bundle custom resource. A Bundle is parsed from its raw
manifest once per reconciliation pass; the raw manifest stays available for
writing status and finalizers back.
"""

# Standard
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import copy

# First Party
import alog

# Local
from . import constants
from .exceptions import assert_structure
from .utils import ObjectRef

log = alog.use_channel("BNDL")


@dataclass
class PluginSpec:
    """A request to produce the object of a resource by invoking a plugin"""

    name: str
    object_name: str
    spec: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, content: dict) -> "PluginSpec":
        assert_structure(isinstance(content, dict), "plugin must be an object")
        assert_structure(bool(content.get("name")), "plugin name must be set")
        assert_structure(
            isinstance(content.get("spec") or {}, dict), "plugin spec must be an object"
        )
        return cls(
            name=content["name"],
            object_name=content.get("objectName", ""),
            spec=copy.deepcopy(content.get("spec") or {}),
        )


@dataclass
class Resource:
    """One desired object inside a Bundle. Exactly one of object and plugin is
    expected to be set; this is checked when the resource is evaluated so that
    a bad resource does not take down the rest of the Bundle.
    """

    name: str
    depends_on: List[str] = field(default_factory=list)
    object: Optional[dict] = None
    plugin: Optional[PluginSpec] = None

    @classmethod
    def from_dict(cls, content: dict) -> "Resource":
        assert_structure(isinstance(content, dict), "resource must be an object")
        name = content.get("name")
        assert_structure(
            isinstance(name, str) and bool(name), "resource name must be set"
        )
        depends_on = content.get("dependsOn") or []
        assert_structure(
            isinstance(depends_on, list)
            and all(isinstance(dep, str) for dep in depends_on),
            f"dependsOn of resource {name!r} must be a list of names",
        )
        spec = content.get("spec") or {}
        assert_structure(isinstance(spec, dict), f"spec of resource {name!r} must be an object")
        obj = spec.get("object")
        assert_structure(
            obj is None or isinstance(obj, dict),
            f"object of resource {name!r} must be an object",
        )
        plugin = spec.get("plugin")
        return cls(
            name=name,
            depends_on=list(depends_on),
            object=copy.deepcopy(obj),
            plugin=PluginSpec.from_dict(plugin) if plugin is not None else None,
        )

    def object_ref(self) -> Optional[ObjectRef]:
        """The identity of the object declared by this resource when it is
        known without evaluating the spec
        """
        if self.object is not None:
            return ObjectRef.from_object(self.object)
        return None


@dataclass
class Bundle:
    """The parsed view of a Bundle manifest"""

    name: str
    namespace: str
    uid: str
    resources: List[Resource]
    generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    status: dict = field(default_factory=dict)
    manifest: dict = field(default_factory=dict, repr=False)

    @property
    def key(self) -> str:
        """The work queue key for this Bundle"""
        return make_key(self.namespace, self.name)

    @property
    def is_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def owner_reference(self) -> dict:
        """The controller owner reference placed on every managed object"""
        return {
            "apiVersion": constants.BUNDLE_API_VERSION,
            "kind": constants.BUNDLE_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    @classmethod
    def from_dict(cls, manifest: dict) -> "Bundle":
        """Parse a raw Bundle manifest. The manifest is deep copied so that the
        parsed Bundle never aliases cache-owned memory.

        Args:
            manifest:  dict
                The full Bundle object as read from the cluster

        Returns:
            bundle:  Bundle
                The parsed Bundle
        """
        manifest = copy.deepcopy(manifest)
        metadata = manifest.get("metadata", {})
        spec = manifest.get("spec") or {}
        assert_structure(isinstance(spec, dict), "spec must be an object")
        resources = spec.get("resources") or []
        assert_structure(isinstance(resources, list), "resources must be a list")
        return cls(
            name=metadata.get("name"),
            namespace=metadata.get("namespace") or constants.DEFAULT_NAMESPACE,
            uid=metadata.get("uid"),
            resources=[Resource.from_dict(res) for res in resources],
            generation=metadata.get("generation", 0),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            status=manifest.get("status") or {},
            manifest=manifest,
        )


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> Tuple[str, str]:
    """Split a work queue key into (namespace, name)"""
    namespace, _, name = key.partition("/")
    return namespace, name
