"""
Common utilities shared across components in the library
"""

# Standard
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

# First Party
import alog

# Local
from . import constants
from .exceptions import assert_config

log = alog.use_channel("BCUTL")

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation. Missing
    intermediate dicts and non-dict intermediate values both yield the default.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for part in parts[:-1]:
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__ or not isinstance(dct, dict):
            return dflt
    return dct.get(parts[-1], dflt)


## Objects #####################################################################


def split_api_version(api_version: str) -> Tuple[str, str]:
    """Split an apiVersion into (group, version). Core objects have an empty
    group.
    """
    api_version = api_version or ""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def metadata(obj: dict) -> dict:
    """Get the metadata section of an object, creating it if needed"""
    return obj.setdefault("metadata", {})


def get_name(obj: dict) -> Optional[str]:
    return obj.get("metadata", {}).get("name")


def get_namespace(obj: dict) -> Optional[str]:
    return obj.get("metadata", {}).get("namespace")


def get_uid(obj: dict) -> Optional[str]:
    return obj.get("metadata", {}).get("uid")


def is_being_deleted(obj: dict) -> bool:
    """Whether the object has a deletion timestamp set"""
    return bool(obj.get("metadata", {}).get("deletionTimestamp"))


def get_controller_ref(obj: dict) -> Optional[dict]:
    """Get the owner reference marked as controller, if any"""
    for ref in obj.get("metadata", {}).get("ownerReferences") or []:
        if ref.get("controller"):
            return ref
    return None


def has_finalizer(obj: dict, finalizer: str) -> bool:
    return finalizer in (obj.get("metadata", {}).get("finalizers") or [])


@dataclass(eq=True, frozen=True)
class ObjectRef:
    """Identity of an object within a Bundle's namespace: group, version, kind
    and name. Used to correlate declared resources with live owned objects.
    """

    api_version: str
    kind: str
    name: str

    @property
    def group(self) -> str:
        return split_api_version(self.api_version)[0]

    @property
    def version(self) -> str:
        return split_api_version(self.api_version)[1]

    @property
    def group_kind(self) -> Tuple[str, str]:
        return (self.group, self.kind)

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.group, self.version, self.kind, self.name)

    def to_dict(self) -> dict:
        return {
            "group": self.group,
            "version": self.version,
            "kind": self.kind,
            "name": self.name,
        }

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict) -> "ObjectRef":
        """Create a reference from a full object manifest"""
        return cls(
            api_version=obj.get("apiVersion"),
            kind=obj.get("kind"),
            name=get_name(obj),
        )


def sorted_refs(refs: List[ObjectRef]) -> List[ObjectRef]:
    """Sort object references by group, version, kind and name"""
    return sorted(refs, key=ObjectRef.sort_key)


def parse_kind_names(names: List[str]) -> List[Tuple[str, str]]:
    """Parse "apiVersion/Kind" strings into (apiVersion, kind) pairs. The
    apiVersion may itself contain a slash (apps/v1/Deployment).
    """
    pairs = []
    for entry in names or []:
        api_version, _, kind = entry.rpartition("/")
        assert_config(bool(api_version and kind), f"Invalid kind name {entry!r}")
        pairs.append((api_version, kind))
    return pairs
