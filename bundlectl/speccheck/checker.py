"""
The drift checker decides whether a live object already satisfies a desired
object and, when it does not, produces the object to submit as an update.
"""

# Standard
from dataclasses import dataclass
from typing import Any, List, Optional
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .cleanup import CleanupRegistry, default_cleanup_registry

log = alog.use_channel("SPCHK")

# Top-level fields never copied from the desired object
_IDENTITY_FIELDS = ["kind", "apiVersion", "metadata", "status"]

# Kinds whose content must not appear in logs
_SENSITIVE_KINDS = ["Secret"]


@dataclass
class CompareResult:
    """Result of comparing a desired object with a live object"""

    # The object to submit when match is False, the live object otherwise
    merged: dict
    match: bool
    # Human readable description of the drift. Empty on match.
    diff: str = ""


class SpecChecker:
    """Compares desired objects against live objects"""

    def __init__(self, cleaner: Optional[CleanupRegistry] = None):
        self.cleaner = cleaner if cleaner is not None else default_cleanup_registry()

    def before_create(self, desired: dict) -> dict:
        """Return a copy of the desired object prepared for its first creation"""
        return self.cleaner.before_create(copy.deepcopy(desired))

    def compare(self, desired: dict, actual: dict) -> CompareResult:
        """Check whether the live object satisfies the desired object

        Neither argument is mutated.

        Args:
            desired:  dict
                The object computed from the Bundle
            actual:  dict
                The live object

        Returns:
            result:  CompareResult
                On match, merged is the untouched live object. Otherwise merged
                is the live object with the desired content applied.
        """
        desired = copy.deepcopy(desired)

        updated = copy.deepcopy(actual)
        updated.pop("status", None)

        # The baseline to compare against. Objects from type-specific caches
        # may lack kind/apiVersion.
        baseline = copy.deepcopy(updated)
        baseline["kind"] = desired.get("kind")
        baseline["apiVersion"] = desired.get("apiVersion")

        updated["kind"] = desired.get("kind")
        updated["apiVersion"] = desired.get("apiVersion")
        for field, value in desired.items():
            if field not in _IDENTITY_FIELDS:
                updated[field] = value

        updated = self.cleaner.cleanup(updated, baseline)

        desired_meta = desired.get("metadata") or {}
        updated_meta = updated.setdefault("metadata", {})
        updated_meta["name"] = desired_meta.get("name")
        updated_meta["labels"] = desired_meta.get("labels") or {}
        updated_meta["annotations"] = _overlay(
            updated_meta.get("annotations"), desired_meta.get("annotations")
        )
        updated_meta["ownerReferences"] = desired_meta.get("ownerReferences") or []
        updated_meta["finalizers"] = _union(
            updated_meta.get("finalizers"), desired_meta.get("finalizers")
        )

        # The status must only come from the object's own controller after it
        # has seen the update
        updated.pop("status", None)

        diff = DeepDiff(normalize(baseline), normalize(updated))
        if not diff:
            log.debug3("Live object matches the desired object")
            return CompareResult(merged=actual, match=True)

        diff_text = render_diff(diff, sensitive=desired.get("kind") in _SENSITIVE_KINDS)
        log.debug("Objects are different: %s", diff_text)
        return CompareResult(merged=normalize(updated), match=False, diff=diff_text)


## Helpers #####################################################################


def normalize(value: Any) -> Any:
    """Return a copy of the value where empty and null collection fields are
    removed so that {}, [] and an absent key compare equal
    """
    if isinstance(value, dict):
        result = {}
        for key, val in value.items():
            val = normalize(val)
            if val is None or (isinstance(val, (dict, list)) and not val):
                continue
            result[key] = val
        return result
    if isinstance(value, list):
        return [normalize(item) for item in value]
    return value


def render_diff(diff: DeepDiff, sensitive: bool = False) -> str:
    """Render a diff for logs and messages. For sensitive objects only the
    changed locations are listed, never the values.
    """
    if not sensitive:
        return str(diff)
    lines = []
    for change_type, changes in diff.items():
        locations = list(changes.keys()) if isinstance(changes, dict) else list(changes)
        lines.append(f"{change_type}: {', '.join(sorted(str(loc) for loc in locations))}")
    return "; ".join(lines)


def _overlay(base: Optional[dict], overrides: Optional[dict]) -> dict:
    result = dict(base or {})
    result.update(overrides or {})
    return result


def _union(base: Optional[List[str]], extra: Optional[List[str]]) -> List[str]:
    result = list(base or [])
    result.extend(item for item in (extra or []) if item not in result)
    return result
