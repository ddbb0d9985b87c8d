"""
ResourceInfo is the ephemeral outcome of processing one resource during one
reconciliation pass. It is consumed by the resources that depend on it later
in the same pass and by the status aggregation at the end of the pass.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ResourceState(Enum):
    """The terminal state of a resource within a pass"""

    DEPENDENCIES_NOT_READY = "DependenciesNotReady"
    BLOCKED_BY_ERROR = "BlockedByError"
    IN_PROGRESS = "InProgress"
    READY = "Ready"
    ERROR = "Error"


@dataclass
class ResourceInfo:
    """The outcome of processing a single resource

    The fields beyond state are only populated for the states they apply to:
    names for DependenciesNotReady and BlockedByError, error and retriable for
    Error, message for InProgress.
    """

    state: ResourceState
    # The live object after processing, if one exists
    actual: Optional[dict] = None
    # Auxiliary objects exposed to reference modifiers, keyed by modifier
    aux_objects: Dict[str, dict] = field(default_factory=dict)
    names: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
    retriable: bool = False
    message: str = ""

    ## Constructors ############################################################

    @classmethod
    def dependencies_not_ready(cls, names: List[str]) -> "ResourceInfo":
        return cls(state=ResourceState.DEPENDENCIES_NOT_READY, names=list(names))

    @classmethod
    def blocked_by_error(cls, names: List[str]) -> "ResourceInfo":
        return cls(state=ResourceState.BLOCKED_BY_ERROR, names=list(names))

    @classmethod
    def in_progress(cls, actual: dict, message: str = "") -> "ResourceInfo":
        return cls(state=ResourceState.IN_PROGRESS, actual=actual, message=message)

    @classmethod
    def ready(
        cls, actual: dict, aux_objects: Optional[Dict[str, dict]] = None
    ) -> "ResourceInfo":
        return cls(
            state=ResourceState.READY, actual=actual, aux_objects=aux_objects or {}
        )

    @classmethod
    def failed(
        cls,
        error: Exception,
        retriable: Optional[bool] = None,
        actual: Optional[dict] = None,
    ) -> "ResourceInfo":
        """Construct an Error outcome. If retriable is not given, it is taken
        from the error itself.
        """
        if retriable is None:
            retriable = bool(getattr(error, "is_retriable", False))
        return cls(
            state=ResourceState.ERROR,
            error=error,
            retriable=retriable,
            actual=actual,
        )

    ## Properties ##############################################################

    @property
    def is_ready(self) -> bool:
        return self.state == ResourceState.READY

    @property
    def is_error(self) -> bool:
        return self.state == ResourceState.ERROR

    @property
    def is_race(self) -> bool:
        """Whether this error is a benign race that a watch event will resolve"""
        return self.is_error and bool(getattr(self.error, "is_race", False))

    @property
    def failed_or_blocked(self) -> bool:
        """Whether dependents of this resource must be suppressed"""
        return self.state in (ResourceState.ERROR, ResourceState.BLOCKED_BY_ERROR)
