"""
This defines the contracts between the reconcilers and the cluster: an object
store used for reads and a client used for writes. Implementations report
write outcomes with the exception classes AlreadyExistsError, ConflictError,
NotFoundError and ClusterApiError.
"""

# Standard
from enum import Enum
from typing import Iterator, List, NamedTuple, Optional
import abc


class WatchEventType(Enum):
    """Type of a change notification"""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WatchEvent(NamedTuple):
    """A single change notification"""

    type: WatchEventType
    obj: dict


class ObjectStore(abc.ABC):
    """Read access to cluster objects. All returned objects are snapshots that
    the caller owns; mutating them never affects the store.
    """

    @abc.abstractmethod
    def get(
        self, api_version: str, kind: str, namespace: Optional[str], name: str
    ) -> Optional[dict]:
        """Fetch one object

        Args:
            api_version:  str
                The apiVersion of the object
            kind:  str
                The kind of the object
            namespace:  Optional[str]
                The namespace, None for cluster scoped objects
            name:  str
                The name of the object

        Returns:
            obj:  Optional[dict]
                The object or None if it does not exist
        """

    @abc.abstractmethod
    def list(
        self, api_version: str, kind: str, namespace: Optional[str] = None
    ) -> List[dict]:
        """List all objects of a kind, optionally restricted to a namespace"""

    @abc.abstractmethod
    def objects_owned_by(self, namespace: str, owner_uid: str) -> List[dict]:
        """List all objects in the namespace with an owner reference to the
        given UID
        """

    @abc.abstractmethod
    def watch_objects(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> Iterator[WatchEvent]:
        """Yield change notifications for a kind until the timeout expires.
        Existing objects are reported as ADDED first.
        """

    def add_owned_kind(self, api_version: str, kind: str):
        """Include a kind when searching for the objects owned by a Bundle.
        Stores that search every kind in objects_owned_by ignore this.
        """

    def remove_owned_kind(self, api_version: str, kind: str):
        """Stop searching a kind added with add_owned_kind"""


class ClusterClient(abc.ABC):
    """Write access to cluster objects"""

    @abc.abstractmethod
    def create(self, obj: dict) -> dict:
        """Create an object and return the created object

        Raises:
            AlreadyExistsError: If an object with the same identity exists
            ClusterApiError: On any other failure
        """

    @abc.abstractmethod
    def update(self, obj: dict) -> dict:
        """Replace an object and return the stored object. The status of
        the object is not changed by this call.

        Raises:
            ConflictError: If the object's resourceVersion is out of date
            NotFoundError: If the object does not exist
            ClusterApiError: On any other failure
        """

    @abc.abstractmethod
    def update_status(self, obj: dict) -> dict:
        """Replace the status of an object and return the stored object

        Raises:
            ConflictError: If the object's resourceVersion is out of date
            NotFoundError: If the object does not exist
            ClusterApiError: On any other failure
        """

    @abc.abstractmethod
    def delete(  # pylint: disable=too-many-arguments
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        uid: Optional[str] = None,
        propagation_policy: Optional[str] = None,
    ):
        """Delete an object

        Args:
            uid:  Optional[str]
                If given, the delete only happens if the object has this UID
            propagation_policy:  Optional[str]
                Garbage collection policy for dependents (e.g. Foreground)

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the UID precondition does not hold
            ClusterApiError: On any other failure
        """
