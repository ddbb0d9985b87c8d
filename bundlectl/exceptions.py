"""
This module implements custom exceptions
"""

# Standard
from typing import List

## Base Error ##################################################################


class BundleError(Exception):
    """Base class for all bundlectl exceptions"""

    def __init__(self, message: str, is_retriable: bool):
        """Construct with a flag indicating whether this error should cause the
        Bundle to be retried with backoff. This will be a static property of all
        children.
        """
        super().__init__(message)
        self._is_retriable = is_retriable

    @property
    def is_retriable(self) -> bool:
        """Property indicating whether or not the failure is expected to go
        away on its own so that the Bundle should be requeued with backoff
        """
        return self._is_retriable

    @property
    def is_race(self) -> bool:
        """Property indicating whether this error is a benign race with another
        writer that a subsequent watch event will resolve
        """
        return False


## Non-Retriable Errors ########################################################


class BundleFatalError(BundleError):
    """A BundleFatalError indicates a failure that will not be fixed by
    retrying. It stays in place until the Bundle or the cluster changes.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_retriable=False)


class ConfigError(BundleFatalError):
    """Exception caused by invalid library configuration"""


class TerminalError(BundleFatalError):
    """Exception for a resource that cannot make progress: ownership
    violations, prohibited annotations, plugin failures and specs that never
    converge
    """


class RaceError(BundleFatalError):
    """Exception indicating that a write lost a race with another writer.
    Correctness relies on the watch event that the other writer caused.
    """

    @property
    def is_race(self) -> bool:
        return True


#####################
## Structural Errors ##
#####################


class StructuralError(BundleFatalError):
    """Exception for a malformed Bundle. These abort the whole pass."""


class InvalidResourceError(StructuralError):
    """A resource declaration is malformed"""


class DuplicateResourceError(StructuralError):
    """Two resources in the same Bundle share a name"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"bundle contains two resources with the same name {name!r}")


class UnknownVertexError(StructuralError):
    """An edge was added for a vertex that is not in the graph"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"vertex {name!r} not found")


class CycleError(StructuralError):
    """The dependency graph contains a cycle"""

    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__(f"cycle error: {self.path}")


####################
## Reference Errors ##
####################


class ReferenceResolutionError(BundleFatalError):
    """Base class for all failures to resolve a reference token"""


class InvalidReferenceError(ReferenceResolutionError):
    """The reference token is malformed or resolved to an unusable value"""


class UndeclaredReferenceError(ReferenceResolutionError):
    """A token names a resource that is not a direct dependency"""


class WholeObjectReferenceError(ReferenceResolutionError):
    """A token has no path and would include a whole object"""


class SelfReferenceError(ReferenceResolutionError):
    """A token names the resource that contains it"""


class UnsupportedModifierError(ReferenceResolutionError):
    """A token modifier names a facet the dependency does not expose"""


class NonUTF8PayloadError(ReferenceResolutionError):
    """A byte payload selected by a token is not valid UTF-8"""


class ReferenceNotFoundError(ReferenceResolutionError):
    """The referenced object or field is not available"""


class MissingDefaultError(ReferenceResolutionError):
    """Defaults mode was requested for a token without a default value"""


## Retriable Errors ############################################################


class BundleRetriableError(BundleError):
    """A BundleRetriableError indicates a failure that is expected to resolve
    in a later attempt without any change to the Bundle
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_retriable=True)


class TransientError(BundleRetriableError):
    """Exception caused by an unexpected failure talking to the cluster"""


## Cluster Outcomes ############################################################


class ClusterOutcomeError(BundleError):
    """Base class for the outcome classes reported by the cluster client"""

    def __init__(self, message: str = "", is_retriable: bool = False):
        super().__init__(message=message, is_retriable=is_retriable)


class AlreadyExistsError(ClusterOutcomeError):
    """The object to create already exists"""


class ConflictError(ClusterOutcomeError):
    """The write was rejected because the object changed underneath it or a
    precondition did not hold
    """


class NotFoundError(ClusterOutcomeError):
    """The object does not exist"""


class ClusterApiError(ClusterOutcomeError):
    """Any other failure reported by the cluster"""

    def __init__(self, message: str = "", is_retriable: bool = True):
        super().__init__(message=message, is_retriable=is_retriable)


## Cancellation ################################################################


class PassCancelled(Exception):
    """Raised inside a reconciliation pass when its cancellation signal is set.
    This is neither a success nor a failure of the pass.
    """


## Assertions ##################################################################


def assert_structure(condition: bool, message: str = ""):
    """Replacement for assert() which will throw an InvalidResourceError. This
    should be used when reading the resources declared by a Bundle.
    """
    if not condition:
        raise InvalidResourceError(message)


def assert_terminal(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a TerminalError. This should
    be used when evaluating a resource whose problem will not go away without a
    change to the Bundle.
    """
    if not condition:
        raise TerminalError(message)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError"""
    if not condition:
        raise ConfigError(message)
