"""
Tests for the exception hierarchy
"""
# Third Party
import pytest

# Local
from bundlectl.exceptions import (
    AlreadyExistsError,
    BundleError,
    ClusterApiError,
    ConfigError,
    ConflictError,
    CycleError,
    DuplicateResourceError,
    InvalidResourceError,
    MissingDefaultError,
    NotFoundError,
    RaceError,
    ReferenceResolutionError,
    StructuralError,
    TerminalError,
    TransientError,
    UnknownVertexError,
    assert_config,
    assert_structure,
    assert_terminal,
)


@pytest.mark.parametrize(
    ["error", "retriable"],
    [
        (TerminalError("x"), False),
        (RaceError("x"), False),
        (DuplicateResourceError("a"), False),
        (MissingDefaultError("x"), False),
        (TransientError("x"), True),
        (ClusterApiError("x"), True),
        (ClusterApiError("x", is_retriable=False), False),
        (ConflictError("x"), False),
        (NotFoundError("x"), False),
        (AlreadyExistsError("x"), False),
    ],
)
def test_retriable(error, retriable):
    assert isinstance(error, BundleError)
    assert error.is_retriable == retriable


def test_only_race_errors_are_races():
    assert RaceError("x").is_race
    assert not TerminalError("x").is_race
    assert not ConflictError("x").is_race


def test_structural_errors():
    """Graph errors are structural and carry their details"""
    for error in [DuplicateResourceError("a"), UnknownVertexError("a"), CycleError(["a", "a"])]:
        assert isinstance(error, StructuralError)
    assert DuplicateResourceError("dup").name == "dup"
    assert "'dup'" in str(DuplicateResourceError("dup"))
    cycle = CycleError(["a", "b", "a"])
    assert cycle.path == ["a", "b", "a"]
    assert "['a', 'b', 'a']" in str(cycle)


def test_reference_errors_are_fatal():
    assert issubclass(MissingDefaultError, ReferenceResolutionError)
    assert not MissingDefaultError("x").is_retriable


@pytest.mark.parametrize(
    ["assert_fn", "error_type"],
    [
        (assert_structure, InvalidResourceError),
        (assert_terminal, TerminalError),
        (assert_config, ConfigError),
    ],
)
def test_assert_helpers(assert_fn, error_type):
    assert_fn(True, "fine")
    with pytest.raises(error_type) as exc:
        assert_fn(False, "broken")
    assert str(exc.value) == "broken"
