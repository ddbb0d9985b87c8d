"""
The reference resolver substitutes values computed by other resources of the
same Bundle into a resource's spec.

A reference token has the form

    {{name[:modifier]#path[#default]}}

* name: the resource to read from. It must be a direct dependency.
* modifier: optional facet of that resource to read instead of its live
  object. The only facet is "bindsecret", the Secret produced by a
  ServiceBinding.
* path: a JSON path evaluated against the object (or facet)
* default: optional JSON value used when the dependency does not exist yet
  and the resolver runs in defaults mode (early validation).

A token that makes up a whole string is replaced by the typed value it
resolves to. A token embedded in a longer string must resolve to a primitive
and is rendered into the string. A literal "{{" is written as "\\{{".
"""

# Standard
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
import copy
import json

# Third Party
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as parse_jsonpath

# First Party
import alog

# Local
from . import constants
from .exceptions import (
    InvalidReferenceError,
    MissingDefaultError,
    NonUTF8PayloadError,
    ReferenceNotFoundError,
    ReferenceResolutionError,
    SelfReferenceError,
    UndeclaredReferenceError,
    UnsupportedModifierError,
    WholeObjectReferenceError,
)
from .resource_info import ResourceInfo

log = alog.use_channel("REFS")

_NO_DEFAULT = object()

## Tokens ######################################################################


@dataclass(frozen=True)
class Reference:
    """One parsed reference token"""

    name: str
    modifier: str
    path: str
    raw: str
    default: Any = _NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def __str__(self) -> str:
        return self.raw


def parse_reference(content: str) -> Reference:
    """Parse the text between the braces of a token

    Args:
        content:  str
            The token text, e.g. "res1:bindsecret#data.password#\"x\""

    Returns:
        reference:  Reference
            The parsed token
    """
    parts = content.split(constants.REFERENCE_SEPARATOR, 2)
    name, _, modifier = parts[0].partition(constants.REFERENCE_MODIFIER_SEPARATOR)
    if not name:
        raise InvalidReferenceError(f"reference {content!r} does not name a resource")
    path = parts[1] if len(parts) > 1 else ""
    default = _NO_DEFAULT
    if len(parts) > 2:
        try:
            default = json.loads(parts[2])
        except ValueError:
            default = parts[2]
    return Reference(
        name=name, modifier=modifier, path=path, raw=content, default=default
    )


def tokenize(text: str) -> List[Union[str, Reference]]:
    """Split a string into literal segments and reference tokens

    The closing braces of a token are only recognized outside of JSON string
    literals and outside of nested braces so that JSON object defaults such
    as {"x":"y"} can appear inside a token.
    """
    segments = []
    literal = []
    i = 0
    length = len(text)
    while i < length:
        if text.startswith(constants.REFERENCE_ESCAPE + constants.REFERENCE_OPEN, i):
            literal.append(constants.REFERENCE_OPEN)
            i += len(constants.REFERENCE_ESCAPE) + len(constants.REFERENCE_OPEN)
            continue
        if not text.startswith(constants.REFERENCE_OPEN, i):
            literal.append(text[i])
            i += 1
            continue

        start = i + len(constants.REFERENCE_OPEN)
        end = _find_token_end(text, start)
        if end is None:
            raise InvalidReferenceError(f"unterminated reference in {text!r}")
        if literal:
            segments.append("".join(literal))
            literal = []
        segments.append(parse_reference(text[start:end]))
        i = end + len(constants.REFERENCE_CLOSE)

    if literal:
        segments.append("".join(literal))
    return segments


def _find_token_end(text: str, start: int) -> Optional[int]:
    """Find the index of the closing braces of the token starting at start"""
    depth = 0
    in_string = False
    i = start
    while i < len(text):
        char = text[i]
        if in_string:
            if char == "\\":
                i += 2
                continue
            if char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif depth == 0 and text.startswith(constants.REFERENCE_CLOSE, i):
            return i
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
        i += 1
    return None


## Resolver ####################################################################


class ReferenceResolver:
    """Resolves the reference tokens in one resource's spec against the
    outcomes of the resources processed before it in the same pass
    """

    def __init__(
        self,
        resource_name: str,
        dependencies: Iterable[str],
        processed: Dict[str, ResourceInfo],
        use_defaults: bool = False,
        skip_missing_defaults: bool = False,
        cache: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            resource_name:  str
                Name of the resource whose spec is resolved
            dependencies:  Iterable[str]
                The declared direct dependencies of that resource
            processed:  Dict[str, ResourceInfo]
                Outcomes of the resources processed so far in this pass
            use_defaults:  bool
                Resolve every token to its default value instead of reading
                dependencies
            skip_missing_defaults:  bool
                In defaults mode, leave tokens without a default untouched
                instead of failing
            cache:  Optional[Dict[str, Any]]
                Memo of resolved tokens shared across the pass
        """
        self.resource_name = resource_name
        self.dependencies = set(dependencies)
        self.processed = processed
        self.use_defaults = use_defaults
        self.skip_missing_defaults = skip_missing_defaults
        self._cache = cache if cache is not None else {}
        # Tokens left unresolved in defaults mode
        self.skipped: List[Reference] = []

    def resolve(self, value: Any) -> Any:
        """Return a copy of the value with every reference token substituted.
        The input is never mutated.

        Raises:
            ReferenceResolutionError: If any token cannot be resolved. The
                message names the location of the token.
        """
        return self._process(value, [])

    ## Implementation ##########################################################

    def _process(self, value: Any, path: List[str]) -> Any:
        if isinstance(value, dict):
            return {key: self._process(val, path + [str(key)]) for key, val in value.items()}
        if isinstance(value, list):
            return [self._process(val, path + [str(i)]) for i, val in enumerate(value)]
        if isinstance(value, str):
            try:
                return self._process_string(value)
            except ReferenceResolutionError as err:
                location = ".".join(path)
                raise type(err)(f'invalid reference at "{location}": {err}') from err
        return copy.deepcopy(value)

    def _process_string(self, text: str) -> Any:
        segments = tokenize(text)
        if not any(isinstance(seg, Reference) for seg in segments):
            return "".join(segments)

        # A token that is the whole string keeps the type of the value
        if len(segments) == 1:
            return self._resolve(segments[0])

        rendered = []
        for seg in segments:
            if isinstance(seg, Reference):
                rendered.append(self._render(seg, self._resolve(seg)))
            else:
                rendered.append(seg)
        return "".join(rendered)

    @staticmethod
    def _render(ref: Reference, value: Any) -> str:
        """Render a resolved value into a surrounding string"""
        if isinstance(value, str):
            return value
        if value is None or isinstance(value, (bool, int, float)):
            return json.dumps(value)
        raise InvalidReferenceError(
            f"reference {ref.raw} resolved to a {type(value).__name__} which cannot be embedded in a string"
        )

    def _resolve(self, ref: Reference) -> Any:
        if ref.name == self.resource_name:
            raise SelfReferenceError(f"self references are not allowed: {ref.raw}")
        if not ref.path:
            raise WholeObjectReferenceError(f"cannot include whole object: {ref.raw}")
        if ref.name not in self.dependencies:
            raise UndeclaredReferenceError(
                f"references can only point at direct dependencies: {ref.raw}"
            )

        if self.use_defaults:
            if ref.has_default:
                return copy.deepcopy(ref.default)
            if self.skip_missing_defaults:
                log.debug2("Leaving %s unresolved in defaults mode", ref.raw)
                self.skipped.append(ref)
                return f"{constants.REFERENCE_OPEN}{ref.raw}{constants.REFERENCE_CLOSE}"
            raise MissingDefaultError(f'no default value provided in selector "{ref.raw}"')

        cache_key = f"{ref.name}:{ref.modifier}#{ref.path}"
        if cache_key not in self._cache:
            self._cache[cache_key] = self._lookup(ref)
        else:
            log.debug4("Using memoized value for %s", cache_key)
        return copy.deepcopy(self._cache[cache_key])

    def _lookup(self, ref: Reference) -> Any:
        """Evaluate the token's path against the dependency"""
        info = self.processed.get(ref.name)
        if info is None or info.actual is None:
            raise ReferenceNotFoundError(f"object not found: {ref.raw}")

        target = info.actual
        if ref.modifier:
            target = self._facet(ref, info)

        try:
            expression = parse_jsonpath(ref.path)
        except (JSONPathError, ValueError) as err:
            raise InvalidReferenceError(
                f"failed to process JsonPath reference {ref.raw}: {err}"
            ) from err

        matches = [match.value for match in expression.find(target)]
        if not matches:
            raise ReferenceNotFoundError(f"field not found: {ref.raw}")
        value = matches[0] if len(matches) == 1 else matches
        log.debug3("Resolved %s to %s", ref.raw, value)
        return _decode_bytes(ref, value)

    @staticmethod
    def _facet(ref: Reference, info: ResourceInfo) -> dict:
        if ref.modifier != constants.REFERENCE_MODIFIER_BIND_SECRET:
            raise UnsupportedModifierError(
                f'resource output name "{ref.modifier}" not understood for "{ref.name}"'
            )
        if info.actual.get("kind") != constants.SERVICE_BINDING_KIND:
            raise UnsupportedModifierError(
                f'"{ref.modifier}" requested, but "{ref.name}" is not a ServiceBinding'
            )
        facet = info.aux_objects.get(ref.modifier)
        if facet is None:
            raise ReferenceNotFoundError(
                f"secret of binding {ref.name!r} is not available: {ref.raw}"
            )
        return facet


def _decode_bytes(ref: Reference, value: Any) -> Any:
    """Byte payloads are exposed as text and must be valid UTF-8"""
    if isinstance(value, list):
        return [_decode_bytes(ref, item) for item in value]
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as err:
            raise NonUTF8PayloadError(
                f'cannot expand non-UTF8 byte array field "{ref.path}"'
            ) from err
    return value
