"""
Test the reference token parsing and resolution
"""
# Third Party
import pytest

# Local
from bundlectl.exceptions import (
    InvalidReferenceError,
    MissingDefaultError,
    NonUTF8PayloadError,
    ReferenceNotFoundError,
    SelfReferenceError,
    UndeclaredReferenceError,
    UnsupportedModifierError,
    WholeObjectReferenceError,
)
from bundlectl.references import Reference, ReferenceResolver, parse_reference, tokenize
from bundlectl.resource_info import ResourceInfo

## Helpers #####################################################################

DEP_OBJECT = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "svc"},
    "spec": {
        "port": 8080,
        "enabled": True,
        "nothing": None,
        "labels": {"app": "web"},
        "items": [{"name": "one"}, {"name": "two"}],
        "host": "svc.local",
    },
}


def make_resolver(processed=None, dependencies=("dep",), **kwargs):
    if processed is None:
        processed = {"dep": ResourceInfo.ready(DEP_OBJECT)}
    return ReferenceResolver("me", dependencies, processed, **kwargs)


def make_binding_info(secret_data):
    binding = {
        "apiVersion": "servicecatalog.k8s.io/v1beta1",
        "kind": "ServiceBinding",
        "metadata": {"name": "binding"},
        "spec": {},
    }
    return ResourceInfo.ready(binding, aux_objects={"bindsecret": {"data": secret_data}})


## parse_reference #############################################################


def test_parse_reference_basic():
    """A token without modifier or default"""
    ref = parse_reference("res#spec.x")
    assert ref.name == "res"
    assert ref.modifier == ""
    assert ref.path == "spec.x"
    assert not ref.has_default
    assert str(ref) == "res#spec.x"


@pytest.mark.parametrize(
    ["content", "default"],
    [
        ('res#spec.x#"text"', "text"),
        ("res#spec.x#5", 5),
        ("res#spec.x#true", True),
        ('res#spec.x#{"a": [1]}', {"a": [1]}),
        ("res#spec.x#plain words", "plain words"),
        ("res#spec.x#null", None),
    ],
)
def test_parse_reference_default(content, default):
    """Defaults are JSON, or plain strings if they are not JSON"""
    ref = parse_reference(content)
    assert ref.has_default
    assert ref.default == default


def test_parse_reference_modifier():
    ref = parse_reference("binding:bindsecret#data.password")
    assert ref.name == "binding"
    assert ref.modifier == "bindsecret"
    assert ref.path == "data.password"


def test_parse_reference_no_name():
    with pytest.raises(InvalidReferenceError):
        parse_reference("#spec.x")


## tokenize ####################################################################


def test_tokenize_mixed():
    """Literal text and tokens are split in order"""
    segments = tokenize("http://{{dep#spec.host}}:{{dep#spec.port}}/")
    assert segments[0] == "http://"
    assert isinstance(segments[1], Reference) and segments[1].path == "spec.host"
    assert segments[2] == ":"
    assert isinstance(segments[3], Reference) and segments[3].path == "spec.port"
    assert segments[4] == "/"


def test_tokenize_escape():
    """An escaped opening is a literal"""
    assert tokenize("a \\{{dep#x}} b") == ["a {{dep#x}} b"]


def test_tokenize_unterminated():
    with pytest.raises(InvalidReferenceError):
        tokenize("{{dep#spec.x")


def test_tokenize_json_default_with_braces():
    """Closing braces inside a JSON default do not end the token"""
    segments = tokenize('{{dep#spec.x#{"k": "}}"}}}')
    assert len(segments) == 1
    assert segments[0].default == {"k": "}}"}


def test_tokenize_no_tokens():
    assert tokenize("plain") == ["plain"]
    assert tokenize("") == []


## Resolution ##################################################################


@pytest.mark.parametrize(
    ["template", "expected"],
    [
        ("{{dep#spec.port}}", 8080),
        ("{{dep#spec.enabled}}", True),
        ("{{dep#spec.nothing}}", None),
        ("{{dep#spec.labels}}", {"app": "web"}),
        ("{{dep#spec.host}}", "svc.local"),
    ],
)
def test_resolve_whole_string_keeps_type(template, expected):
    """A token that is the whole string is replaced by the typed value"""
    assert make_resolver().resolve({"value": template}) == {"value": expected}


@pytest.mark.parametrize(
    ["template", "expected"],
    [
        ("port-{{dep#spec.port}}", "port-8080"),
        ("on={{dep#spec.enabled}}", "on=true"),
        ("x{{dep#spec.nothing}}", "xnull"),
        ("{{dep#spec.host}}:{{dep#spec.port}}", "svc.local:8080"),
    ],
)
def test_resolve_embedded(template, expected):
    """Embedded tokens are rendered into the surrounding string"""
    assert make_resolver().resolve(template) == expected


def test_resolve_embedded_object_rejected():
    with pytest.raises(InvalidReferenceError):
        make_resolver().resolve("labels: {{dep#spec.labels}}")


def test_resolve_nested_structures_not_mutated():
    """The input is copied and non-string values pass through"""
    template = {"a": ["{{dep#spec.port}}", 3, {"b": "{{dep#spec.host}}"}], "c": False}
    result = make_resolver().resolve(template)
    assert result == {"a": [8080, 3, {"b": "svc.local"}], "c": False}
    assert template["a"][0] == "{{dep#spec.port}}"


def test_resolve_multiple_matches():
    """A path matching several values resolves to the list of matches"""
    assert make_resolver().resolve("{{dep#spec.items[*].name}}") == ["one", "two"]


def test_resolve_escaped_literal():
    assert make_resolver().resolve("\\{{dep#spec.port}}") == "{{dep#spec.port}}"


def test_resolve_self_reference():
    with pytest.raises(SelfReferenceError):
        make_resolver(dependencies=["dep", "me"]).resolve("{{me#spec.x}}")


def test_resolve_whole_object():
    with pytest.raises(WholeObjectReferenceError):
        make_resolver().resolve("{{dep}}")


def test_resolve_undeclared():
    """Only direct dependencies may be referenced"""
    with pytest.raises(UndeclaredReferenceError):
        make_resolver().resolve("{{other#spec.x}}")


def test_resolve_field_not_found():
    with pytest.raises(ReferenceNotFoundError):
        make_resolver().resolve("{{dep#spec.missing}}")


def test_resolve_dependency_without_object():
    with pytest.raises(ReferenceNotFoundError):
        make_resolver(processed={}).resolve("{{dep#spec.port}}")


def test_resolve_error_location():
    """Errors name the location of the token in the template"""
    with pytest.raises(UndeclaredReferenceError) as exc:
        make_resolver().resolve({"spec": {"values": ["ok", "{{other#x}}"]}})
    assert 'invalid reference at "spec.values.1"' in str(exc.value)


def test_resolve_memoized():
    """Resolved tokens are stored in the shared cache"""
    cache = {}
    make_resolver(cache=cache).resolve(["{{dep#spec.port}}", "{{dep#spec.port}}"])
    assert cache == {"dep:#spec.port": 8080}


## Defaults Mode ###############################################################


def test_resolve_defaults_mode():
    """In defaults mode tokens resolve to their default without dependencies"""
    resolver = make_resolver(processed={}, use_defaults=True)
    assert resolver.resolve({"p": "{{dep#spec.port#80}}"}) == {"p": 80}


def test_resolve_defaults_mode_missing_default():
    with pytest.raises(MissingDefaultError):
        make_resolver(processed={}, use_defaults=True).resolve("{{dep#spec.port}}")


def test_resolve_defaults_mode_skip_missing():
    """Tokens without defaults are left in place and recorded"""
    resolver = make_resolver(processed={}, use_defaults=True, skip_missing_defaults=True)
    assert resolver.resolve("{{dep#spec.port}}") == "{{dep#spec.port}}"
    assert [ref.raw for ref in resolver.skipped] == ["dep#spec.port"]


def test_resolve_defaults_mode_still_checks_declaration():
    with pytest.raises(UndeclaredReferenceError):
        make_resolver(processed={}, use_defaults=True).resolve("{{other#x#1}}")


## Bound Secrets ###############################################################


def test_resolve_bindsecret():
    """Bound Secret bytes are decoded as UTF-8"""
    resolver = make_resolver(processed={"dep": make_binding_info({"password": b"s3cret"})})
    assert resolver.resolve("{{dep:bindsecret#data.password}}") == "s3cret"


def test_resolve_bindsecret_non_utf8():
    resolver = make_resolver(processed={"dep": make_binding_info({"password": b"\xff\xfe"})})
    with pytest.raises(NonUTF8PayloadError):
        resolver.resolve("{{dep:bindsecret#data.password}}")


def test_resolve_bindsecret_not_a_binding():
    with pytest.raises(UnsupportedModifierError):
        make_resolver().resolve("{{dep:bindsecret#data.password}}")


def test_resolve_unknown_modifier():
    resolver = make_resolver(processed={"dep": make_binding_info({})})
    with pytest.raises(UnsupportedModifierError):
        resolver.resolve("{{dep:other#data.password}}")
