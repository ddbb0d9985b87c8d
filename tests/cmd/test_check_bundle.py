"""
Tests for the offline Bundle check command
"""
# Standard
import argparse

# Third Party
import pytest
import yaml

# Local
from bundlectl.cmd import CheckBundleCmd
from bundlectl.cmd.check_bundle_cmd import check_bundle
from bundlectl.test_helpers.helpers import make_bundle, make_configmap, make_resource

## check_bundle ################################################################


def test_check_bundle_valid():
    bundle = make_bundle(
        [
            make_resource("a"),
            make_resource(
                "b",
                obj=make_configmap("b", data={"port": "{{a#data.port#8080}}", "x": "{{a#data.x}}"}),
                depends_on=["a"],
            ),
        ]
    )
    assert check_bundle(bundle) == []


@pytest.mark.parametrize(
    ["resources", "message"],
    [
        ([make_resource("a"), make_resource("a")], "same name"),
        ([make_resource("a", depends_on=["a"])], "cycle"),
        ([make_resource("a", depends_on=["nope"])], "not found"),
    ],
)
def test_check_bundle_structure(resources, message):
    errors = check_bundle(make_bundle(resources))
    assert len(errors) == 1
    assert message in errors[0]


def test_check_bundle_malformed():
    bundle = make_bundle()
    bundle["spec"]["resources"] = [{"spec": {}}]
    assert check_bundle(bundle) == ["resource name must be set"]


def test_check_bundle_resource_errors():
    """Every bad resource is reported"""
    bundle = make_bundle(
        [
            {"name": "empty", "spec": {}},
            make_resource("a", obj=make_configmap("a", data={"x": "{{other#data.x}}"})),
            make_resource("b", obj=make_configmap("b", data={"x": "{{b#data.x}}"})),
        ]
    )
    errors = check_bundle(bundle)
    assert len(errors) == 3
    assert errors[0].startswith("resource 'empty'")
    assert "direct dependencies" in errors[1]
    assert "self references" in errors[2]


def test_check_bundle_plugin_spec():
    bundle = make_bundle(
        [make_resource("p", plugin={"name": "x", "objectName": "y", "spec": {"v": "{{p#a}}"}})]
    )
    assert len(check_bundle(bundle)) == 1


## CheckBundleCmd ##############################################################


def run_check(tmp_path, manifests):
    path = tmp_path / "bundles.yaml"
    path.write_text(yaml.safe_dump_all(manifests))
    CheckBundleCmd().cmd(argparse.Namespace(bundle_files=[str(path)]))


def test_cmd_valid(tmp_path):
    run_check(tmp_path, [make_bundle([make_resource("a")]), make_configmap("ignored")])


def test_cmd_invalid(tmp_path):
    with pytest.raises(SystemExit) as exc:
        run_check(tmp_path, [make_bundle([make_resource("a", depends_on=["a"])])])
    assert exc.value.code == 1
