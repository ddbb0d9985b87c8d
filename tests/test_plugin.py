"""
Tests for the plugin registry
"""
# Third Party
import pytest

# Local
from bundlectl.plugin import Plugin, PluginRegistry
from bundlectl.test_helpers.helpers import ConfigMapPlugin


def test_registry_lookup():
    plugin = ConfigMapPlugin()
    registry = PluginRegistry([plugin])
    assert registry.get("configmap") is plugin
    assert registry.get("other") is None
    assert "configmap" in registry
    assert len(registry) == 1


def test_registry_duplicate():
    registry = PluginRegistry([ConfigMapPlugin()])
    with pytest.raises(ValueError):
        registry.register(ConfigMapPlugin())


def test_plugin_is_abstract():
    with pytest.raises(TypeError):
        Plugin()  # pylint: disable=abstract-class-instantiated


def test_default_validation_accepts_anything():
    class MinimalPlugin(ConfigMapPlugin):
        validate_spec = Plugin.validate_spec

    assert MinimalPlugin().validate_spec({"anything": 1}) == []
