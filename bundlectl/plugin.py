"""
Plugins produce the object of a resource from an opaque spec instead of a
literal template. Plugins are registered in an explicit table built at
startup and passed to the reconcilers.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
import abc

# First Party
import alog

log = alog.use_channel("PLUGN")

## Contract ####################################################################


@dataclass
class PluginDescription:
    """Static description of a plugin"""

    name: str
    # The apiVersion and kind of every object the plugin produces
    api_version: str
    kind: str


@dataclass
class Dependency:
    """A processed dependency handed to a plugin"""

    # The name of the resource in the Bundle
    name: str
    # The live object of the dependency
    actual: dict
    # Auxiliary objects keyed by reference modifier (e.g. the bound Secret)
    aux_objects: Dict[str, dict] = field(default_factory=dict)


@dataclass
class PluginContext:
    """Everything a plugin may use to produce its object"""

    namespace: str
    # The live object previously produced for this resource, if any
    actual: Optional[dict]
    dependencies: Dict[str, Dependency] = field(default_factory=dict)


class Plugin(abc.ABC):
    """Base class for all plugins"""

    @abc.abstractmethod
    def describe(self) -> PluginDescription:
        """Describe the plugin and the kind of object it produces"""

    def validate_spec(self, spec: dict) -> List[str]:
        """Validate the plugin spec before any dependency is available. Return
        a list of human readable problems, empty when valid.
        """
        return []

    @abc.abstractmethod
    def process(self, spec: dict, context: PluginContext) -> dict:
        """Produce the desired object

        Args:
            spec:  dict
                The plugin spec with references resolved
            context:  PluginContext
                The namespace, live object and dependencies

        Returns:
            obj:  dict
                The desired object. Its name is assigned by the caller.
        """


## Registration ################################################################


class PluginRegistry:
    """Table of plugins by name"""

    def __init__(self, plugins: Optional[Iterable[Plugin]] = None):
        self._plugins: Dict[str, Plugin] = {}
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: Plugin):
        """Add a plugin under the name it describes

        Raises:
            ValueError: If a plugin with the same name is already registered
        """
        name = plugin.describe().name
        if name in self._plugins:
            raise ValueError(f"plugin {name!r} registered more than once")
        log.debug("Registering plugin %s", name)
        self._plugins[name] = plugin

    def get(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)
