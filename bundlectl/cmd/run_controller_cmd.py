"""
This is the main entrypoint command for running the Bundle controller
"""
# Standard
from typing import List, Optional, Union
import argparse
import importlib
import inspect
import os
import signal

# First Party
import alog

# Local
from .. import config
from ..cluster import DryRunCluster, OpenshiftCluster
from ..controller import Controller
from ..plugin import Plugin, PluginRegistry
from ..utils import parse_kind_names
from .base import CmdBase

log = alog.use_channel("MAIN")


class RunControllerCmd(CmdBase):
    __doc__ = __doc__
    name = "run"

    ## Interface ##

    def add_arguments(self, parser: argparse.ArgumentParser):
        runtime_args = parser.add_argument_group("Runtime Configuration")
        runtime_args.add_argument(
            "--plugin_module",
            "-p",
            action="append",
            default=[],
            help="Module to import Plugin implementations from (may be repeated)",
        )
        runtime_args.add_argument(
            "--bundle",
            "-b",
            action="append",
            default=[],
            help="(dry run) A Bundle manifest yaml to apply once the controller runs",
        )
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            default=None,
            help="(dry run) Path to a directory of yaml files that should exist in the cluster",
        )

    def cmd(self, args: argparse.Namespace):
        # Validate args
        assert not args.bundle or (
            config.dry_run and all(os.path.isfile(fname) for fname in args.bundle)
        ), "Can only specify --bundle with dry run and it must point to a valid file"
        assert args.resource_dir is None or (
            config.dry_run and os.path.isdir(args.resource_dir)
        ), "Can only specify --resource_dir with dry run and it must point to a valid directory"

        plugins = PluginRegistry(self._load_plugins(args.plugin_module))
        resources = self._parse_resource_dir(args.resource_dir)
        cluster = self._setup_cluster(resources)
        controller = Controller(store=cluster, client=cluster, plugins=plugins)

        # Register the signal handler to stop the controller
        def do_stop(*_, **__):  # pragma: no cover
            controller.stop()

        signal.signal(signal.SIGINT, do_stop)
        signal.signal(signal.SIGTERM, do_stop)

        log.info("Starting Controller")
        controller.start()

        # If given, apply the Bundles directly
        for fname in args.bundle:
            log.info("Applying Bundle [%s]", fname)
            for manifest in self.load_manifests(fname):
                manifest.setdefault("metadata", {}).setdefault("namespace", "default")
                log.debug3(manifest)
                cluster.create(manifest)

        controller.wait()
        log.info("SHUTTING DOWN")

    ## Impl ##

    @staticmethod
    def _is_plugin_type(attr_val) -> bool:
        return (
            isinstance(attr_val, type)
            and issubclass(attr_val, Plugin)
            and not inspect.isabstract(attr_val)
        )

    @classmethod
    def _load_plugins(cls, module_names: List[str]) -> List[Plugin]:
        """Import each module and instantiate every concrete Plugin it holds"""
        plugins = []
        for module_name in module_names:
            module = importlib.import_module(module_name)
            found = [
                getattr(module, attr)
                for attr in dir(module)
                if cls._is_plugin_type(getattr(module, attr))
            ]
            assert found, f"No Plugins found in [{module_name}]"
            for plugin_type in found:
                log.debug2("Found Plugin: %s", plugin_type)
                plugins.append(plugin_type())
        return plugins

    @staticmethod
    def _parse_resource_dir(resource_dir: Optional[str]) -> List[dict]:
        """If given, this will parse all yaml files found in the given directory"""
        all_resources = []
        if resource_dir is not None:
            for fname in sorted(os.listdir(resource_dir)):
                if fname.endswith(".yaml") or fname.endswith(".yml"):
                    all_resources.extend(
                        CmdBase.load_manifests(os.path.join(resource_dir, fname))
                    )
        return all_resources

    @staticmethod
    def _setup_cluster(resources: List[dict]) -> Union[DryRunCluster, OpenshiftCluster]:
        if config.dry_run:
            log.info("Running DRY RUN")
            return DryRunCluster(resources=resources)
        log.info("Running against the cluster")
        return OpenshiftCluster(owned_kinds=parse_kind_names(config.owned_kinds))
