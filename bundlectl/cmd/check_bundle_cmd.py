"""
Validate Bundle manifests offline: resource declarations, dependencies and
reference tokens are checked without talking to a cluster
"""
# Standard
from typing import List
import argparse
import sys

# First Party
import alog

# Local
from .. import constants
from ..bundle import Bundle
from ..dag import Graph
from ..exceptions import BundleError, DuplicateResourceError
from ..references import ReferenceResolver
from .base import CmdBase

log = alog.use_channel("MAIN")


class CheckBundleCmd(CmdBase):
    __doc__ = __doc__
    name = "check"

    ## Interface ##

    def add_arguments(self, parser: argparse.ArgumentParser):
        parser.add_argument(
            "bundle_files",
            nargs="+",
            help="Yaml files holding Bundle manifests",
        )

    def cmd(self, args: argparse.Namespace):
        failures = 0
        for fname in args.bundle_files:
            for manifest in self.load_manifests(fname):
                if manifest.get("kind") != constants.BUNDLE_KIND:
                    log.debug("Skipping %s in [%s]", manifest.get("kind"), fname)
                    continue
                name = manifest.get("metadata", {}).get("name")
                errors = check_bundle(manifest)
                for error in errors:
                    log.error("[%s] Bundle %s: %s", fname, name, error)
                if not errors:
                    log.info("[%s] Bundle %s is valid", fname, name)
                failures += len(errors)
        if failures:
            sys.exit(1)


def check_bundle(manifest: dict) -> List[str]:
    """Check a Bundle manifest for the errors a reconciliation pass would
    report before it talks to the cluster

    Args:
        manifest:  dict
            The Bundle object

    Returns:
        errors:  List[str]
            One message per problem found, empty if the Bundle is valid
    """
    try:
        bundle = Bundle.from_dict(manifest)
    except BundleError as err:
        return [str(err)]

    graph = Graph()
    try:
        for resource in bundle.resources:
            if resource.name in graph:
                raise DuplicateResourceError(resource.name)
            graph.add_vertex(resource.name)
        for resource in bundle.resources:
            for dependency in resource.depends_on:
                graph.add_edge(resource.name, dependency)
        graph.topological_sort()
    except BundleError as err:
        return [str(err)]

    errors = []
    for resource in bundle.resources:
        resolver = ReferenceResolver(
            resource.name,
            resource.depends_on,
            processed={},
            use_defaults=True,
            skip_missing_defaults=True,
        )
        if resource.object is None and resource.plugin is None:
            errors.append(f"resource {resource.name!r}: neither object nor plugin is specified")
            continue
        template = resource.object if resource.object is not None else resource.plugin.spec
        try:
            resolver.resolve(template)
        except BundleError as err:
            errors.append(f"resource {resource.name!r}: {err}")
    return errors
