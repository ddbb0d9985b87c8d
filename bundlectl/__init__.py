"""
Package exports
"""

# Local
from . import config, status
from .bundle import Bundle, PluginSpec, Resource
from .bundle_reconciler import BundleReconciler, ReconciliationResult
from .cluster import ClusterClient, DryRunCluster, ObjectStore, OpenshiftCluster
from .controller import Controller
from .dag import Graph
from .exceptions import assert_config, assert_structure, assert_terminal
from .plugin import Dependency, Plugin, PluginContext, PluginDescription, PluginRegistry
from .readiness import ReadinessRegistry, ReadinessResult, default_readiness_registry
from .references import ReferenceResolver
from .resource_info import ResourceInfo, ResourceState
from .resource_reconciler import ResourceReconciler
from .speccheck import SpecChecker
from .work_queue import WorkQueue
