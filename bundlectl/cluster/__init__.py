"""
Cluster access for the reconcilers
"""

# Local
from .base import ClusterClient, ObjectStore, WatchEvent, WatchEventType
from .dry_run import DryRunCluster
from .openshift_cluster import OpenshiftCluster
