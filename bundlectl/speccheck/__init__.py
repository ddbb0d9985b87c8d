"""
Drift detection between desired and live objects
"""

# Local
from .checker import CompareResult, SpecChecker, normalize
from .cleanup import CleanupRegistry, default_cleanup_registry
