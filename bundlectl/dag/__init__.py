"""
Package exports
"""

# Local
from .graph import Graph
