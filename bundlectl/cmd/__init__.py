"""
Command line subcommands
"""

# Local
from .base import CmdBase
from .check_bundle_cmd import CheckBundleCmd
from .run_controller_cmd import RunControllerCmd
