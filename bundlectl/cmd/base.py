"""
Shared plumbing for the bundlectl subcommands: each command registers under
its name with its docstring as help and may read yaml manifest files
"""

# Standard
from typing import List
import abc
import argparse

# Third Party
import yaml

# First Party
import alog

log = alog.use_channel("MAIN")


class CmdBase(abc.ABC):
    """A subcommand of the bundlectl executable"""

    # The subcommand name on the command line
    name: str = ""

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        """Register the subcommand under its name and add its arguments"""
        assert self.name, f"{type(self).__name__} does not set a command name"
        parser = subparsers.add_parser(self.name, help=type(self).__doc__)
        self.add_arguments(parser)
        return parser

    @abc.abstractmethod
    def add_arguments(self, parser: argparse.ArgumentParser):
        """Add the command's own arguments to its parser"""

    @abc.abstractmethod
    def cmd(self, args: argparse.Namespace):
        """Run the command

        Args:
            args (argparse.Namespace): The parsed command line arguments
        """

    @staticmethod
    def load_manifests(fname: str) -> List[dict]:
        """Read every non-empty yaml document of a manifest file"""
        log.debug3("Reading manifest file [%s]", fname)
        with open(fname, encoding="utf-8") as handle:
            return [doc for doc in yaml.safe_load_all(handle) if doc]
