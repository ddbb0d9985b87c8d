#!/usr/bin/env python
"""
The main module provides the executable entrypoint for bundlectl
"""

# Standard
from typing import Dict, List, Tuple
import argparse

# First Party
import aconfig
import alog

# Local
from . import config
from .cmd import CheckBundleCmd, CmdBase, RunControllerCmd
from .config import library_config
from .log_format import BundleJsonFormatter

## Constants ###################################################################

log = alog.use_channel("MAIN")

## Helpers #####################################################################


def add_library_config_args(parser, config_obj=None, path=None) -> Dict[str, List[str]]:
    """Add a --dotted.key flag for every value of the library config

    Returns:
        setters:  Dict[str, List[str]]
            Map from the argparse dest name to the config path it sets
    """
    path = path or []
    setters = {}
    config_obj = config_obj if config_obj is not None else library_config
    for key, val in config_obj.items():
        sub_path = path + [key]

        # Nested sections become dotted flags
        if isinstance(val, aconfig.AttributeAccessDict):
            setters.update(add_library_config_args(parser, config_obj=val, path=sub_path))
            continue

        arg_name = ".".join(sub_path)
        dest_name = "_".join(sub_path)
        kwargs = {
            "default": val,
            "dest": dest_name,
            "help": f"Library config override for {arg_name} (see bundlectl.config)",
        }
        if isinstance(val, list):
            kwargs["nargs"] = "*"
        elif isinstance(val, bool):
            kwargs["action"] = "store_true"
        elif val is not None:
            kwargs["type"] = type(val)

        if f"--{arg_name}" not in parser._option_string_actions:  # pylint: disable=protected-access
            parser.add_argument(f"--{arg_name}", **kwargs)
            setters[dest_name] = sub_path
    return setters


def update_library_config(args: argparse.Namespace, setters: Dict[str, List[str]]):
    """Write the parsed flag values back into the library config"""
    for dest_name, config_path in setters.items():
        config_obj = library_config
        for key in config_path[:-1]:
            config_obj = config_obj[key]
        config_obj[config_path[-1]] = getattr(args, dest_name)


def add_command(
    subparsers: argparse._SubParsersAction,
    cmd: CmdBase,
) -> Tuple[argparse.ArgumentParser, Dict[str, List[str]]]:
    """Add the subparser and set up the default fun call"""
    parser = cmd.add_subparser(subparsers)
    parser.set_defaults(func=cmd.cmd)
    library_args = parser.add_argument_group("Library Configuration")
    library_config_setters = add_library_config_args(library_args)
    return parser, library_config_setters


## Main ########################################################################


def main():
    """The main module provides the executable entrypoint for bundlectl"""
    parser = argparse.ArgumentParser(description=__doc__)

    subparsers = parser.add_subparsers(help="Available commands", dest="command")
    run_parser, run_setters = add_command(subparsers, RunControllerCmd())
    _, check_setters = add_command(subparsers, CheckBundleCmd())

    # Use a preliminary parser to check for the presence of a command and fall
    # back to running the controller if not found
    check_parser = argparse.ArgumentParser(add_help=False)
    check_parser.add_argument("command", nargs="?")
    check_args, _ = check_parser.parse_known_args()
    if check_args.command not in subparsers.choices:
        args = run_parser.parse_args()
        setters = run_setters
    else:
        args = parser.parse_args()
        setters = run_setters if args.command == "run" else check_setters

    update_library_config(args, setters)

    # Reconfigure logging
    alog.configure(
        default_level=config.log_level,
        filters=config.log_filters,
        formatter=BundleJsonFormatter() if config.log_json else "pretty",
        thread_id=config.log_thread_id,
    )

    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
