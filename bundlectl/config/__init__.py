"""
Library config for bundlectl. Values are loaded once at import time from the
packaged config.yaml (with environment overrides), validated against
config_validation.yaml, and used for the initial log setup.
"""

# Standard
import os

# First Party
import aconfig
import alog

# Local
from .validation import get_invalid_params

_CONFIG_DIR = os.path.dirname(__file__)


def load_library_config(
    config_file: str = os.path.join(_CONFIG_DIR, "config.yaml"),
    validation_file: str = os.path.join(_CONFIG_DIR, "config_validation.yaml"),
) -> aconfig.Config:
    """Load and validate a library config file

    Args:
        config_file:  str
            Path to the yaml file holding the values. Environment variables
            override the values from the file.
        validation_file:  str
            Path to the parallel yaml file holding the validation rules

    Returns:
        config:  aconfig.Config
            The validated config
    """
    loaded = aconfig.Config.from_yaml(config_file, override_env_vars=True)
    rules = aconfig.Config.from_yaml(validation_file, override_env_vars=False)
    invalid_params = get_invalid_params(loaded, rules)
    assert not invalid_params, f"Library configuration found invalid values: {invalid_params}"
    return loaded


library_config = load_library_config()

alog.configure(
    default_level=library_config.log_level,
    filters=library_config.log_filters,
    formatter="json" if library_config.log_json else "pretty",
    thread_id=library_config.log_thread_id,
)


# Delegate attribute access on this module to the library config
def __getattr__(name):
    if name in library_config or hasattr({}, name):
        return getattr(library_config, name)
    raise AttributeError(f"No such config attribute {name}")
