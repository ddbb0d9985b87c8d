"""
Module to validate values in a loaded config against a parallel validation
file. Each leaf of the validation file is a dict with a "type" key naming one
of the parameter types below plus the keyword arguments for that type.
"""

# Standard
from typing import Any, Dict, List, Optional, Union
import abc

# First Party
import aconfig
import alog

log = alog.use_channel("CONFG")

NESTED_KEY_DELIM = "."

## Public ######################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of any params that are invalid

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            Dotted keys of all parameters that fail validation
    """
    invalid_params = []
    for key, parameter in _parse_rules(validation_config).items():
        if not parameter.validate(_lookup(config, key)):
            log.warning("Found invalid config key [%s]", key)
            invalid_params.append(key)
    return invalid_params


## Parameter Types #############################################################

# pylint: disable=too-few-public-methods


class _Parameter(abc.ABC):
    """A config value with a set of allowed python types"""

    TYPE_KEY = None
    TYPES = ()

    def __init__(self, optional: bool = False):
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Check the python type of the value, then the type-specific rules"""
        if self.optional and value is None:
            return True
        # bool is a subclass of int, so never let it pass as a number
        if isinstance(value, bool) and bool not in self.TYPES:
            log.warning("Invalid type <%s>", type(value))
            return False
        if not isinstance(value, self.TYPES):
            log.warning("Invalid type <%s>", type(value))
            return False
        if not self._validate_value(value):
            log.warning("Invalid value [%s]", value)
            return False
        return True

    @abc.abstractmethod
    def _validate_value(self, value: Any) -> bool:
        """Type-specific value validation"""


class _NumberParameter(_Parameter):
    TYPE_KEY = "number"
    TYPES = (int, float)

    def __init__(
        self,
        *,
        min: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        max: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min = min
        self._max = max

    def _validate_value(self, value: Union[int, float]) -> bool:
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


class _IntParameter(_NumberParameter):
    TYPE_KEY = "int"
    TYPES = (int,)


class _FloatParameter(_NumberParameter):
    TYPE_KEY = "float"
    TYPES = (float,)


class _StrParameter(_Parameter):
    TYPE_KEY = "str"
    TYPES = (str,)

    def __init__(self, *, min_len: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self._min_len = min_len

    def _validate_value(self, value: str) -> bool:
        return self._min_len is None or len(value) >= self._min_len


class _BoolParameter(_Parameter):
    TYPE_KEY = "bool"
    TYPES = (bool,)

    def _validate_value(self, value: bool) -> bool:
        return True


class _EnumParameter(_Parameter):
    TYPE_KEY = "enum"
    TYPES = (str, int, type(None))

    def __init__(self, *, values: List[Union[str, int, None]], **kwargs):
        super().__init__(**kwargs)
        assert isinstance(values, list) and values, "Must specify enum values!"
        self.values = values

    def _validate_value(self, value: Union[str, int, None]) -> bool:
        return value in self.values


class _ListParameter(_Parameter):
    TYPE_KEY = "list"
    TYPES = (list,)

    def __init__(self, *, max_len: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self._max_len = max_len

    def _validate_value(self, value: list) -> bool:
        return self._max_len is None or len(value) <= self._max_len


# pylint: enable=too-few-public-methods

_PARAMETER_TYPES = {
    param_type.TYPE_KEY: param_type
    for param_type in [
        _NumberParameter,
        _IntParameter,
        _FloatParameter,
        _StrParameter,
        _BoolParameter,
        _EnumParameter,
        _ListParameter,
    ]
}

## Implementation ##############################################################


def _lookup(config: dict, key: str) -> Any:
    """Fetch a dotted key from the config, treating missing levels as None"""
    value = config
    for part in key.split(NESTED_KEY_DELIM):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _parse_rules(
    validation_config: dict,
    prefix: Optional[List[str]] = None,
) -> Dict[str, _Parameter]:
    """Recursively turn the validation file into a flat map from dotted keys to
    parameters
    """
    rules = {}
    prefix = prefix or []
    for key, val in validation_config.items():
        if not isinstance(val, dict):
            continue
        key_parts = prefix + [key]
        param_type = _PARAMETER_TYPES.get(val.get("type"))
        if param_type is not None:
            kwargs = {k: v for k, v in val.items() if k != "type"}
            log.debug3("Found parameter at %s", NESTED_KEY_DELIM.join(key_parts))
            rules[NESTED_KEY_DELIM.join(key_parts)] = param_type(**kwargs)
        else:
            rules.update(_parse_rules(val, key_parts))
    return rules
