# Copyright (C) 2018 The Electrum developers
# Copyright (C) 2024 The Miniscope developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import json
import threading
import os
import stat
from typing import Union, Optional, Dict, Sequence, Any, Callable, Type
from copy import deepcopy

from . import constants
from .util import user_dir
from .logging import get_logger, Logger


_logger = get_logger(__name__)


_config_var_from_key = {}  # type: Dict[str, 'ConfigVar']


class ConfigVar(property):

    def __init__(
        self,
        key: str,
        *,
        default: Union[Any, Callable[['SimpleConfig'], Any]],  # a literal, or a callable taking the config
        type_=None,
        convert_getter: Callable[[Any], Any] = None,
        short_desc: str = None,
    ):
        self._key = key
        self._default = default
        self._type = type_
        self._convert_getter = convert_getter
        self._short_desc = short_desc
        property.__init__(self, self._get_config_value, self._set_config_value)
        assert key not in _config_var_from_key, f"duplicate config key str: {key!r}"
        _config_var_from_key[key] = self

    def _get_config_value(self, config: 'SimpleConfig'):
        with config.lock:
            if config.is_set(self._key):
                value = config.get(self._key)
                if self._convert_getter is not None:
                    value = self._convert_getter(value)
                if self._type is not None:
                    assert value is not None, f"got None for key={self._key!r}"
                    try:
                        value = self._type(value)
                    except (TypeError, ValueError) as e:
                        raise ValueError(
                            f"ConfigVar.get type-check and auto-conversion failed. "
                            f"key={self._key!r}. type={self._type}. value={value!r}") from e
            else:
                d = self._default
                value = d(config) if callable(d) else d
            return value

    def _set_config_value(self, config: 'SimpleConfig', value, *, save=True):
        if self._type is not None and value is not None:
            if not isinstance(value, self._type):
                raise ValueError(
                    f"ConfigVar.set type-check failed. "
                    f"key={self._key!r}. type={self._type}. value={value!r}")
        config.set_key(self._key, value, save=save)

    def key(self) -> str:
        return self._key

    def get_default_value(self) -> Any:
        return self._default

    def get_short_desc(self) -> Optional[str]:
        return self._short_desc

    def __repr__(self):
        return f"<ConfigVar key={self._key!r}>"

    def __deepcopy__(self, memo):
        return self


def _check_network_name(value: str) -> str:
    constants.net_from_name(value)
    return value


class SimpleConfig(Logger):
    """
    Settings come from two places:
        1. Command line options.
        2. User configuration (the JSON file "config" in the user's directory)
    Command line options override the user configuration.
    """

    def __init__(self, options=None, read_user_config_function=None,
                 read_user_dir_function=None):
        if options is None:
            options = {}
        Logger.__init__(self)
        self.lock = threading.RLock()

        # dependency injection for tests
        if read_user_config_function is None:
            read_user_config_function = read_user_config
        if read_user_dir_function is None:
            self.user_dir = user_dir
        else:
            self.user_dir = read_user_dir_function

        # drop unset command line options, so they don't shadow the user config
        self.cmdline_options = {k: v for k, v in deepcopy(options).items() if v is not None}
        self.path = self.cmdline_options.get('miniscope_path') or self.user_dir()
        self.user_config = read_user_config_function(self.path)

        self._init_done = True

    def list_config_vars(self) -> Sequence[str]:
        return list(sorted(_config_var_from_key.keys()))

    def get_selected_chain(self) -> Type[constants.AbstractNet]:
        return constants.net_from_name(self.NETWORK)

    def set_key(self, key: Union[str, ConfigVar], value, *, save=True) -> None:
        if isinstance(key, ConfigVar):
            key = key.key()
        assert isinstance(key, str), key
        if not self.is_modifiable(key):
            self.logger.warning(f"not changing config key '{key}' set on the command line")
            return
        try:
            json.dumps(value)
        except TypeError:
            self.logger.info(f"json error: cannot save {repr(key)} ({repr(value)})")
            return
        with self.lock:
            if value is not None:
                self.user_config[key] = value
            else:
                self.user_config.pop(key, None)
            if save:
                self.save_user_config()

    def get(self, key: str, default=None) -> Any:
        assert isinstance(key, str), key
        with self.lock:
            out = self.cmdline_options.get(key)
            if out is None:
                out = self.user_config.get(key, default)
        return out

    def is_set(self, key: Union[str, ConfigVar]) -> bool:
        """Returns whether the config key has any explicit value set/defined."""
        if isinstance(key, ConfigVar):
            key = key.key()
        return self.get(key, default=...) is not ...

    def is_modifiable(self, key: Union[str, ConfigVar]) -> bool:
        if isinstance(key, ConfigVar):
            key = key.key()
        return key not in self.cmdline_options

    def save_user_config(self):
        if not self.path:
            return
        os.makedirs(self.path, exist_ok=True)
        path = os.path.join(self.path, "config")
        s = json.dumps(self.user_config, indent=4, sort_keys=True)
        with open(path, "w", encoding='utf-8') as f:
            os.chmod(path, stat.S_IREAD | stat.S_IWRITE)
            f.write(s)

    def __setattr__(self, name, value):
        """Disallows setting instance attributes outside __init__,
        so that a mistyped ConfigVar name raises."""
        if not getattr(self, "_init_done", False) or hasattr(self, name):
            return super().__setattr__(name, value)
        raise AttributeError(
            f"Tried to define new instance attribute for config: {name=!r}. "
            "Did you perhaps mistype a ConfigVar?")

    NETWORK = ConfigVar('network', default='bitcoin', type_=str, convert_getter=_check_network_name,
                        short_desc="bitcoin, testnet, signet or regtest")
    NUMS_KEY = ConfigVar('nums_key', default=constants.NUMS_POINT, type_=str,
                         short_desc="x-only internal key that disables key-path spends")
    GROUP_DISPLAY_LIMIT = ConfigVar('group_display_limit', default=10, type_=int,
                                    short_desc="spending paths shown in full per group")
    GROUP_PREVIEW_COUNT = ConfigVar('group_preview_count', default=3, type_=int,
                                    short_desc="spending paths shown for a truncated group")
    MAX_RECURSION_DEPTH = ConfigVar('max_recursion_depth', default=128, type_=int)
    DESCRIPTOR_CHILD_INDEX = ConfigVar('descriptor_child_index', default=0, type_=int,
                                       short_desc="index used for ranged HD keys")
    VERBOSITY = ConfigVar('verbosity', default='', type_=str)
    VERBOSITY_SHORTCUTS = ConfigVar('verbosity_shortcuts', default='', type_=str)


def read_user_config(path: Optional[str]) -> Dict[str, Any]:
    """Parse the user config settings in <path>/config."""
    if not path:
        return {}
    config_path = os.path.join(path, "config")
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            data = f.read()
        result = json.loads(data)
        assert isinstance(result, dict), "config file is not a dict"
    except (OSError, ValueError, AssertionError) as e:
        raise ValueError(f"Invalid config file at {config_path}: {str(e)}") from e
    return result
