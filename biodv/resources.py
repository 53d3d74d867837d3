"""The `biodv` package reads a small configuration, mainly to set the location of the
local data stores and the behaviour of the web service drivers. The configuration
values are:

- data_dir: The project directory holding the local stores (`taxonomy/` and
    `datasets/`). Defaults to the current directory.

- gbif: The settings of the GBIF driver: the API root URL, the number of attempts
    for each request, the request timeout, the wait between requests, the page size
    used when listing taxa and whether taxa outside the GBIF backbone (with a nubKey
    of 0) are accepted.

- sync: The settings of the synchronization algorithms, currently the maximum number
    of passes used to resolve the moves and rank changes of a full synchronization.

The [Resources][biodv.resources.Resources] class is used to locate and validate the
configuration, and then provide it to other components of the package.

A configuration file can be passed as `config` when creating an instance, but if no
arguments are provided then an attempt is made to find and load configuration files in
the user and then site config locations defined by the `appdirs` package. If no file
is found, the default values are used.
"""  # noqa D415

import os

import appdirs
from configobj import ConfigObj, flatten_errors
from dotmap import DotMap
from validate import Validator

from biodv.logger import FORMATTER, LOGGER, log_and_raise, loggerinfo_push_pop

CONFIGSPEC = {
    "data_dir": "string(default='.')",
    "gbif": {
        "api": "string(default='https://api.gbif.org/v1/')",
        "retry": "integer(min=1, default=5)",
        "timeout": "float(min=0, default=20.0)",
        "wait": "float(min=0, default=0.3)",
        "page_limit": "integer(min=1, max=1000, default=300)",
        "accept_nub0": "boolean(default=False)",
    },
    "sync": {
        "max_iterations": "integer(min=1, default=5)",
    },
}
"""dict: The biodv package uses the `configobj.ConfigObj` package to handle the
configuration. This dict defines the expected specification for the configuration and
allows the ConfigObj.validate() method to do basic validation, type conversions and
to provide default values.
"""


@loggerinfo_push_pop("Configuring resources")
class Resources:
    """Load and check the package configuration.

    The configuration can be located in several ways, which use the following order
    of priority:

    * configuration details provided directly via the ``config`` argument (see below),
    * a path to a configuration file set in the ``BIODV_CONFIG`` environment variable,
    * a configuration file in the standard user location,
    * a configuration file in the standard system wide location, or
    * the default configuration values.

    The standard locations follow the implementation of the ``appdirs`` package.

    Args:
        config:
            A path to a configuration file, or a dict or list providing package
            configuration details. The list format should provide a list of strings,
            each representing a line in the configuration file. The dict format is a
            dictionary with the required nested dictionary structure and values.

    Attributes:
        config_type: The method used to specify the resources. One of 'init_dict',
            'init_list', 'init_path', 'env_var_path', 'user_path', 'site_path' or
            'default'.
        config_source: The path of the configuration file, if one was used.
        data_dir: The project directory
        gbif: A DotMap of the GBIF driver settings
        sync: A DotMap of the synchronization settings
    """

    def __init__(self, config: str | list | dict | None = None) -> None:
        user_cfg_file = os.path.join(appdirs.user_config_dir(), "biodv", "biodv.cfg")
        site_cfg_file = os.path.join(appdirs.site_config_dir(), "biodv", "biodv.cfg")

        config_env_path = os.getenv("BIODV_CONFIG")

        # Now resolve what to use in order of priority
        if config is not None:
            if isinstance(config, str):
                if os.path.exists(config) and os.path.isfile(config):
                    config_type = "init_path"
                else:
                    log_and_raise(f"Config file path not found: {config}", RuntimeError)
                    return
            elif isinstance(config, list):
                config_type = "init_list"
            elif isinstance(config, dict):
                config_type = "init_dict"
            else:
                log_and_raise(f"Unknown config type: {type(config)}", TypeError)
                return
        elif config_env_path is not None:
            if not os.path.isfile(config_env_path):
                log_and_raise(
                    f"Config file in BIODV_CONFIG not found: {config_env_path}",
                    RuntimeError,
                )
                return
            config = config_env_path
            config_type = "env_var_path"
        elif os.path.exists(user_cfg_file) and os.path.isfile(user_cfg_file):
            config = user_cfg_file
            config_type = "user_path"
        elif os.path.exists(site_cfg_file) and os.path.isfile(site_cfg_file):
            config = site_cfg_file
            config_type = "site_path"
        else:
            LOGGER.debug(f"No user config in {user_cfg_file}")
            LOGGER.debug(f"No site config in {site_cfg_file}")
            config_type = "default"

        msg = f"Configuring resources from {config_type}"
        if config_type.endswith("path"):
            msg += f": {config}"
        LOGGER.info(msg)

        config_loaded = self._load_config(config)

        self.config_type = config_type
        self.config_source = config if config_type.endswith("path") else None
        self.data_dir: str = config_loaded.data_dir
        self.gbif: DotMap = config_loaded.gbif
        self.sync: DotMap = config_loaded.sync

    @staticmethod
    def _load_config(config: str | list | dict | None) -> DotMap:
        """Load and validate a configuration.

        Args:
            config: A configuration, as passed to Resources.__init__(), or None to
                use the default values.

        Raises:
            RuntimeError: If the configuration values are not valid.

        Returns:
            Returns a DotMap of config parameters.
        """

        config_obj = ConfigObj(config, configspec=CONFIGSPEC)
        valid = config_obj.validate(Validator(), preserve_errors=True)

        # If there are config file issues, then bail out.
        if isinstance(valid, dict):
            LOGGER.critical("Configuration issues: ")
            FORMATTER.push()
            for sec, key, err in flatten_errors(config_obj, valid):
                sec.append(key)
                LOGGER.critical(f"In config '{'.'.join(sec)}': {err}")
            FORMATTER.pop()
            raise RuntimeError("Configuration failure")

        return DotMap(config_obj)
