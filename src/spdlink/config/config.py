"""
Loads layered configuration files and applies them to settings objects.

Configurations are named, and each named configuration is made up of several files in a directory:

- name.default.cfg: the shipped defaults
- name.<os>.cfg: platform specific values, e.g. name.windows.cfg
- ~/name.cfg: the user's overrides
- name.cfg: local overrides

The files are merged in that order, then validated and converted to typed values against name.schema.cfg.
"""
import logging
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from configobj.validate import Validator

from spdlink.conduit.serial_conduit import SerialSettings, detect_port
from spdlink.connector.device import SpdDevice

logger = logging.getLogger(__name__)

# The default extension for configuration files
config_extension = '.cfg'

# the name of the configuration shipped with the package
default_config_name = 'spdlink'


def config_flavor(name, flavor=None):
    """
    >>> config_flavor('spdlink', 'default')
    'spdlink.default'
    >>> config_flavor('spdlink')
    'spdlink'
    """
    return name if not flavor else name + '.' + flavor


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory, by default this package's directory.
    """
    return os.path.join(directory or os.path.dirname(__file__), name + config_extension)


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The file is named after the base, followed by a period
    and the specialization if one is given. A missing file gives an empty configuration.
    """
    return load_config_file_base(config_filename(config_flavor(name, subpart), directory), False)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def load_config(name=default_config_name, directory=None):
    """
    Loads and merges all the configuration files for the given name, then validates the result against
    the schema, which also converts the values to their declared types and fills in defaults.
    :raises ConfigObjError: if the merged configuration fails validation
    """
    default_config = config_flavor_file(name, directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(os.path.expanduser('~/' + name + config_extension), must_exist=False)
    local_config = config_flavor_file(name, directory)

    config = ConfigObj(configspec=config_filename(config_flavor(name, 'schema'), directory))
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    config.merge(local_config)

    result = config.validate(Validator())
    if result is not True:
        failures = []
        for sections, key, error in flatten_errors(config, result):
            path = '.'.join(sections + [key] if key is not None else sections)
            failures.append('%s: %s' % (path, error or 'missing'))
        raise ConfigObjError("the config file %s failed validation %s" % (name, ', '.join(failures)))
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:    The root configuration
    :param path:    An iterable that lists the names of the sections to resolve
    :return: The configuration section identified by the path, or None
    """
    for p in path:
        conf = conf.get(p, None)
        if conf is None:
            return None
    return conf


def apply_conf(conf: Section, target):
    """
    Sets each attribute of the target that has the same name as a value in the configuration.
    Values with no matching attribute are ignored.
    """
    for k, v in conf.items():
        if hasattr(target, k):
            setattr(target, k, v)
    return target


def apply_conf_path(conf: Section, path, target):
    section = fetch_conf_path(conf, path)
    if section:
        apply_conf(section, target)
    return target


def load_settings(name=default_config_name, directory=None) -> SerialSettings:
    """
    Creates serial settings from the [serial] section of the named configuration.
    """
    return apply_conf_path(load_config(name, directory), ('serial',), SerialSettings())


def open_device(name=default_config_name, directory=None):
    """
    Creates a device for the port and EEPROM address given in the [device] section, using the serial settings
    from the [serial] section. A port of 'auto' selects the first recognised serial device.
    The device is returned disconnected.
    """
    config = load_config(name, directory)
    settings = apply_conf_path(config, ('serial',), SerialSettings())
    device = config['device']
    port = detect_port(device['port'])
    logger.info("using device on %s with EEPROM address 0x%02X", port, device['i2c_address'])
    return SpdDevice.serial(port, settings, i2c_address=device['i2c_address'])
