#
# This file is open source software, licensed to you under the terms
# of the Apache License, Version 2.0 (the "License").  See the NOTICE file
# distributed with this work for additional information regarding copyright
# ownership.  You may not use this file except in compliance with the License.
#
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
#

"""
The run configuration record.

Values come from (in increasing priority) the defaults, a YAML options file, the environment
(the variables the node agent DaemonSet sets) and the command line.
"""

import re
import socket

import yaml

from nodetuner import iotune
from nodetuner.errors import ConfigError

LOG_LEVELS = ['debug', 'info', 'warn', 'error']
OUTPUT_FORMATS = ['text', 'json']
STATE_STORES = ['file', 'kubernetes', 'memory']
PROVIDERS = ['auto', 'aws', 'gcp', 'azure', 'none']

DEFAULTS = {
    'dirs': ['/var/lib/redpanda'],
    'devices': [],
    'nics': [],
    'tune_boot_params': False,
    'enabled_tuners': [],
    'disabled_tuners': [],
    'check_only': False,
    'validate': False,
    'provider': 'auto',
    'instance_type': 'auto',
    'log_level': 'info',
    'output_format': 'text',
    'force_retune': False,
    'timeout': 1800.0,
    'host_root': '/',
    'use_nsenter': False,
    'data_dir': '/var/lib/redpanda',
    'profile_path': iotune.DEFAULT_PROFILE_PATH,
    'state_store': 'file',
    'state_dir': '/var/lib/nodetuner',
    'node_name': None,
    'namespace': None,
    'lock_file': '/var/run/nodetuner.lock',
    'probe_timeout': 1.0,
    'enable_iotune': True,
    'enable_tuning': True,
}

LIST_OPTIONS = frozenset(['dirs', 'devices', 'nics', 'enabled_tuners', 'disabled_tuners'])

# options file key -> configuration attribute
OPTION_KEYS = {
    'dir': 'dirs',
    'dev': 'devices',
    'nic': 'nics',
    'tune_boot_params': 'tune_boot_params',
    'enable': 'enabled_tuners',
    'disable': 'disabled_tuners',
    'check_only': 'check_only',
    'validate': 'validate',
    'cloud_provider': 'provider',
    'instance_type': 'instance_type',
    'log_level': 'log_level',
    'output_format': 'output_format',
    'force_retune': 'force_retune',
    'timeout': 'timeout',
    'host_root': 'host_root',
    'nsenter': 'use_nsenter',
    'data_dir': 'data_dir',
    'profile_path': 'profile_path',
    'state_store': 'state_store',
    'state_dir': 'state_dir',
    'node_name': 'node_name',
    'namespace': 'namespace',
    'lock_file': 'lock_file',
    'probe_timeout': 'probe_timeout',
    'iotune': 'enable_iotune',
    'tuning': 'enable_tuning',
}

ENV_KEYS = {
    'DIRS': 'dirs',
    'DEVICES': 'devices',
    'NICS': 'nics',
    'TUNE_GRUB': 'tune_boot_params',
    'ENABLED_TUNERS': 'enabled_tuners',
    'DISABLED_TUNERS': 'disabled_tuners',
    'CHECK_ONLY': 'check_only',
    'CLOUD_PROVIDER': 'provider',
    'INSTANCE_TYPE': 'instance_type',
    'LOG_LEVEL': 'log_level',
    'OUTPUT_FORMAT': 'output_format',
    'FORCE_RETUNE': 'force_retune',
    'TUNING_TIMEOUT': 'timeout',
    'NODE_NAME': 'node_name',
    'ENABLE_IOTUNE': 'enable_iotune',
    'ENABLE_TUNING': 'enable_tuning',
    'HOST_ROOT': 'host_root',
    'STATE_STORE': 'state_store',
}

BOOL_OPTIONS = frozenset(['tune_boot_params', 'check_only', 'validate', 'force_retune', 'use_nsenter',
                          'enable_iotune', 'enable_tuning'])


def strtobool(value):
    """
    Convert a string representation of truth to True or False.
    """
    if isinstance(value, bool):
        return value

    v = str(value).strip().lower()
    if v in ('y', 'yes', 't', 'true', 'on', '1'):
        return True
    if v in ('n', 'no', 'f', 'false', 'off', '0'):
        return False

    raise ConfigError("invalid truth value {!r}".format(value))


def parse_duration(value):
    """
    Seconds from '90', '90s', '30m' or '1h'.
    """
    if isinstance(value, (int, float)):
        return float(value)

    m = re.match(r'^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$', str(value))
    if not m:
        raise ConfigError("invalid duration {!r}".format(value))

    return float(m.group(1)) * {'': 1, 's': 1, 'm': 60, 'h': 3600}[m.group(2)]


def extend_and_unique(orig_list, iterable):
    """
    Extend items to a list, and make the list items unique (keeping the first-seen order)
    """
    result = []
    for item in list(orig_list) + list(iterable):
        if item not in result:
            result.append(item)
    return result


def split_list(value):
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value).split(',') if v.strip()]


class TuneConfig:
    def __init__(self, **kwargs):
        for k, v in DEFAULTS.items():
            setattr(self, k, list(v) if isinstance(v, list) else v)

        for k, v in kwargs.items():
            if k not in DEFAULTS:
                raise ConfigError("unknown configuration option '{}'".format(k))
            setattr(self, k, v)

    def __repr__(self):
        return "TuneConfig({})".format(", ".join("{}={!r}".format(k, getattr(self, k)) for k in DEFAULTS))

    def set_option(self, attr, value):
        if attr in LIST_OPTIONS:
            value = extend_and_unique([], split_list(value))
            # 'all' is how the standalone script spells "no restriction"
            if attr == 'enabled_tuners' and value == ['all']:
                value = []
        elif attr in BOOL_OPTIONS:
            value = strtobool(value)
        elif attr == 'timeout':
            value = parse_duration(value)
        elif attr == 'probe_timeout':
            try:
                value = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigError("invalid probe_timeout {!r}".format(value)) from e
        elif value is not None:
            value = str(value)

        setattr(self, attr, value)

    def is_enabled(self, tuner_id):
        if tuner_id in self.disabled_tuners:
            return False
        return not self.enabled_tuners or tuner_id in self.enabled_tuners

    @property
    def mount_point(self):
        return self.dirs[0] if self.dirs else DEFAULTS['dirs'][0]

    @property
    def node(self):
        return self.node_name or socket.gethostname()


def parse_options_file(config, fname):
    """
    Merge a YAML options file into the configuration. Lists from the file replace the defaults.
    """
    try:
        with open(fname) as f:
            y = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError("Can't read options file {}: {}".format(fname, e)) from e

    if y is None:
        return config

    if not isinstance(y, dict):
        raise ConfigError("Bad options file {}: a mapping is expected".format(fname))

    for key, value in y.items():
        if key not in OPTION_KEYS:
            raise ConfigError("Bad option '{}' in {}".format(key, fname))
        config.set_option(OPTION_KEYS[key], value)

    return config


def parse_environment(config, environ):
    for key, attr in ENV_KEYS.items():
        if environ.get(key, '') != '':
            config.set_option(attr, environ[key])

    return config


def validate(config, known_tuners):
    for attr in ('enabled_tuners', 'disabled_tuners'):
        unknown = [t for t in getattr(config, attr) if t not in known_tuners]
        if unknown:
            raise ConfigError("Unknown tuner(s): {}. Known tuners: {}".format(", ".join(unknown), ", ".join(known_tuners)))

    for attr, allowed in (('log_level', LOG_LEVELS), ('output_format', OUTPUT_FORMATS),
                          ('state_store', STATE_STORES), ('provider', PROVIDERS)):
        if getattr(config, attr) not in allowed:
            raise ConfigError("Bad {} value: {} (expected one of {})".format(attr, getattr(config, attr), ", ".join(allowed)))

    if config.timeout <= 0:
        raise ConfigError("timeout must be positive")

    if config.probe_timeout <= 0:
        raise ConfigError("probe_timeout must be positive")

    if not config.enable_tuning and not config.enable_iotune:
        raise ConfigError("Both tuning and I/O configuration are disabled: nothing to do")

    return config


def dump_config(config):
    """
    :return: YAML options file text with the effective configuration
    """
    prog_options = {}
    for key, attr in OPTION_KEYS.items():
        value = getattr(config, attr)
        if value is None or value == []:
            continue
        prog_options[key] = value

    return yaml.safe_dump(prog_options, default_flow_style=False)
