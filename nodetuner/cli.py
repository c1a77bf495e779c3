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

import argparse
import logging
import os
import sys
import time

from nodetuner import config as cfg
from nodetuner import orchestrator, report, tuners
from nodetuner.errors import ConfigError, LockHeld, StateStoreError
from nodetuner.executor import EXIT_CONFIG_ERROR, EXIT_FAILED, EXIT_LOCKED

logger = logging.getLogger(__name__)

LOG_LEVELS = {'debug': logging.DEBUG, 'info': logging.INFO, 'warn': logging.WARNING, 'error': logging.ERROR}


def make_parser():
    argp = argparse.ArgumentParser(prog='nodetuner',
                                   description='Tune a node for a latency sensitive storage workload.',
                                   formatter_class=argparse.RawDescriptionHelpFormatter,
                                   epilog=
'''
This script will:

    - Configure various system parameters in /proc/sys and /sys.
    - Configure the I/O scheduler, merges and write cache of the data disks.
    - Ban the disk and NIC IRQs from being moved by irqbalance and distribute them among CPUs 1..N-1.
    - Write the I/O properties of the data disks for the detected cloud instance type.

Settings are applied at most once per node: re-run with --force-retune to tune again.

Tuners:

    {}

Options are read (in increasing priority) from the --options-file YAML file, the environment
(DIRS, DEVICES, NICS, TUNE_GRUB, ENABLED_TUNERS, DISABLED_TUNERS, CHECK_ONLY, CLOUD_PROVIDER,
INSTANCE_TYPE, LOG_LEVEL, FORCE_RETUNE, TUNING_TIMEOUT, NODE_NAME, ...) and the command line.
'''.format(", ".join(tuners.TUNER_IDS)))
    argp.add_argument('--dir', help="directory to optimize (may appear more than once)", action='append', dest='dirs')
    argp.add_argument('--dev', help="device to optimize (may appear more than once), e.g. nvme0n1", action='append', dest='devices')
    argp.add_argument('--nic', help="network interface name (may appear more than once)", action='append', dest='nics')
    argp.add_argument('--enable', help="comma separated list of tuners to run, all by default", dest='enabled_tuners')
    argp.add_argument('--disable', help="comma separated list of tuners not to run", dest='disabled_tuners')
    argp.add_argument('--tune-grub', action='store_const', const=True, dest='tune_boot_params',
                      help="add the CPU power management kernel boot parameters (requires a reboot)")
    argp.add_argument('--check-only', action='store_const', const=True, dest='check_only',
                      help="only report which settings diverge from their targets, don't change anything")
    argp.add_argument('--validate', action='store_const', const=True,
                      help="check every setting again after it has been applied")
    argp.add_argument('--force-retune', action='store_const', const=True, dest='force_retune',
                      help="forget that the node has been tuned before")
    argp.add_argument('--cloud-provider', choices=cfg.PROVIDERS, dest='provider', help="cloud provider, detected by default")
    argp.add_argument('--instance-type', help="cloud instance type, detected by default")
    argp.add_argument('--timeout', help="bound of the whole run, e.g. 30m")
    argp.add_argument('--host-root', help="where the host file system is mounted, '/' by default")
    argp.add_argument('--nsenter', action='store_const', const=True, dest='use_nsenter',
                      help="run host commands in the namespaces of the host's init process")
    argp.add_argument('--data-dir', help="directory for the coredump handler and the ballast file")
    argp.add_argument('--profile-path', help="where to write the I/O properties file")
    argp.add_argument('--state-store', choices=cfg.STATE_STORES, help="where the node tuning state is kept")
    argp.add_argument('--state-dir', help="directory of the 'file' state store")
    argp.add_argument('--node-name', help="name of this node, the host name by default")
    argp.add_argument('--lock-file', help="lock file preventing concurrent runs")
    argp.add_argument('--no-iotune', action='store_const', const=False, dest='enable_iotune',
                      help="don't write the I/O properties file")
    argp.add_argument('--no-tuning', action='store_const', const=False, dest='enable_tuning',
                      help="don't run the tuners")
    argp.add_argument('--log-level', choices=cfg.LOG_LEVELS)
    argp.add_argument('--output-format', choices=cfg.OUTPUT_FORMATS)
    argp.add_argument('--options-file', help="configuration YAML file")
    argp.add_argument('--dump-options-file', action='store_true', help="Print the configuration YAML file containing the current configuration")
    return argp


def build_config(args, environ):
    config = cfg.TuneConfig()
    if args.options_file:
        cfg.parse_options_file(config, args.options_file)
    cfg.parse_environment(config, environ)

    for attr in cfg.DEFAULTS:
        value = getattr(args, attr, None)
        if value is not None:
            config.set_option(attr, value)

    return cfg.validate(config, tuners.TUNER_IDS)


def setup_logging(level):
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s', '%Y-%m-%dT%H:%M:%SZ')
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(LOG_LEVELS[level])


def main(argv=None, environ=None):
    args = make_parser().parse_args(argv)
    environ = os.environ if environ is None else environ

    try:
        config = build_config(args, environ)
    except ConfigError as e:
        print("ERROR: {}".format(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.dump_options_file:
        print(cfg.dump_config(config))
        return 0

    setup_logging(config.log_level)
    logger.debug(repr(config))

    try:
        run = orchestrator.run(config)
    except LockHeld as e:
        logger.error(str(e))
        return EXIT_LOCKED
    except StateStoreError as e:
        logger.error("Can't access the node state: {}".format(e))
        return EXIT_FAILED

    print(report.render(run, config.output_format))
    return run.exit_code


if __name__ == '__main__':
    sys.exit(main())
