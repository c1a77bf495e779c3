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
A complete tuning run of a node:

    lock -> state pre-check -> environment -> devices -> I/O profile -> tuners -> state update

The run is bounded by the configured timeout. A run that times out records no state at all, whatever
it managed to change on the host before the deadline.
"""

import contextlib
import logging
import signal

from nodetuner import devices, environment, executor, iotune, state, tuners
from nodetuner.errors import StateStoreError, TuningError, TuningTimeout
from nodetuner.host import Host
from nodetuner.lock import RunLock
from nodetuner.tools import Capabilities

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def deadline(seconds):
    """
    Raise TuningTimeout in the main thread once 'seconds' have passed.
    """
    def on_alarm(signum, frame):
        raise TuningTimeout("Tuning did not complete within {:g} seconds".format(seconds))

    old_handler = signal.signal(signal.SIGALRM, on_alarm)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, old_handler)


class Orchestrator:
    def __init__(self, config, host=None, store=None, caps=None, units=None, probes=None, udev_context=None):
        self.config = config
        self.host = host or Host(config.host_root, nsenter=config.use_nsenter)
        self.store = store or state.create(config, self.host)
        self.caps = caps
        self.units = tuners.REGISTRY if units is None else units
        self.probes = probes
        self.udev_context = udev_context
        self.node_state = state.NodeState(self.store, config.node)

    def run(self):
        """
        :return: TuningRun
        :raises LockHeld: if another run is in progress on this node
        """
        run = executor.TuningRun()
        with RunLock(self.config.lock_file):
            try:
                phases = self.__pre_check(run)
            except StateStoreError as e:
                logger.error("Can't read the node state: {}".format(e))
                run.error = str(e)
                return run

            if not any(phases):
                return run

            try:
                with deadline(self.config.timeout):
                    self.__run(run, *phases)
            except TuningTimeout as e:
                logger.error(str(e))
                run.timed_out = True
                return run

            if not self.config.check_only:
                self.__record(run, *phases)

        return run

    def __pre_check(self, run):
        """
        :return: (tune, iotune) - the phases that have to run
        """
        if self.config.force_retune and not self.config.check_only:
            self.node_state.reset()

        tune = self.config.enable_tuning
        if tune and not self.config.check_only and self.node_state.tuned:
            logger.info("Node {} is already tuned, skipping".format(self.config.node))
            self.store.publish_event(self.config.node, 'AlreadyTuned', "Node {} is already tuned, skipping".format(self.config.node))
            run.already_tuned = True
            tune = False

        iotune_needed = self.config.enable_iotune and not self.config.check_only
        if iotune_needed and self.node_state.iotune_completed:
            logger.info("I/O configuration of {} has already been generated, skipping".format(self.config.node))
            iotune_needed = False

        return tune, iotune_needed

    def __run(self, run, tune, iotune_needed):
        caps = self.caps or Capabilities.detect(self.host)
        env = environment.detect(self.host, self.config.provider, self.config.instance_type,
                                 self.config.probe_timeout, self.probes)
        run.environment = env

        if iotune_needed:
            self.__write_profile(run, env)

        if tune:
            block_devices, ifaces = devices.resolve(self.host, self.config.dirs, self.config.devices,
                                                    self.config.nics, self.udev_context)
            ctx = executor.TuningContext(self.config, self.host, caps, env, block_devices, ifaces)
            executor.execute(ctx, self.units, run)

    def __write_profile(self, run, env):
        profile = iotune.resolve_profile(env.provider, env.instance_type)
        try:
            text = iotune.write_profile(self.host, self.config.mount_point, profile, self.config.profile_path)
            run.profile = profile
        except TuningError as e:
            logger.error("Failed to write the I/O configuration: {}".format(e))
            run.error = "I/O configuration: {}".format(e)
            return

        try:
            self.store.store_profile(self.config.node, text)
        except StateStoreError as e:
            logger.warning("I/O configuration was not published: {}".format(e))

    def __record(self, run, tune, iotune_needed):
        """
        Persist the outcome. A failure here fails the run but doesn't undo anything.
        """
        node = self.config.node
        try:
            if iotune_needed and run.profile is not None:
                self.node_state.mark_iotune_completed()
                self.store.publish_event(node, 'IotuneCompleted', "I/O configuration ({}) written on {}".format(run.profile.source, node))

            if tune:
                self.node_state.mark_attempted()
                if run.failed:
                    failed = [r.id for r in run.results if r.status == executor.Status.failed]
                    self.store.publish_event(node, 'TuningFailed', "Tuning of {} failed: {}".format(node, ", ".join(failed) or run.error), 'Warning')
                else:
                    self.node_state.mark_tuned()
                    self.store.publish_event(node, 'TuningCompleted', "Node tuning completed successfully on {}".format(node))

            if run.reboot_required:
                self.node_state.mark_reboot_required()
                self.store.publish_event(node, 'RebootRequired', "Node {} requires a reboot for all settings to take effect".format(node), 'Warning')
        except StateStoreError as e:
            logger.error("Failed to record the tuning state: {}".format(e))
            run.error = str(e)


def run(config, **kwargs):
    return Orchestrator(config, **kwargs).run()
