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

import collections
import enum
import logging
import subprocess

from nodetuner.errors import TuningError, TuningTimeout, UnsupportedOnPlatform

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_LOCKED = 3
EXIT_TIMEOUT = 124


class Status(enum.Enum):
    success = 'success'
    failed = 'failed'
    skipped = 'skipped'


TunerResult = collections.namedtuple('TunerResult', ['id', 'status', 'message'])


class TuningContext:
    """
    Everything a single run works with: the configuration, the host, the optional tools, the detected
    environment and the discovered devices. Constructed once per run and handed to every tuner.
    """
    def __init__(self, config, host, caps, env=None, block_devices=None, interfaces=None):
        self.config = config
        self.host = host
        self.caps = caps
        self.env = env
        self.block_devices = list(block_devices or [])
        self.interfaces = list(interfaces or [])
        self.reboot_reasons = []
        self.__cpu_count = None

    @property
    def reboot_required(self):
        return bool(self.reboot_reasons)

    def require_reboot(self, reason):
        """Once set within a run the reboot-required state is never cleared."""
        logger.warning("Reboot required: {}".format(reason))
        self.reboot_reasons.append(reason)

    @property
    def cpu_count(self):
        if self.__cpu_count is None:
            self.__cpu_count = self.caps.topology.cpu_count()
        return self.__cpu_count

    @property
    def provider(self):
        return self.env.provider if self.env else None


class TuningRun:
    def __init__(self):
        self.results = []
        self.reboot_required = False
        self.timed_out = False
        self.already_tuned = False
        self.environment = None
        self.profile = None
        self.error = None

    def counts(self):
        counts = collections.OrderedDict((s.value, 0) for s in Status)
        for r in self.results:
            counts[r.status.value] += 1
        return counts

    @property
    def failed(self):
        return self.timed_out or self.error is not None or any(r.status == Status.failed for r in self.results)

    @property
    def exit_code(self):
        if self.timed_out:
            return EXIT_TIMEOUT
        return EXIT_FAILED if self.failed else EXIT_OK


def run_unit(ctx, unit):
    """
    Bring a single unit to its target state.

    check() is always evaluated first and nothing is changed when the target state already holds. Every
    error of the unit is turned into its result here: an absent kernel interface is a skip, anything
    else is a failure.
    """
    try:
        if not unit.applicable(ctx):
            return TunerResult(unit.id, Status.skipped, "not applicable")

        if unit.check(ctx):
            return TunerResult(unit.id, Status.success, "already tuned")

        if ctx.config.check_only:
            return TunerResult(unit.id, Status.failed, "needs tuning")

        unit.apply(ctx)

        if ctx.config.validate and not unit.check(ctx):
            return TunerResult(unit.id, Status.failed, "target state not in effect after tuning")

        return TunerResult(unit.id, Status.success, "tuned")
    except UnsupportedOnPlatform as e:
        return TunerResult(unit.id, Status.skipped, str(e))
    except (TuningError, OSError, subprocess.SubprocessError) as e:
        return TunerResult(unit.id, Status.failed, str(e))
    except TuningTimeout:
        raise
    except Exception as e:
        logger.debug("{} raised an unexpected error".format(unit.id), exc_info=True)
        return TunerResult(unit.id, Status.failed, "unexpected error: {!r}".format(e))


def execute(ctx, units, run=None):
    """
    Run all units in order. A failing unit never stops the run.
    """
    run = run or TuningRun()
    total = len(units)
    for i, unit in enumerate(units, 1):
        if not ctx.config.is_enabled(unit.id):
            logger.debug("Skipping disabled tuner: {}".format(unit.id))
            result = TunerResult(unit.id, Status.skipped, "disabled")
        else:
            logger.info("[{}/{}] {}".format(i, total, unit.id))
            result = run_unit(ctx, unit)

        log = logger.error if result.status == Status.failed else logger.info
        log("{}: {} ({})".format(result.id, result.status.value, result.message))

        run.results.append(result)
        run.reboot_required = run.reboot_required or ctx.reboot_required

    return run
