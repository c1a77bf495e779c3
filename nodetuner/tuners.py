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
The tuning units.

Every unit has a unique id, a check() that reports whether the target state already holds and an apply()
that brings the host to it. apply() is only called when check() reports a divergence. REGISTRY lists the
units in the order they are executed.
"""

import abc
import datetime
import logging
import os
import platform
import re
import subprocess

from nodetuner import devices, irq, tools
from nodetuner.errors import ResourceNotFound, TuningError, UnsupportedOnPlatform

logger = logging.getLogger(__name__)


def read_interface(host, fname):
    """
    Read a kernel interface file. An absent file means the running kernel doesn't offer the setting.
    """
    try:
        return host.read(fname).strip()
    except ResourceNotFound as e:
        raise UnsupportedOnPlatform("{} is not available on this system".format(fname)) from e


class TunerUnit(metaclass=abc.ABCMeta):
    id = None

    def __repr__(self):
        return "{}({})".format(type(self).__name__, self.id)

    def applicable(self, ctx):
        """Units that only make sense in some environments return False elsewhere and get skipped."""
        return True

    @abc.abstractmethod
    def check(self, ctx):
        """
        :return: True if the target state already holds
        """
        pass

    @abc.abstractmethod
    def apply(self, ctx):
        pass


################################################################################
class SysctlTuner(TunerUnit):
    """A single integer valued /proc/sys knob."""
    fname = None
    target = None

    def current(self, ctx):
        value = read_interface(ctx.host, self.fname)
        try:
            return int(value)
        except ValueError as e:
            raise TuningError("Unexpected value in {}: {!r}".format(self.fname, value)) from e

    @abc.abstractmethod
    def satisfied(self, current):
        pass

    def check(self, ctx):
        return self.satisfied(self.current(ctx))

    def apply(self, ctx):
        ctx.host.fwriteln(self.fname, str(self.target))


class AioEventsTuner(SysctlTuner):
    id = 'aio_events'
    fname = '/proc/sys/fs/aio-max-nr'
    target = 10000137

    def satisfied(self, current):
        return current >= self.target


class SwappinessTuner(SysctlTuner):
    id = 'swappiness'
    fname = '/proc/sys/vm/swappiness'
    target = 1

    def satisfied(self, current):
        return current <= self.target


class TransparentHugepagesTuner(TunerUnit):
    id = 'transparent_hugepages'
    candidates = ['/sys/kernel/mm/transparent_hugepage/enabled',
                  '/sys/kernel/mm/redhat_transparent_hugepage/enabled']

    def __control_file(self, ctx):
        for fname in self.candidates:
            if ctx.host.exists(fname):
                return fname

        raise UnsupportedOnPlatform("Transparent hugepages are not supported by this kernel")

    def check(self, ctx):
        # e.g. "always madvise [never]"
        return '[never]' in read_interface(ctx.host, self.__control_file(ctx))

    def apply(self, ctx):
        ctx.host.fwriteln(self.__control_file(ctx), 'never')


################################################################################
class DiskQueueTuner(TunerUnit):
    """
    A setting under /sys/block/<dev>/queue/ of every resolved block device.

    Devices that don't expose the file are ignored; if none of them does the unit is unsupported.
    A device that can't be tuned doesn't prevent tuning the rest of them.
    """
    attr = None

    def control_file(self, dev):
        return getattr(dev, self.attr)

    def devices(self, ctx):
        if not ctx.block_devices:
            raise ResourceNotFound("No block devices found")

        devs = [d for d in ctx.block_devices if ctx.host.exists(self.control_file(d))]
        if not devs:
            raise UnsupportedOnPlatform("{} is not available for {}".format(
                os.path.basename(self.control_file(ctx.block_devices[0])), ", ".join(d.name for d in ctx.block_devices)))
        return devs

    @abc.abstractmethod
    def satisfied(self, value):
        pass

    @abc.abstractmethod
    def target(self, value, dev):
        """
        :return: the value to write given the current contents of the control file
        """
        pass

    def check(self, ctx):
        return all(self.satisfied(read_interface(ctx.host, self.control_file(d))) for d in self.devices(ctx))

    def apply(self, ctx):
        failed = []
        for dev in self.devices(ctx):
            fname = self.control_file(dev)
            try:
                value = read_interface(ctx.host, fname)
                if self.satisfied(value):
                    continue
                ctx.host.fwriteln(fname, self.target(value, dev))
            except TuningError as e:
                logger.error("{}: {}".format(dev.name, e))
                failed.append(dev.name)

        if failed:
            raise TuningError("Failed to tune {}".format(", ".join(failed)))


class DiskSchedulerTuner(DiskQueueTuner):
    id = 'disk_scheduler'
    attr = 'scheduler_file'
    # in the order of preference
    io_schedulers = ['none', 'noop']

    @staticmethod
    def current_scheduler(value):
        m = re.search(r'\[(\S+)\]', value)
        if m:
            return m.group(1)
        # single queue devices with one scheduler print it without brackets
        return value.strip()

    def satisfied(self, value):
        return self.current_scheduler(value) in self.io_schedulers

    def target(self, value, dev):
        supported = value.replace('[', '').replace(']', '').split()
        for sched in self.io_schedulers:
            if sched in supported:
                return sched

        raise TuningError("None of the {} I/O schedulers is supported (available: {})".format(
            "/".join(self.io_schedulers), ", ".join(supported)))


class DiskNomergesTuner(DiskQueueTuner):
    id = 'disk_nomerges'
    attr = 'nomerges_file'

    def satisfied(self, value):
        return value == '2'

    def target(self, value, dev):
        return '2'


class DiskWriteCacheTuner(DiskQueueTuner):
    id = 'disk_write_cache'
    attr = 'write_cache_file'
    provider = 'gcp'

    def applicable(self, ctx):
        return ctx.provider == self.provider

    def satisfied(self, value):
        return value == 'write through'

    def target(self, value, dev):
        return 'write through'


################################################################################
def ban_and_distribute(ctx, irqs, log_errors=True):
    """
    Keep irqbalance away from the IRQs and spread them over the CPUs.

    :return: the number of IRQs whose affinity couldn't be set
    """
    tools.ban_irqs(ctx.host, irqs)
    dist, failed = irq.distribute(ctx.host, irqs, ctx.cpu_count, log_errors=log_errors)
    if dist.assignments and failed == len(dist.assignments):
        raise TuningError("Couldn't set the affinity of any of IRQs {}".format(", ".join(irqs)))
    return failed


class DiskIrqTuner(TunerUnit):
    id = 'disk_irq'

    def __irqs(self, ctx):
        if not ctx.block_devices:
            raise ResourceNotFound("No block devices found")

        irqs = []
        for dev in ctx.block_devices:
            irqs += [i for i in dev.irqs if i not in irqs]

        if not irqs:
            raise ResourceNotFound("No IRQs found for {}".format(", ".join(d.name for d in ctx.block_devices)))
        return irqs

    def check(self, ctx):
        return irq.is_distributed(ctx.host, self.__irqs(ctx), ctx.cpu_count)

    def apply(self, ctx):
        # NVMe IRQs are usually managed by the kernel: don't make noise about each rejected write
        nvme_only = all(d.is_nvme for d in ctx.block_devices)
        failed = ban_and_distribute(ctx, self.__irqs(ctx), log_errors=not nvme_only)
        if failed:
            logger.info("{} IRQ(s) kept their kernel assigned affinity".format(failed))


################################################################################
class CpuTuner(TunerUnit):
    """
    Frequency governor, turbo boost and, when tune_boot_params is set, the C-state and P-state driver
    kernel parameters. The latter only take effect after a reboot.
    """
    id = 'cpu'
    governor_glob = '/sys/devices/system/cpu/cpu[0-9]*/cpufreq/scaling_governor'
    boost_file = '/sys/devices/system/cpu/cpufreq/boost'
    grub_file = '/etc/default/grub'
    governor = 'performance'
    boot_params = ['intel_idle.max_cstate=0', 'processor.max_cstate=1', 'intel_pstate=disable']

    def __governor_files(self, ctx):
        files = ctx.host.glob(self.governor_glob)
        if not files:
            raise UnsupportedOnPlatform("CPU frequency scaling is not available")
        return files

    def __governor_satisfied(self, ctx, fname):
        return read_interface(ctx.host, fname) == self.governor

    def __boost_satisfied(self, ctx):
        return not ctx.host.exists(self.boost_file) or read_interface(ctx.host, self.boost_file) == '0'

    def __cmdline(self, ctx):
        """
        :return: (lines of the GRUB defaults file, index of the GRUB_CMDLINE_LINUX line or None)
        """
        lines = ctx.host.read(self.grub_file).splitlines()
        for i, line in enumerate(lines):
            if line.startswith('GRUB_CMDLINE_LINUX='):
                return lines, i
        return lines, None

    def missing_boot_params(self, ctx):
        if not ctx.config.tune_boot_params:
            return []

        if not ctx.host.exists(self.grub_file):
            logger.warning("{} not found: boot parameters have to be set manually".format(self.grub_file))
            return []

        lines, i = self.__cmdline(ctx)
        present = lines[i].split('=', 1)[1].strip('"\'').split() if i is not None else []
        return [p for p in self.boot_params if p not in present]

    def check(self, ctx):
        return all(self.__governor_satisfied(ctx, f) for f in self.__governor_files(ctx)) and \
            self.__boost_satisfied(ctx) and not self.missing_boot_params(ctx)

    def apply(self, ctx):
        for fname in self.__governor_files(ctx):
            if not self.__governor_satisfied(ctx, fname):
                ctx.host.fwriteln(fname, self.governor)

        if not self.__boost_satisfied(ctx):
            ctx.host.fwriteln(self.boost_file, '0', log_message="Disabling CPU boost")

        missing = self.missing_boot_params(ctx)
        if missing:
            self.__edit_grub(ctx, missing)

    def __edit_grub(self, ctx, missing):
        lines, i = self.__cmdline(ctx)
        if i is None:
            lines.append('GRUB_CMDLINE_LINUX="{}"'.format(" ".join(missing)))
        else:
            params = lines[i].split('=', 1)[1].strip('"\'').split() + missing
            lines[i] = 'GRUB_CMDLINE_LINUX="{}"'.format(" ".join(params))

        backup = "{}.backup.{}".format(self.grub_file, datetime.datetime.now(datetime.timezone.utc).strftime('%Y%m%d%H%M%S'))
        logger.info("Saving the original GRUB configuration in {}".format(backup))
        ctx.host.copyfile(self.grub_file, backup)
        ctx.host.write_file(self.grub_file, "\n".join(lines) + "\n")

        try:
            ctx.caps.bootloader.update()
        except (TuningError, OSError, subprocess.SubprocessError):
            logger.error("Boot configuration was not regenerated: restoring {} from {}".format(self.grub_file, backup))
            ctx.host.copyfile(backup, self.grub_file)
            raise

        ctx.require_reboot("kernel boot parameters {} added".format(" ".join(missing)))


################################################################################
class NetworkTuner(TunerUnit):
    """
    Socket buffer and backlog sysctls and, for the physical interfaces, IRQ distribution, the number of
    combined channels and the segmentation/receive offloads. The NIC part needs a NIC configuration tool
    (ethtool); without it only the IRQs are distributed.
    """
    id = 'network'
    sysctls = [('/proc/sys/net/core/rmem_max', (16777216,)),
               ('/proc/sys/net/core/wmem_max', (16777216,)),
               ('/proc/sys/net/ipv4/tcp_rmem', (4096, 87380, 16777216)),
               ('/proc/sys/net/ipv4/tcp_wmem', (4096, 65536, 16777216)),
               ('/proc/sys/net/core/netdev_max_backlog', (5000,)),
               ('/proc/sys/net/core/somaxconn', (4096,)),
               ('/proc/sys/net/ipv4/tcp_max_syn_backlog', (4096,))]
    offloads = ['tso', 'gso', 'gro']

    def __ifaces(self, ctx):
        if not ctx.interfaces:
            raise ResourceNotFound("No network interfaces found")
        return [i for i in ctx.interfaces if i.is_hw]

    def __sysctl_values(self, ctx, fname):
        value = read_interface(ctx.host, fname)
        try:
            return [int(v) for v in value.split()]
        except ValueError as e:
            raise TuningError("Unexpected value in {}: {!r}".format(fname, value)) from e

    @staticmethod
    def __raised(current, target):
        # never lower a value that is already above the target
        if len(current) != len(target):
            return list(target)
        return [max(c, t) for c, t in zip(current, target)]

    def __channels_target(self, ctx, iface):
        """
        :return: (current, wanted) combined channels or None if it's not known or doesn't have to change
        """
        channels = ctx.caps.nic_tool.channels(iface.name)
        if channels is None:
            return None

        maximum, current = channels
        wanted = max(1, min(maximum, len(irq.eligible_cpus(ctx.cpu_count))))
        if maximum == 0 or current == wanted:
            return None
        return current, wanted

    def __offloads_to_enable(self, ctx, iface):
        state = ctx.caps.nic_tool.offloads(iface.name)
        return [f for f in self.offloads if f in state and not state[f]]

    def check(self, ctx):
        ifaces = self.__ifaces(ctx)

        for fname, target in self.sysctls:
            current = self.__sysctl_values(ctx, fname)
            if self.__raised(current, target) != current:
                return False

        for iface in ifaces:
            if iface.irqs and not irq.is_distributed(ctx.host, iface.irqs, ctx.cpu_count):
                return False
            if self.__channels_target(ctx, iface) or self.__offloads_to_enable(ctx, iface):
                return False

        return True

    def apply(self, ctx):
        ifaces = self.__ifaces(ctx)

        for fname, target in self.sysctls:
            current = self.__sysctl_values(ctx, fname)
            wanted = self.__raised(current, target)
            if wanted != current:
                ctx.host.fwriteln(fname, " ".join(str(v) for v in wanted))

        if not ctx.caps.nic_tool.available:
            logger.info("No NIC configuration tool: not changing channels and offloads")

        failed = []
        for iface in ifaces:
            try:
                self.__tune_nic(ctx, iface)
            except TuningError as e:
                logger.error("{}: {}".format(iface.name, e))
                failed.append(iface.name)

        if failed:
            raise TuningError("Failed to tune {}".format(", ".join(failed)))

    def __tune_nic(self, ctx, iface):
        nic_tool = ctx.caps.nic_tool

        channels = self.__channels_target(ctx, iface)
        if channels:
            current, wanted = channels
            logger.info("Setting the number of {} channels: {} -> {}".format(iface.name, current, wanted))
            if not nic_tool.set_channels(iface.name, wanted):
                raise TuningError("Failed to set {} channels".format(wanted))
            # the set of queue IRQs changes with the number of channels
            iface.irqs = devices.interface_irqs(ctx.host, iface.name, devices.get_irqs2procline_map(ctx.host))

        offloads = self.__offloads_to_enable(ctx, iface)
        if offloads and not nic_tool.set_offloads(iface.name, offloads):
            raise TuningError("Failed to enable {}".format(", ".join(offloads)))

        if iface.irqs:
            ban_and_distribute(ctx, iface.irqs)
        else:
            logger.info("{}: no IRQs found".format(iface.name))


################################################################################
class ClocksourceTuner(TunerUnit):
    id = 'clocksource'
    available_file = '/sys/devices/system/clocksource/clocksource0/available_clocksource'
    current_file = '/sys/devices/system/clocksource/clocksource0/current_clocksource'
    preferred = {'x86_64': 'tsc', 'aarch64': 'arch_sys_counter'}
    recommendation_if_unavailable = {
        'x86_64': "The tsc clocksource is not available. Consider using a hardware platform where the tsc clocksource "
                  "is available, or try forcing it with the tsc=reliable boot option",
        'aarch64': "The arch_sys_counter clocksource is not available",
    }

    def __init__(self, arch=None):
        self.arch = arch or platform.machine()

    def __preferred(self):
        if self.arch not in self.preferred:
            raise UnsupportedOnPlatform("Clocksource setting not available or not needed for {}".format(self.arch))
        return self.preferred[self.arch]

    def check(self, ctx):
        preferred = self.__preferred()
        return read_interface(ctx.host, self.current_file) == preferred

    def apply(self, ctx):
        preferred = self.__preferred()
        if preferred not in read_interface(ctx.host, self.available_file).split():
            raise UnsupportedOnPlatform(self.recommendation_if_unavailable[self.arch])

        ctx.host.fwriteln(self.current_file, preferred, log_message="Setting clocksource to {}".format(preferred))


################################################################################
COREDUMP_SCRIPT = """#!/bin/bash
set -o errexit
set -o nounset
set -o pipefail

CMD=${{1}}
PID=${{3}}
TIMESTAMP_UTC=$(date --utc +'%Y-%m-%d_%H:%M:%S.%N_%Z')
COREDUMP_DIR="{coredump_dir}"
COREDUMP_PATH="${{COREDUMP_DIR}}/core.${{CMD}}-${{TIMESTAMP_UTC}}-${{PID}}"

mkdir -p "${{COREDUMP_DIR}}"
logger -p user.err "Saving ${{CMD}} coredump to ${{COREDUMP_PATH}}"
cat - > "${{COREDUMP_PATH}}"
"""


class CoredumpTuner(TunerUnit):
    id = 'coredump'
    core_pattern_file = '/proc/sys/kernel/core_pattern'

    def script_path(self, ctx):
        return os.path.join(ctx.config.data_dir, 'save_coredump')

    def script(self, ctx):
        return COREDUMP_SCRIPT.format(coredump_dir=os.path.join(ctx.config.data_dir, 'coredumps'))

    def core_pattern(self, ctx):
        return "|{} %e %t %p".format(self.script_path(ctx))

    def check(self, ctx):
        if read_interface(ctx.host, self.core_pattern_file) != self.core_pattern(ctx):
            return False
        try:
            return ctx.host.read(self.script_path(ctx)) == self.script(ctx)
        except ResourceNotFound:
            return False

    def apply(self, ctx):
        ctx.host.write_file(self.script_path(ctx), self.script(ctx), mode=0o755)
        ctx.host.fwriteln(self.core_pattern_file, self.core_pattern(ctx))


class BallastFileTuner(TunerUnit):
    """Disk space reserved up front that can be freed when the data disk fills up."""
    id = 'ballast_file'
    size = 1 << 30

    def path(self, ctx):
        return os.path.join(ctx.config.data_dir, 'ballast')

    def check(self, ctx):
        return ctx.host.exists(self.path(ctx)) and ctx.host.file_size(self.path(ctx)) >= self.size

    def apply(self, ctx):
        ctx.host.fallocate(self.path(ctx), self.size)


class FstrimTuner(TunerUnit):
    """
    Periodic discard of unused blocks: the distribution's fstrim.timer if there is one, our own weekly
    timer otherwise.
    """
    id = 'fstrim'
    system_timer = 'fstrim.timer'
    own_timer = 'redpanda-fstrim.timer'
    units_dir = '/etc/systemd/system'
    service_unit = """[Unit]
Description=Redpanda Fstrim Service
Documentation=man:fstrim(8)

[Service]
Type=oneshot
ExecStart=/sbin/fstrim -av
"""
    timer_unit = """[Unit]
Description=Weekly Redpanda Fstrim Timer

[Timer]
OnCalendar=weekly
AccuracySec=1h
Persistent=true

[Install]
WantedBy=timers.target
"""

    def __timer(self, ctx):
        systemd = ctx.caps.systemd
        if not systemd.available:
            raise UnsupportedOnPlatform("systemd is not available")
        return self.system_timer if systemd.unit_exists(self.system_timer) else self.own_timer

    def check(self, ctx):
        timer = self.__timer(ctx)
        return ctx.caps.systemd.is_enabled(timer) and ctx.caps.systemd.is_active(timer)

    def apply(self, ctx):
        timer = self.__timer(ctx)
        if timer == self.own_timer:
            ctx.host.write_file(os.path.join(self.units_dir, 'redpanda-fstrim.service'), self.service_unit)
            ctx.host.write_file(os.path.join(self.units_dir, self.own_timer), self.timer_unit)
            ctx.caps.systemd.daemon_reload()

        ctx.caps.systemd.enable_now(timer)


################################################################################
REGISTRY = [
    AioEventsTuner(),
    SwappinessTuner(),
    TransparentHugepagesTuner(),
    DiskSchedulerTuner(),
    DiskNomergesTuner(),
    DiskIrqTuner(),
    CpuTuner(),
    NetworkTuner(),
    ClocksourceTuner(),
    CoredumpTuner(),
    BallastFileTuner(),
    FstrimTuner(),
    DiskWriteCacheTuner(),
]

TUNER_IDS = [unit.id for unit in REGISTRY]
