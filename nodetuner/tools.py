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
Optional host tools (hwloc, ethtool, grub, systemd, irqbalance) hidden behind capability objects.

Every capability has an implementation that works without the tool so the tuners never have to
special-case a missing binary.
"""

import logging
import re
import subprocess

import psutil

from nodetuner.errors import TuningError

logger = logging.getLogger(__name__)


################################################################################
class Topology:
    """CPU topology via psutil."""
    name = 'psutil'

    def __init__(self, host):
        self.host = host

    def cpu_count(self):
        return psutil.cpu_count(logical=True) or 1


class HwlocTopology(Topology):
    name = 'hwloc'

    def cpu_count(self):
        try:
            return int(self.host.run_read_only_command(['hwloc-calc', '--number-of', 'PU', 'machine:0']).strip())
        except (subprocess.CalledProcessError, ValueError, OSError) as e:
            logger.debug("hwloc-calc failed ({}), falling back to psutil".format(e))
            return super().cpu_count()


def detect_topology(host):
    if host.which('hwloc-calc'):
        return HwlocTopology(host)
    return Topology(host)


################################################################################
class NicTool:
    """
    NIC queue and offload configuration when no NIC configuration tool is present: nothing is known and
    nothing can be changed.
    """
    name = 'none'
    available = False

    def __init__(self, host):
        self.host = host

    def channels(self, iface):
        """
        :return: (maximum, current) number of combined channels or None if unknown
        """
        return None

    def set_channels(self, iface, count):
        return False

    def offloads(self, iface):
        return {}

    def set_offloads(self, iface, features):
        return False


class EthtoolNicTool(NicTool):
    name = 'ethtool'
    available = True

    # ethtool -k long names of the offloads we turn on
    offload_names = {'tso': 'tcp-segmentation-offload',
                     'gso': 'generic-segmentation-offload',
                     'gro': 'generic-receive-offload'}

    def __run_ethtool(self, prog_args):
        """
        Returns a list of strings - each representing a single line of ethtool output.
        """
        return self.host.run_read_only_command(['ethtool'] + prog_args).splitlines()

    def channels(self, iface):
        """
        Parse 'ethtool -l' output. It has a "Pre-set maximums" section followed by a "Current hardware
        settings" section and each of them has a "Combined:" line.
        """
        try:
            lines = self.__run_ethtool(['-l', iface])
        except subprocess.CalledProcessError:
            return None

        combined = [int(m.group(1)) for m in (re.match(r'^\s*Combined:\s*(\d+)', l) for l in lines) if m]
        if len(combined) != 2:
            return None

        return combined[0], combined[1]

    def set_channels(self, iface, count):
        """
        Try 'ethtool -L <iface> combined <count>' and then the 'rx' semantics - NICs support either one.
        """
        for o in ["combined", "rx"]:
            try:
                self.host.run_one_command(['ethtool', '-L', iface, o, f"{count}"])
                return True
            except subprocess.CalledProcessError:
                pass

        return False

    def offloads(self, iface):
        try:
            lines = self.__run_ethtool(['-k', iface])
        except subprocess.CalledProcessError:
            return {}

        state = {}
        for short, long_name in self.offload_names.items():
            for l in lines:
                m = re.match(r'^\s*{}:\s*(on|off)'.format(re.escape(long_name)), l)
                if m:
                    state[short] = m.group(1) == 'on'
        return state

    def set_offloads(self, iface, features):
        args = ['ethtool', '-K', iface]
        for f in features:
            args += [f, 'on']
        try:
            self.host.run_one_command(args)
            return True
        except subprocess.CalledProcessError:
            return False


def detect_nic_tool(host):
    if host.which('ethtool'):
        return EthtoolNicTool(host)
    return NicTool(host)


################################################################################
class Bootloader:
    """Regenerates the boot configuration after /etc/default/grub has been edited."""
    name = 'manual'

    def __init__(self, host):
        self.host = host

    def update(self):
        logger.warning("No bootloader configuration tool found: regenerate the boot configuration manually")


class GrubBootloader(Bootloader):
    def __init__(self, host, command):
        super().__init__(host)
        self.command = command
        self.name = command[0]

    def update(self):
        self.host.run_one_command(self.command)


def detect_bootloader(host):
    if host.which('update-grub'):
        return GrubBootloader(host, ['update-grub'])
    if host.which('grub2-mkconfig'):
        return GrubBootloader(host, ['grub2-mkconfig', '-o', '/boot/grub2/grub.cfg'])
    return Bootloader(host)


################################################################################
class Systemd:
    def __init__(self, host):
        self.host = host

    @property
    def available(self):
        return self.host.which('systemctl')

    def __systemctl(self, args, mutating=False):
        if mutating:
            return self.host.run_one_command(['systemctl'] + args)
        return self.host.run_read_only_command(['systemctl'] + args, check=False)

    def unit_exists(self, unit):
        out = self.__systemctl(['list-unit-files', '--no-legend', unit])
        return any(l.split()[0] == unit for l in out.splitlines() if l.strip())

    def is_enabled(self, unit):
        return self.__systemctl(['is-enabled', unit]).strip() == 'enabled'

    def is_active(self, unit):
        return self.__systemctl(['is-active', unit]).strip() == 'active'

    def daemon_reload(self):
        self.__systemctl(['daemon-reload'], mutating=True)

    def enable_now(self, unit):
        self.__systemctl(['enable', '--now', unit], mutating=True)


################################################################################
def is_process_running(host, name):
    try:
        out = host.run_read_only_command(['ps', '--no-headers', '-C', name], check=False)
    except OSError as e:
        logger.debug("Can't check if {} is running: {}".format(name, e))
        return False
    return len([l for l in out.splitlines() if '<defunct>' not in l]) > 0


def irqbalance_config(host):
    """
    :return: (config file, options key, systemd) for the installed irqbalance packaging or None if unknown
    """
    config_file = '/etc/default/irqbalance'
    options_key = 'OPTIONS'
    systemd = False

    # A "new (systemd) style" irqbalance packaging uses IRQBALANCE_ARGS as an option key name,
    # "old (init.d) style" packaging uses an OPTIONS key.
    if host.exists('/lib/systemd/system/irqbalance.service') or \
        host.exists('/usr/lib/systemd/system/irqbalance.service'):
        options_key = 'IRQBALANCE_ARGS'
        systemd = True

    if not host.exists(config_file):
        if host.exists('/etc/sysconfig/irqbalance'):
            config_file = '/etc/sysconfig/irqbalance'
        elif host.exists('/etc/conf.d/irqbalance'):
            config_file = '/etc/conf.d/irqbalance'
            options_key = 'IRQBALANCE_OPTS'
            systemd = 'systemd' in host.readline('/proc/1/comm')
        else:
            return None

    return config_file, options_key, systemd


def ban_irqs(host, banned_irqs):
    """
    Ban the given IRQs in the irqbalance configuration and restart it if it's running, so that it
    doesn't move them away from the CPUs we bind them to.

    :return: True if the configuration has been changed
    """
    banned_irqs_list = [str(irq) for irq in banned_irqs]

    # If there is nothing to ban - quit
    if not banned_irqs_list:
        return False

    if not is_process_running(host, 'irqbalance'):
        logger.debug("irqbalance is not running")
        return False

    conf = irqbalance_config(host)
    if conf is None:
        logger.warning("Unknown irqbalance configuration: you have to prevent it from moving IRQs {} manually!".format(banned_irqs_list))
        return False

    config_file, options_key, systemd = conf
    cfile_lines = host.readlines(config_file)

    # Search for the original options line
    opt_lines = [line for line in cfile_lines if re.search(r"^\s*{}".format(options_key), line)]
    if not opt_lines:
        new_options = "{}=\"".format(options_key)
    elif len(opt_lines) == 1:
        # cut the last "
        new_options = re.sub(r'"\s*$', "", opt_lines[0].rstrip())
    else:
        raise TuningError("Invalid format in {}: more than one lines with {} key".format(config_file, options_key))

    changed = False
    for irq in banned_irqs_list:
        # prevent duplicate "ban" entries for the same IRQ
        opt = f"--banirq={irq}"
        if not re.search(rf"{opt}\Z|{opt}\s", new_options):
            new_options += f" {opt}"
            changed = True

    if not changed:
        return False

    orig_file = "{}.nodetuner.orig".format(config_file)
    if not host.exists(orig_file):
        logger.info("Saving the original irqbalance configuration in {}".format(orig_file))
        host.copyfile(config_file, orig_file)

    new_options += "\""
    logger.info("Restarting irqbalance: going to ban the following IRQ numbers: {} ...".format(", ".join(banned_irqs_list)))
    new_contents = "".join(line for line in cfile_lines if not re.search(r"^\s*{}".format(options_key), line))
    host.write_file(config_file, new_contents + new_options + "\n")

    if systemd:
        host.run_one_command(['systemctl', 'try-restart', 'irqbalance'])
    else:
        host.run_one_command(['/etc/init.d/irqbalance', 'restart'])

    return True


class Capabilities:
    """The set of optional host tools a run can use."""
    def __init__(self, topology, nic_tool, bootloader, systemd):
        self.topology = topology
        self.nic_tool = nic_tool
        self.bootloader = bootloader
        self.systemd = systemd

    @classmethod
    def detect(cls, host):
        caps = cls(detect_topology(host), detect_nic_tool(host), detect_bootloader(host), Systemd(host))
        logger.debug("Capabilities: topology={}, nic tool={}, bootloader={}, systemd={}".format(
            caps.topology.name, caps.nic_tool.name, caps.bootloader.name, caps.systemd.available))
        return caps
