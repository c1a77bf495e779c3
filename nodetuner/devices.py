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

import logging
import os
import re
import subprocess

import psutil
import pyudev

logger = logging.getLogger(__name__)

nvme_partition_re = re.compile(r'^(nvme\d+n\d+)p\d+$')
classic_partition_re = re.compile(r'^([a-z]+)\d+$')
excluded_block_re = re.compile(r'^(loop|ram)')
excluded_iface_re = re.compile(r'^(lo$|docker|br-|veth)')
fp_irqs_re = re.compile(r"-TxRx-|-fp-|-Tx-Rx-|mlx4-\d+@|mlx5_comp\d+@|virtio\d+-(input|output)")


def strip_partition(device):
    """
    Reduce a partition name to the name of the disk it lives on:
      nvme0n1p1 -> nvme0n1
      sda1 -> sda, vda1 -> vda
    Anything else is assumed to already be a disk and is returned as is.
    """
    name = os.path.basename(device)

    m = nvme_partition_re.match(name)
    if m:
        return m.group(1)

    m = classic_partition_re.match(name)
    if m:
        return m.group(1)

    return name


class BlockDevice:
    def __init__(self, name, dirs=None):
        self.name = name
        self.dirs = list(dirs or [])
        self.irqs = []

    def __repr__(self):
        return "BlockDevice({!r}, dirs={!r})".format(self.name, self.dirs)

    def __eq__(self, other):
        return isinstance(other, BlockDevice) and self.name == other.name and self.dirs == other.dirs

    @property
    def sysfs_path(self):
        return "/sys/block/{}".format(self.name)

    @property
    def scheduler_file(self):
        return os.path.join(self.sysfs_path, 'queue', 'scheduler')

    @property
    def nomerges_file(self):
        return os.path.join(self.sysfs_path, 'queue', 'nomerges')

    @property
    def write_cache_file(self):
        return os.path.join(self.sysfs_path, 'queue', 'write_cache')

    @property
    def is_nvme(self):
        return self.name.startswith('nvme')


class NetworkInterface:
    def __init__(self, name, irqs=None, is_hw=False):
        self.name = name
        self.irqs = list(irqs or [])
        self.is_hw = is_hw

    def __repr__(self):
        return "NetworkInterface({!r}, irqs={!r})".format(self.name, self.irqs)


################################################################################
def __phys_devices(udev_context, udev_obj):
    # if device is a virtual device (LVM, MD RAID) - the underlying physical devices are going to be its slaves
    if re.search(r'virtual', udev_obj.sys_path):
        slaves_dir = os.path.join(udev_obj.sys_path, 'slaves')
        slaves = os.listdir(slaves_dir) if os.path.isdir(slaves_dir) else []
        if slaves:
            devs = []
            for slave in slaves:
                devs += __phys_devices(udev_context, pyudev.Devices.from_device_file(udev_context, "/dev/{}".format(slave)))
            return devs

    return [udev_obj.device_node]


def device_nodes_for_directory(host, directory, udev_context=None, recur=False):
    """
    Returns the device nodes the given directory is mounted on (there will be more than one if
    the mount point is on a RAID volume).
    """
    if not host.exists(directory):
        if not recur:
            logger.warning("{} doesn't exist - skipping".format(directory))
        return []

    udev_context = udev_context or pyudev.Context()
    try:
        udev_obj = pyudev.Devices.from_device_number(udev_context, 'block', os.stat(host.path(directory)).st_dev)
        return __phys_devices(udev_context, udev_obj)
    except (pyudev.DeviceNotFoundError, ValueError, OSError) as e:
        logger.debug("udev lookup for {} failed: {}".format(directory, e))

    # handle cases like ecryptfs where the directory is mounted to another directory and not to some block device
    try:
        df_path = directory if host.nsenter else host.path(directory)
        filesystem = host.run_read_only_command(['df', '-P', df_path]).splitlines()[-1].split()[0].strip()
    except (subprocess.CalledProcessError, IndexError, OSError) as e:
        logger.warning("Can't get a block device for {}: {}".format(directory, e))
        return []

    if filesystem.startswith('/dev/'):
        return [host.realpath(filesystem)]

    devs = [] if recur else device_nodes_for_directory(host, filesystem, udev_context, recur=True)
    if not recur and not devs:
        logger.warning("Can't get a block device for {} - skipping".format(directory))

    return devs


def all_block_devices(udev_context=None):
    """
    All disks known to udev except loopback and RAM devices.
    """
    udev_context = udev_context or pyudev.Context()
    names = {d.sys_name for d in udev_context.list_devices(subsystem='block', DEVTYPE='disk')}
    return sorted(n for n in names if not excluded_block_re.match(n))


def resolve_block_devices(host, dirs, devices, udev_context=None):
    """
    Map the configured directories or the explicit device list to disks.

    An explicit device list is used verbatim. Directories are resolved to the disks backing them with
    partitions stripped, so directories sharing a disk yield a single BlockDevice. If nothing resolves,
    every disk on the host is returned.
    """
    if devices:
        return [BlockDevice(os.path.basename(d)) for d in devices]

    resolved = {}
    for directory in dirs:
        for node in device_nodes_for_directory(host, directory, udev_context):
            name = strip_partition(node)
            if name not in resolved:
                resolved[name] = BlockDevice(name)
            if directory not in resolved[name].dirs:
                resolved[name].dirs.append(directory)

    if resolved:
        return list(resolved.values())

    logger.warning("No block devices were resolved from {}: using all block devices".format(list(dirs)))
    return [BlockDevice(name) for name in all_block_devices(udev_context)]


################################################################################
def get_irqs2procline_map(host):
    return {line.split(':')[0].strip(): line for line in host.readlines('/proc/interrupts') if ':' in line}


def learn_irqs_from_proc_interrupts(pattern, irq2procline):
    return [irq for irq, proc_line in irq2procline.items() if re.search(pattern, proc_line)]


def learn_all_irqs_one(host, irq_conf_dir):
    """
    Returns a list of IRQs of a single device or an empty list if the device doesn't expose them.

    irq_conf_dir: a /sys/... directory with the IRQ information for the given device
    """
    msi_irqs_dir_name = os.path.join(irq_conf_dir, 'msi_irqs')
    # Device uses MSI IRQs
    if host.isdir(msi_irqs_dir_name):
        return host.listdir(msi_irqs_dir_name)

    irq_file_name = os.path.join(irq_conf_dir, 'irq')
    # Device uses INT#x
    if host.exists(irq_file_name):
        return [line.strip() for line in host.readlines(irq_file_name) if line.strip() not in ('', '0')]

    return []


def __sort_irqs(irqs):
    return sorted({irq for irq in irqs if irq.isdigit()}, key=int)


def device_irqs(host, device, irq2procline):
    """
    Learn the IRQs of a disk: the closest ancestor of its sysfs device directory that has IRQ information
    (usually the PCI controller) wins. If there isn't any, look for the device name in /proc/interrupts.
    """
    dev_dir = os.path.join(device.sysfs_path, 'device')
    if host.exists(dev_dir):
        sys_path = host.realpath(dev_dir)
        while sys_path.startswith('/sys/devices/'):
            irqs = learn_all_irqs_one(host, sys_path)
            if irqs:
                if irq2procline:
                    irqs = [irq for irq in irqs if irq in irq2procline]
                return __sort_irqs(irqs)
            sys_path = os.path.dirname(sys_path)

    return __sort_irqs(learn_irqs_from_proc_interrupts(r'\b{}'.format(re.escape(device.name)), irq2procline))


def interface_irqs(host, iface, irq2procline):
    """
    Returns the IRQs of a NIC. If some of them follow a known fast path queue naming pattern only those are
    returned, otherwise all of them.
    """
    all_irqs = learn_all_irqs_one(host, "/sys/class/net/{}/device".format(iface))
    if irq2procline:
        all_irqs = [irq for irq in all_irqs if irq in irq2procline]
    if not all_irqs:
        all_irqs = learn_irqs_from_proc_interrupts(r'\b{}\b'.format(re.escape(iface)), irq2procline)

    fp_irqs = [irq for irq in all_irqs if fp_irqs_re.search(irq2procline.get(irq, ''))]
    return __sort_irqs(fp_irqs or all_irqs)


def discover_interfaces(host):
    """
    All link-layer interfaces except loopback, container bridges and veth pairs.
    """
    if host.root == '/' and not host.nsenter:
        names = list(psutil.net_if_stats().keys())
    else:
        names = [n for n in host.listdir('/sys/class/net') if host.isdir(os.path.join('/sys/class/net', n))]

    return sorted(n for n in names if not excluded_iface_re.match(n))


def resolve_interfaces(host, nics, irq2procline=None):
    if irq2procline is None:
        irq2procline = get_irqs2procline_map(host)

    names = list(nics) if nics else discover_interfaces(host)
    ifaces = []
    for name in names:
        ifaces.append(NetworkInterface(name,
                                       irqs=interface_irqs(host, name, irq2procline),
                                       is_hw=host.exists("/sys/class/net/{}/device".format(name))))

    return ifaces


def resolve(host, dirs, devices, nics, udev_context=None):
    """
    :return: (block devices with their IRQs, network interfaces)
    """
    irq2procline = get_irqs2procline_map(host)
    block_devices = resolve_block_devices(host, dirs, devices, udev_context)
    for dev in block_devices:
        dev.irqs = device_irqs(host, dev, irq2procline)

    ifaces = resolve_interfaces(host, nics, irq2procline)

    logger.info("Block devices: {}".format(", ".join(d.name for d in block_devices) or "none"))
    logger.info("Network interfaces: {}".format(", ".join(i.name for i in ifaces) or "none"))
    return block_devices, ifaces
