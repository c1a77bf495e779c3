#!/usr/bin/env python3
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

import os
import unittest
from unittest import mock

from nodetuner import devices

from fakehost import FakeHost


class TestStripPartition(unittest.TestCase):
    def test_nvme(self):
        self.assertEqual(devices.strip_partition('nvme0n1p1'), 'nvme0n1')
        self.assertEqual(devices.strip_partition('/dev/nvme12n3p15'), 'nvme12n3')

    def test_classic(self):
        self.assertEqual(devices.strip_partition('sda1'), 'sda')
        self.assertEqual(devices.strip_partition('vda12'), 'vda')
        self.assertEqual(devices.strip_partition('/dev/xvdb3'), 'xvdb')

    def test_base_devices_are_unchanged(self):
        for name in ('nvme0n1', 'sda', 'dm-0', 'md0p'):
            self.assertEqual(devices.strip_partition(name), name)


class TestResolveBlockDevices(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()

    def tearDown(self):
        self.host.cleanup()

    def test_explicit_devices_are_used_verbatim(self):
        with mock.patch.object(devices, 'device_nodes_for_directory') as lookup:
            devs = devices.resolve_block_devices(self.host, ['/var/lib/redpanda'], ['nvme0n1', '/dev/sdb1'])
        lookup.assert_not_called()
        self.assertEqual([d.name for d in devs], ['nvme0n1', 'sdb1'])

    def test_directories_on_the_same_disk_are_deduplicated(self):
        nodes = {'/data1': ['/dev/nvme0n1p1'], '/data2': ['/dev/nvme0n1p2'], '/data3': ['/dev/sdb']}
        with mock.patch.object(devices, 'device_nodes_for_directory', side_effect=lambda host, d, ctx: nodes[d]):
            devs = devices.resolve_block_devices(self.host, ['/data1', '/data2', '/data3'], [])

        self.assertEqual(devs, [devices.BlockDevice('nvme0n1', ['/data1', '/data2']),
                                devices.BlockDevice('sdb', ['/data3'])])

    def test_falls_back_to_all_devices(self):
        with mock.patch.object(devices, 'device_nodes_for_directory', return_value=[]), \
             mock.patch.object(devices, 'all_block_devices', return_value=['nvme0n1', 'nvme1n1']):
            devs = devices.resolve_block_devices(self.host, ['/missing'], [])

        self.assertEqual([d.name for d in devs], ['nvme0n1', 'nvme1n1'])

    def test_missing_directory(self):
        self.assertEqual(devices.device_nodes_for_directory(self.host, '/does/not/exist'), [])


class TestIrqDiscovery(unittest.TestCase):
    interrupts = """           CPU0       CPU1
  24:          0          0   PCI-MSI 65536-edge      nvme0q0
  25:       1000          0   PCI-MSI 65537-edge      nvme0q1
  26:          0       1000   PCI-MSI 65538-edge      nvme0q2
  30:          5          0   PCI-MSI 81920-edge      eth0
  31:        100          0   PCI-MSI 81921-edge      eth0-TxRx-0
  32:        100          0   PCI-MSI 81922-edge      eth0-TxRx-1
 NMI:          0          0   Non-maskable interrupts
"""

    def setUp(self):
        self.host = FakeHost()
        self.host.add_file('/proc/interrupts', self.interrupts)

        pci_dir = '/sys/devices/pci0000:00/0000:00:04.0'
        for n in ('24', '25', '26'):
            self.host.add_file(os.path.join(pci_dir, 'msi_irqs', n))
        self.host.add_dir(os.path.join(pci_dir, 'nvme', 'nvme0'))
        self.host.add_dir('/sys/block/nvme0n1')
        os.symlink(self.host.path(os.path.join(pci_dir, 'nvme', 'nvme0')), self.host.path('/sys/block/nvme0n1/device'))

        for n in ('30', '31', '32'):
            self.host.add_file(os.path.join('/sys/class/net/eth0/device/msi_irqs', n))
        self.host.add_dir('/sys/class/net/docker0')
        self.host.add_dir('/sys/class/net/lo')

    def tearDown(self):
        self.host.cleanup()

    def test_irq_map_keys(self):
        irq2procline = devices.get_irqs2procline_map(self.host)
        self.assertIn('24', irq2procline)
        self.assertIn('NMI', irq2procline)

    def test_device_irqs_from_the_pci_parent(self):
        irq2procline = devices.get_irqs2procline_map(self.host)
        self.assertEqual(devices.device_irqs(self.host, devices.BlockDevice('nvme0n1'), irq2procline), ['24', '25', '26'])

    def test_device_irqs_from_proc_interrupts(self):
        irq2procline = devices.get_irqs2procline_map(self.host)
        self.assertEqual(devices.device_irqs(self.host, devices.BlockDevice('nvme0q1'), irq2procline), ['25'])

    def test_fast_path_interface_irqs(self):
        irq2procline = devices.get_irqs2procline_map(self.host)
        self.assertEqual(devices.interface_irqs(self.host, 'eth0', irq2procline), ['31', '32'])

    def test_resolve_interfaces(self):
        ifaces = devices.resolve_interfaces(self.host, [])
        self.assertEqual([i.name for i in ifaces], ['eth0'])
        self.assertTrue(ifaces[0].is_hw)
        self.assertEqual(ifaces[0].irqs, ['31', '32'])

    def test_explicit_interfaces(self):
        ifaces = devices.resolve_interfaces(self.host, ['docker0'])
        self.assertEqual([i.name for i in ifaces], ['docker0'])
        self.assertFalse(ifaces[0].is_hw)
        self.assertEqual(ifaces[0].irqs, [])


if __name__ == '__main__':
    unittest.main()
