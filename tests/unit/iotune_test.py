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

import unittest

import yaml

from nodetuner import iotune

from fakehost import FakeHost


class TestResolveProfile(unittest.TestCase):
    def test_table_hit(self):
        profile = iotune.resolve_profile('aws', 'i3en.xlarge')
        self.assertEqual(profile.source, iotune.SOURCE_TABLE)
        self.assertEqual((profile.read_iops, profile.read_bandwidth, profile.write_iops, profile.write_bandwidth),
                         iotune.PROFILES['aws:i3en.xlarge'])

    def test_unknown_instance_type_is_conservative(self):
        profile = iotune.resolve_profile('aws', 'm5.large')
        self.assertEqual(profile.source, iotune.SOURCE_CONSERVATIVE)
        self.assertEqual((profile.read_iops, profile.read_bandwidth, profile.write_iops, profile.write_bandwidth),
                         (10000, 1000000000, 5000, 500000000))

    def test_no_prefix_matching(self):
        self.assertEqual(iotune.resolve_profile('aws', 'i3en').source, iotune.SOURCE_CONSERVATIVE)
        self.assertEqual(iotune.resolve_profile('gcp', 'i3en.xlarge').source, iotune.SOURCE_CONSERVATIVE)

    def test_no_provider(self):
        self.assertEqual(iotune.resolve_profile('none', 'unknown').source, iotune.SOURCE_CONSERVATIVE)


class TestWriteProfile(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()

    def tearDown(self):
        self.host.cleanup()

    def test_conservative_profile_is_written(self):
        profile = iotune.resolve_profile('none', 'unknown')
        text = iotune.write_profile(self.host, '/var/lib/redpanda', profile)

        self.assertEqual(self.host.contents(iotune.DEFAULT_PROFILE_PATH), text)
        doc = yaml.safe_load(text)
        self.assertEqual(doc, {'disks': [{'mountpoint': '/var/lib/redpanda',
                                          'read_iops': 10000,
                                          'read_bandwidth': 1000000000,
                                          'write_iops': 5000,
                                          'write_bandwidth': 500000000}]})


if __name__ == '__main__':
    unittest.main()
