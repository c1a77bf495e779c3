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

import http.client
import unittest
import urllib.error
from unittest import mock

from nodetuner import environment
from nodetuner.errors import DetectionFailure

from fakehost import FakeHost


class FailingProbe(environment.MetadataProbe):
    provider = 'aws'

    def instance_type(self):
        raise DetectionFailure("timed out")


class GcpFakeProbe(environment.MetadataProbe):
    provider = 'gcp'

    def instance_type(self):
        return 'n2-standard-8'


class TestDetect(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.host.add_file('/etc/os-release', 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n')

    def tearDown(self):
        self.host.cleanup()

    def test_overrides_win(self):
        with mock.patch('urllib.request.urlopen') as urlopen:
            env = environment.detect(self.host, 'aws', 'i3.large')
        urlopen.assert_not_called()
        self.assertEqual(env, environment.Environment('aws', 'i3.large', 'ubuntu'))

    def test_no_provider(self):
        with mock.patch('urllib.request.urlopen') as urlopen:
            env = environment.detect(self.host, 'none')
        urlopen.assert_not_called()
        self.assertEqual(env.provider, 'none')
        self.assertEqual(env.instance_type, 'unknown')

    def test_probe_failures_are_not_fatal(self):
        with mock.patch('urllib.request.urlopen', side_effect=urllib.error.URLError('unreachable')):
            env = environment.detect(self.host)
        self.assertEqual(env, environment.Environment('none', 'unknown', 'ubuntu'))

    def test_first_answering_probe_wins(self):
        env = environment.detect(self.host, probes=[FailingProbe, GcpFakeProbe])
        self.assertEqual(env.provider, 'gcp')
        self.assertEqual(env.instance_type, 'n2-standard-8')

    def test_instance_type_override_with_probed_provider(self):
        env = environment.detect(self.host, instance_type='n2-standard-2', probes=[GcpFakeProbe])
        self.assertEqual((env.provider, env.instance_type), ('gcp', 'n2-standard-2'))

    def test_gcp_machine_type(self):
        res = mock.MagicMock()
        res.__enter__.return_value.read.return_value = b'projects/1234/machineTypes/n2-standard-16\n'
        with mock.patch('urllib.request.urlopen', return_value=res):
            self.assertEqual(environment.GcpProbe().instance_type(), 'n2-standard-16')

    def test_misbehaving_endpoint_is_not_this_provider(self):
        with mock.patch('urllib.request.urlopen', side_effect=http.client.BadStatusLine('garbage')):
            env = environment.detect(self.host)
        self.assertEqual(env.provider, 'none')

        res = mock.MagicMock()
        res.__enter__.return_value.read.return_value = b'\xff\xfe\xfa'
        with mock.patch('urllib.request.urlopen', return_value=res):
            with self.assertRaises(DetectionFailure):
                environment.AzureProbe().instance_type()


class TestDistro(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()

    def tearDown(self):
        self.host.cleanup()

    def test_os_release(self):
        self.host.add_file('/etc/os-release', 'ID="rocky"\n')
        self.assertEqual(environment.detect_distro(self.host), 'rocky')

    def test_fallbacks(self):
        self.assertEqual(environment.detect_distro(self.host), 'unknown')
        self.host.add_file('/etc/debian_version', '12.1\n')
        self.assertEqual(environment.detect_distro(self.host), 'debian')


if __name__ == '__main__':
    unittest.main()
