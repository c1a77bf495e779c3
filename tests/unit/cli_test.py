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

import io
import unittest
from unittest import mock

import yaml

from nodetuner import cli, executor
from nodetuner.errors import LockHeld
from nodetuner.executor import Status, TunerResult


class TestCli(unittest.TestCase):
    def main(self, argv, environ=None):
        with mock.patch('sys.stdout', new_callable=io.StringIO) as out, \
             mock.patch('sys.stderr', new_callable=io.StringIO):
            code = cli.main(argv, environ or {})
        return code, out.getvalue()

    def test_dump_options_file(self):
        code, out = self.main(['--dump-options-file', '--nic', 'eth0', '--nic', 'eth1', '--timeout', '5m'],
                              {'TUNE_GRUB': 'true', 'NICS': 'eth9'})
        self.assertEqual(code, 0)
        doc = yaml.safe_load(out)
        self.assertEqual(doc['nic'], ['eth0', 'eth1'])
        self.assertEqual(doc['timeout'], 300.0)
        self.assertTrue(doc['tune_boot_params'])

    def test_config_error(self):
        code, out = self.main(['--enable', 'warp_drive'])
        self.assertEqual(code, executor.EXIT_CONFIG_ERROR)

        code, out = self.main([], {'CHECK_ONLY': 'sometimes'})
        self.assertEqual(code, executor.EXIT_CONFIG_ERROR)

    def test_enable_all(self):
        args = cli.make_parser().parse_args(['--enable', 'all', '--disable', 'fstrim'])
        config = cli.build_config(args, {'ENABLED_TUNERS': 'cpu'})
        self.assertEqual(config.enabled_tuners, [])
        self.assertTrue(config.is_enabled('cpu'))
        self.assertTrue(config.is_enabled('swappiness'))
        self.assertFalse(config.is_enabled('fstrim'))

    def test_lock_held(self):
        with mock.patch.object(cli.orchestrator, 'run', side_effect=LockHeld("busy")):
            code, out = self.main(['--state-store', 'memory'])
        self.assertEqual(code, executor.EXIT_LOCKED)

    def test_run(self):
        run = executor.TuningRun()
        run.results = [TunerResult('aio_events', Status.success, 'tuned'), TunerResult('cpu', Status.failed, 'nope')]

        with mock.patch.object(cli.orchestrator, 'run', return_value=run) as orchestrate:
            code, out = self.main(['--dir', '/mnt/data', '--output-format', 'json', '--check-only'])

        config = orchestrate.call_args[0][0]
        self.assertEqual(config.dirs, ['/mnt/data'])
        self.assertTrue(config.check_only)
        self.assertEqual(code, executor.EXIT_FAILED)
        self.assertIn('"failed": 1', out)


if __name__ == '__main__':
    unittest.main()
