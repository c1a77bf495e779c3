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

import json
import unittest

from nodetuner import executor, iotune, report
from nodetuner.environment import Environment
from nodetuner.executor import Status, TunerResult


class TestReport(unittest.TestCase):
    def setUp(self):
        self.run = executor.TuningRun()
        self.run.environment = Environment('aws', 'i3.large', 'ubuntu')
        self.run.profile = iotune.resolve_profile('aws', 'i3.large')
        self.run.results = [TunerResult('aio_events', Status.success, 'tuned'),
                            TunerResult('clocksource', Status.skipped, 'not available'),
                            TunerResult('cpu', Status.failed, 'Permission denied')]
        self.run.reboot_required = True

    def test_text(self):
        text = report.render(self.run)
        self.assertIn('Summary: 1 succeeded, 1 skipped, 1 failed', text)
        self.assertIn('REBOOT REQUIRED', text)
        self.assertIn('cpu', text)
        self.assertIn('i3.large (table)', text)

    def test_no_reboot_indicator(self):
        self.run.reboot_required = False
        self.assertNotIn('REBOOT REQUIRED', report.render(self.run))

    def test_json(self):
        doc = json.loads(report.render(self.run, 'json'))
        self.assertEqual(doc['exit_code'], executor.EXIT_FAILED)
        self.assertEqual(doc['counts'], {'success': 1, 'failed': 1, 'skipped': 1})
        self.assertTrue(doc['reboot_required'])
        self.assertEqual(doc['results'][2], {'id': 'cpu', 'status': 'failed', 'message': 'Permission denied'})
        self.assertEqual(doc['environment']['provider'], 'aws')
        self.assertEqual(doc['io_profile']['source'], 'table')

    def test_timeout(self):
        run = executor.TuningRun()
        run.timed_out = True
        self.assertEqual(json.loads(report.render(run, 'json'))['exit_code'], executor.EXIT_TIMEOUT)
        self.assertIn('timed out', report.render(run))


if __name__ == '__main__':
    unittest.main()
