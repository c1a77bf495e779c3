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
from unittest import mock

from nodetuner import state
from nodetuner.errors import StateStoreError

from fakehost import FakeHost


class TestFileStateStore(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.store = state.FileStateStore(self.host, '/var/lib/nodetuner')

    def tearDown(self):
        self.host.cleanup()

    def test_get_set_remove(self):
        self.assertIsNone(self.store.get('node-1', state.TUNED))

        self.store.set('node-1', state.TUNED, 'true')
        self.store.set('node-1', state.TUNED_TIMESTAMP, '2024-01-01T00:00:00Z')
        self.assertEqual(self.store.get('node-1', state.TUNED), 'true')
        self.assertTrue(self.host.exists('/var/lib/nodetuner/node-1.yaml'))

        self.store.remove('node-1', state.TUNED)
        self.assertIsNone(self.store.get('node-1', state.TUNED))
        self.assertEqual(self.store.get('node-1', state.TUNED_TIMESTAMP), '2024-01-01T00:00:00Z')
        self.store.remove('node-1', 'never-set')

    def test_nodes_are_separate(self):
        self.store.set('node-1', state.TUNED, 'true')
        self.assertIsNone(self.store.get('node-2', state.TUNED))

    def test_corrupted_state(self):
        self.host.add_file('/var/lib/nodetuner/node-1.yaml', '- just\n- a list\n')
        with self.assertRaises(StateStoreError):
            self.store.get('node-1', state.TUNED)


class TestNodeState(unittest.TestCase):
    def setUp(self):
        self.store = state.MemoryStateStore()
        self.node_state = state.NodeState(self.store, 'node-1')

    def test_flags(self):
        self.assertFalse(self.node_state.tuned)

        self.node_state.mark_tuned()
        self.node_state.mark_iotune_completed()
        self.node_state.mark_reboot_required()
        self.assertTrue(self.node_state.tuned)
        self.assertTrue(self.node_state.iotune_completed)
        self.assertEqual(self.store.get('node-1', state.REBOOT_REQUIRED), 'true')
        self.assertRegex(self.store.get('node-1', state.TUNED_TIMESTAMP), r'^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ$')

    def test_reset(self):
        self.node_state.mark_tuned()
        self.node_state.mark_attempted()
        self.node_state.mark_iotune_completed()
        self.node_state.mark_reboot_required()
        self.store.set('node-1', 'unrelated', 'x')

        self.node_state.reset()
        self.assertEqual(self.store.nodes['node-1'], {'unrelated': 'x'})

    def test_other_values_are_false(self):
        self.store.set('node-1', state.TUNED, 'false')
        self.assertFalse(self.node_state.tuned)


def response(status_code=200, body=None):
    res = mock.Mock()
    res.status_code = status_code
    res.ok = status_code < 400
    res.text = ''
    res.json.return_value = body or {}
    return res


class TestKubernetesStateStore(unittest.TestCase):
    def setUp(self):
        self.session = mock.MagicMock()
        self.session.headers = {}
        self.store = state.KubernetesStateStore(api_server='https://10.0.0.1:443', token='secret',
                                                ca_cert='/nonexistent/ca.crt', namespace='redpanda',
                                                session=self.session)

    def test_auth(self):
        self.assertEqual(self.session.headers['Authorization'], 'Bearer secret')

    def test_get(self):
        self.session.request.return_value = response(body={'metadata': {'annotations': {'redpanda.com/tuned': 'true'}}})
        self.assertEqual(self.store.get('node-1', state.TUNED), 'true')
        self.assertIsNone(self.store.get('node-1', state.IOTUNE_COMPLETED))
        self.session.request.assert_called_with('GET', 'https://10.0.0.1:443/api/v1/nodes/node-1', timeout=10)

    def test_set_and_remove(self):
        self.session.request.return_value = response()
        self.store.set('node-1', state.TUNED, 'true')
        method, url = self.session.request.call_args[0]
        self.assertEqual((method, url), ('PATCH', 'https://10.0.0.1:443/api/v1/nodes/node-1'))
        self.assertEqual(self.session.request.call_args[1]['json'], {'metadata': {'annotations': {'redpanda.com/tuned': 'true'}}})
        self.assertEqual(self.session.request.call_args[1]['headers'], {'Content-Type': 'application/merge-patch+json'})

        self.store.remove('node-1', state.TUNED)
        self.assertEqual(self.session.request.call_args[1]['json'], {'metadata': {'annotations': {'redpanda.com/tuned': None}}})

    def test_api_errors(self):
        self.session.request.return_value = response(403)
        with self.assertRaises(StateStoreError):
            self.store.set('node-1', state.TUNED, 'true')

    def test_event_failures_are_not_fatal(self):
        self.session.request.return_value = response(500)
        self.store.publish_event('node-1', 'TuningCompleted', 'done')

        body = self.session.request.call_args[1]['json']
        self.assertEqual(body['involvedObject'], {'kind': 'Node', 'name': 'node-1'})
        self.assertEqual(body['metadata']['namespace'], 'redpanda')

    def test_event_names_are_generated_by_the_api_server(self):
        self.session.request.return_value = response(201)
        self.store.publish_event('node-1', 'IotuneCompleted', 'written')
        self.store.publish_event('node-1', 'TuningCompleted', 'done')

        bodies = [c[1]['json'] for c in self.session.request.call_args_list]
        self.assertEqual([b['reason'] for b in bodies], ['IotuneCompleted', 'TuningCompleted'])
        for body in bodies:
            self.assertNotIn('name', body['metadata'])
            self.assertEqual(body['metadata']['generateName'], 'redpanda-tuner.node-1.')

    def test_store_profile_creates_config_map(self):
        self.session.request.side_effect = [response(404), response(201)]
        self.store.store_profile('node-1', 'disks: []\n')

        method, url = self.session.request.call_args[0]
        self.assertEqual((method, url), ('POST', 'https://10.0.0.1:443/api/v1/namespaces/redpanda/configmaps'))
        body = self.session.request.call_args[1]['json']
        self.assertEqual(body['metadata']['name'], 'redpanda-iotune-results')
        self.assertEqual(body['data'], {'node-1.yaml': 'disks: []\n'})


if __name__ == '__main__':
    unittest.main()
