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
Per-node idempotency flags.

The flags outlive a single run: a node that has been tuned isn't tuned again until a force-retune
request clears them. Where they are kept is up to the StateStore backend.
"""

import datetime
import logging
import os

import requests
import yaml

from nodetuner.errors import StateStoreError

logger = logging.getLogger(__name__)

TUNED = 'tuned'
TUNED_TIMESTAMP = 'tuned-timestamp'
TUNE_ATTEMPTED = 'tune-attempted'
TUNE_ATTEMPTED_TIMESTAMP = 'tune-attempted-timestamp'
IOTUNE_COMPLETED = 'iotune-completed'
IOTUNE_TIMESTAMP = 'iotune-timestamp'
REBOOT_REQUIRED = 'reboot-required'

# removed by a force-retune request
RESET_KEYS = [TUNED, TUNED_TIMESTAMP, TUNE_ATTEMPTED, TUNE_ATTEMPTED_TIMESTAMP,
              IOTUNE_COMPLETED, IOTUNE_TIMESTAMP, REBOOT_REQUIRED]

TRUE = 'true'


def utc_timestamp():
    return datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class StateStore:
    """Key/value flags per node."""
    name = None

    def get(self, node, key):
        """
        :return: the value or None if the key is not set
        """
        raise NotImplementedError()

    def set(self, node, key, value):
        raise NotImplementedError()

    def remove(self, node, key):
        raise NotImplementedError()

    def publish_event(self, node, reason, message, event_type='Normal'):
        logger.debug("Event {} ({}): {}".format(reason, event_type, message))

    def store_profile(self, node, text):
        pass


class MemoryStateStore(StateStore):
    name = 'memory'

    def __init__(self):
        self.nodes = {}
        self.events = []
        self.profiles = {}

    def get(self, node, key):
        return self.nodes.get(node, {}).get(key)

    def set(self, node, key, value):
        self.nodes.setdefault(node, {})[key] = value

    def remove(self, node, key):
        self.nodes.get(node, {}).pop(key, None)

    def publish_event(self, node, reason, message, event_type='Normal'):
        super().publish_event(node, reason, message, event_type)
        self.events.append((node, reason, message, event_type))

    def store_profile(self, node, text):
        self.profiles[node] = text


class FileStateStore(StateStore):
    """A YAML document per node in a state directory on the host."""
    name = 'file'

    def __init__(self, host, state_dir):
        self.host = host
        self.state_dir = state_dir

    def __fname(self, node):
        return os.path.join(self.state_dir, "{}.yaml".format(node))

    def __load(self, node):
        fname = self.__fname(node)
        if not self.host.exists(fname):
            return {}

        try:
            with open(self.host.path(fname)) as f:
                doc = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StateStoreError("Can't read {}: {}".format(fname, e)) from e

        if doc is None:
            return {}
        if not isinstance(doc, dict):
            raise StateStoreError("Bad state file {}: a mapping is expected".format(fname))
        return doc

    def __save(self, node, doc):
        fname = self.__fname(node)
        try:
            os.makedirs(self.host.path(self.state_dir), exist_ok=True)
            with open(self.host.path(fname), 'w') as f:
                yaml.safe_dump(doc, f, default_flow_style=False)
        except OSError as e:
            raise StateStoreError("Can't write {}: {}".format(fname, e)) from e

    def get(self, node, key):
        value = self.__load(node).get(key)
        return None if value is None else str(value)

    def set(self, node, key, value):
        doc = self.__load(node)
        doc[key] = value
        self.__save(node, doc)

    def remove(self, node, key):
        doc = self.__load(node)
        if key in doc:
            del doc[key]
            self.__save(node, doc)

    def store_profile(self, node, text):
        # the profile artifact itself is already on the host
        pass


class KubernetesStateStore(StateStore):
    """
    Node annotations (redpanda.com/<key>) through the Kubernetes API server, authenticated with the pod's
    service account. Events are attached to the Node object and I/O profiles are collected in a ConfigMap.
    """
    name = 'kubernetes'
    annotation_prefix = 'redpanda.com/'
    profiles_config_map = 'redpanda-iotune-results'
    event_source = 'redpanda-tuner'
    service_account_dir = '/var/run/secrets/kubernetes.io/serviceaccount'

    def __init__(self, api_server=None, token=None, ca_cert=None, namespace=None, timeout=10, session=None):
        if api_server is None:
            host = os.environ.get('KUBERNETES_SERVICE_HOST')
            port = os.environ.get('KUBERNETES_SERVICE_PORT', '443')
            if not host:
                raise StateStoreError("Not running in a Kubernetes pod: KUBERNETES_SERVICE_HOST is not set")
            api_server = "https://{}:{}".format(host, port)

        self.api_server = api_server.rstrip('/')
        self.namespace = namespace or self.__read_service_account('namespace', 'default')
        self.timeout = timeout
        self.session = session or requests.Session()

        token = token or self.__read_service_account('token')
        if token:
            self.session.headers['Authorization'] = "Bearer {}".format(token)

        if ca_cert is None:
            ca_cert = os.path.join(self.service_account_dir, 'ca.crt')
        self.session.verify = ca_cert if os.path.exists(ca_cert) else True

    def __read_service_account(self, name, default=None):
        try:
            with open(os.path.join(self.service_account_dir, name)) as f:
                return f.read().strip()
        except OSError:
            return default

    def __request(self, method, path, **kwargs):
        url = self.api_server + path
        try:
            res = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StateStoreError("{} {}: {}".format(method, url, e)) from e

        return res

    def __check(self, res, what):
        if not res.ok:
            raise StateStoreError("{}: {} {}".format(what, res.status_code, res.text.strip()[:200]))
        return res

    def __patch_annotations(self, node, annotations):
        res = self.__request('PATCH', "/api/v1/nodes/{}".format(node),
                             json={'metadata': {'annotations': annotations}},
                             headers={'Content-Type': 'application/merge-patch+json'})
        self.__check(res, "Can't annotate node {}".format(node))

    def get(self, node, key):
        res = self.__check(self.__request('GET', "/api/v1/nodes/{}".format(node)), "Can't get node {}".format(node))
        annotations = res.json().get('metadata', {}).get('annotations') or {}
        return annotations.get(self.annotation_prefix + key)

    def set(self, node, key, value):
        logger.debug("Setting node annotation: {}{}={}".format(self.annotation_prefix, key, value))
        self.__patch_annotations(node, {self.annotation_prefix + key: value})

    def remove(self, node, key):
        logger.debug("Removing node annotation: {}{}".format(self.annotation_prefix, key))
        # null removes a key in a JSON merge patch
        self.__patch_annotations(node, {self.annotation_prefix + key: None})

    def publish_event(self, node, reason, message, event_type='Normal'):
        """Events are informational: a failure to publish one is only logged."""
        now = utc_timestamp()
        event = {
            'apiVersion': 'v1',
            'kind': 'Event',
            'metadata': {'generateName': "{}.{}.".format(self.event_source, node),
                         'namespace': self.namespace},
            'involvedObject': {'kind': 'Node', 'name': node},
            'reason': reason,
            'message': message,
            # Kubernetes knows only these two
            'type': 'Normal' if event_type == 'Normal' else 'Warning',
            'firstTimestamp': now,
            'lastTimestamp': now,
            'count': 1,
            'source': {'component': self.event_source},
        }
        try:
            self.__check(self.__request('POST', "/api/v1/namespaces/{}/events".format(self.namespace), json=event),
                         "Can't create event {}".format(reason))
        except StateStoreError as e:
            logger.warning(str(e))

    def store_profile(self, node, text):
        path = "/api/v1/namespaces/{}/configmaps/{}".format(self.namespace, self.profiles_config_map)
        key = "{}.yaml".format(node)

        res = self.__request('PATCH', path, json={'data': {key: text}},
                             headers={'Content-Type': 'application/merge-patch+json'})
        if res.status_code == 404:
            body = {'apiVersion': 'v1', 'kind': 'ConfigMap',
                    'metadata': {'name': self.profiles_config_map, 'namespace': self.namespace},
                    'data': {key: text}}
            res = self.__request('POST', "/api/v1/namespaces/{}/configmaps".format(self.namespace), json=body)

        self.__check(res, "Can't store the I/O profile of {} in ConfigMap {}".format(node, self.profiles_config_map))
        logger.info("I/O profile stored in ConfigMap {}[{}]".format(self.profiles_config_map, key))


def create(config, host):
    """
    :return: the StateStore backend selected by the configuration
    """
    if config.state_store == 'memory':
        return MemoryStateStore()
    if config.state_store == 'kubernetes':
        return KubernetesStateStore(namespace=config.namespace)
    return FileStateStore(host, config.state_dir)


class NodeState:
    """The flags of a single node."""
    def __init__(self, store, node):
        self.store = store
        self.node = node

    def __flag(self, key):
        value = self.store.get(self.node, key)
        return value is not None and str(value).lower() == TRUE

    @property
    def tuned(self):
        return self.__flag(TUNED)

    @property
    def iotune_completed(self):
        return self.__flag(IOTUNE_COMPLETED)

    def reset(self):
        logger.info("Force retune: clearing the tuning state of {}".format(self.node))
        for key in RESET_KEYS:
            self.store.remove(self.node, key)

    def __mark(self, key, timestamp_key=None):
        self.store.set(self.node, key, TRUE)
        if timestamp_key:
            self.store.set(self.node, timestamp_key, utc_timestamp())

    def mark_tuned(self):
        self.__mark(TUNED, TUNED_TIMESTAMP)

    def mark_attempted(self):
        self.__mark(TUNE_ATTEMPTED, TUNE_ATTEMPTED_TIMESTAMP)

    def mark_iotune_completed(self):
        self.__mark(IOTUNE_COMPLETED, IOTUNE_TIMESTAMP)

    def mark_reboot_required(self):
        self.__mark(REBOOT_REQUIRED)
