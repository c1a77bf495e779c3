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
Detection of the cloud provider, the instance type and the OS distribution.

Providers are probed through their instance metadata services in a fixed order, every probe bounded by a
short timeout. A probe that times out or can't connect simply means "not this provider".
"""

import collections
import http.client
import logging
import re
import socket
import urllib.error
import urllib.request

from nodetuner.errors import DetectionFailure

logger = logging.getLogger(__name__)

AUTO = 'auto'
NO_PROVIDER = 'none'
UNKNOWN = 'unknown'

DEFAULT_PROBE_TIMEOUT = 1.0

Environment = collections.namedtuple('Environment', ['provider', 'instance_type', 'distro'])


def _fetch(req, timeout):
    try:
        with urllib.request.urlopen(req, timeout=timeout) as res:
            return res.read().decode().strip()
    except (urllib.error.URLError, http.client.HTTPException, ConnectionError, TimeoutError, socket.timeout,
            UnicodeDecodeError) as e:
        raise DetectionFailure("{}: {}".format(req.full_url, e)) from e


class MetadataProbe:
    """A single cloud provider instance metadata probe."""
    provider = None

    def __init__(self, timeout=DEFAULT_PROBE_TIMEOUT):
        self.timeout = timeout

    def instance_type(self):
        """
        :return: the instance type reported by the metadata service
        :raises DetectionFailure: if the metadata service is not reachable
        """
        raise NotImplementedError()


class AwsProbe(MetadataProbe):
    provider = 'aws'
    base_url = "http://169.254.169.254/latest/"
    token_ttl = 21600

    def __token(self):
        req = urllib.request.Request(self.base_url + "api/token",
                                     headers={"X-aws-ec2-metadata-token-ttl-seconds": str(self.token_ttl)},
                                     method="PUT")
        return _fetch(req, self.timeout)

    def instance_type(self):
        # IMDSv2 first, IMDSv1 if the token endpoint is not there
        headers = {}
        try:
            headers["X-aws-ec2-metadata-token"] = self.__token()
        except DetectionFailure as e:
            logger.debug("IMDSv2 token is not available: {}".format(e))

        req = urllib.request.Request(self.base_url + "meta-data/instance-type", headers=headers)
        return _fetch(req, self.timeout)


class GcpProbe(MetadataProbe):
    provider = 'gcp'
    url = "http://metadata.google.internal/computeMetadata/v1/instance/machine-type"

    def instance_type(self):
        # projects/<project number>/machineTypes/<machine type>
        req = urllib.request.Request(self.url, headers={"Metadata-Flavor": "Google"})
        return _fetch(req, self.timeout).split('/')[-1]


class AzureProbe(MetadataProbe):
    provider = 'azure'
    url = "http://169.254.169.254/metadata/instance/compute/vmSize?api-version=2021-02-01&format=text"

    def instance_type(self):
        req = urllib.request.Request(self.url, headers={"Metadata": "true"})
        return _fetch(req, self.timeout)


PROBES = [AwsProbe, GcpProbe, AzureProbe]


def probe_provider(timeout=DEFAULT_PROBE_TIMEOUT, probes=None):
    """
    Try the metadata probes in order.

    :return: (provider, instance type) of the first probe that answers or (NO_PROVIDER, UNKNOWN)
    """
    for probe_class in probes or PROBES:
        probe = probe_class(timeout)
        try:
            instance_type = probe.instance_type()
        except DetectionFailure as e:
            logger.debug("Not {}: {}".format(probe.provider, e))
            continue

        if instance_type:
            return probe.provider, instance_type

    return NO_PROVIDER, UNKNOWN


def detect_distro(host):
    os_release = host.readlines('/etc/os-release')
    for line in os_release:
        m = re.match(r'^ID=(.*)$', line.strip())
        if m:
            return m.group(1).strip('"\'') or UNKNOWN

    if host.exists('/etc/redhat-release'):
        return 'rhel'
    if host.exists('/etc/debian_version'):
        return 'debian'

    return UNKNOWN


def detect(host, provider=AUTO, instance_type=AUTO, timeout=DEFAULT_PROBE_TIMEOUT, probes=None):
    """
    Explicit provider and instance type values always win over probing.
    """
    if provider == AUTO:
        detected_provider, detected_instance_type = probe_provider(timeout, probes)
        provider = detected_provider
        if instance_type == AUTO:
            instance_type = detected_instance_type
    elif instance_type == AUTO:
        instance_type = UNKNOWN
        probe_class = next((p for p in probes or PROBES if p.provider == provider), None)
        if probe_class is not None:
            try:
                instance_type = probe_class(timeout).instance_type() or UNKNOWN
            except DetectionFailure as e:
                logger.debug("Can't get {} instance type: {}".format(provider, e))

    env = Environment(provider, instance_type, detect_distro(host))
    logger.info("Cloud provider: {}, instance type: {}, distribution: {}".format(*env))
    return env
