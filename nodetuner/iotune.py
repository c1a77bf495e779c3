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
I/O properties of the storage without running a benchmark: precomputed values for known cloud
instance types and a conservative profile for everything else.
"""

import collections
import logging

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_PATH = '/etc/redpanda/io-config.yaml'

SOURCE_TABLE = 'table'
SOURCE_CONSERVATIVE = 'conservative'

IOProfile = collections.namedtuple('IOProfile', ['provider', 'instance_type', 'read_iops', 'read_bandwidth',
                                                 'write_iops', 'write_bandwidth', 'source'])

# (read_iops, read_bandwidth, write_iops, write_bandwidth)
CONSERVATIVE = (10000, 1000000000, 5000, 500000000)

__i3en_like = [(43315, 330301440, 33177, 165675008),
               (84966, 658153472, 40551, 330301440),
               (84966, 1336844288, 81101, 660602880),
               (257008, 2005401600, 121652, 990904320),
               (514016, 4010803200, 243303, 1981808640),
               (1028032, 8021606400, 486606, 3963617280),
               (2056064, 16043212800, 973212, 7927234560)]

PROFILES = {
    # i3 (NVMe instance store)
    "aws:i3.large": (111000, 653925080, 36800, 215066473),
    "aws:i3.xlarge": (200800, 1185106376, 53180, 423621267),
    "aws:i3.2xlarge": (411200, 2015342735, 181500, 808775652),
    "aws:i3.4xlarge": (822400, 4030685470, 363000, 1617551304),
    "aws:i3.8xlarge": (1644800, 8061370940, 726000, 3235102608),
    "aws:i3.16xlarge": (3289600, 16122741880, 1452000, 6470205216),
    "aws:i3.metal": (3289600, 16122741880, 1452000, 6470205216),

    # i3en (large NVMe instance store)
    "aws:i3en.large": __i3en_like[0],
    "aws:i3en.xlarge": __i3en_like[1],
    "aws:i3en.2xlarge": __i3en_like[2],
    "aws:i3en.3xlarge": __i3en_like[3],
    "aws:i3en.6xlarge": __i3en_like[4],
    "aws:i3en.12xlarge": __i3en_like[5],
    "aws:i3en.24xlarge": __i3en_like[6],
    "aws:i3en.metal": __i3en_like[6],

    # i4i
    "aws:i4i.large": (50203, 352041984, 27599, 275442496),
    "aws:i4i.xlarge": (100407, 704083968, 55198, 550884992),
    "aws:i4i.2xlarge": (200814, 1408167936, 110396, 1101769984),
    "aws:i4i.4xlarge": (401628, 2816335872, 220792, 2203539968),
    "aws:i4i.8xlarge": (803256, 5632671744, 441584, 4407079936),
    "aws:i4i.16xlarge": (1606512, 11265343488, 883168, 8814159872),
    "aws:i4i.32xlarge": (3213024, 22530686976, 1766336, 17628319744),
    "aws:i4i.metal": (3213024, 22530686976, 1766336, 17628319744),

    # im4gn
    "aws:im4gn.large": __i3en_like[0],
    "aws:im4gn.xlarge": __i3en_like[1],
    "aws:im4gn.2xlarge": __i3en_like[2],
    "aws:im4gn.4xlarge": __i3en_like[3],
    "aws:im4gn.8xlarge": __i3en_like[4],
    "aws:im4gn.16xlarge": __i3en_like[5],

    # is4gen
    "aws:is4gen.medium": __i3en_like[0],
    "aws:is4gen.large": __i3en_like[1],
    "aws:is4gen.xlarge": __i3en_like[2],
    "aws:is4gen.2xlarge": __i3en_like[3],
    "aws:is4gen.4xlarge": __i3en_like[4],
    "aws:is4gen.8xlarge": __i3en_like[5],

    # m6id (general purpose with local NVMe)
    "aws:m6id.large": __i3en_like[0],
    "aws:m6id.xlarge": __i3en_like[1],
    "aws:m6id.2xlarge": __i3en_like[2],
    "aws:m6id.4xlarge": __i3en_like[3],
    "aws:m6id.8xlarge": __i3en_like[4],
    "aws:m6id.12xlarge": (771024, 6016204800, 364955, 2972712960),
    "aws:m6id.16xlarge": __i3en_like[5],
    "aws:m6id.24xlarge": (1542048, 12032409600, 729909, 5945425920),
    "aws:m6id.32xlarge": __i3en_like[6],

    # n2 with local SSD
    "gcp:n2-standard-2": (100000, 1000000000, 50000, 500000000),
    "gcp:n2-standard-4": (200000, 2000000000, 100000, 1000000000),
    "gcp:n2-standard-8": (400000, 4000000000, 200000, 2000000000),
    "gcp:n2-standard-16": (800000, 8000000000, 400000, 4000000000),
}


def profile_key(provider, instance_type):
    return "{}:{}".format(provider, instance_type)


def resolve_profile(provider, instance_type, profiles=None):
    """
    Exact-match lookup of "provider:instance_type". No prefix or family matching is done: an unknown
    instance type gets the conservative profile.
    """
    profiles = PROFILES if profiles is None else profiles
    values = profiles.get(profile_key(provider, instance_type))
    if values is None:
        logger.info("No precomputed I/O properties for {}: using conservative defaults".format(profile_key(provider, instance_type)))
        return IOProfile(provider, instance_type, *CONSERVATIVE, SOURCE_CONSERVATIVE)

    logger.info("Using precomputed I/O properties for {}".format(profile_key(provider, instance_type)))
    return IOProfile(provider, instance_type, *values, SOURCE_TABLE)


def render_profile(mount_point, profile):
    doc = {'disks': [{'mountpoint': mount_point,
                      'read_iops': profile.read_iops,
                      'read_bandwidth': profile.read_bandwidth,
                      'write_iops': profile.write_iops,
                      'write_bandwidth': profile.write_bandwidth}]}
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def write_profile(host, mount_point, profile, path=DEFAULT_PROFILE_PATH):
    """
    Write the I/O properties artifact for the given mount point. Always written, whatever the profile source.

    :return: the artifact text
    """
    text = render_profile(mount_point, profile)
    host.write_file(path, text)
    logger.info("I/O configuration ({}) for {} written to {}".format(profile.source, mount_point, path))
    return text
