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

import collections
import logging

from nodetuner.errors import TuningError

logger = logging.getLogger(__name__)

# CPU0 is left for the kernel housekeeping work
FIRST_IRQ_CPU = 1

Distribution = collections.namedtuple('Distribution', ['assignments', 'noop'])


def eligible_cpus(cpu_count):
    return list(range(FIRST_IRQ_CPU, cpu_count))


def assign(irqs, cpu_count):
    """
    Assign IRQs round-robin to CPUs 1..cpu_count-1.

    :param irqs: IRQ numbers in the order they should be spread
    :param cpu_count: number of CPUs on the host
    :return: Distribution with a list of (irq, cpu) pairs; 'noop' is set when there is no eligible CPU
    """
    cpus = eligible_cpus(cpu_count)
    if not cpus:
        return Distribution([], True)

    return Distribution([(irq, cpus[i % len(cpus)]) for i, irq in enumerate(irqs)], False)


def format_mask(value):
    """
    Format a CPU mask the way the kernel prints smp_affinity: 32-bit hex groups separated by commas,
    most significant group first, e.g. 00000001,00000000 for CPU32.
    """
    groups = []
    while True:
        groups.append("{:08x}".format(value & 0xffffffff))
        value >>= 32
        if not value:
            break

    return ",".join(reversed(groups))


def cpu_mask(cpu):
    return format_mask(1 << cpu)


def mask_value(mask):
    """
    Parse a (possibly comma separated, possibly 0x-prefixed) hex CPU mask into an integer.
    Empty components stand for zero groups, e.g. 0xffff,,0xffff.
    """
    value = 0
    for group in mask.strip().split(','):
        group = group.strip().replace('0x', '')
        value = (value << 32) | (int(group, 16) if group else 0)

    return value


def affinity_file(irq):
    return "/proc/irq/{}/smp_affinity".format(irq)


def is_distributed(host, irqs, cpu_count):
    """
    :return: True if every IRQ's current affinity is already the one assign() would give it
    """
    dist = assign(irqs, cpu_count)
    for irq, cpu in dist.assignments:
        current = host.readlines(affinity_file(irq))
        if not current or mask_value(current[0]) != 1 << cpu:
            return False

    return True


def distribute(host, irqs, cpu_count, log_errors=True):
    """
    Bind the given IRQs to the CPUs according to assign().

    IRQs whose affinity is already right are not written. Kernel-managed IRQs (e.g. NVMe on most systems)
    reject affinity changes; such failures are logged and counted but don't stop the distribution.

    :return: (Distribution, number of IRQs that couldn't be set)
    """
    dist = assign(irqs, cpu_count)
    if dist.noop:
        logger.info("Single CPU host: not distributing IRQs {}".format(list(irqs)))
        return dist, 0

    failed = 0
    for irq, cpu in dist.assignments:
        fname = affinity_file(irq)
        current = host.readlines(fname)
        if current and mask_value(current[0]) == 1 << cpu:
            continue

        try:
            host.fwriteln(fname, cpu_mask(cpu), log_message="Setting IRQ {} affinity to CPU{}".format(irq, cpu))
        except TuningError as e:
            failed += 1
            if log_errors:
                logger.warning("Failed to set IRQ {} affinity: {}".format(irq, e))
            else:
                logger.debug("Failed to set IRQ {} affinity: {}".format(irq, e))

    return dist, failed
