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
import json


def summary(run):
    """
    :return: the run outcome as a plain dict
    """
    doc = collections.OrderedDict()
    doc['exit_code'] = run.exit_code
    doc['already_tuned'] = run.already_tuned
    doc['timed_out'] = run.timed_out
    doc['reboot_required'] = run.reboot_required
    doc['counts'] = run.counts()
    doc['results'] = [collections.OrderedDict([('id', r.id), ('status', r.status.value), ('message', r.message)])
                      for r in run.results]
    if run.environment:
        doc['environment'] = run.environment._asdict()
    if run.profile:
        doc['io_profile'] = run.profile._asdict()
    if run.error:
        doc['error'] = run.error
    return doc


def format_text(run):
    lines = []
    if run.already_tuned:
        lines.append("Node is already tuned: nothing to do (use force-retune to tune it again)")

    if run.environment:
        lines.append("Environment: provider={}, instance type={}, distribution={}".format(*run.environment))

    if run.profile:
        lines.append("I/O profile: {} ({}): read {} IOPS / {} B/s, write {} IOPS / {} B/s".format(
            run.profile.instance_type, run.profile.source, run.profile.read_iops, run.profile.read_bandwidth,
            run.profile.write_iops, run.profile.write_bandwidth))

    if run.results:
        width = max(len(r.id) for r in run.results)
        lines.append("")
        for r in run.results:
            lines.append("  {:<{}}  {:<8} {}".format(r.id, width, r.status.value, r.message))
        lines.append("")

    counts = run.counts()
    lines.append("Summary: {} succeeded, {} skipped, {} failed".format(counts['success'], counts['skipped'], counts['failed']))

    if run.timed_out:
        lines.append("Run timed out: tuning state was not recorded")
    if run.error:
        lines.append("Error: {}".format(run.error))
    if run.reboot_required:
        lines.append("REBOOT REQUIRED for all settings to take effect")

    return "\n".join(lines)


def format_json(run):
    return json.dumps(summary(run), indent=2)


def render(run, output_format='text'):
    if output_format == 'json':
        return format_json(run)
    return format_text(run)
