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


class TunerError(Exception):
    pass


class ConfigError(TunerError):
    """Invalid configuration record. Aborts the whole run."""
    pass


class DetectionFailure(TunerError):
    """Provider, instance type or distribution could not be determined."""
    pass


class TuningError(TunerError):
    """A single tuning unit could not reach its target state."""
    pass


class ResourceNotFound(TuningError):
    pass


class PermissionDenied(TuningError):
    pass


class UnsupportedOnPlatform(TuningError):
    """The kernel interface a unit needs is absent. Reported as a skip."""
    pass


class TuningTimeout(TunerError):
    pass


class LockHeld(TunerError):
    pass


class StateStoreError(TunerError):
    pass
