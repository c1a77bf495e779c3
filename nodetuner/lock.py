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

import fcntl
import logging
import os

from nodetuner.errors import LockHeld

logger = logging.getLogger(__name__)


class RunLock:
    """
    Exclusive lock of a lock file for the duration of a run. A second run on the same node fails
    right away instead of waiting.
    """
    def __init__(self, fname):
        self.fname = fname
        self.__fd = None

    def acquire(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.fname)), exist_ok=True)
        fd = os.open(self.fname, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockHeld("Another tuning run holds {}".format(self.fname)) from e

        os.ftruncate(fd, 0)
        os.write(fd, "{}\n".format(os.getpid()).encode())
        self.__fd = fd
        logger.debug("Acquired {}".format(self.fname))

    def release(self):
        if self.__fd is None:
            return

        fcntl.flock(self.__fd, fcntl.LOCK_UN)
        os.close(self.__fd)
        self.__fd = None
        logger.debug("Released {}".format(self.fname))

    @property
    def locked(self):
        return self.__fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
