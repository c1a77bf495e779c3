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

import errno
import glob
import logging
import os
import shlex
import shutil
import subprocess

from nodetuner.errors import PermissionDenied, ResourceNotFound, TuningError

logger = logging.getLogger(__name__)

NSENTER_PREFIX = ['nsenter', '--target', '1', '--mount', '--uts', '--ipc', '--net', '--pid', '--']


def translate_os_error(e, fname):
    if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return PermissionDenied("{}: {}".format(fname, e.strerror))
    if e.errno == errno.ENOENT:
        return ResourceNotFound("{} does not exist".format(fname))
    return TuningError("{}: {}".format(fname, e.strerror or e))


class Host:
    """
    Access to the tuned host's procfs, sysfs and configuration files.

    All paths given to the methods below are host-absolute (e.g. /proc/sys/vm/swappiness). When the tuner
    runs inside a container with the host file system mounted somewhere else (e.g. /host) 'root' points there.
    Commands are executed in the host namespaces via nsenter when 'nsenter' is set.
    """
    def __init__(self, root='/', nsenter=False):
        self.root = os.path.abspath(root)
        self.nsenter = nsenter

    def path(self, fname):
        if self.root == '/':
            return fname
        return os.path.join(self.root, fname.lstrip('/'))

    def unroot(self, fname):
        if self.root == '/':
            return fname
        return '/' + os.path.relpath(fname, self.root)

    def exists(self, fname):
        return os.path.exists(self.path(fname))

    def isdir(self, fname):
        return os.path.isdir(self.path(fname))

    def listdir(self, dirname):
        return sorted(os.listdir(self.path(dirname)))

    def glob(self, pattern):
        return sorted(self.unroot(f) for f in glob.glob(self.path(pattern)))

    def realpath(self, fname):
        return self.unroot(os.path.realpath(self.path(fname)))

    def read(self, fname):
        try:
            with open(self.path(fname), 'r') as f:
                return f.read()
        except OSError as e:
            raise translate_os_error(e, fname) from e

    def readline(self, fname):
        return self.read(fname).split('\n', 1)[0].strip()

    def readlines(self, fname):
        try:
            with open(self.path(fname), 'r') as f:
                return f.readlines()
        except OSError as e:
            logger.debug("Failed to read {}: {}".format(fname, e))
            return []

    def fwriteln(self, fname, line, log_message=None):
        """
        Write a single line into a (usually procfs or sysfs) file.

        Raises PermissionDenied if the kernel rejects the write, ResourceNotFound if the file is absent and
        TuningError for any other failure.
        """
        try:
            with open(self.path(fname), 'w') as f:
                f.write(line)
        except OSError as e:
            raise translate_os_error(e, fname) from e

        logger.info(log_message or "Writing '{}' to {}".format(line, fname))

    def write_file(self, fname, contents, mode=None):
        try:
            os.makedirs(os.path.dirname(self.path(fname)), exist_ok=True)
            with open(self.path(fname), 'w') as f:
                f.write(contents)
            if mode is not None:
                os.chmod(self.path(fname), mode)
        except OSError as e:
            raise translate_os_error(e, fname) from e

        logger.info("Wrote {}".format(fname))

    def file_size(self, fname):
        return os.stat(self.path(fname)).st_size

    def fallocate(self, fname, size):
        """
        Create a file with 'size' bytes allocated on disk. Falls back to writing zeros on file systems
        that don't support fallocate().
        """
        chunk = 1 << 20
        try:
            os.makedirs(os.path.dirname(self.path(fname)), exist_ok=True)
            fd = os.open(self.path(fname), os.O_WRONLY | os.O_CREAT, 0o600)
            try:
                try:
                    os.posix_fallocate(fd, 0, size)
                except OSError as e:
                    if e.errno not in (errno.EOPNOTSUPP, errno.ENOSYS, errno.EINVAL):
                        raise
                    logger.debug("fallocate() is not supported for {}: writing zeros".format(fname))
                    written = 0
                    while written < size:
                        written += os.write(fd, bytes(min(chunk, size - written)))
            finally:
                os.close(fd)
        except OSError as e:
            raise translate_os_error(e, fname) from e

        logger.info("Allocated {} bytes for {}".format(size, fname))

    def copyfile(self, src, dst):
        try:
            shutil.copyfile(self.path(src), self.path(dst))
        except OSError as e:
            raise translate_os_error(e, dst) from e

    def which(self, prog):
        return shutil.which(prog) is not None

    def __command(self, prog_args):
        if self.nsenter:
            return NSENTER_PREFIX + list(prog_args)
        return list(prog_args)

    def run_read_only_command(self, prog_args, stderr=subprocess.DEVNULL, check=True):
        """
        Run a command that doesn't change the host state and return its stdout.
        """
        cmd = self.__command(prog_args)
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=stderr)
        outs = str(proc.stdout, 'utf-8')

        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(returncode=proc.returncode, cmd=" ".join(cmd), output=outs, stderr=proc.stderr)

        return outs

    def run_one_command(self, prog_args, stderr=subprocess.DEVNULL, check=True):
        """
        Run a command that changes the host state.
        """
        logger.info("Executing: {}".format(" ".join(shlex.quote(x) for x in prog_args)))
        return self.run_read_only_command(prog_args, stderr=stderr, check=check)
