# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Construction of external processes.

Every process the service spawns goes through a CommandRunner, so pipelines
can be exercised with a scripted runner instead of the real binaries.
"""

from abc import ABCMeta, abstractmethod
from collections import namedtuple
import logging
import subprocess as sp

from edge_build_service.errors import CommandError

log = logging.getLogger(__name__)


CommandResult = namedtuple("CommandResult", ["args", "returncode", "stdout", "stderr"])


class CommandRunner(metaclass=ABCMeta):
    """
    Runs an external command and returns its CommandResult.

    A non-zero exit status raises CommandError carrying the output of the
    failed command.
    """

    def run(self, args, cwd=None):
        args = [str(arg) for arg in args]
        log.debug("Running %r (cwd=%r)", args, cwd)
        result = self._execute(args, cwd)
        if result.returncode != 0:
            raise CommandError(args, result.returncode, result.stdout, result.stderr)
        return result

    @abstractmethod
    def _execute(self, args, cwd):
        """
        :param list args: argument vector, program first.
        :param str cwd: working directory of the process, or None.
        :return: CommandResult
        """
        raise NotImplementedError()


class SubprocessRunner(CommandRunner):
    """ Runs commands as real OS processes. """

    def _execute(self, args, cwd):
        proc = sp.Popen(args, stdout=sp.PIPE, stderr=sp.PIPE, cwd=cwd)
        out, err = proc.communicate()
        out = out.decode("utf-8", "replace")
        err = err.decode("utf-8", "replace")
        if out:
            log.debug("%s stdout:\n%s", args[0], out)
        if err:
            log.warning("%s stderr:\n%s", args[0], err)
        return CommandResult(args, proc.returncode, out, err)
