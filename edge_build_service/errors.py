# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Defines custom exceptions """


class ValidationError(ValueError):
    pass


class Conflict(ValueError):
    pass


class ImageSetAlreadyExists(Conflict):
    pass


class NotFound(ValueError):
    pass


class ProgrammingError(ValueError):
    pass


class InvalidEntity(ValueError):
    """Raised when a related Commit or Repo required for a build is missing"""


class ImageBuilderError(RuntimeError):
    pass


class RepoBuildError(RuntimeError):
    pass


class CommandError(RuntimeError):
    """An external process exited with a non-zero status"""

    def __init__(self, args, returncode, stdout="", stderr=""):
        self.cmd = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super(CommandError, self).__init__(
            "Failed on %r, retcode %r, out %r, err %r" % (self.cmd, returncode, stdout, stderr))


class BuildInterrupted(Exception):
    """Raised inside a build when the process is shutting down"""


class FatalPersistenceError(RuntimeError):
    """Recording a build failure in the database failed"""
