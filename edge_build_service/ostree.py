# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""OSTree command invocations."""

import logging

from edge_build_service.errors import RepoBuildError

log = logging.getLogger(__name__)


class OSTree(object):
    """
    Builds the argument vectors of the ostree operations used to assemble
    repositories and runs them through a CommandRunner.
    """

    def __init__(self, runner, binary="ostree"):
        self.runner = runner
        self.binary = binary

    def __repr__(self):
        return "<OSTree %s, runner=%r>" % (self.binary, self.runner)

    def rev_parse(self, repo_path, ref):
        """ Returns the revision `ref` currently points to in `repo_path`. """
        result = self.runner.run([self.binary, "rev-parse", "--repo", repo_path, ref])
        revision = result.stdout.strip()
        if not revision:
            raise RepoBuildError("ostree rev-parse returned no revision for %s in %s" % (ref, repo_path))
        return revision

    def pull_local(self, repo_path, src_repo_path, revision):
        """ Copies the objects of `revision` from `src_repo_path` without a network fetch. """
        self.runner.run([self.binary, "pull-local", "--repo", repo_path, src_repo_path, revision])

    def static_delta_generate(self, repo_path, from_revision, to_revision):
        self.runner.run([
            self.binary, "static-delta", "generate", "--repo", repo_path,
            "--from", from_revision, "--to", to_revision,
        ])

    def summary_update(self, repo_path):
        self.runner.run([self.binary, "summary", "--repo", repo_path, "--update"])

    def commit(self, repo_path, ref, version, cwd=None):
        """
        Commits the tree of `ref` again with a version metadata string and
        returns the new checksum, or None if ostree printed nothing.
        """
        result = self.runner.run([
            self.binary, "commit", "--repo", repo_path, "--branch", ref,
            "--tree=ref=%s" % ref, "--add-metadata-string", "version=%s" % version,
        ], cwd=cwd)
        return result.stdout.strip() or None
