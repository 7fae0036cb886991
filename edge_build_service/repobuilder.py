# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Assembly of OSTree repositories.

A RepoBuilder turns the tarball Image Builder produced for a commit into a
published OSTree repository, and builds update repositories by grafting older
commits into the target commit's repository with static deltas.
"""

from datetime import date
import logging
import os

from edge_build_service import conf
from edge_build_service.commands import SubprocessRunner
from edge_build_service.errors import InvalidEntity, RepoBuildError
from edge_build_service.files import get_files_service
from edge_build_service.models import (
    STATIC_DELTA_DOWNLOADING,
    STATIC_DELTA_GENERATING,
    STATIC_DELTA_READY,
    STATIC_DELTA_UPLOADING,
    STATUS_ERROR,
    STATUS_SUCCESS,
    Commit,
    StaticDeltaState,
    UpdateTransaction,
)
from edge_build_service.ostree import OSTree
from edge_build_service.utils import makedirs, remove_path

log = logging.getLogger(__name__)

DEFAULT_TAR_NAME = "repo.tar"
PUBLIC_ACL = "public-read"
PRIVATE_ACL = "private"


class RepoBuilder(object):
    """
    Builds OSTree repositories on the local filesystem and publishes them.

    :param session: SQLAlchemy session used to record Repo status and URLs.
    :param files_service: FilesService used to download, extract and upload.
    :param runner: CommandRunner every ostree invocation goes through.
    """

    def __init__(self, session, files_service=None, runner=None, config=None):
        self.session = session
        self.config = config or conf
        self.files_service = files_service or get_files_service(self.config)
        self.runner = runner or SubprocessRunner()
        self.ostree = OSTree(self.runner, self.config.ostree_binary)

    def __repr__(self):
        return "<RepoBuilder repo_temp_path=%s>" % self.config.repo_temp_path

    def import_repo(self, repo):
        """
        Downloads and extracts the build tarball of the Commit owned by
        `repo`, stamps its version, uploads the tree and records the Repo
        URL. Repo.status is set to ERROR before any failure propagates.
        """
        try:
            commit = self.session.query(Commit).filter(Commit.repo_id == repo.id).first()
            if commit is None:
                raise InvalidEntity("No commit found for %r" % repo)

            path = makedirs(os.path.join(self.config.repo_temp_path, str(repo.id)))
            log.info("%r: importing %r in %s", repo, commit, path)

            tar_file = self.commit_tar_download(commit, path)
            self.commit_tar_upload(commit, tar_file, repo.id)
            self.commit_tar_extract(commit, tar_file, path)
            self.commit_tar_delete(tar_file)

            repo_path = os.path.join(path, "repo")
            self.commit_version(commit, repo_path)

            url = self.files_service.uploader.upload_repo(repo_path, str(repo.id), PUBLIC_ACL)
        except Exception:
            log.exception("Repo %d: import failed", repo.id)
            self._set_error(repo)
            raise

        repo.url = url
        self._set_status(repo, STATUS_SUCCESS)
        log.info("%r: published at %s", repo, url)
        return repo

    def build_update_repo(self, update_id):
        """
        Builds the repository of an UpdateTransaction: the target commit's
        tree with a static delta from every old commit, in list order.

        Returns the UpdateTransaction. The progress is recorded in the
        StaticDeltaState of the first old commit and the target commit. On
        failure the update's Repo and that state are set to ERROR and the
        exception propagates; nothing is uploaded.

        With skip_update_repo set, no delta is generated and the update's
        Repo points at the repository of the target commit.
        """
        update = UpdateTransaction.get_by_id(self.session, update_id)
        if update.commit is None:
            raise InvalidEntity("invalid UpdateTransaction.Commit provided: None")
        if update.repo is None:
            raise InvalidEntity("invalid UpdateTransaction.Repo provided: None")

        if self.config.skip_update_repo:
            return self.reuse_commit_repo(update)

        old_commits = list(update.old_commits)
        from_rev = old_commits[0].ostree_commit if old_commits else None
        state = StaticDeltaState.get_or_create(
            self.session, from_rev, update.commit.ostree_commit, update.org_id)
        state.url = None
        self._set_delta_status(state, STATIC_DELTA_DOWNLOADING)

        try:
            url = self._build_update_repo(update, old_commits, state)
        except Exception:
            log.exception("Update %d: update repo build failed", update.id)
            self._set_error(update.repo, state)
            raise

        update.repo.url = url
        update.repo.transition(STATUS_SUCCESS)
        state.url = url
        self._set_delta_status(state, STATIC_DELTA_READY)
        log.info("%r: update repo published at %s", update, url)
        return update

    def reuse_commit_repo(self, update):
        """ Points the update's Repo at the published repository of its target commit. """
        commit_repo = update.commit.repo
        if commit_repo is None or not commit_repo.url:
            raise InvalidEntity("%r has no published repo to reuse" % update.commit)
        update.repo.url = commit_repo.url
        self._set_status(update.repo, STATUS_SUCCESS)
        log.info("%r: update repo points at the commit repo %s", update, commit_repo.url)
        return update

    def _build_update_repo(self, update, old_commits, state):
        path = makedirs(os.path.join(self.config.repo_temp_path, "upd", str(update.id)))
        log.info("%r: building update repo in %s", update, path)

        tar_file = self.commit_tar_download(update.commit, path)
        self.commit_tar_extract(update.commit, tar_file, path)
        self.commit_tar_delete(tar_file)

        repo_path = os.path.join(path, "repo")
        if old_commits:
            staging = os.path.join(path, "staging")
            update_revision = None
            for old_commit in old_commits:
                if not old_commit.ostree_commit:
                    raise InvalidEntity("%r has no ostree commit hash to stage" % old_commit)
                stage_path = makedirs(os.path.join(staging, old_commit.ostree_commit))
                tar_file = self.commit_tar_download(old_commit, stage_path)
                self.commit_tar_extract(old_commit, tar_file, stage_path)
                self.commit_tar_delete(tar_file)
                self._set_delta_status(state, STATIC_DELTA_GENERATING)
                update_revision = self.repo_pull_local_static_deltas(
                    update.commit, old_commit, repo_path, os.path.join(stage_path, "repo"),
                    update_revision=update_revision)
            remove_path(staging)

        self._set_delta_status(state, STATIC_DELTA_UPLOADING)
        return self.files_service.uploader.upload_repo(repo_path, str(update.id), PRIVATE_ACL)

    def repo_pull_local_static_deltas(self, update_commit, old_commit, repo_path, old_repo_path,
                                      update_revision=None):
        """
        Pulls `old_commit` from `old_repo_path` into `repo_path` and
        generates the static delta from it to `update_commit`.

        The revision of `update_commit` is resolved unless the caller passes
        it as `update_revision`. Returns the update revision. Any failing
        ostree step raises CommandError right away.
        """
        if update_revision is None:
            update_revision = self.ostree.rev_parse(repo_path, update_commit.ostree_ref)
        old_revision = self.ostree.rev_parse(old_repo_path, old_commit.ostree_ref)
        log.info("Generating static delta %s -> %s in %s", old_revision, update_revision, repo_path)

        self.ostree.pull_local(repo_path, old_repo_path, old_revision)
        self.ostree.static_delta_generate(repo_path, old_revision, update_revision)
        self.ostree.summary_update(repo_path)
        return update_revision

    def commit_version(self, commit, repo_path):
        """ Stamps `<build date>.<build number>` as version metadata of the commit's ref. """
        ref = commit.ostree_ref or self.config.distribution_ref(self.config.default_distribution)
        build_date = commit.build_date or date.today().isoformat()
        version = "%s.%d" % (build_date, commit.build_number or 0)
        checksum = self.ostree.commit(repo_path, ref, version, cwd=os.path.dirname(repo_path))
        if checksum:
            commit.ostree_commit = checksum
        log.info("%r: stamped version %s on %s", commit, version, ref)
        return checksum

    def commit_tar_download(self, commit, dest):
        """ Downloads the build tarball of `commit` into `dest` and returns its path. """
        if commit is None:
            raise InvalidEntity("invalid Commit provided: None")
        if not commit.image_build_tar_url:
            raise RepoBuildError("%r has no build tarball URL" % commit)

        tar_name = DEFAULT_TAR_NAME
        if commit.image_build_hash:
            tar_name = "%s.tar" % commit.image_build_hash
        tar_file = os.path.join(dest, tar_name)

        if commit.external_url:
            downloader = self.files_service.http_downloader
        else:
            downloader = self.files_service.downloader
        downloader.download_to_path(commit.image_build_tar_url, tar_file)
        return tar_file

    def commit_tar_upload(self, commit, tar_file, repo_id):
        """ Keeps a copy of the build tarball in our own storage. """
        if commit is None:
            raise InvalidEntity("invalid Commit provided: None")
        key = "v2/%s/tar/%s/%s" % (commit.org_id, repo_id, os.path.basename(tar_file))
        url = self.files_service.uploader.upload_file(tar_file, key)
        commit.image_build_tar_url = url
        commit.external_url = False
        self.session.commit()
        return url

    def commit_tar_extract(self, commit, tar_file, dest):
        if commit is None:
            raise InvalidEntity("invalid Commit provided: None")
        with open(tar_file, "rb") as f:
            self.files_service.extractor.extract(f, dest)
        log.debug("%r: extracted %s into %s", commit, tar_file, dest)

    def commit_tar_delete(self, tar_file):
        """ Removes a downloaded tarball. A failure is only logged. """
        return remove_path(tar_file)

    def _set_status(self, entity, status):
        entity.transition(status)
        self.session.commit()

    def _set_delta_status(self, state, status):
        state.transition(status)
        self.session.commit()

    def _set_error(self, *entities):
        """ Drops what the failed step left in the session, then records ERROR. """
        self.session.rollback()
        for entity in entities:
            entity.transition(STATUS_ERROR)
        self.session.commit()

