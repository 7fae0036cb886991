# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import io
import os
import shutil
import tarfile

from edge_build_service.commands import CommandResult, CommandRunner
from edge_build_service.errors import ImageBuilderError
from edge_build_service.files import FilesService, LocalUploader, TarExtractor
from edge_build_service.models import (
    STATUS_BUILDING,
    STATUS_ERROR,
    STATUS_SUCCESS,
    Commit,
    Image,
    Installer,
    Repo,
    UpdateTransaction,
)


class ScriptedRunner(CommandRunner):
    """
    CommandRunner replaying scripted results instead of spawning processes.

    Rules are matched on the sub-command (the second argument, e.g.
    "rev-parse" for ostree) or on the program itself. `stdout` may be a
    callable receiving the argument vector.
    """

    def __init__(self):
        self.rules = []
        self.calls = []

    def when(self, command, stdout="", returncode=0, stderr="", side_effect=None):
        self.rules.insert(0, (command, stdout, returncode, stderr, side_effect))
        return self

    def _execute(self, args, cwd):
        self.calls.append((list(args), cwd))
        for command, stdout, returncode, stderr, side_effect in self.rules:
            if command in (args[0], args[1] if len(args) > 1 else None):
                if side_effect is not None:
                    side_effect(args, cwd)
                if callable(stdout):
                    stdout = stdout(args)
                return CommandResult(args, returncode, stdout, stderr)
        return CommandResult(args, 0, "", "")

    def calls_of(self, command):
        return [args for args, cwd in self.calls
                if command in (args[0], args[1] if len(args) > 1 else None)]


def ostree_runner():
    """ ScriptedRunner answering rev-parse with a revision derived from the repo path. """
    runner = ScriptedRunner()
    runner.when("rev-parse", stdout=lambda args: "rev-of-%s\n" % os.path.basename(
        os.path.dirname(args[3])))
    runner.when("commit", stdout="stamped0123\n")
    return runner


def make_tarball(path, files=None):
    """ Writes a tarball holding a minimal OSTree-like `repo/` tree. """
    files = files or {"repo/config": "[core]\nrepo_version=1\nmode=archive-z2\n",
                      "repo/refs/heads/rhel/9/x86_64/edge": "0123abcd\n"}
    with tarfile.open(path, "w") as tar:
        dirs = set()
        for name in sorted(files):
            parent = os.path.dirname(name)
            while parent and parent not in dirs:
                dirs.add(parent)
                parent = os.path.dirname(parent)
        for name in sorted(dirs):
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in sorted(files.items()):
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


class FakeDownloader(object):
    """ Serves every URL with the same local file, recording what was asked. """

    def __init__(self, source):
        self.source = source
        self.downloads = []

    def download_to_path(self, source_url, destination_path):
        self.downloads.append((source_url, destination_path))
        shutil.copyfile(self.source, destination_path)
        return destination_path


def make_files_service(tmpdir, source=None):
    """ FilesService storing below `tmpdir`/storage and downloading `source`. """
    tmpdir = str(tmpdir)
    if source is None:
        source = make_tarball(os.path.join(tmpdir, "artifact.tar"))
    downloader = FakeDownloader(source)
    uploader = LocalUploader(os.path.join(tmpdir, "storage"))
    return FilesService(downloader, TarExtractor(), uploader, http_downloader=downloader)


class FakeImageBuilder(object):
    """
    In-memory stand-in for ImageBuilderClient.

    `commit_statuses` and `installer_statuses` are the compose statuses
    returned by successive polls, the last one repeating.
    """

    def __init__(self, commit_statuses=("success",), installer_statuses=("success",),
                 reject_commit=False, reject_installer=False, metadata_error=False):
        self.commit_statuses = list(commit_statuses)
        self.installer_statuses = list(installer_statuses)
        self.reject_commit = reject_commit
        self.reject_installer = reject_installer
        self.metadata_error = metadata_error
        self.commit_polls = 0
        self.installer_polls = 0
        self.composed = []

    def compose_commit(self, image):
        if self.reject_commit:
            raise ImageBuilderError("image is not being created by image builder")
        self.composed.append("commit")
        image.commit.compose_job_id = "commit-job-%d" % len(self.composed)
        image.commit.transition(STATUS_BUILDING)
        image.transition(STATUS_BUILDING)
        return image

    def compose_installer(self, image):
        if self.reject_installer:
            raise ImageBuilderError("image is not being created by image builder")
        self.composed.append("installer")
        image.installer.compose_job_id = "installer-job-%d" % len(self.composed)
        image.installer.transition(STATUS_BUILDING)
        return image

    @staticmethod
    def _next(statuses, count):
        return statuses[min(count, len(statuses) - 1)]

    def get_commit_status(self, image):
        status = self._next(self.commit_statuses, self.commit_polls)
        self.commit_polls += 1
        if status == "error":
            raise ImageBuilderError("request for status was not successful")
        if status == "success":
            image.commit.image_build_tar_url = "https://image-builder.example.local/commit.tar"
            image.commit.external_url = True
            image.commit.transition(STATUS_SUCCESS)
        elif status == "failure":
            image.commit.transition(STATUS_ERROR)
        return image

    def get_installer_status(self, image):
        status = self._next(self.installer_statuses, self.installer_polls)
        self.installer_polls += 1
        if status == "success":
            image.installer.image_build_iso_url = "https://image-builder.example.local/installer.iso"
            image.installer.transition(STATUS_SUCCESS)
        elif status == "failure":
            image.installer.transition(STATUS_ERROR)
        return image

    def get_metadata(self, image):
        if self.metadata_error:
            raise ImageBuilderError("image metadata not found")
        return {
            "ostree_commit": "c0ffee",
            "packages": [
                {"name": "bash", "arch": "x86_64", "release": "1.el9", "version": "5.1.8",
                 "epoch": None, "type": "rpm", "sigmd5": "aa", "signature": "sig"},
                {"name": "ostree", "arch": "x86_64", "release": "2.el9", "version": "2023.1",
                 "epoch": "0", "type": "rpm", "sigmd5": "bb", "signature": "sig"},
            ],
        }


def make_image(output_types=("commit",), name="edge-image", org_id="org-1", **kwargs):
    image = Image(name=name, org_id=org_id, output_types=list(output_types),
                  packages=["vim-enhanced"], **kwargs)
    if "installer" in output_types:
        image.installer = Installer(ssh_key="ssh-rsa AAAA user@host", username="edge")
    return image


def make_building_image(session, output_types=("commit",), name="edge-image", org_id="org-1"):
    """ Persists an image as create_image leaves it: Commit and Image BUILDING. """
    image = make_image(output_types, name=name, org_id=org_id, distribution="rhel-92")
    image.commit = Commit(org_id=org_id, arch="x86_64", ostree_ref="rhel/9/x86_64/edge",
                          compose_job_id="commit-job", status=STATUS_BUILDING,
                          build_date="2023-01-02", build_number=3)
    image.status = STATUS_BUILDING
    if image.installer is not None:
        image.installer.status = "CREATED"
    session.add(image)
    session.commit()
    return image


def make_commit(session, ostree_commit=None, ref="rhel/9/x86_64/edge", **kwargs):
    commit = Commit(org_id="org-1", arch="x86_64", ostree_ref=ref, ostree_commit=ostree_commit,
                    image_build_tar_url="https://image-builder.example.local/%s.tar" % ostree_commit,
                    external_url=True, status=STATUS_SUCCESS, **kwargs)
    session.add(commit)
    session.commit()
    return commit


def make_update(session, old_commits=0):
    """ Persists an update transaction with `old_commits` historical commits. """
    update = UpdateTransaction(org_id="org-1", status=STATUS_BUILDING)
    update.commit = make_commit(session, ostree_commit="target")
    update.repo = Repo(status=STATUS_BUILDING)
    for i in range(old_commits):
        update.old_commits.append(make_commit(session, ostree_commit="old%d" % i))
    session.add(update)
    session.commit()
    return update
