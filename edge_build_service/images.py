# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Orchestration of image builds.

An ImageService submits images to Image Builder, follows the compose jobs
until they finish, publishes the commit repository, customizes installer ISOs
and records the final status of the image.
"""

from contextlib import nullcontext
import functools
import logging
import os
from string import Template
import threading

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from edge_build_service import conf
from edge_build_service.commands import SubprocessRunner
from edge_build_service.config import SUPPORTED_OUTPUT_TYPES
from edge_build_service.errors import (
    BuildInterrupted,
    Conflict,
    FatalPersistenceError,
    ImageBuilderError,
    ImageSetAlreadyExists,
    ValidationError,
)
from edge_build_service.files import get_files_service
from edge_build_service.imagebuilder import ImageBuilderClient
from edge_build_service.models import (
    OUTPUT_TYPE_COMMIT,
    OUTPUT_TYPE_INSTALLER,
    STATUS_BUILDING,
    STATUS_CREATED,
    STATUS_ERROR,
    STATUS_SUCCESS,
    Commit,
    Image,
    ImageSet,
    InstalledPackage,
    Repo,
)
from edge_build_service.repobuilder import RepoBuilder
from edge_build_service.scheduler import tasks
from edge_build_service.utils import makedirs, remove_path, sha256_checksum

log = logging.getLogger(__name__)

KICKSTART_TEMPLATE = "templateKickstart.ks"
PACKAGED_TEMPLATES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

INSTALLED_PACKAGE_FIELDS = ("name", "arch", "release", "version", "epoch", "type", "sigmd5", "signature")


def _image_id(image):
    """ Id of a persistent image, read without loading its expired attributes. """
    return inspect(image).identity[0]


class ImageService(object):
    """
    Drives the build of images.

    :param session: SQLAlchemy session of the calling thread.
    :param coordinator: BuildCoordinator running the post-processing of new
        images. Without one, post-processing runs inline.
    :param image_builder: ImageBuilderClient to use instead of one per org.
    :param repo_builder: RepoBuilder publishing commit repositories.
    :param files_service: FilesService used for ISO download and upload.
    :param runner: CommandRunner running the kickstart injection script.
    """

    def __init__(self, session, coordinator=None, image_builder=None, repo_builder=None,
                 files_service=None, runner=None, config=None):
        self.session = session
        self.coordinator = coordinator
        self.config = config or conf
        self._image_builder = image_builder
        if files_service is None:
            files_service = repo_builder.files_service if repo_builder else get_files_service(self.config)
        self.files_service = files_service
        self.runner = runner or SubprocessRunner()
        self.repo_builder = repo_builder or RepoBuilder(
            session, files_service=self.files_service, runner=self.runner, config=self.config)
        if coordinator is not None:
            self.cancelled = coordinator.cancelled
        else:
            self.cancelled = threading.Event()

    def clone(self, session):
        """ Returns an ImageService with the same collaborators working on `session`. """
        return ImageService(
            session, coordinator=self.coordinator, image_builder=self._image_builder,
            files_service=self.files_service, runner=self.runner, config=self.config)

    def image_builder(self, image):
        if self._image_builder is not None:
            return self._image_builder
        return ImageBuilderClient(org_id=image.org_id, account=image.account, config=self.config)

    # Creating images

    def check_image_name_exists(self, name, org_id):
        query = self.session.query(Image).filter(Image.name == name, Image.org_id == org_id)
        return query.first() is not None

    def validate_image(self, image):
        if not image.org_id:
            raise ValidationError("org_id is mandatory")
        if not image.name:
            raise ValidationError("name is mandatory")
        output_types = list(image.output_types or [OUTPUT_TYPE_COMMIT])
        unknown = set(output_types) - set(SUPPORTED_OUTPUT_TYPES)
        if unknown:
            raise ValidationError("Unsupported output types: %s" % ", ".join(sorted(unknown)))
        if OUTPUT_TYPE_INSTALLER in output_types:
            if image.installer is None:
                raise ValidationError("installer output requires installer information")
            if OUTPUT_TYPE_COMMIT not in output_types:
                output_types.insert(0, OUTPUT_TYPE_COMMIT)
        image.output_types = output_types
        if self.check_image_name_exists(image.name, image.org_id):
            raise Conflict("An image named %r already exists" % image.name)

    def _set_defaults(self, image):
        if not image.version:
            image.version = 1
        if not image.distribution:
            image.distribution = self.config.default_distribution
        if image.commit is None:
            image.commit = Commit()
        commit = image.commit
        if not commit.arch:
            commit.arch = self.config.default_arch
        if not commit.ostree_ref:
            commit.ostree_ref = self.config.distribution_ref(image.distribution)
        commit.name = commit.name or image.name
        commit.org_id = image.org_id
        commit.account = image.account
        if not image.has_output_type(OUTPUT_TYPE_INSTALLER):
            image.installer = None
        elif image.installer is not None:
            image.installer.org_id = image.org_id
            image.installer.account = image.account

    def get_image_set_for_new_image(self, image):
        """ Returns the ImageSet named after `image`, creating it if needed. """
        image_set = self.session.query(ImageSet).filter(
            ImageSet.name == image.name, ImageSet.org_id == image.org_id).first()
        if image_set is not None:
            if image_set.images:
                raise ImageSetAlreadyExists("Image set %r already exists" % image.name)
            return image_set

        image_set = ImageSet(
            name=image.name, version=image.version, org_id=image.org_id, account=image.account)
        self.session.add(image_set)
        self.session.commit()
        log.info("Created %r", image_set)
        return image_set

    def create_image(self, image, account):
        """
        Submits a new image build and persists it.

        The ImageSet is created before the compose request; when Image
        Builder rejects the request no other row is written.

        :param image: transient Image, with an optional Commit and Installer.
        :param account: account (or org id) requesting the build.
        :return: the persisted Image, with Commit and Image BUILDING.
        """
        if not account:
            raise ValidationError("account is mandatory")
        image.account = account
        if not image.org_id:
            image.org_id = account
        self.validate_image(image)
        self._set_defaults(image)

        image_set = self.get_image_set_for_new_image(image)
        try:
            self.image_builder(image).compose_commit(image)
        except ImageBuilderError:
            log.exception("%r: Image Builder rejected the commit compose", image)
            raise

        image.image_set_id = image_set.id
        if image.installer is not None:
            image.installer.transition(STATUS_CREATED)
        self.session.add(image)
        self.session.commit()
        log.info("Created %r with %r", image, image.commit)

        self.submit_post_process(image)
        return image

    def retry_create_image(self, image):
        """ Composes the commit of a failed image again and restarts its post-processing. """
        if image.status != STATUS_ERROR:
            raise ValidationError("Only failed images can be retried, %r is %s" % (image, image.status))
        self.image_builder(image).compose_commit(image)
        if image.installer is not None:
            image.installer.compose_job_id = None
            image.installer.image_build_iso_url = None
            image.installer.transition(STATUS_CREATED)
        self.session.commit()
        log.info("Retrying %r", image)
        self.submit_post_process(image)
        return image

    def submit_post_process(self, image):
        if self.coordinator is None:
            return self.post_process_image(image.id)
        self.coordinator.submit(tasks.post_process_image, self, image.id)

    # Post-processing

    def _check_cancelled(self):
        if self.cancelled.is_set():
            raise BuildInterrupted()

    def _wait(self, loop_delay):
        if self.cancelled.wait(loop_delay):
            raise BuildInterrupted()

    def _track(self, image):
        if self.coordinator is None:
            return nullcontext()
        return self.coordinator.track(
            ("image", image.id), functools.partial(self.mark_interrupted, image.id))

    def mark_interrupted(self, image_id):
        """ Marks the still running parts of an image ERROR, on a session of its own. """
        with self.coordinator.database.session_scope() as session:
            image = Image.get_by_id(session, image_id)
            for entity in (image, image.commit, image.installer):
                if entity is not None and entity.is_building:
                    entity.transition(STATUS_ERROR)
            try:
                session.commit()
            except SQLAlchemyError as e:
                raise FatalPersistenceError(
                    "Unable to mark image %d interrupted: %s" % (image_id, e)) from e

    def post_process_image(self, image_id, loop_delay=None):
        """
        Follows the build of an image to its end: waits for the commit,
        publishes its repository, builds and customizes the installer when
        requested and sets the final image status.

        When the process is cancelled the build stops without further
        writes on this session. The cancel callback registered with the
        coordinator marks it ERROR, either from the main thread or when the
        build leaves the coordinator's registry.
        """
        if loop_delay is None:
            loop_delay = self.config.poll_interval
        image = Image.get_by_id(self.session, image_id)
        with self._track(image):
            try:
                self._post_process(image, loop_delay)
            except BuildInterrupted:
                log.warning("Image %d: build interrupted", image_id)
            except FatalPersistenceError:
                raise
            except Exception as e:
                log.exception("Image %d: post-processing failed", image_id)
                self.set_error_status_on_image(e, image)
        return image

    def _post_process(self, image, loop_delay):
        self._check_cancelled()
        self.process_commit(image, loop_delay)
        self._check_cancelled()
        if image.commit.status == STATUS_SUCCESS and image.has_output_type(OUTPUT_TYPE_INSTALLER):
            self.process_installer(image, loop_delay)
            self._check_cancelled()
        self.set_final_image_status(image)

    def process_commit(self, image, loop_delay):
        while image.commit.status == STATUS_BUILDING:
            self.update_image_status(image)
            if image.commit.status != STATUS_BUILDING:
                break
            self._wait(loop_delay)

        if image.commit.status != STATUS_SUCCESS:
            log.info("%r: commit finished with %s", image, image.commit.status)
            return image

        self.get_metadata(image)
        self._check_cancelled()
        self.create_repo_for_image(image)
        return image

    def update_image_status(self, image):
        """
        One poll step: asks Image Builder about the BUILDING Commit and
        Installer of `image`. Changes are only written when an entity left
        BUILDING. A failing request moves the entity to ERROR and raises.
        """
        builder = self.image_builder(image)
        changed = False
        for entity, get_status in ((image.commit, builder.get_commit_status),
                                   (image.installer, builder.get_installer_status)):
            if entity is None or entity.status != STATUS_BUILDING:
                continue
            try:
                get_status(image)
            except ImageBuilderError:
                entity.transition(STATUS_ERROR)
                self._save()
                raise
            changed = changed or entity.status != STATUS_BUILDING
        if changed:
            self._save()
        return image

    def get_metadata(self, image):
        """ Records the ostree commit and installed packages of the commit. Failures are only logged. """
        try:
            metadata = self.image_builder(image).get_metadata(image)
        except ImageBuilderError:
            log.exception("%r: unable to get the commit metadata", image)
            return image

        commit = image.commit
        if metadata["ostree_commit"]:
            commit.ostree_commit = metadata["ostree_commit"]
            self._save()
        try:
            known = set(p.id for p in commit.installed_packages)
            for data in metadata["packages"]:
                package = self._installed_package(data)
                if package.id is None or package.id not in known:
                    commit.installed_packages.append(package)
                    if package.id is not None:
                        known.add(package.id)
            self._save()
        except SQLAlchemyError:
            self.session.rollback()
            log.exception("Image %d: unable to record the installed packages", _image_id(image))
            return image
        log.info("%r: recorded %d installed packages", image, len(commit.installed_packages))
        return image

    def _installed_package(self, data):
        values = dict((field, data.get(field)) for field in INSTALLED_PACKAGE_FIELDS)
        if values["epoch"] is not None:
            values["epoch"] = str(values["epoch"])
        package = self.session.query(InstalledPackage).filter_by(**values).first()
        if package is None:
            package = InstalledPackage(**values)
            self.session.add(package)
            self.session.flush()
        return package

    def create_repo_for_image(self, image):
        """
        Publishes the repository of the image's commit. The Repo is created
        in BUILDING unless the commit already has one, which is then built
        again.
        """
        commit = image.commit
        repo = commit.repo
        if repo is None:
            repo = Repo(status=STATUS_BUILDING)
            self.session.add(repo)
            commit.repo = repo
        else:
            repo.transition(STATUS_BUILDING)
        self._save()
        log.info("%r: importing %r", image, repo)
        return self.repo_builder.import_repo(repo)

    def create_installer_for_image(self, image):
        """ Submits the installer compose. A rejected compose marks the Installer ERROR. """
        try:
            self.image_builder(image).compose_installer(image)
        except ImageBuilderError:
            log.exception("%r: Image Builder rejected the installer compose", image)
            image.installer.transition(STATUS_ERROR)
        self._save()
        return image

    def process_installer(self, image, loop_delay):
        installer = image.installer
        self.create_installer_for_image(image)
        while installer.status == STATUS_BUILDING:
            try:
                self.update_image_status(image)
            except ImageBuilderError:
                log.exception("%r: installer status request failed", image)
                break
            if installer.status != STATUS_BUILDING:
                break
            self._wait(loop_delay)

        if installer.status == STATUS_SUCCESS and self.config.kickstart_injection:
            self._check_cancelled()
            try:
                self.add_user_info(image)
            except BuildInterrupted:
                raise
            except Exception:
                log.exception("%r: installer customization failed", image)
                installer.transition(STATUS_ERROR)
                self._save()
        return image

    def set_error_status_on_image(self, err, image):
        """
        Marks the image and its commit and installer ERROR. Whatever the
        failed step left in the session is rolled back first. Failing to
        record the status raises FatalPersistenceError.
        """
        image_id = _image_id(image)
        log.error("Image %d: build failed: %s", image_id, err)
        try:
            self.session.rollback()
            for entity in (image, image.commit, image.installer):
                if entity is not None:
                    entity.transition(STATUS_ERROR)
            self.session.commit()
        except SQLAlchemyError as e:
            log.critical("Image %d: unable to record the build failure", image_id)
            raise FatalPersistenceError("Unable to mark image %d as failed: %s" % (image_id, e)) from e
        return image

    def set_final_image_status(self, image):
        """
        The image is SUCCESS if every requested output is SUCCESS and ERROR
        otherwise. A requested output still CREATED or BUILDING is set to ERROR.
        """
        success = True
        for output_type, entity in ((OUTPUT_TYPE_COMMIT, image.commit),
                                    (OUTPUT_TYPE_INSTALLER, image.installer)):
            if not image.has_output_type(output_type):
                continue
            if entity is None:
                success = False
                continue
            if entity.status != STATUS_SUCCESS:
                success = False
                if entity.is_building:
                    entity.transition(STATUS_ERROR)
        image.transition(STATUS_SUCCESS if success else STATUS_ERROR)
        self._save()
        return image

    def _save(self):
        self.session.commit()

    # Installer ISO customization

    def add_user_info(self, image):
        """ Injects the user's ssh key and username into the installer ISO and publishes it. """
        dest = makedirs(self.config.iso_temp_path)
        iso_path = os.path.join(dest, "%s-%d.iso" % (image.name, image.id))
        kickstart = os.path.join(dest, "finalKickstart-%s_%d.ks" % (image.org_id, image.id))
        try:
            self.download_iso(image, iso_path)
            self.add_ssh_key_to_kickstart(image.installer.ssh_key, image.installer.username, kickstart)
            self.exe_injection_script(kickstart, iso_path, image.id)
            self.calculate_checksum(iso_path, image)
            self.upload_iso(image, iso_path)
        finally:
            self.clean_files(kickstart, iso_path, image.id)
        log.info("%r: installer customized", image)
        return image

    def download_iso(self, image, iso_path):
        url = image.installer.image_build_iso_url
        if not url:
            raise ValueError("%r has no ISO URL" % image.installer)
        return self.files_service.http_downloader.download_to_path(url, iso_path)

    def kickstart_template_path(self):
        path = os.path.join(self.config.templates_path, KICKSTART_TEMPLATE)
        if os.path.exists(path):
            return path
        return os.path.join(PACKAGED_TEMPLATES_PATH, KICKSTART_TEMPLATE)

    def add_ssh_key_to_kickstart(self, ssh_key, username, kickstart):
        if not ssh_key or not username:
            raise ValueError("ssh key and username are required to customize the installer")
        with open(self.kickstart_template_path()) as f:
            template = Template(f.read())
        with open(kickstart, "w") as f:
            f.write(template.safe_substitute(ssh_key=ssh_key, username=username))
        log.debug("Wrote kickstart %s for user %s", kickstart, username)
        return kickstart

    def _workdir(self, image_id):
        return os.path.join(self.config.iso_temp_path, "workdir%d" % image_id)

    def exe_injection_script(self, kickstart, iso_path, image_id):
        workdir = makedirs(self._workdir(image_id), mode=0o750)
        return self.runner.run([self.config.fleetkick_script, kickstart, iso_path, iso_path, workdir])

    def calculate_checksum(self, iso_path, image):
        image.installer.checksum = sha256_checksum(iso_path)
        self._save()
        return image.installer.checksum

    def upload_iso(self, image, iso_path):
        key = "%s/isos/%s.iso" % (image.org_id, image.name)
        url = self.files_service.uploader.upload_file(iso_path, key)
        image.installer.image_build_iso_url = url
        self._save()
        return url

    def clean_files(self, kickstart, iso_path, image_id):
        for path in (kickstart, iso_path, self._workdir(image_id)):
            remove_path(path)
