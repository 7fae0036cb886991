# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""SQLAlchemy models of the image build and repository entities."""

from datetime import datetime, timezone
import logging

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.associationproxy import association_proxy
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import declarative_base, relationship, validates

from edge_build_service.errors import NotFound, ProgrammingError

log = logging.getLogger(__name__)


# Status values shared by every entity.
STATUS_CREATED = "CREATED"
STATUS_BUILDING = "BUILDING"
STATUS_SUCCESS = "SUCCESS"
STATUS_ERROR = "ERROR"

BUILD_STATES = (STATUS_CREATED, STATUS_BUILDING, STATUS_SUCCESS, STATUS_ERROR)
# Once reached, only an explicit retry moves an entity out of these.
FINAL_STATES = (STATUS_SUCCESS, STATUS_ERROR)

OUTPUT_TYPE_COMMIT = "commit"
OUTPUT_TYPE_INSTALLER = "installer"

# Progress of the static delta generation behind an update repo.
STATIC_DELTA_DOWNLOADING = "DOWNLOADING"
STATIC_DELTA_GENERATING = "GENERATING"
STATIC_DELTA_UPLOADING = "UPLOADING"
STATIC_DELTA_READY = "READY"
STATIC_DELTA_ERROR = STATUS_ERROR

STATIC_DELTA_STATES = (STATIC_DELTA_DOWNLOADING, STATIC_DELTA_GENERATING,
                       STATIC_DELTA_UPLOADING, STATIC_DELTA_READY, STATIC_DELTA_ERROR)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EdgeBase(object):
    @classmethod
    def get_by_id(cls, session, id):
        obj = session.query(cls).filter(cls.id == id).first()
        if obj is None:
            raise NotFound("%s %r not found" % (cls.__name__, id))
        return obj


Base = declarative_base(cls=EdgeBase)


class EntityMixin(object):
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class StatusMixin(object):
    """ Common status handling of the build entities. """

    status = Column(String(16), nullable=False, default=STATUS_CREATED)

    @validates("status")
    def validate_status(self, key, field):
        if field in BUILD_STATES:
            return field
        raise ValueError("%s: %s, not in %r" % (key, field, BUILD_STATES))

    def transition(self, status):
        """ Moves the entity to `status`, logging the change. """
        if self.status != status:
            log.info("%r, status %r->%r", self, self.status, status)
        self.status = status

    @property
    def is_building(self):
        return self.status in (STATUS_CREATED, STATUS_BUILDING)

    @classmethod
    def by_status(cls, session, status):
        return session.query(cls).filter(cls.status == status).all()


commit_installed_packages = Table(
    "commit_installed_packages",
    Base.metadata,
    Column("commit_id", Integer, ForeignKey("commits.id"), primary_key=True),
    Column("installed_package_id", Integer, ForeignKey("installed_packages.id"), primary_key=True),
)

updatetransaction_devices = Table(
    "updatetransaction_devices",
    Base.metadata,
    Column("update_transaction_id", Integer, ForeignKey("update_transactions.id"), primary_key=True),
    Column("device_id", Integer, ForeignKey("devices.id"), primary_key=True),
)

updatetransaction_dispatchrecords = Table(
    "updatetransaction_dispatchrecords",
    Base.metadata,
    Column("update_transaction_id", Integer, ForeignKey("update_transactions.id"), primary_key=True),
    Column("dispatch_record_id", Integer, ForeignKey("dispatch_records.id"), primary_key=True),
)


class ImageSet(EntityMixin, Base):
    __tablename__ = "image_sets"
    name = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    account = Column(String)
    org_id = Column(String, nullable=False, index=True)

    images = relationship("Image", back_populates="image_set")

    def __repr__(self):
        return "<ImageSet %s, id=%r, org_id=%r>" % (self.name, self.id, self.org_id)


class InstalledPackage(EntityMixin, Base):
    __tablename__ = "installed_packages"
    name = Column(String, nullable=False)
    arch = Column(String)
    release = Column(String)
    version = Column(String)
    epoch = Column(String)
    type = Column(String)
    sigmd5 = Column(String)
    signature = Column(Text)

    def __repr__(self):
        return "<InstalledPackage %s-%s-%s.%s>" % (self.name, self.version, self.release, self.arch)


class Repo(EntityMixin, StatusMixin, Base):
    __tablename__ = "repos"
    url = Column(String)

    commit = relationship("Commit", back_populates="repo", uselist=False)

    def json(self):
        return {
            "id": self.id,
            "url": self.url,
            "status": self.status,
        }

    def __repr__(self):
        return "<Repo id=%r, status=%r>" % (self.id, self.status)


class Commit(EntityMixin, StatusMixin, Base):
    __tablename__ = "commits"
    name = Column(String)
    account = Column(String)
    org_id = Column(String, index=True)
    arch = Column(String, nullable=False, default="x86_64")
    build_date = Column(String)
    build_number = Column(Integer, nullable=False, default=0)
    image_build_hash = Column(String)
    image_build_parent_hash = Column(String)
    image_build_tar_url = Column(String)
    ostree_commit = Column(String)
    ostree_parent_commit = Column(String)
    ostree_ref = Column(String)
    ostree_parent_ref = Column(String)
    compose_job_id = Column(String)
    external_url = Column(Boolean, nullable=False, default=False)
    repo_id = Column(Integer, ForeignKey("repos.id"), unique=True)

    repo = relationship("Repo", back_populates="commit")
    installed_packages = relationship("InstalledPackage", secondary=commit_installed_packages)

    @validates("repo")
    def validate_repo(self, key, repo):
        if self.repo is not None and repo is not self.repo:
            raise ProgrammingError("%r already belongs to %r" % (self, self.repo))
        return repo

    @validates("repo_id")
    def validate_repo_id(self, key, repo_id):
        if self.repo_id is not None and repo_id != self.repo_id:
            raise ProgrammingError("%r already belongs to repo %r" % (self, self.repo_id))
        return repo_id

    def json(self):
        return {
            "id": self.id,
            "status": self.status,
            "arch": self.arch,
            "ostree_commit": self.ostree_commit,
            "ostree_ref": self.ostree_ref,
            "image_build_tar_url": self.image_build_tar_url,
            "compose_job_id": self.compose_job_id,
            "repo_id": self.repo_id,
        }

    def __repr__(self):
        return "<Commit id=%r, status=%r, ostree_commit=%r>" % (
            self.id, self.status, self.ostree_commit)


class Installer(EntityMixin, StatusMixin, Base):
    __tablename__ = "installers"
    account = Column(String)
    org_id = Column(String, index=True)
    image_build_iso_url = Column(String)
    compose_job_id = Column(String)
    ssh_key = Column(Text)
    username = Column(String)
    checksum = Column(String)

    def json(self):
        return {
            "id": self.id,
            "status": self.status,
            "image_build_iso_url": self.image_build_iso_url,
            "compose_job_id": self.compose_job_id,
            "checksum": self.checksum,
        }

    def __repr__(self):
        return "<Installer id=%r, status=%r>" % (self.id, self.status)


class Image(EntityMixin, StatusMixin, Base):
    __tablename__ = "images"
    name = Column(String, nullable=False)
    account = Column(String)
    org_id = Column(String, nullable=False, index=True)
    description = Column(Text)
    distribution = Column(String)
    version = Column(Integer, nullable=False, default=1)
    output_types = Column(JSON, nullable=False, default=list)
    packages = Column(JSON, nullable=False, default=list)
    request_id = Column(String)
    commit_id = Column(Integer, ForeignKey("commits.id"))
    installer_id = Column(Integer, ForeignKey("installers.id"))
    image_set_id = Column(Integer, ForeignKey("image_sets.id"))

    commit = relationship("Commit")
    installer = relationship("Installer")
    image_set = relationship("ImageSet", back_populates="images")

    def has_output_type(self, output_type):
        return output_type in (self.output_types or [])

    def json(self):
        return {
            "id": self.id,
            "name": self.name,
            "org_id": self.org_id,
            "distribution": self.distribution,
            "version": self.version,
            "status": self.status,
            "output_types": list(self.output_types or []),
            "commit": self.commit.json() if self.commit else None,
            "installer": self.installer.json() if self.installer else None,
            "image_set_id": self.image_set_id,
        }

    def __repr__(self):
        return "<Image %s, id=%r, status=%r>" % (self.name, self.id, self.status)


class Device(EntityMixin, Base):
    __tablename__ = "devices"
    uuid = Column(String, nullable=False, unique=True)
    name = Column(String)
    account = Column(String)
    org_id = Column(String, index=True)

    def __repr__(self):
        return "<Device %s>" % self.uuid


class DispatchRecord(EntityMixin, Base):
    __tablename__ = "dispatch_records"
    playbook_url = Column(String)
    device_id = Column(Integer, ForeignKey("devices.id"))
    status = Column(String)
    reason = Column(Text)
    playbook_dispatcher_id = Column(String)

    device = relationship("Device")


class StaticDeltaState(EntityMixin, Base):
    """ Progress of the static delta between two commits of an org. """
    __tablename__ = "static_delta_states"
    name = Column(String, nullable=False, index=True)
    org_id = Column(String, index=True)
    status = Column(String(16), nullable=False, default=STATIC_DELTA_DOWNLOADING)
    url = Column(String)

    @staticmethod
    def delta_name(from_rev, to_rev):
        return "%s-%s" % (from_rev or "undefined", to_rev or "undefined")

    @classmethod
    def get_or_create(cls, session, from_rev, to_rev, org_id):
        name = cls.delta_name(from_rev, to_rev)
        state = session.query(cls).filter(cls.name == name, cls.org_id == org_id).first()
        if state is None:
            state = cls(name=name, org_id=org_id)
            session.add(state)
        return state

    @validates("status")
    def validate_status(self, key, field):
        if field in STATIC_DELTA_STATES:
            return field
        raise ValueError("%s: %s, not in %r" % (key, field, STATIC_DELTA_STATES))

    def transition(self, status):
        if self.status != status:
            log.info("%r, status %r->%r", self, self.status, status)
        self.status = status

    def __repr__(self):
        return "<StaticDeltaState %s, org_id=%r, status=%r>" % (self.name, self.org_id, self.status)


class UpdateTransactionCommit(Base):
    """ Position of an old commit within an update transaction. """
    __tablename__ = "updatetransaction_commits"
    update_transaction_id = Column(
        Integer, ForeignKey("update_transactions.id"), primary_key=True)
    commit_id = Column(Integer, ForeignKey("commits.id"), primary_key=True)
    position = Column(Integer, nullable=False)

    commit = relationship("Commit")


class UpdateTransaction(EntityMixin, StatusMixin, Base):
    __tablename__ = "update_transactions"
    account = Column(String)
    org_id = Column(String, index=True)
    commit_id = Column(Integer, ForeignKey("commits.id"))
    repo_id = Column(Integer, ForeignKey("repos.id"))
    change_set = Column(String)

    commit = relationship("Commit")
    repo = relationship("Repo")
    old_commit_links = relationship(
        "UpdateTransactionCommit",
        order_by="UpdateTransactionCommit.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
    )
    old_commits = association_proxy(
        "old_commit_links", "commit",
        creator=lambda commit: UpdateTransactionCommit(commit=commit))
    devices = relationship("Device", secondary=updatetransaction_devices)
    dispatch_records = relationship("DispatchRecord", secondary=updatetransaction_dispatchrecords)

    def json(self):
        return {
            "id": self.id,
            "status": self.status,
            "commit_id": self.commit_id,
            "old_commits": [c.id for c in self.old_commits],
            "repo": self.repo.json() if self.repo else None,
        }

    def __repr__(self):
        return "<UpdateTransaction id=%r, status=%r>" % (self.id, self.status)
