# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Client of the Image Builder compose API."""

import base64
import json
import logging

import requests

from edge_build_service import conf
from edge_build_service.errors import ImageBuilderError
from edge_build_service.models import STATUS_BUILDING, STATUS_ERROR, STATUS_SUCCESS

log = logging.getLogger(__name__)

requests_session = requests.Session()

IMAGE_TYPE_COMMIT = "edge-commit"
IMAGE_TYPE_INSTALLER = "edge-installer"

COMPOSE_STATUS_SUCCESS = "success"
COMPOSE_STATUS_FAILURE = "failure"
# building, pending, registering and uploading all keep the entity BUILDING.
COMPOSE_STATUSES = ("building", "failure", "pending", "registering", "success", "uploading")

WORKER_STOPPED_REASON = "Worker running this job stopped responding"


def identity_header(org_id, account=None):
    """ Returns the base64 encoded x-rh-identity value for `org_id`. """
    identity = {"identity": {"org_id": org_id, "type": "System", "internal": {"org_id": org_id}}}
    if account:
        identity["identity"]["account_number"] = account
    return base64.b64encode(json.dumps(identity).encode("utf-8")).decode("ascii")


class ImageBuilderClient(object):
    """
    Talks to Image Builder on behalf of one organization.

    The compose and status calls update the passed Image's Commit or Installer
    in place. They never touch the database; persisting is up to the caller.
    """

    def __init__(self, org_id=None, account=None, config=None):
        self.config = config or conf
        self.org_id = org_id or self.config.image_builder_org_id
        self.account = account
        self.base_url = "%s/api/image-builder/v1" % self.config.image_builder_url.rstrip("/")

    def __repr__(self):
        return "<ImageBuilderClient %s, org_id=%r>" % (self.base_url, self.org_id)

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.org_id:
            headers["x-rh-identity"] = identity_header(self.org_id, self.account)
        return headers

    def _request(self, method, path, expected_status, payload=None):
        url = self.base_url + path
        log.debug("Image Builder %s %s payload=%r", method, url, payload)
        try:
            rv = requests_session.request(
                method, url, json=payload, headers=self._headers(),
                timeout=self.config.image_builder_timeout)
        except requests.RequestException as e:
            log.exception("Image Builder request %s %s failed", method, url)
            raise ImageBuilderError("Image Builder request failed: %s" % e)

        log.debug("Image Builder response %s: %s", rv.status_code, rv.text)
        if rv.status_code != expected_status:
            raise ImageBuilderError(
                "Image Builder returned HTTP %s for %s %s (expected %s)"
                % (rv.status_code, method, url, expected_status))
        try:
            return rv.json()
        except ValueError:
            raise ImageBuilderError("Image Builder returned invalid JSON for %s %s" % (method, url))

    def compose(self, compose_request):
        """ Submits `compose_request` and returns the compose job id. """
        data = self._request("POST", "/compose", 201, payload=compose_request)
        if not data.get("id"):
            raise ImageBuilderError("Image Builder accepted the compose without a job id")
        return data["id"]

    @staticmethod
    def _image_request(image, image_type, ostree):
        return {
            "architecture": image.commit.arch,
            "image_type": image_type,
            "ostree": ostree,
            "upload_request": {"type": "aws.s3", "options": {}},
        }

    def compose_commit(self, image):
        commit = image.commit
        ostree = {}
        if commit.ostree_ref:
            ostree["ref"] = commit.ostree_ref
        if commit.ostree_parent_commit:
            ostree["url"] = commit.ostree_parent_commit
            if commit.ostree_parent_ref and commit.ostree_parent_ref != commit.ostree_ref:
                ostree["parent"] = commit.ostree_parent_ref

        request = {
            "distribution": image.distribution,
            "customizations": {"packages": list(image.packages or [])},
            "image_requests": [self._image_request(image, IMAGE_TYPE_COMMIT, ostree or None)],
        }
        job_id = self.compose(request)
        log.info("%r: commit compose job %s submitted", image, job_id)
        commit.compose_job_id = job_id
        commit.transition(STATUS_BUILDING)
        image.transition(STATUS_BUILDING)
        return image

    def compose_installer(self, image):
        repo = image.commit.repo
        if repo is None or not repo.url:
            raise ImageBuilderError("%r has no published repo to build an installer from" % image)
        ostree = {
            "ref": image.commit.ostree_ref,
            "url": repo.url,
            "contenturl": repo.url,
            "rhsm": False,
        }
        request = {
            "distribution": image.distribution,
            "customizations": {"packages": []},
            "image_requests": [self._image_request(image, IMAGE_TYPE_INSTALLER, ostree)],
        }
        job_id = self.compose(request)
        log.info("%r: installer compose job %s submitted", image, job_id)
        image.installer.compose_job_id = job_id
        image.installer.transition(STATUS_BUILDING)
        image.transition(STATUS_BUILDING)
        return image

    def get_compose_status(self, job_id):
        data = self._request("GET", "/composes/%s" % job_id, 200)
        image_status = data.get("image_status") or {}
        status = image_status.get("status")
        if status == COMPOSE_STATUS_FAILURE and image_status.get("reason") == WORKER_STOPPED_REASON:
            raise ImageBuilderError("worker running compose %s stopped responding" % job_id)
        if status not in COMPOSE_STATUSES:
            log.warning("Unknown status %r for compose %s", status, job_id)
        return image_status

    @staticmethod
    def _upload_url(image_status):
        upload_status = image_status.get("upload_status") or {}
        return (upload_status.get("options") or {}).get("url")

    def get_commit_status(self, image):
        image_status = self.get_compose_status(image.commit.compose_job_id)
        status = image_status.get("status")
        log.info("%r: commit compose status %r", image, status)
        if status == COMPOSE_STATUS_SUCCESS:
            image.commit.image_build_tar_url = self._upload_url(image_status)
            image.commit.external_url = True
            image.commit.transition(STATUS_SUCCESS)
        elif status == COMPOSE_STATUS_FAILURE:
            image.commit.transition(STATUS_ERROR)
        return image

    def get_installer_status(self, image):
        image_status = self.get_compose_status(image.installer.compose_job_id)
        status = image_status.get("status")
        log.info("%r: installer compose status %r", image, status)
        if status == COMPOSE_STATUS_SUCCESS:
            image.installer.image_build_iso_url = self._upload_url(image_status)
            image.installer.transition(STATUS_SUCCESS)
        elif status == COMPOSE_STATUS_FAILURE:
            image.installer.transition(STATUS_ERROR)
        return image

    def get_metadata(self, image):
        """
        Returns the metadata of the commit compose of `image`:

            {"ostree_commit": "...", "packages": [{"name": ..., "arch": ..., ...}]}
        """
        data = self._request("GET", "/composes/%s/metadata" % image.commit.compose_job_id, 200)
        return {
            "ostree_commit": data.get("ostree_commit"),
            "packages": data.get("packages") or [],
        }
