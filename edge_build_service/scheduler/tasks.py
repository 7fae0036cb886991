# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Tasks run by the BuildCoordinator worker threads.

A task never reuses the session of the code that submitted it, every task
opens its own session from the coordinator's Database.
"""

import logging

from edge_build_service.errors import FatalPersistenceError
from edge_build_service.models import STATUS_ERROR, Repo, UpdateTransaction
from edge_build_service.repobuilder import RepoBuilder

log = logging.getLogger(__name__)


def post_process_image(service, image_id):
    """ Runs ImageService.post_process_image for `image_id` on a fresh session. """
    with service.coordinator.database.session_scope() as session:
        service.clone(session).post_process_image(image_id)


def import_repo(coordinator, repo_id, files_service=None, runner=None):
    with coordinator.database.session_scope() as session:
        repo = Repo.get_by_id(session, repo_id)
        builder = RepoBuilder(session, files_service=files_service, runner=runner,
                              config=coordinator.config)
        builder.import_repo(repo)


def build_update_repo(coordinator, update_id, files_service=None, runner=None):
    """ Builds the repo of an update transaction, marking the update ERROR on failure. """
    with coordinator.database.session_scope() as session:
        builder = RepoBuilder(session, files_service=files_service, runner=runner,
                              config=coordinator.config)
        try:
            builder.build_update_repo(update_id)
        except Exception:
            session.rollback()
            update = session.query(UpdateTransaction).filter(
                UpdateTransaction.id == update_id).first()
            if update is not None:
                update.transition(STATUS_ERROR)
                try:
                    session.commit()
                except Exception as e:
                    raise FatalPersistenceError(
                        "Unable to mark %r as failed: %s" % (update, e)) from e
            raise
