# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Recovery of builds left in a non-terminal status by a crashed process.

Several replicas may run the sweep at the same time. Rows are selected with
FOR UPDATE SKIP LOCKED so a row is only ever swept by one of them, and only
rows untouched for `older_than` seconds are considered, which leaves the
builds still running in other replicas alone.
"""

from datetime import datetime, timedelta, timezone
import logging

from edge_build_service.models import (
    STATUS_BUILDING,
    STATUS_CREATED,
    STATUS_ERROR,
    Commit,
    Image,
    Installer,
    Repo,
    UpdateTransaction,
)

log = logging.getLogger(__name__)

RECOVERABLE_MODELS = (Image, Commit, Installer, Repo, UpdateTransaction)


def find_stuck(session, model, older_than):
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=older_than)
    return (
        session.query(model)
        .filter(model.status.in_([STATUS_CREATED, STATUS_BUILDING]))
        .filter(model.updated_at < cutoff)
        .with_for_update(skip_locked=True)
        .all()
    )


def recover_stuck_builds(session, older_than):
    """
    Marks every build entity stuck in CREATED or BUILDING for more than
    `older_than` seconds as ERROR. Returns the number of rows changed.
    """
    count = 0
    for model in RECOVERABLE_MODELS:
        for entity in find_stuck(session, model, older_than):
            log.warning("Recovering stuck %r", entity)
            entity.transition(STATUS_ERROR)
            count += 1
    session.commit()
    log.info("Marked %d stuck build entities as %s", count, STATUS_ERROR)
    return count
