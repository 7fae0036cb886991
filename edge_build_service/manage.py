# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Operator commands of the Edge Build Service."""

import argparse
import json
import logging
import sys

from edge_build_service import conf
from edge_build_service.database import Database
from edge_build_service.images import ImageService
from edge_build_service.logger import level_flags
from edge_build_service.models import Image
from edge_build_service.scheduler import tasks
from edge_build_service.scheduler.coordinator import BuildCoordinator
from edge_build_service.scheduler.recovery import recover_stuck_builds

log = logging.getLogger(__name__)


def createdb(database, args):
    """ Creates the database tables. """
    database.create_tables()
    log.info("Tables created in %s", conf.db)


def _run_coordinated(database, submit):
    """
    Runs `submit(coordinator, session)` and waits for the queued work. The
    session belongs to the main thread and is closed once the workers stopped.
    """
    coordinator = BuildCoordinator(database)
    coordinator.install_signal_handlers()
    coordinator.start()
    with database.session_scope() as session:
        submit(coordinator, session)
        coordinator.run_until_cancelled(exit_when_idle=True)
    return 1 if coordinator.cancelled.is_set() else 0


def process_image(database, args):
    """ Follows a submitted image build to its end. """
    def submit(coordinator, session):
        service = ImageService(session, coordinator=coordinator)
        coordinator.submit(tasks.post_process_image, service, args.id)
    return _run_coordinated(database, submit)


def retry_image(database, args):
    """ Composes a failed image again and follows the new build. """
    def submit(coordinator, session):
        service = ImageService(session, coordinator=coordinator)
        service.retry_create_image(Image.get_by_id(session, args.id))
    return _run_coordinated(database, submit)


def import_repo(database, args):
    """ Publishes the repository of a commit again. """
    return _run_coordinated(
        database, lambda coordinator, session: coordinator.submit(
            tasks.import_repo, coordinator, args.id))


def build_update_repo(database, args):
    """ Builds the repository of an update transaction. """
    return _run_coordinated(
        database, lambda coordinator, session: coordinator.submit(
            tasks.build_update_repo, coordinator, args.id))


def recover(database, args):
    """ Marks builds stuck in a non final status ERROR. """
    with database.session_scope() as session:
        count = recover_stuck_builds(session, args.older_than)
    print(json.dumps({"recovered": count}))


def get_parser():
    parser = argparse.ArgumentParser(description=__doc__)
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-d", "--debug", action="store_true", help="debug output")
    verbosity.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="only print errors")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    subparsers.add_parser("createdb", help=createdb.__doc__).set_defaults(func=createdb)

    for name, func, what in (("process-image", process_image, "image"),
                             ("retry-image", retry_image, "image"),
                             ("import-repo", import_repo, "repo"),
                             ("build-update-repo", build_update_repo, "update transaction")):
        sub = subparsers.add_parser(name, help=func.__doc__)
        sub.add_argument("id", type=int, help="id of the %s" % what)
        sub.set_defaults(func=func)

    sub = subparsers.add_parser("recover", help=recover.__doc__)
    sub.add_argument("--older-than", type=int, default=conf.stuck_build_timeout,
                     help="seconds without update after which a build counts as stuck")
    sub.set_defaults(func=recover)
    return parser


def main(argv=None):
    args = get_parser().parse_args(argv)

    root = logging.getLogger()
    if args.debug:
        root.setLevel(level_flags["debug"])
    elif args.verbose:
        root.setLevel(level_flags["verbose"])
    elif args.quiet:
        root.setLevel(level_flags["quiet"])

    database = Database(conf, debug=conf.debug)
    return args.func(database, args) or 0


if __name__ == "__main__":
    sys.exit(main())
