# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Database handler functions."""

from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from edge_build_service.models import Base

log = logging.getLogger(__name__)


def _engine_options(db_url):
    """
    If an SQLite in-memory database is used, sets the driver options so
    multiple threads can share the same database.

    This is used *only* during tests.
    """
    url = make_url(db_url)
    if url.drivername == "sqlite" and url.database in (None, "", ":memory:"):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {}


class Database(object):
    """Class for handling database connections.

    One Database is created per process. Every thread working on builds
    takes its own session from it, either through ``new_session()`` or the
    ``session_scope()`` context manager.
    """

    def __init__(self, config, debug=False):
        """Initialize the database object."""
        self.engine = create_engine(config.db, echo=debug, **_engine_options(config.db))
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def new_session(self):
        return self.session_factory()

    @contextmanager
    def session_scope(self):
        """ Provides a session which is rolled back on error and always closed. """
        session = self.new_session()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self):
        """ Creates our tables in the database. """
        Base.metadata.create_all(self.engine)
