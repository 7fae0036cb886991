# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import os

import pytest

from edge_build_service import config_section
from edge_build_service.config import Config
from edge_build_service.database import Database


@pytest.fixture()
def config(tmpdir):
    """ Test configuration keeping every work directory inside `tmpdir`. """
    cfg = Config(config_section)
    cfg.set_item("repo_temp_path", os.path.join(str(tmpdir), "repos"))
    cfg.set_item("iso_temp_path", os.path.join(str(tmpdir), "isos"))
    cfg.set_item("local_storage_dir", os.path.join(str(tmpdir), "storage"))
    cfg.set_item("poll_interval", 0)
    return cfg


@pytest.fixture()
def database(config):
    database = Database(config)
    database.create_tables()
    yield database
    database.engine.dispose()


@pytest.fixture()
def db_session(database):
    session = database.new_session()
    yield session
    session.close()
