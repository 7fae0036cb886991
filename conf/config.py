# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
from os import environ, path
import tempfile

confdir = path.abspath(path.dirname(__file__))
# use parent dir as dbdir else fallback to current dir
dbdir = path.abspath(path.join(confdir, "..")) if confdir.endswith("conf") else confdir


class BaseConfiguration(object):
    DEBUG = False
    DB = "sqlite:///{0}".format(path.join(dbdir, "edge_build_service.db"))

    LOG_BACKEND = "console"
    LOG_LEVEL = "info"

    REPO_TEMP_PATH = "/tmp/repos/"
    TEMPLATES_PATH = "/usr/local/etc/"
    ISO_TEMP_PATH = "/var/tmp/"
    FLEETKICK_SCRIPT = "/usr/local/bin/fleetkick.sh"

    IMAGE_BUILDER_URL = environ.get("IMAGE_BUILDER_URL", "http://image-builder:8080")

    # Compose status is polled on a fixed cadence, in seconds
    POLL_INTERVAL = 60

    NUM_WORKERS = 4
    QUEUE_SIZE = 100


class TestConfiguration(BaseConfiguration):
    LOG_LEVEL = "debug"
    DB = environ.get("DATABASE_URI", "sqlite://")
    DEBUG = True

    REPO_TEMP_PATH = path.join(tempfile.gettempdir(), "edge-build-service-tests", "repos")
    ISO_TEMP_PATH = path.join(tempfile.gettempdir(), "edge-build-service-tests", "isos")
    TEMPLATES_PATH = path.join(confdir, "nonexistent")
    LOCAL = True
    LOCAL_STORAGE_DIR = path.join(tempfile.gettempdir(), "edge-build-service-tests", "storage")
    IMAGE_BUILDER_URL = "http://image-builder.example.local"

    POLL_INTERVAL = 0
    NUM_WORKERS = 2
    QUEUE_SIZE = 10

    # Global network-related values, in seconds
    NET_TIMEOUT = 3
    NET_RETRY_INTERVAL = 1


class ProdConfiguration(BaseConfiguration):
    DB = environ.get("DATABASE_URI", BaseConfiguration.DB)
    BUCKET_NAME = environ.get("EDGETARBALLSBUCKET", "rh-edge-tarballs")
    BUCKET_REGION = environ.get("EDGETARBALLSBUCKET_REGION", "us-east-1")
    AWS_ACCESS_KEY = environ.get("EDGEMGMT_AWSACCESSKEY", "")
    AWS_SECRET_KEY = environ.get("EDGEMGMT_AWSSECRETKEY", "")
    RECOVER_STUCK_BUILDS = environ.get("RECOVER_STUCK_BUILDS", "") == "true"
    SKIP_UPDATE_REPO = environ.get("SKIP_UPDATE_REPO", "") == "true"


class DevConfiguration(BaseConfiguration):
    DEBUG = True
    LOG_LEVEL = "debug"
    LOCAL = True
    REPO_TEMP_PATH = path.join(dbdir, "tmp", "repos")
    ISO_TEMP_PATH = path.join(dbdir, "tmp", "isos")
    LOCAL_STORAGE_DIR = path.join(dbdir, "tmp", "storage")
    TEMPLATES_PATH = path.join(dbdir, "edge_build_service", "templates")
    IMAGE_BUILDER_URL = environ.get("IMAGE_BUILDER_URL", "http://localhost:8086")
