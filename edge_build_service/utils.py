# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Utility functions for edge_build_service. """

import functools
import hashlib
import logging
import os
import shutil
import time

log = logging.getLogger(__name__)


def retry(timeout=120, interval=30, wait_on=Exception):
    """ A decorator that allows to retry a section of code...
    ...until success or timeout.
    """

    def wrapper(function):
        @functools.wraps(function)
        def inner(*args, **kwargs):
            start = time.time()
            while True:
                try:
                    return function(*args, **kwargs)
                except wait_on as e:
                    if (time.time() - start) >= timeout:
                        raise
                    log.warning("Exception %r raised from %r.  Retry in %rs", e, function, interval)
                    time.sleep(interval)

        return inner

    return wrapper


def sha256_checksum(path, chunk_size=1024 * 1024):
    """ Returns the hex SHA-256 digest of the file at `path`. """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def makedirs(path, mode=0o755):
    """ Creates `path` and its parents, succeeding if it already exists. """
    os.makedirs(path, mode=mode, exist_ok=True)
    return path


def remove_path(path):
    """ Removes a file or a directory tree, logging instead of raising. """
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError:
        log.exception("Unable to remove %s", path)
        return False
    return True


def is_subpath(path, base):
    """ True if `path` resolves to `base` or somewhere below it. """
    base = os.path.realpath(base)
    path = os.path.realpath(path)
    return path == base or path.startswith(base + os.sep)
