# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Logging functions.

At the beginning of the edge-build-service flow, init_logging(conf) must be
called. After that, logging from any module is configured right and follows
the log_backend, log_file and log_level options.

Individual modules use the standard logging module:

    import logging
    log = logging.getLogger(__name__)
    log.info("Image %r: compose job %s submitted", image, job_id)
"""

import logging

levels = {
    "debug": logging.DEBUG,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}

level_flags = {
    "debug": levels["debug"],
    "verbose": levels["info"],
    "quiet": levels["error"],
}

log_format = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"


def str_to_log_level(level):
    """
    Returns internal representation of logging level defined
    by the string `level`.

    Available levels are: debug, info, warning, error
    """
    if level not in levels:
        return logging.NOTSET

    return levels[level]


def supported_log_backends():
    return ("console", "file")


def init_logging(conf):
    """
    Initializes logging according to configuration file.
    """
    log_backend = conf.log_backend

    root = logging.getLogger()
    # Calling init_logging twice must not stack handlers.
    for handler in list(root.handlers):
        if getattr(handler, "_edge_build_service", False):
            root.removeHandler(handler)

    if not log_backend or len(log_backend) == 0 or log_backend == "console":
        handler = logging.StreamHandler()
    else:
        handler = logging.FileHandler(conf.log_file)

    handler.setFormatter(logging.Formatter(fmt=log_format))
    handler._edge_build_service = True
    root.addHandler(handler)
    root.setLevel(conf.log_level)

    # urllib3 and boto are chatty at debug level.
    for name in ("urllib3", "botocore", "boto3", "s3transfer"):
        logging.getLogger(name).setLevel(max(conf.log_level, logging.INFO))
