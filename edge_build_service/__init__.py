# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
The Edge Build Service orchestrates RHEL for Edge image builds and assembles
the OSTree repositories delivering them and their updates to devices.
"""

import logging
from importlib import metadata

from edge_build_service.config import init_config
from edge_build_service.logger import init_logging

try:
    version = metadata.version("edge-build-service")
except metadata.PackageNotFoundError:
    version = "unknown"

conf, config_section = init_config()

init_logging(conf)
log = logging.getLogger(__name__)
