# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Configuration handler functions."""

import importlib.util
import os
import sys

from edge_build_service import logger


SUPPORTED_OUTPUT_TYPES = ("commit", "installer")


def _load_module(path):
    spec = importlib.util.spec_from_file_location("edge_build_service_config", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def init_config():
    """
    Configure the service from a Python configuration file.

    Returns (conf, config_section) where conf is a Config instance filled from
    every UPPERCASE attribute of the selected configuration class.
    """
    config_file = "/etc/edge-build-service/config.py"
    config_section = "ProdConfiguration"
    here = os.path.dirname(os.path.abspath(__file__))
    checkout_config = os.path.join(here, os.pardir, "conf", "config.py")

    if "EDGE_BUILD_SERVICE_CONFIG_FILE" in os.environ:
        config_file = os.environ["EDGE_BUILD_SERVICE_CONFIG_FILE"]
    elif not os.path.exists(config_file):
        # Running from a git checkout
        config_file = os.path.abspath(checkout_config)
        config_section = "DevConfiguration"

    if any("py.test" in arg or "pytest" in arg for arg in sys.argv):
        config_section = "TestConfiguration"
        config_file = os.path.abspath(checkout_config)

    if "EDGE_BUILD_SERVICE_CONFIG_SECTION" in os.environ:
        config_section = os.environ["EDGE_BUILD_SERVICE_CONFIG_SECTION"]

    if not os.path.exists(config_file):
        # Installed without any configuration file, use the defaults
        return Config(), None

    config_module = _load_module(config_file)
    try:
        section = getattr(config_module, config_section)
    except AttributeError:
        raise ValueError("Configuration section %r not found in %s" % (config_section, config_file))

    conf = Config(section)
    return conf, section


class Config(object):
    """Class representing the build service configuration."""
    _defaults = {
        "debug": {
            "type": bool,
            "default": False,
            "desc": "Echo the SQL statements of the operator commands."},
        "db": {
            "type": str,
            "default": "sqlite:///edge_build_service.db",
            "desc": "RDB URL."},
        "repo_temp_path": {
            "type": str,
            "default": "/tmp/repos/",
            "desc": "Root directory of the local OSTree work directories."},
        "templates_path": {
            "type": str,
            "default": "/usr/local/etc/",
            "desc": "Directory holding templateKickstart.ks."},
        "iso_temp_path": {
            "type": str,
            "default": "/var/tmp/",
            "desc": "Scratch directory for installer ISO customization."},
        "fleetkick_script": {
            "type": str,
            "default": "/usr/local/bin/fleetkick.sh",
            "desc": "Script injecting a kickstart file into an ISO."},
        "kickstart_injection": {
            "type": bool,
            "default": True,
            "desc": "Customize installer ISOs with the user's ssh key and username."},
        "skip_update_repo": {
            "type": bool,
            "default": False,
            "desc": "Point update repos at the commit repo instead of generating static deltas."},
        "ostree_binary": {
            "type": str,
            "default": "ostree",
            "desc": "OSTree executable."},
        "image_builder_url": {
            "type": str,
            "default": "http://image-builder:8080",
            "desc": "Image Builder base URL."},
        "image_builder_timeout": {
            "type": int,
            "default": 30,
            "desc": "Image Builder HTTP timeout, in seconds."},
        "image_builder_org_id": {
            "type": str,
            "default": "",
            "desc": "Org id sent in the identity header to Image Builder."},
        "default_distribution": {
            "type": str,
            "default": "rhel-92",
            "desc": "Distribution used when a request does not name one."},
        "default_arch": {
            "type": str,
            "default": "x86_64",
            "desc": "Commit architecture used when a request does not name one."},
        "distributions_refs": {
            "type": dict,
            "default": {
                "rhel-84": "rhel/8/x86_64/edge",
                "rhel-85": "rhel/8/x86_64/edge",
                "rhel-86": "rhel/8/x86_64/edge",
                "rhel-87": "rhel/8/x86_64/edge",
                "rhel-88": "rhel/8/x86_64/edge",
                "rhel-90": "rhel/9/x86_64/edge",
                "rhel-91": "rhel/9/x86_64/edge",
                "rhel-92": "rhel/9/x86_64/edge",
            },
            "desc": "OSTree ref per distribution."},
        "poll_interval": {
            "type": int,
            "default": 60,
            "desc": "Seconds between two compose status polls."},
        "local": {
            "type": bool,
            "default": False,
            "desc": "Store artifacts on the local filesystem instead of S3."},
        "local_storage_dir": {
            "type": str,
            "default": "/tmp",
            "desc": "Base directory of the local uploader."},
        "bucket_name": {
            "type": str,
            "default": "",
            "desc": "S3 bucket name."},
        "bucket_region": {
            "type": str,
            "default": "us-east-1",
            "desc": "S3 bucket region."},
        "aws_access_key": {
            "type": str,
            "default": "",
            "desc": "AWS access key id."},
        "aws_secret_key": {
            "type": str,
            "default": "",
            "desc": "AWS secret access key."},
        "s3_endpoint_url": {
            "type": str,
            "default": "",
            "desc": "Custom S3 endpoint, e.g. for minio."},
        "upload_workers": {
            "type": int,
            "default": 100,
            "desc": "Parallel uploads when publishing a repo tree."},
        "upload_attempts": {
            "type": int,
            "default": 3,
            "desc": "Attempts per uploaded file."},
        "num_workers": {
            "type": int,
            "default": 4,
            "desc": "Number of build worker threads."},
        "queue_size": {
            "type": int,
            "default": 100,
            "desc": "Maximum number of queued build tasks."},
        "recover_stuck_builds": {
            "type": bool,
            "default": False,
            "desc": "Mark stale BUILDING rows ERROR when the coordinator starts."},
        "stuck_build_timeout": {
            "type": int,
            "default": 6 * 60 * 60,
            "desc": "Seconds after which a BUILDING row is considered stuck."},
        "net_timeout": {
            "type": int,
            "default": 120,
            "desc": "Global network timeout for retry, in seconds."},
        "net_retry_interval": {
            "type": int,
            "default": 30,
            "desc": "Global network retry interval, in seconds."},
        "log_backend": {
            "type": str,
            "default": None,
            "desc": "Log backend"},
        "log_file": {
            "type": str,
            "default": "",
            "desc": "Path to log file"},
        "log_level": {
            "type": str,
            "default": "info",
            "desc": "Log level"},
    }

    def __init__(self, conf_section_obj=None):
        """Initialize the Config object with defaults and then apply the
        UPPERCASE settings of conf_section_obj, if any."""

        for name, values in self._defaults.items():
            self.set_item(name, values["default"])

        if conf_section_obj is None:
            return

        for key in dir(conf_section_obj):
            if not key.isupper():
                continue
            self.set_item(key.lower(), getattr(conf_section_obj, key))

    def set_item(self, key, value):
        if key == "set_item" or key.startswith("_"):
            raise Exception("Configuration item's name is not allowed: %s" % key)

        # customized check & set if there's a corresponding handler
        setifok_func = "_setifok_{}".format(key)
        if hasattr(self, setifok_func):
            getattr(self, setifok_func)(value)
            return

        if key not in self._defaults:
            setattr(self, key, value)
            return

        convert = self._defaults[key]["type"]
        if value is None:
            setattr(self, key, None)
        elif convert in (bool, int, float, list, dict, str):
            try:
                setattr(self, key, convert(value))
            except (TypeError, ValueError):
                raise TypeError("Configuration value conversion failed for name: %s" % key)
        elif convert is None:
            setattr(self, key, value)
        else:
            raise TypeError("Unsupported type %s for configuration item name: %s" % (convert, key))

    def _setifok_poll_interval(self, i):
        if not isinstance(i, int):
            raise TypeError("poll_interval needs to be an int")
        if i < 0:
            raise ValueError("poll_interval must be >= 0")
        self.poll_interval = i

    def _setifok_num_workers(self, i):
        if not isinstance(i, int):
            raise TypeError("num_workers needs to be an int")
        if i < 1:
            raise ValueError("num_workers must be >= 1")
        self.num_workers = i

    def _setifok_queue_size(self, i):
        if not isinstance(i, int):
            raise TypeError("queue_size needs to be an int")
        if i < 1:
            raise ValueError("queue_size must be >= 1")
        self.queue_size = i

    def _setifok_repo_temp_path(self, s):
        self.repo_temp_path = os.path.abspath(str(s))

    def _setifok_log_backend(self, s):
        if s is None:
            s = "console"
        elif s not in logger.supported_log_backends():
            raise ValueError("Unsupported log backend")
        self.log_backend = str(s)

    def _setifok_log_file(self, s):
        if s is None:
            self.log_file = ""
        else:
            self.log_file = str(s)

    def _setifok_log_level(self, s):
        if isinstance(s, int):
            self.log_level = s
            return
        level = str(s).lower()
        self.log_level = logger.str_to_log_level(level)

    def distribution_ref(self, distribution):
        """Returns the OSTree ref used for images of `distribution`."""
        try:
            return self.distributions_refs[distribution]
        except KeyError:
            raise ValueError("No ostree ref configured for distribution %r" % distribution)
