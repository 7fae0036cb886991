# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Files service: downloading build artifacts, extracting tarballs and
publishing files and repository trees to durable storage.
"""

from abc import ABCMeta, abstractmethod
import logging
import os
import queue
import shutil
import tarfile
import threading
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import requests

from edge_build_service.utils import is_subpath, makedirs, retry

log = logging.getLogger(__name__)

requests_session = requests.Session()


class Downloader(metaclass=ABCMeta):
    @abstractmethod
    def download_to_path(self, source_url, destination_path):
        """ Stores the content of `source_url` at `destination_path`. """
        raise NotImplementedError()


class HTTPDownloader(Downloader):
    """ Downloads through plain HTTP(S), e.g. pre-signed Image Builder URLs. """

    def __init__(self, timeout=120, chunk_size=1024 * 1024):
        self.timeout = timeout
        self.chunk_size = chunk_size

    def download_to_path(self, source_url, destination_path):
        log.info("Downloading %s to %s", source_url, destination_path)
        with requests_session.get(source_url, stream=True, timeout=self.timeout) as rv:
            if rv.status_code != 200:
                raise RuntimeError("Failed to download %s: HTTP %s" % (source_url, rv.status_code))
            with open(destination_path, "wb") as f:
                for chunk in rv.iter_content(chunk_size=self.chunk_size):
                    f.write(chunk)
        return destination_path


class LocalDownloader(Downloader):
    """ Copies artifacts stored by the LocalUploader, falling back to HTTP for URLs. """

    def __init__(self, http_downloader=None):
        self.http_downloader = http_downloader or HTTPDownloader()

    def download_to_path(self, source_url, destination_path):
        parsed = urlparse(source_url)
        if parsed.scheme in ("http", "https"):
            return self.http_downloader.download_to_path(source_url, destination_path)
        source = parsed.path if parsed.scheme == "file" else source_url
        if os.path.abspath(source) != os.path.abspath(destination_path):
            shutil.copyfile(source, destination_path)
        return destination_path


class S3Downloader(Downloader):
    """ Downloads objects of our own bucket, addressed by their URL path. """

    def __init__(self, client, bucket_name):
        self.client = client
        self.bucket_name = bucket_name

    def download_to_path(self, source_url, destination_path):
        key = urlparse(source_url).path.lstrip("/")
        log.info("Downloading s3://%s/%s to %s", self.bucket_name, key, destination_path)
        self.client.download_file(self.bucket_name, key, destination_path)
        return destination_path


class TarExtractor(object):
    """ Extracts tar streams, refusing members that would land outside the destination. """

    def extract(self, fileobj, destination):
        makedirs(destination)
        with tarfile.open(fileobj=fileobj, mode="r|*") as tar:
            for member in tar:
                path = self._sanitize_path(destination, member.name)
                if member.isdir():
                    makedirs(path)
                elif member.isfile():
                    makedirs(os.path.dirname(path))
                    # ostree objects are read-only, replace rather than overwrite
                    if os.path.lexists(path):
                        os.remove(path)
                    src = tar.extractfile(member)
                    with open(path, "wb") as dst:
                        shutil.copyfileobj(src, dst, 1024 * 1024)
                    os.chmod(path, member.mode & 0o777)
                elif member.issym():
                    target = os.path.join(os.path.dirname(path), member.linkname)
                    if not is_subpath(target, destination):
                        raise ValueError("Symlink %s points outside of %s" % (member.name, destination))
                    makedirs(os.path.dirname(path))
                    if os.path.lexists(path):
                        os.remove(path)
                    os.symlink(member.linkname, path)
                else:
                    log.debug("Skipping tar member %s of type %r", member.name, member.type)

    @staticmethod
    def _sanitize_path(destination, name):
        path = os.path.join(destination, name)
        if not is_subpath(path, destination):
            raise ValueError("Tar member %s escapes %s" % (name, destination))
        return path


class Uploader(metaclass=ABCMeta):
    @abstractmethod
    def upload_file(self, path, key):
        """ Uploads the file at `path` under `key` and returns its URL. """
        raise NotImplementedError()

    @abstractmethod
    def upload_repo(self, src, id, acl):
        """ Uploads the tree rooted at `src` under `id` and returns the repo URL. """
        raise NotImplementedError()


class LocalUploader(Uploader):
    """ Copies artifacts below a local base directory. Used for local development. """

    def __init__(self, base_dir):
        self.base_dir = base_dir

    def upload_file(self, path, key):
        dest = os.path.join(self.base_dir, key)
        if os.path.abspath(dest) != os.path.abspath(path):
            makedirs(os.path.dirname(dest))
            shutil.copyfile(path, dest)
        log.debug("Stored %s as %s", path, dest)
        return dest

    def upload_repo(self, src, id, acl):
        dest = os.path.join(self.base_dir, str(id), os.path.basename(os.path.normpath(src)))
        if os.path.abspath(dest) != os.path.abspath(src):
            makedirs(os.path.dirname(dest))
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        log.debug("Stored repo %s as %s (acl %s)", src, dest, acl)
        return dest


class _UploadWorker(threading.Thread):
    def __init__(self, uploader, work_queue, errors, *args, **kwargs):
        self.uploader = uploader
        self.work_queue = work_queue
        self.errors = errors
        super(_UploadWorker, self).__init__(*args, **kwargs)
        self.daemon = True

    def run(self):
        while True:
            item = self.work_queue.get()
            try:
                if item is None:
                    break
                path, key, acl = item
                self.uploader.put_object(path, key, acl)
            except (BotoCoreError, ClientError, OSError) as e:
                log.exception("Failed to upload %s", item[0])
                self.errors.append(e)
            finally:
                self.work_queue.task_done()


class S3Uploader(Uploader):
    """ Publishes artifacts to an S3 bucket. """

    def __init__(self, client, bucket_name, region, workers=100, attempts=3, retry_interval=1):
        self.client = client
        self.bucket_name = bucket_name
        self.region = region
        self.workers = workers
        self.attempts = attempts
        self.retry_interval = retry_interval

    def __repr__(self):
        return "<S3Uploader bucket=%s, region=%s>" % (self.bucket_name, self.region)

    def url_for(self, key):
        return "https://%s.s3.%s.amazonaws.com/%s" % (self.bucket_name, self.region, key)

    def put_object(self, path, key, acl="private"):
        @retry(timeout=(self.attempts - 1) * self.retry_interval, interval=self.retry_interval,
               wait_on=(BotoCoreError, ClientError))
        def _put():
            with open(path, "rb") as f:
                self.client.put_object(Bucket=self.bucket_name, Key=key, Body=f, ACL=acl)
        _put()

    def upload_file(self, path, key):
        log.info("Uploading %s to s3://%s/%s", path, self.bucket_name, key)
        self.put_object(path, key)
        return self.url_for(key)

    def upload_repo(self, src, id, acl):
        src = os.path.normpath(src)
        prefix = "%s/%s" % (id, os.path.basename(src))
        log.info("Uploading repo %s to s3://%s/%s", src, self.bucket_name, prefix)

        work_queue = queue.Queue(maxsize=self.workers * 2)
        errors = []
        workers = [_UploadWorker(self, work_queue, errors) for _ in range(self.workers)]
        for worker in workers:
            worker.start()
        try:
            for root, dirs, files in os.walk(src):
                for name in files:
                    path = os.path.join(root, name)
                    key = "%s/%s" % (prefix, os.path.relpath(path, src).replace(os.sep, "/"))
                    work_queue.put((path, key, acl))
        finally:
            for _ in workers:
                work_queue.put(None)
            for worker in workers:
                worker.join()

        if errors:
            raise RuntimeError("%d file(s) of %s failed to upload, first error: %r"
                               % (len(errors), src, errors[0]))
        return self.url_for(prefix)


class FilesService(object):
    """ Bundles the downloaders, extractor and uploader used by the builders. """

    def __init__(self, downloader, extractor, uploader, http_downloader=None):
        self.downloader = downloader
        self.extractor = extractor
        self.uploader = uploader
        self.http_downloader = http_downloader or HTTPDownloader()


def s3_client(config):
    kwargs = {"region_name": config.bucket_region}
    if config.aws_access_key:
        kwargs["aws_access_key_id"] = config.aws_access_key
        kwargs["aws_secret_access_key"] = config.aws_secret_key
    if config.s3_endpoint_url:
        kwargs["endpoint_url"] = config.s3_endpoint_url
    return boto3.client("s3", **kwargs)


def get_files_service(config):
    """ Returns the local or the S3 backed FilesService, following `config.local`. """
    http_downloader = HTTPDownloader(timeout=config.net_timeout)
    if config.local:
        return FilesService(
            LocalDownloader(http_downloader), TarExtractor(), LocalUploader(config.local_storage_dir),
            http_downloader=http_downloader)

    client = s3_client(config)
    uploader = S3Uploader(
        client, config.bucket_name, config.bucket_region,
        workers=config.upload_workers, attempts=config.upload_attempts,
        retry_interval=config.net_retry_interval)
    return FilesService(
        S3Downloader(client, config.bucket_name), TarExtractor(), uploader,
        http_downloader=http_downloader)
