"""
WebDAV backend built on plain HTTP verbs.

Uses MKCOL to create the remote directory, PUT to upload, PROPFIND to list
and DELETE to prune.
"""

import os
import posixpath
import xml.etree.ElementTree as ET
from datetime import datetime
from operator import itemgetter
from email.utils import parsedate_to_datetime
from urllib.parse import quote, unquote, urlparse

import requests

from volumebackup.config import WebDAVConfig
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


DAV_NAMESPACE = '{DAV:}'
PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    '<d:resourcetype/><d:getlastmodified/><d:getcontentlength/>'
    '</d:prop></d:propfind>'
)
REQUEST_TIMEOUT = 60


class WebDAVBackend(Backend):
    """
    Backend uploading archives to a WebDAV server.
    """

    name = 'WebDAV'

    def __init__(self, config: WebDAVConfig, log_func=None):
        super().__init__(log_func)
        if not config.url:
            raise BackendError(self.name, "no url given for WebDAV storage")

        self.url = config.url.rstrip('/')
        self.remote_path = '/' + config.remote_path.strip('/')

        self.session = requests.Session()
        if config.username or config.password:
            self.session.auth = (config.username, config.password)
        self.session.verify = not config.url_insecure

    def _url(self, path: str) -> str:
        return self.url + quote(path)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        try:
            return self.session.request(method, self._url(path), **kwargs)
        except requests.RequestException as e:
            raise BackendError(self.name, f"{method} {path} failed: {e}") from e

    def _make_dirs(self):
        current = ''
        for segment in self.remote_path.strip('/').split('/'):
            if not segment:
                continue
            current = f"{current}/{segment}"
            response = self._request('MKCOL', current + '/')
            # 405 means the collection already exists
            if response.status_code not in (200, 201, 405):
                raise BackendError(
                    self.name,
                    f"error creating directory {current} ({response.status_code})"
                )

    def store(self, archive_path: str) -> str:
        name = os.path.basename(archive_path)
        self._make_dirs()

        remote = posixpath.join(self.remote_path, name)
        try:
            with open(archive_path, 'rb') as f:
                response = self._request('PUT', remote, data=f)
        except OSError as e:
            raise BackendError(self.name, f"error opening {archive_path}: {e}") from e

        if response.status_code not in (200, 201, 204):
            raise BackendError(self.name, f"error uploading the file to WebDAV server ({response.status_code})")

        self.log(LogLevel.INFO, "Uploaded a copy of backup `%s` to WebDAV URL `%s` at path `%s`.", archive_path, self.url, self.remote_path)
        return self._url(remote)

    def list_files(self, prefix: str) -> list:
        """
        List files in the remote directory via PROPFIND.

        Returns:
            List of dicts with 'path' and 'modified' keys
        """
        response = self._request(
            'PROPFIND',
            self.remote_path.rstrip('/') + '/',
            data=PROPFIND_BODY,
            headers={'Depth': '1', 'Content-Type': 'application/xml'},
        )
        if response.status_code != 207:
            raise BackendError(self.name, f"error looking up candidates from remote storage ({response.status_code})")

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise BackendError(self.name, f"invalid PROPFIND response: {e}") from e

        files = []
        for item in root.iter(f'{DAV_NAMESPACE}response'):
            href = item.findtext(f'{DAV_NAMESPACE}href') or ''
            path = unquote(urlparse(href).path)
            if item.find(f'.//{DAV_NAMESPACE}collection') is not None:
                continue
            name = posixpath.basename(path.rstrip('/'))
            if not name.startswith(prefix):
                continue
            modified = item.findtext(f'.//{DAV_NAMESPACE}getlastmodified')
            if not modified:
                continue
            files.append({
                'path': posixpath.join(self.remote_path, name),
                'modified': parsedate_to_datetime(modified),
            })
        return files

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        candidates = self.list_files(prefix)
        matches = select_expired(candidates, itemgetter('modified'), deadline)

        def remove():
            for f in matches:
                response = self._request('DELETE', f['path'])
                if response.status_code not in (200, 204, 404):
                    raise BackendError(self.name, f"error removing file {f['path']} ({response.status_code})")

        return self.do_prune(len(matches), len(candidates), 'WebDAV backup(s)', remove, deadline)

    def close(self):
        self.session.close()
