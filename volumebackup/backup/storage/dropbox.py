"""
Dropbox backend talking to the HTTP API v2.

Access tokens are short lived, a fresh one is requested with the refresh
token on construction. Archives are uploaded through a concurrent upload
session so chunks can be sent in parallel.
"""

import json
import os
import posixpath
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from operator import itemgetter

import requests

from volumebackup.config import DropboxConfig
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


# Chunks of a concurrent upload session must be multiples of 4 MiB
CHUNK_UNIT = 4 * 1024 * 1024
CHUNK_SIZE = 2 * CHUNK_UNIT
REQUEST_TIMEOUT = 300


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class DropboxBackend(Backend):
    """
    Backend uploading archives to a Dropbox app folder.
    """

    name = 'Dropbox'

    def __init__(self, config: DropboxConfig, log_func=None):
        super().__init__(log_func)
        self.endpoint = config.endpoint.rstrip('/') + '/2/'
        self.content_endpoint = config.content_endpoint.rstrip('/') + '/2/'
        self.remote_path = '/' + config.remote_path.strip('/') if config.remote_path.strip('/') else ''
        self.concurrency_level = config.concurrency_level

        self.session = requests.Session()
        token = self._refresh_access_token(config)
        self.session.headers['Authorization'] = f"Bearer {token}"

    def _refresh_access_token(self, config: DropboxConfig) -> str:
        url = config.oauth2_endpoint.rstrip('/') + '/oauth2/token'
        try:
            response = self.session.post(
                url,
                data={
                    'grant_type': 'refresh_token',
                    'refresh_token': config.refresh_token,
                    'client_id': config.app_key,
                    'client_secret': config.app_secret,
                },
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            return response.json()['access_token']
        except (requests.RequestException, KeyError, ValueError) as e:
            raise BackendError(self.name, f"error refreshing access token: {e}") from e

    def _rpc(self, route: str, payload: dict) -> dict:
        try:
            response = self.session.post(self.endpoint + route, json=payload, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise BackendError(self.name, f"{route} failed: {e}") from e

    def _content(self, route: str, arg: dict, data: bytes = b'') -> dict:
        headers = {
            'Dropbox-API-Arg': json.dumps(arg),
            'Content-Type': 'application/octet-stream',
        }
        try:
            response = self.session.post(self.content_endpoint + route, headers=headers, data=data, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise BackendError(self.name, f"{route} failed: {e}") from e
        return response.json() if response.content else {}

    def store(self, archive_path: str) -> str:
        name = os.path.basename(archive_path)
        path = posixpath.join(self.remote_path or '/', name)
        size = os.path.getsize(archive_path)
        commit = {'path': path, 'mode': 'overwrite'}

        if size == 0:
            self._content('files/upload', commit)
        else:
            self._upload_session(archive_path, size, commit)

        self.log(LogLevel.INFO, "Uploaded a copy of backup `%s` to Dropbox at path `%s`.", archive_path, self.remote_path or '/')
        return path

    def _upload_session(self, archive_path: str, size: int, commit: dict):
        session_id = self._content('files/upload_session/start', {'close': False, 'session_type': 'concurrent'})['session_id']

        offsets = list(range(0, size, CHUNK_SIZE))
        last_offset = offsets[-1]

        def upload_chunk(offset: int):
            with open(archive_path, 'rb') as f:
                f.seek(offset)
                data = f.read(CHUNK_SIZE)
            self._content(
                'files/upload_session/append_v2',
                {'cursor': {'session_id': session_id, 'offset': offset}, 'close': offset == last_offset},
                data,
            )
            self.log(LogLevel.INFO, "Uploaded chunk at offset %d of %d bytes.", offset, size)

        with ThreadPoolExecutor(max_workers=self.concurrency_level) as pool:
            # list() re-raises the first failed chunk
            list(pool.map(upload_chunk, offsets))

        self._content(
            'files/upload_session/finish',
            {'cursor': {'session_id': session_id, 'offset': size}, 'commit': commit},
        )

    def list_files(self, prefix: str) -> list:
        result = self._rpc('files/list_folder', {'path': self.remote_path})
        entries = list(result.get('entries', []))
        while result.get('has_more'):
            result = self._rpc('files/list_folder/continue', {'cursor': result['cursor']})
            entries.extend(result.get('entries', []))

        return [
            {'path': entry['path_display'], 'modified': _parse_time(entry['server_modified'])}
            for entry in entries
            if entry.get('.tag') == 'file' and entry['name'].startswith(prefix)
        ]

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        candidates = self.list_files(prefix)
        matches = select_expired(candidates, itemgetter('modified'), deadline)

        def remove():
            for f in matches:
                self._rpc('files/delete_v2', {'path': f['path']})

        return self.do_prune(len(matches), len(candidates), 'Dropbox backup(s)', remove, deadline)

    def close(self):
        self.session.close()
