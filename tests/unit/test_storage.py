"""
Unit tests for storage backends (volumebackup/backup/storage/).

Tests S3 against moto, the local backend against a temp directory and the
remaining backends against mocked clients.
"""

import os
import stat
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
import requests
from moto import mock_aws

from volumebackup.backup.retention import PruneStats
from volumebackup.backup.storage import create_backends
from volumebackup.backup.storage.azure import AzureBackend
from volumebackup.backup.storage.dropbox import DropboxBackend
from volumebackup.backup.storage.local import LocalBackend
from volumebackup.backup.storage.s3 import S3Backend
from volumebackup.backup.storage.ssh import SSHBackend
from volumebackup.backup.storage.webdav import WebDAVBackend
from volumebackup.config import (
    AzureConfig, Config, DropboxConfig, LocalConfig, S3Config, SSHConfig, StorageConfig, WebDAVConfig
)
from volumebackup.errors import BackendError


NOW = datetime.now(timezone.utc)


@pytest.fixture
def archive_file(tmp_path):
    path = tmp_path / 'backup-2024-01-15.tar.gz'
    path.write_bytes(b'archive data' * 100)
    return path


def s3_config(**overrides):
    values = {
        'bucket_name': 'test-bucket',
        'access_key_id': 'testing',
        'secret_access_key': 'testing',
        'region': 'us-east-1',
    }
    values.update(overrides)
    return S3Config(**values)


class TestS3Backend:
    """Test S3Backend against moto."""

    @mock_aws
    def test_store_simple(self, archive_file):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        backend = S3Backend(s3_config(remote_path='/backups/'))
        location = backend.store(str(archive_file))

        assert location == 's3://test-bucket/backups/backup-2024-01-15.tar.gz'
        obj = s3.Object('test-bucket', 'backups/backup-2024-01-15.tar.gz')
        assert obj.content_length == archive_file.stat().st_size

    @mock_aws
    def test_store_multipart(self, tmp_path):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        big_file = tmp_path / 'big.tar.gz'
        big_file.write_bytes(b'x' * (6 * 1024 * 1024))

        backend = S3Backend(s3_config(part_size=5))
        backend.store(str(big_file))

        obj = s3.Object('test-bucket', 'big.tar.gz')
        assert obj.content_length == 6 * 1024 * 1024

    @mock_aws
    def test_store_missing_bucket(self, archive_file):
        backend = S3Backend(s3_config(bucket_name='missing-bucket'))

        with pytest.raises(BackendError, match='S3: upload failed'):
            backend.store(str(archive_file))

    @mock_aws
    def test_prune_removes_expired_objects(self, tmp_path):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        backend = S3Backend(s3_config())
        for name in ('backup-old.tar.gz', 'backup-new.tar.gz', 'other.tar.gz'):
            path = tmp_path / name
            path.write_bytes(b'data')
            backend.store(str(path))

        listed = backend.list_objects('backup-')
        assert sorted(obj['Key'] for obj in listed) == ['backup-new.tar.gz', 'backup-old.tar.gz']

        # Pretend the first one was uploaded long ago
        for obj in listed:
            if obj['Key'] == 'backup-old.tar.gz':
                obj['LastModified'] = NOW - timedelta(days=30)
        with patch.object(backend, 'list_objects', return_value=listed):
            stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        keys = sorted(obj.key for obj in s3.Bucket('test-bucket').objects.all())
        assert keys == ['backup-new.tar.gz', 'other.tar.gz']

    @mock_aws
    def test_prune_refuses_to_delete_everything(self, archive_file):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        backend = S3Backend(s3_config())
        backend.store(str(archive_file))

        stats = backend.prune(datetime.now(timezone.utc) + timedelta(hours=1), 'backup-')

        assert stats == PruneStats(total=1, pruned=0)
        assert len(list(s3.Bucket('test-bucket').objects.all())) == 1

    def test_ca_certificate_bundle_is_written_and_removed(self):
        certificate = MagicMock()
        certificate.public_bytes.return_value = b'-----BEGIN CERTIFICATE-----\n'

        with patch('volumebackup.backup.storage.s3.boto3.client') as mock_client:
            backend = S3Backend(s3_config(endpoint='minio:9000', endpoint_proto='http', endpoint_ca_cert=certificate))

        kwargs = mock_client.call_args[1]
        assert kwargs['endpoint_url'] == 'http://minio:9000'
        assert os.path.exists(kwargs['verify'])

        backend.close()
        assert not os.path.exists(kwargs['verify'])

    def test_insecure_endpoint_disables_verification(self):
        with patch('volumebackup.backup.storage.s3.boto3.client') as mock_client:
            S3Backend(s3_config(endpoint_insecure=True))

        assert mock_client.call_args[1]['verify'] is False


class TestLocalBackend:
    """Test LocalBackend against a temp directory."""

    def test_store_copies_archive(self, archive_file, archive_dir):
        backend = LocalBackend(LocalConfig(archive_path=str(archive_dir)))

        location = backend.store(str(archive_file))

        assert location == str(archive_dir / archive_file.name)
        assert (archive_dir / archive_file.name).read_bytes() == archive_file.read_bytes()

    def test_store_updates_latest_symlink(self, archive_file, archive_dir):
        backend = LocalBackend(LocalConfig(archive_path=str(archive_dir), latest_symlink='latest.tar.gz'))
        (archive_dir / 'latest.tar.gz').symlink_to('previous.tar.gz')

        backend.store(str(archive_file))

        link = archive_dir / 'latest.tar.gz'
        assert link.is_symlink()
        assert os.readlink(link) == archive_file.name

    def test_store_missing_directory(self, archive_file, tmp_path):
        backend = LocalBackend(LocalConfig(archive_path=str(tmp_path / 'missing')))

        with pytest.raises(BackendError, match='Local'):
            backend.store(str(archive_file))

    def test_prune_expired_files_and_keeps_symlinks(self, archive_dir):
        old = archive_dir / 'backup-old.tar.gz'
        new = archive_dir / 'backup-new.tar.gz'
        other = archive_dir / 'other-old.tar.gz'
        for path in (old, new, other):
            path.write_bytes(b'data')
        (archive_dir / 'backup-latest.tar.gz').symlink_to(new.name)

        month_ago = time.time() - 30 * 24 * 3600
        os.utime(old, (month_ago, month_ago))
        os.utime(other, (month_ago, month_ago))

        backend = LocalBackend(LocalConfig(archive_path=str(archive_dir)))
        stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        assert not old.exists()
        assert new.exists()
        assert other.exists()
        assert (archive_dir / 'backup-latest.tar.gz').is_symlink()

    def test_prune_keeps_file_modified_at_deadline(self, archive_dir):
        at_deadline = archive_dir / 'backup-edge.tar.gz'
        older = archive_dir / 'backup-older.tar.gz'
        for path in (at_deadline, older):
            path.write_bytes(b'data')
        os.utime(at_deadline, (1700000000, 1700000000))
        os.utime(older, (1699990000, 1699990000))

        backend = LocalBackend(LocalConfig(archive_path=str(archive_dir)))
        deadline = datetime.fromtimestamp(1700000000, tz=timezone.utc)
        stats = backend.prune(deadline, 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        assert at_deadline.exists()
        assert not older.exists()


class TestSSHBackend:
    """Test SSHBackend with a mocked paramiko client."""

    @pytest.fixture
    def ssh_client(self):
        with patch('volumebackup.backup.storage.ssh.SSHClient') as mock_class:
            yield mock_class.return_value

    def test_connect_with_password(self, ssh_client):
        SSHBackend(SSHConfig(host_name='host', user='user', password='secret', remote_path='/backups'))

        kwargs = ssh_client.connect.call_args[1]
        assert kwargs['hostname'] == 'host'
        assert kwargs['password'] == 'secret'
        ssh_client.open_sftp.assert_called_once()

    def test_connect_with_identity_file(self, ssh_client, tmp_path):
        key = tmp_path / 'id_rsa'
        key.write_text('key')

        SSHBackend(SSHConfig(host_name='host', user='user', identity_file=str(key), identity_passphrase='pw'))

        kwargs = ssh_client.connect.call_args[1]
        assert kwargs['key_filename'] == str(key)
        assert kwargs['passphrase'] == 'pw'

    def test_missing_credentials(self, ssh_client, tmp_path):
        with pytest.raises(BackendError, match='identity file'):
            SSHBackend(SSHConfig(host_name='host', identity_file=str(tmp_path / 'missing')))

    def test_store_uploads_via_sftp(self, ssh_client, archive_file):
        backend = SSHBackend(SSHConfig(host_name='host', password='secret', remote_path='/backups'))

        location = backend.store(str(archive_file))

        sftp = ssh_client.open_sftp.return_value
        sftp.put.assert_called_once_with(str(archive_file), f'/backups/{archive_file.name}')
        assert location == f'host:/backups/{archive_file.name}'

    def test_prune_skips_directories(self, ssh_client):
        def attr(name, days, mode=stat.S_IFREG | 0o644):
            item = MagicMock()
            item.filename = name
            item.st_mode = mode
            item.st_mtime = (NOW - timedelta(days=days)).timestamp()
            item.st_size = 4
            return item

        sftp = ssh_client.open_sftp.return_value
        sftp.listdir_attr.return_value = [
            attr('backup-old.tar.gz', 30),
            attr('backup-new.tar.gz', 1),
            attr('backup-dir', 30, stat.S_IFDIR | 0o755),
        ]
        backend = SSHBackend(SSHConfig(host_name='host', password='secret', remote_path='/backups'))

        stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        sftp.remove.assert_called_once_with('/backups/backup-old.tar.gz')

    def test_close(self, ssh_client):
        backend = SSHBackend(SSHConfig(host_name='host', password='secret'))
        sftp = ssh_client.open_sftp.return_value

        backend.close()

        sftp.close.assert_called_once()
        ssh_client.close.assert_called_once()


PROPFIND_RESPONSE = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/dav/backups/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/backup-old.tar.gz</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getlastmodified>Mon, 01 Jan 2001 00:00:00 GMT</d:getlastmodified></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/backup-new.tar.gz</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getlastmodified>Fri, 01 Jan 2100 00:00:00 GMT</d:getlastmodified></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/unrelated.txt</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getlastmodified>Mon, 01 Jan 2001 00:00:00 GMT</d:getlastmodified></d:prop></d:propstat>
  </d:response>
</d:multistatus>
"""


def _response(status_code, content=b''):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    return response


class TestWebDAVBackend:
    """Test WebDAVBackend with a mocked requests session."""

    @pytest.fixture
    def backend(self):
        backend = WebDAVBackend(WebDAVConfig(url='https://dav.example.com/dav/', remote_path='/backups/daily', username='u', password='p'))
        backend.session = MagicMock()
        return backend

    def test_requires_url(self):
        with pytest.raises(BackendError, match='no url'):
            WebDAVBackend(WebDAVConfig())

    def test_store_creates_directories_and_uploads(self, backend, archive_file):
        backend.session.request.side_effect = [_response(201), _response(405), _response(201)]

        location = backend.store(str(archive_file))

        calls = [(c[0][0], c[0][1]) for c in backend.session.request.call_args_list]
        assert calls == [
            ('MKCOL', 'https://dav.example.com/dav/backups/'),
            ('MKCOL', 'https://dav.example.com/dav/backups/daily/'),
            ('PUT', f'https://dav.example.com/dav/backups/daily/{archive_file.name}'),
        ]
        assert location.endswith(archive_file.name)

    def test_store_failure(self, backend, archive_file):
        backend.session.request.side_effect = [_response(201), _response(201), _response(507)]

        with pytest.raises(BackendError, match='507'):
            backend.store(str(archive_file))

    def test_prune(self, backend):
        backend.session.request.side_effect = [_response(207, PROPFIND_RESPONSE), _response(204)]

        stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        method, url = backend.session.request.call_args_list[-1][0]
        assert method == 'DELETE'
        assert url == 'https://dav.example.com/dav/backups/daily/backup-old.tar.gz'


class TestAzureBackend:
    """Test AzureBackend with a mocked blob service."""

    @pytest.fixture
    def service_class(self):
        with patch('volumebackup.backup.storage.azure.BlobServiceClient') as mock_class:
            yield mock_class

    def test_connection_string(self, service_class):
        AzureBackend(AzureConfig(connection_string='UseDevelopmentStorage=true', container_name='backups'))

        service_class.from_connection_string.assert_called_once_with('UseDevelopmentStorage=true')
        service_class.from_connection_string.return_value.get_container_client.assert_called_once_with('backups')

    def test_account_key(self, service_class):
        AzureBackend(AzureConfig(account_name='acct', primary_account_key='key', container_name='backups'))

        args, kwargs = service_class.call_args
        assert args[0] == 'https://acct.blob.core.windows.net/'
        assert kwargs['credential'] == {'account_name': 'acct', 'account_key': 'key'}

    def test_unknown_access_tier(self, service_class):
        with pytest.raises(BackendError, match='access tier'):
            AzureBackend(AzureConfig(account_name='acct', primary_account_key='key', access_tier='Lukewarm'))

    def test_store(self, service_class, archive_file):
        backend = AzureBackend(AzureConfig(account_name='acct', primary_account_key='key', container_name='backups', remote_path='daily'))

        location = backend.store(str(archive_file))

        container = service_class.return_value.get_container_client.return_value
        args, kwargs = container.upload_blob.call_args
        assert args[0] == f'daily/{archive_file.name}'
        assert kwargs['overwrite'] is True
        assert location == f'backups/daily/{archive_file.name}'

    def test_prune(self, service_class):
        def blob(name, days):
            item = MagicMock()
            item.name = name
            item.last_modified = NOW - timedelta(days=days)
            return item

        container = service_class.return_value.get_container_client.return_value
        container.list_blobs.return_value = [blob('backup-old', 30), blob('backup-new', 1)]
        backend = AzureBackend(AzureConfig(account_name='acct', primary_account_key='key', container_name='backups'))

        stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        container.list_blobs.assert_called_once_with(name_starts_with='backup-')
        container.delete_blob.assert_called_once_with('backup-old')


class TestDropboxBackend:
    """Test DropboxBackend with a mocked requests session."""

    @pytest.fixture
    def session(self):
        with patch('volumebackup.backup.storage.dropbox.requests.Session') as mock_class:
            session = mock_class.return_value
            session.headers = {}
            yield session

    @staticmethod
    def _json_response(payload):
        response = MagicMock()
        response.json.return_value = payload
        response.content = b'{}'
        return response

    def _route(self, session, routes):
        def post(url, **kwargs):
            for suffix, payload in routes.items():
                if url.endswith(suffix):
                    return self._json_response(payload)
            raise AssertionError(f"unexpected request {url}")
        session.post.side_effect = post

    def test_refreshes_access_token(self, session):
        self._route(session, {'oauth2/token': {'access_token': 'token'}})

        DropboxBackend(DropboxConfig(refresh_token='r', app_key='k', app_secret='s'))

        assert session.headers['Authorization'] == 'Bearer token'
        data = session.post.call_args[1]['data']
        assert data['grant_type'] == 'refresh_token'

    def test_store_uses_upload_session(self, session, archive_file):
        self._route(session, {
            'oauth2/token': {'access_token': 'token'},
            'upload_session/start': {'session_id': 'sid'},
            'upload_session/append_v2': {},
            'upload_session/finish': {'name': archive_file.name},
        })
        backend = DropboxBackend(DropboxConfig(remote_path='/backups', refresh_token='r'))

        location = backend.store(str(archive_file))

        assert location == f'/backups/{archive_file.name}'
        urls = [c[0][0] for c in session.post.call_args_list]
        assert any(url.endswith('files/upload_session/append_v2') for url in urls)
        assert urls[-1].endswith('files/upload_session/finish')

    def test_store_empty_file(self, session, tmp_path):
        empty = tmp_path / 'empty.tar.gz'
        empty.write_bytes(b'')
        self._route(session, {'oauth2/token': {'access_token': 'token'}, 'files/upload': {}})
        backend = DropboxBackend(DropboxConfig(refresh_token='r'))

        backend.store(str(empty))

        assert session.post.call_args[0][0].endswith('files/upload')

    def test_prune(self, session):
        self._route(session, {
            'oauth2/token': {'access_token': 'token'},
            'files/list_folder': {
                'entries': [
                    {'.tag': 'file', 'name': 'backup-old', 'path_display': '/b/backup-old', 'server_modified': '2001-01-01T00:00:00Z'},
                    {'.tag': 'folder', 'name': 'backup-dir', 'path_display': '/b/backup-dir'},
                ],
                'cursor': 'c1',
                'has_more': True,
            },
            'files/list_folder/continue': {
                'entries': [
                    {'.tag': 'file', 'name': 'backup-new', 'path_display': '/b/backup-new', 'server_modified': '2100-01-01T00:00:00Z'},
                ],
                'has_more': False,
            },
            'files/delete_v2': {},
        })
        backend = DropboxBackend(DropboxConfig(remote_path='/b', refresh_token='r'))

        stats = backend.prune(NOW - timedelta(days=7), 'backup-')

        assert stats == PruneStats(total=2, pruned=1)
        delete_call = session.post.call_args_list[-1]
        assert delete_call[0][0].endswith('files/delete_v2')
        assert delete_call[1]['json'] == {'path': '/b/backup-old'}

    def test_token_failure(self, session):
        session.post.side_effect = requests.ConnectionError('offline')

        with pytest.raises(BackendError, match='Dropbox'):
            DropboxBackend(DropboxConfig(refresh_token='r'))


class TestCreateBackends:
    """Test backend construction from a Config."""

    def test_order_and_local_detection(self, archive_dir):
        config = Config(storage=StorageConfig(aws=s3_config(), dropbox=DropboxConfig()))
        config.backup.archive = str(archive_dir)

        with patch('volumebackup.backup.storage.s3.S3Backend') as s3_class, \
                patch('volumebackup.backup.storage.dropbox.DropboxBackend') as dropbox_class:
            backends = create_backends(config, None, os.path.exists)

        assert backends[0] is s3_class.return_value
        assert isinstance(backends[1], LocalBackend)
        assert backends[2] is dropbox_class.return_value

    def test_no_local_backend_without_archive(self, tmp_path):
        config = Config()
        config.backup.archive = str(tmp_path / 'missing')

        assert create_backends(config, None, os.path.exists) == []

    def test_failure_closes_created_backends(self, archive_dir):
        config = Config(storage=StorageConfig(dropbox=DropboxConfig()))
        config.backup.archive = str(archive_dir)

        with patch('volumebackup.backup.storage.dropbox.DropboxBackend', side_effect=BackendError('Dropbox', 'boom')), \
                patch.object(LocalBackend, 'close') as local_close:
            with pytest.raises(BackendError):
                create_backends(config, None, os.path.exists)

        local_close.assert_called_once()
