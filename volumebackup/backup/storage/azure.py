"""
Azure Blob Storage backend.
"""

import os
import posixpath
from datetime import datetime
from operator import itemgetter

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, StandardBlobTier

from volumebackup.config import AzureConfig
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


class AzureBackend(Backend):
    """
    Backend uploading archives into a blob container.

    Authenticates with a connection string when given, with the primary
    account key otherwise and falls back to DefaultAzureCredential (managed
    identity, environment, ...) when neither is set.
    """

    name = 'Azure'

    def __init__(self, config: AzureConfig, log_func=None):
        super().__init__(log_func)
        self.container_name = config.container_name
        self.remote_path = config.remote_path.strip('/')
        self.access_tier = None

        if config.access_tier:
            try:
                self.access_tier = StandardBlobTier(config.access_tier)
            except ValueError as e:
                raise BackendError(self.name, f"unknown access tier {config.access_tier}") from e

        try:
            if config.connection_string:
                service = BlobServiceClient.from_connection_string(config.connection_string)
            else:
                account_url = config.endpoint.format(account_name=config.account_name)
                if config.primary_account_key:
                    credential = {
                        'account_name': config.account_name,
                        'account_key': config.primary_account_key,
                    }
                else:
                    credential = DefaultAzureCredential()
                service = BlobServiceClient(account_url, credential=credential)
            self.container_client = service.get_container_client(self.container_name)
        except (AzureError, ValueError) as e:
            raise BackendError(self.name, f"error creating client: {e}") from e

    def _blob_name(self, name: str) -> str:
        return posixpath.join(self.remote_path, name) if self.remote_path else name

    def store(self, archive_path: str) -> str:
        blob_name = self._blob_name(os.path.basename(archive_path))
        try:
            with open(archive_path, 'rb') as f:
                self.container_client.upload_blob(
                    blob_name,
                    f,
                    overwrite=True,
                    standard_blob_tier=self.access_tier,
                )
        except (AzureError, OSError) as e:
            raise BackendError(self.name, f"error uploading {blob_name}: {e}") from e

        self.log(LogLevel.INFO, "Uploaded a copy of backup `%s` to Azure Blob Storage container `%s`.", archive_path, self.container_name)
        return f"{self.container_name}/{blob_name}"

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        try:
            candidates = [
                {'name': blob.name, 'modified': blob.last_modified}
                for blob in self.container_client.list_blobs(name_starts_with=self._blob_name(prefix))
            ]
        except AzureError as e:
            raise BackendError(self.name, f"error enumerating blobs: {e}") from e

        matches = select_expired(candidates, itemgetter('modified'), deadline)

        def remove():
            for blob in matches:
                try:
                    self.container_client.delete_blob(blob['name'])
                except AzureError as e:
                    raise BackendError(self.name, f"error deleting blob {blob['name']}: {e}") from e

        return self.do_prune(len(matches), len(candidates), 'Azure backup(s)', remove, deadline)

    def close(self):
        self.container_client.close()
