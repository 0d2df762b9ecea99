from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from app.config import settings
from app.domain.errors import IntegrationError

logger = logging.getLogger("artifact_store")


class ArtifactStore(Protocol):
    async def upload(self, *, order_id: str, song_index: int, data: bytes) -> str:
        """Store the audio buffer durably; return a fetchable URL."""
        ...


@dataclass(frozen=True)
class UploadBytesResult:
    container: str
    storage_path: str
    sas_url: str
    bytes: int
    sha256: str


class AzureStorageService:
    """
    Azure Blob Storage for finished songs.

    Blob path:
      songs/{order_id}/song{N}.mp3

    Requires:
      settings.AZURE_STORAGE_CONNECTION_STRING (with AccountKey, SAS is minted here)
    Optional:
      settings.SONG_OUTPUT_CONTAINER (default "song-output")
      settings.ARTIFACT_URL_TTL_HOURS (default 168)
    """

    def __init__(self, *, container: Optional[str] = None):
        self.connection_string = (settings.AZURE_STORAGE_CONNECTION_STRING or "").strip()
        if not self.connection_string:
            raise IntegrationError("missing_azure_storage_connection_string")

        self.container = (container or settings.SONG_OUTPUT_CONTAINER or "song-output").strip()
        self.sas_hours = settings.ARTIFACT_URL_TTL_HOURS if settings.ARTIFACT_URL_TTL_HOURS > 0 else 168

        self.blob_service = BlobServiceClient.from_connection_string(self.connection_string)

        parts = self._parse_connection_string(self.connection_string)
        self.account_name = (getattr(self.blob_service, "account_name", None) or parts.get("AccountName") or "").strip()
        self.account_key = (parts.get("AccountKey") or "").strip()
        if not self.account_name or not self.account_key:
            raise IntegrationError("could_not_parse_storage_account_credentials")

        self._container_client = self.blob_service.get_container_client(self.container)
        self._ensure_container_exists_best_effort()

    @staticmethod
    def _parse_connection_string(cs: str) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for item in (cs or "").split(";"):
            if "=" not in item:
                continue
            k, v = item.split("=", 1)
            k = k.strip()
            if k:
                out[k] = v.strip()
        return out

    def _ensure_container_exists_best_effort(self) -> None:
        try:
            self._container_client.get_container_properties()
            return
        except Exception:
            pass
        try:
            self._container_client.create_container()
        except Exception as e:
            # another process may have created it in between
            logger.info("container_create_skipped", extra={"container": self.container, "error": str(e)})

    @staticmethod
    def build_song_path(*, order_id: str, song_index: int, ext: str = "mp3") -> str:
        oid = str(order_id).strip().strip("/")
        if not oid or "/" in oid or ".." in oid:
            raise ValueError("invalid order_id for blob path")
        return f"songs/{oid}/song{int(song_index)}.{ext.lstrip('.') or 'mp3'}"

    def sas_url_for(self, storage_path: str) -> str:
        now = datetime.now(timezone.utc)
        start = now - timedelta(minutes=5)  # clock skew
        expiry = now + timedelta(hours=self.sas_hours)

        sas_token = generate_blob_sas(
            account_name=self.account_name,
            container_name=self.container,
            blob_name=storage_path,
            account_key=self.account_key,
            permission=BlobSasPermissions(read=True),
            start=start,
            expiry=expiry,
        )
        return f"https://{self.account_name}.blob.core.windows.net/{self.container}/{storage_path}?{sas_token}"

    def _sync_upload_blob(self, *, blob_name: str, data: bytes, content_type: str) -> None:
        blob_client = self.blob_service.get_blob_client(container=self.container, blob=blob_name)
        blob_client.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type),
        )

    async def upload_bytes_to_path(
        self,
        *,
        data: bytes,
        storage_path: str,
        content_type: str = "audio/mpeg",
    ) -> UploadBytesResult:
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("data must be bytes")
        if not data:
            raise ValueError("data is empty")

        await asyncio.to_thread(self._sync_upload_blob, blob_name=storage_path, data=bytes(data), content_type=content_type)

        return UploadBytesResult(
            container=self.container,
            storage_path=storage_path,
            sas_url=self.sas_url_for(storage_path),
            bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )

    async def upload(self, *, order_id: str, song_index: int, data: bytes) -> str:
        res = await self.upload_bytes_to_path(
            data=data,
            storage_path=self.build_song_path(order_id=order_id, song_index=song_index),
        )
        logger.info(
            "song_artifact_uploaded",
            extra={"order_id": order_id, "song_index": song_index, "bytes": res.bytes, "sha256": res.sha256},
        )
        return res.sas_url
