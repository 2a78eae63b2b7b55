"""
Media store.

Media bytes live in Google Cloud Storage under a deterministic key
(`<sender digits>/<media id>.<ext>`), so fetching the same media twice lands
on the same object. Messages only keep a time-limited signed URL.
"""

import logging
from datetime import timedelta
from typing import Optional

from google.cloud import storage as gcs
from starlette.concurrency import run_in_threadpool

from chatrelay.config import Settings
from chatrelay.errors import StorageFailure
from chatrelay.payloads import MediaRef

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    # Images
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/svg+xml": "svg",
    # Videos
    "video/mp4": "mp4",
    "video/mpeg": "mpeg",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/webm": "webm",
    "video/3gpp": "3gp",
    "video/x-flv": "flv",
    # Audio
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/aac": "aac",
    "audio/flac": "flac",
    "audio/amr": "amr",
    "audio/opus": "opus",
    # Documents
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "text/plain": "txt",
    "text/csv": "csv",
    "application/zip": "zip",
    "application/json": "json",
    "application/xml": "xml",
    "application/rtf": "rtf",
    "application/vnd.oasis.opendocument.text": "odt",
    "application/vnd.oasis.opendocument.spreadsheet": "ods",
    "application/vnd.oasis.opendocument.presentation": "odp",
}

# Media types WhatsApp Cloud API accepts for sending
SENDABLE_MIME_TYPES = {
    "audio/aac": "audio",
    "audio/mp4": "audio",
    "audio/mpeg": "audio",
    "audio/amr": "audio",
    "audio/ogg": "audio",
    "audio/opus": "audio",
    "image/jpeg": "image",
    "image/png": "image",
    "image/webp": "image",
    "video/mp4": "video",
    "video/3gpp": "video",
    "application/pdf": "document",
    "text/plain": "document",
    "application/msword": "document",
    "application/vnd.ms-excel": "document",
    "application/vnd.ms-powerpoint": "document",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "document",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "document",
}


def extension_for(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "bin"
    return MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), "bin")


def storage_key(sender_id: str, media_id: str, mime_type: Optional[str]) -> str:
    """Deterministic object key for a media object."""
    digits = "".join(ch for ch in sender_id if ch.isdigit())
    if not digits:
        raise StorageFailure(f"cannot derive a storage key from sender {sender_id!r}")
    safe_media_id = "".join(ch for ch in media_id if ch.isalnum() or ch in "-_.")
    if not safe_media_id:
        raise StorageFailure(f"invalid media id {media_id!r}")
    return f"{digits}/{safe_media_id}.{extension_for(mime_type)}"


class MediaStore:
    """Google Cloud Storage bucket holding mirrored media."""

    def __init__(self, bucket_name: str, url_ttl_seconds: int, client: Optional[gcs.Client] = None):
        self.bucket_name = bucket_name
        self.url_ttl = timedelta(seconds=url_ttl_seconds)
        self._client = client

    def _bucket(self) -> gcs.Bucket:
        if self._client is None:
            self._client = gcs.Client()
        return self._client.bucket(self.bucket_name)

    def store(self, key: str, content: bytes, mime_type: str) -> str:
        """
        Upload `content` under `key` unless it is already there.

        Returns:
            A signed URL valid for the configured TTL.

        Raises:
            StorageFailure: the bucket is unreachable or refused the upload
        """
        try:
            blob = self._bucket().blob(key)
            if blob.exists():
                logger.debug(f"Media {key} already stored")
            else:
                blob.upload_from_string(content, content_type=mime_type or "application/octet-stream")
                logger.info(f"Uploaded media {key} ({len(content)} bytes)")
            return self.signed_url(key)
        except StorageFailure:
            raise
        except Exception as e:
            logger.error(f"Media upload of {key} failed: {e}")
            raise StorageFailure(f"media store unavailable: {e}")

    def signed_url(self, key: str) -> str:
        try:
            return self._bucket().blob(key).generate_signed_url(
                version="v4",
                expiration=self.url_ttl,
                method="GET",
            )
        except Exception as e:
            logger.error(f"Signing URL for {key} failed: {e}")
            raise StorageFailure(f"could not sign media url: {e}")


def get_media_store(settings: Settings) -> Optional[MediaStore]:
    """The configured media store, or None when MEDIA_BUCKET is unset."""
    if not settings.MEDIA_BUCKET:
        return None
    return MediaStore(settings.MEDIA_BUCKET, settings.MEDIA_URL_TTL_SECONDS)


async def mirror_media(
    client,
    store: Optional[MediaStore],
    sender_id: str,
    media: MediaRef,
    max_bytes: int,
) -> str:
    """
    Copy a provider-held media object into the media store.

    Args:
        client: WhatsAppClient able to download the media
        store: Destination store
        sender_id: Party that sent the media (first segment of the key)
        media: The media reference from the inbound message
        max_bytes: Size limit for the download

    Returns:
        Signed URL of the stored object.

    Raises:
        StorageFailure: no store configured, download failed or upload failed
    """
    if store is None:
        raise StorageFailure("media store not configured")
    if not media.media_id:
        raise StorageFailure("media reference has no id")

    content, downloaded_type = await client.download_media(media.media_id, max_bytes)
    mime_type = media.mime_type or downloaded_type
    key = storage_key(sender_id, media.media_id, mime_type)
    return await run_in_threadpool(store.store, key, content, mime_type)
