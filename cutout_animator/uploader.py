"""
Remote media upload for Cutout Animator.

Two-phase upload to the generation service's storage:
1. Request an upload slot (pre-signed target + stable public URL)
2. PUT the image bytes to the slot

There are no retries here; a failed upload fails the whole job rather than
reusing a possibly stale slot.
"""

import logging

import httpx

from .config import Config
from .errors import UploadInitError, UploadTransferError

logger = logging.getLogger(__name__)


def describe_error_body(response: httpx.Response) -> str:
    """Best-effort readable description of an error response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        detail = body.get('detail') or body.get('message') or body.get('error')
        if detail:
            return detail if isinstance(detail, str) else str(detail)
    return str(body)


class MediaUploader:
    """Uploads composited images and returns their reference URL."""

    def __init__(self, client: httpx.AsyncClient, config: Config):
        self.client = client
        self.config = config

    async def upload(self, image_bytes: bytes, filename: str = "cutout.png",
                     content_type: str = "image/png") -> str:
        """
        Upload an image and return its public reference URL.

        Args:
            image_bytes: Encoded image
            filename: File name announced to the storage service
            content_type: MIME type of ``image_bytes``

        Returns:
            Stable URL the generation job can reference
        """
        upload_url, file_url = await self._initiate(filename, content_type)
        await self._transfer(upload_url, image_bytes, content_type)

        logger.info(f"Uploaded {len(image_bytes)} bytes as {filename}: {file_url}")
        return file_url

    async def _initiate(self, filename: str, content_type: str):
        headers = {"Authorization": f"Key {self.config.require_api_key()}"}
        try:
            response = await self.client.post(
                self.config.upload_init_url,
                json={"content_type": content_type, "file_name": filename},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise UploadInitError(f"Upload init request failed: {e}") from e

        if not response.is_success:
            raise UploadInitError(
                f"Upload init failed (HTTP {response.status_code}): {describe_error_body(response)}"
            )

        try:
            slot = response.json()
        except ValueError as e:
            raise UploadInitError(f"Upload init returned invalid JSON: {e}") from e

        upload_url = slot.get('upload_url') if isinstance(slot, dict) else None
        file_url = slot.get('file_url') if isinstance(slot, dict) else None
        if not upload_url or not file_url:
            raise UploadInitError(f"Upload init response is missing upload_url/file_url: {slot}")

        logger.debug(f"Obtained upload slot for {filename}")
        return upload_url, file_url

    async def _transfer(self, upload_url: str, image_bytes: bytes, content_type: str):
        headers = {
            "Content-Type": content_type,
            "Content-Length": str(len(image_bytes)),
        }
        try:
            response = await self.client.put(upload_url, content=image_bytes, headers=headers)
        except httpx.HTTPError as e:
            raise UploadTransferError(f"Upload transfer failed: {e}") from e

        if not response.is_success:
            raise UploadTransferError(
                f"Upload failed: HTTP {response.status_code}: {describe_error_body(response)}"
            )
