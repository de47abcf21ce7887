"""
Destination clients for OAuth-backed cloud drives.

- OneDriveClient: Microsoft Graph simple upload into a configured folder
- GoogleDriveClient: Drive v3 multipart upload into a configured folder

Both map 401/403 to a ``DestinationError`` that asks for reauthorization
and 429/5xx/transport failures to a retryable ``ProviderError``.
SFTP is a known destination type without a bundled client.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from core.config import settings
from core.exceptions import DestinationError, ProviderError
from pipeline.base import DestinationClient, FormattedOutput
from schemas.credentials import DecryptedCredentials

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "xml": "application/xml",
}


class HttpDestinationClient(DestinationClient):
    """Shared HTTP plumbing and status mapping."""

    provider = ""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.timeout = timeout if timeout is not None else settings.UPLOAD_HTTP_TIMEOUT
        self._transport = transport

    @staticmethod
    def _bearer(credentials: DecryptedCredentials) -> Dict[str, str]:
        if credentials.access_token is None:
            raise DestinationError(
                "Destination has no access token; reauthorization required",
                reauthorization_required=True
            )
        return {"Authorization": f"Bearer {credentials.access_token.get_secret_value()}"}

    async def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        context = {"provider": self.provider}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.provider} upload timed out", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise ProviderError(f"{self.provider} unreachable", context=context, original_exception=e)

        status = response.status_code
        if status in (401, 403):
            raise DestinationError(
                f"{self.provider} rejected the access token",
                context={**context, "status_code": status},
                reauthorization_required=True
            )
        if status == 429 or status >= 500:
            raise ProviderError(f"{self.provider} upload failed", context=context, status_code=status)
        if status >= 400:
            raise DestinationError(
                f"{self.provider} upload failed with status {status}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )

        try:
            return response.json()
        except ValueError:
            return {}


class OneDriveClient(HttpDestinationClient):
    """
    Uploads to ``/me/drive/root:/<folderPath>/<file>:/content``.

    Public config:
        folderPath: Target folder (default: root)
    """

    provider = "OneDrive"
    base_url = "https://graph.microsoft.com/v1.0"

    async def upload(
        self,
        output: FormattedOutput,
        destination_type: str,
        credentials: DecryptedCredentials
    ) -> Dict[str, Any]:
        folder = str(credentials.config.get("folderPath") or "").strip("/")
        item_path = f"{folder}/{output.filename}" if folder else output.filename

        headers = self._bearer(credentials)
        headers["Content-Type"] = CONTENT_TYPES.get(output.format, "application/octet-stream")

        result = await self._send(
            "PUT",
            f"{self.base_url}/me/drive/root:/{quote(item_path)}:/content",
            headers=headers,
            content=output.read_bytes(),
        )
        logger.info(f"OneDrive upload complete: {item_path}")
        return {"id": result.get("id"), "name": result.get("name", output.filename)}


class GoogleDriveClient(HttpDestinationClient):
    """
    Multipart upload through the Drive v3 API.

    Public config:
        folderId: Parent folder id (default: My Drive root)
    """

    provider = "GoogleDrive"
    upload_url = "https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart"

    async def upload(
        self,
        output: FormattedOutput,
        destination_type: str,
        credentials: DecryptedCredentials
    ) -> Dict[str, Any]:
        content_type = CONTENT_TYPES.get(output.format, "application/octet-stream")
        metadata: Dict[str, Any] = {"name": output.filename, "mimeType": content_type}
        folder_id = credentials.config.get("folderId")
        if folder_id:
            metadata["parents"] = [folder_id]

        boundary = uuid.uuid4().hex
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\nContent-Type: {content_type}\r\n\r\n".encode(),
            output.read_bytes(),
            f"\r\n--{boundary}--".encode(),
        ])

        headers = self._bearer(credentials)
        headers["Content-Type"] = f"multipart/related; boundary={boundary}"

        result = await self._send("POST", self.upload_url, headers=headers, content=body)
        logger.info(f"Google Drive upload complete: {output.filename}")
        return {"id": result.get("id"), "name": result.get("name", output.filename)}


def default_destination_clients(
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, DestinationClient]:
    return {
        "OneDrive": OneDriveClient(transport=transport),
        "GoogleDrive": GoogleDriveClient(transport=transport),
    }
