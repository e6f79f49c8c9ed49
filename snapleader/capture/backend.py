# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Capture Backend for SnapLeader.

The backend stores captured frames in three steps:
1. Request a signed upload target for the activity
2. PUT the JPEG bytes to that target
3. Persist the capture metadata

The HTTP implementation talks to:
- POST {base}/api/time-tracking/screenshots/upload-url  {"activityId"} -> {"uploadURL"}
- PUT  {uploadURL}  (Content-Type: image/jpeg)
- POST {base}/api/time-tracking/screenshots  {"activityId", "projectId", "storageKey", "capturedAt"}
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from snapleader.capture.config import CaptureConfig
from snapleader.exceptions import (
    MetadataPersistError,
    UploadTargetRequestError,
    UploadTransferError,
)
from snapleader.utils.logger import logger

UPLOAD_URL_PATH = "/api/time-tracking/screenshots/upload-url"
SCREENSHOTS_PATH = "/api/time-tracking/screenshots"


@dataclass
class UploadTarget:
    """A signed, one-shot upload location."""
    upload_url: str

    @property
    def storage_key(self) -> str:
        """Path component of the upload URL, used as the stored object key."""
        return urlparse(self.upload_url).path


@dataclass
class CaptureRecord:
    """Metadata persisted for one successful capture."""
    activity_id: str
    project_id: Optional[str]
    storage_key: str
    captured_at: datetime

    @classmethod
    def create(
        cls,
        activity_id: str,
        project_id: Optional[str],
        target: UploadTarget,
        captured_at: Optional[datetime] = None,
    ) -> "CaptureRecord":
        """Build a record for an upload that just completed."""
        return cls(
            activity_id=activity_id,
            project_id=project_id,
            storage_key=target.storage_key,
            captured_at=captured_at or datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the backend's JSON body."""
        return {
            "activityId": self.activity_id,
            "projectId": self.project_id,
            "storageKey": self.storage_key,
            "capturedAt": self.captured_at.isoformat(),
        }


class CaptureBackend(ABC):
    """Where captured frames and their metadata go."""

    @abstractmethod
    async def request_upload_target(self, activity_id: str) -> UploadTarget:
        """Ask for a signed upload target.

        Raises:
            UploadTargetRequestError: If no target was issued
        """

    @abstractmethod
    async def upload(self, target: UploadTarget, data: bytes, content_type: str = "image/jpeg") -> None:
        """Upload bytes to the target.

        Raises:
            UploadTransferError: If the transfer failed
        """

    @abstractmethod
    async def persist_metadata(self, record: CaptureRecord) -> None:
        """Store the capture metadata.

        Raises:
            MetadataPersistError: If the backend refused the record
        """

    async def close(self) -> None:
        """Release any held connections."""


class HTTPCaptureBackend(CaptureBackend):
    """Capture backend over HTTP with aiohttp.

    Example:
        >>> backend = HTTPCaptureBackend("https://tracker.example.com")
        >>> target = await backend.request_upload_target("entry-1")
        >>> await backend.upload(target, jpeg_bytes)
        >>> await backend.persist_metadata(CaptureRecord.create("entry-1", "p-1", target))
        >>> await backend.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialize the HTTP backend.

        Args:
            base_url: Backend base URL
            timeout_s: Total timeout for each request
            headers: Extra headers sent with backend API calls (not the upload)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.headers = dict(headers or {})
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "HTTPCaptureBackend":
        """Create a backend from capture configuration."""
        return cls(config.backend_url, timeout_s=config.request_timeout_s)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def request_upload_target(self, activity_id: str) -> UploadTarget:
        session = self._get_session()
        url = f"{self.base_url}{UPLOAD_URL_PATH}"
        try:
            async with session.post(url, json={"activityId": activity_id}, headers=self.headers) as response:
                if response.status >= 400:
                    raise UploadTargetRequestError(
                        f"Failed to get upload URL: HTTP {response.status}",
                        status=response.status,
                    )
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UploadTargetRequestError(f"Failed to get upload URL: {e}") from e

        upload_url = data.get("uploadURL") if isinstance(data, dict) else None
        if not upload_url:
            raise UploadTargetRequestError("Backend response carried no uploadURL")
        return UploadTarget(upload_url=upload_url)

    async def upload(self, target: UploadTarget, data: bytes, content_type: str = "image/jpeg") -> None:
        session = self._get_session()
        try:
            async with session.put(
                target.upload_url,
                data=data,
                headers={"Content-Type": content_type},
            ) as response:
                if response.status >= 400:
                    raise UploadTransferError(
                        f"Upload failed: HTTP {response.status}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadTransferError(f"Upload failed: {e}") from e

        logger.debug(f"Uploaded {len(data)} bytes to {target.storage_key}")

    async def persist_metadata(self, record: CaptureRecord) -> None:
        session = self._get_session()
        url = f"{self.base_url}{SCREENSHOTS_PATH}"
        try:
            async with session.post(url, json=record.to_dict(), headers=self.headers) as response:
                if response.status >= 400:
                    raise MetadataPersistError(
                        f"Failed to save screenshot record: HTTP {response.status}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetadataPersistError(f"Failed to save screenshot record: {e}") from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
