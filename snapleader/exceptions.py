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

"""Custom exceptions for SnapLeader.

None of these are fatal to a node. Coordination errors degrade to a
leader-of-one or to "no lease", capture errors degrade to a paused
scheduler.

Exception Hierarchy:
    SnapLeaderError (base)
    ├── ConfigurationError - Invalid coordinator or capture configuration
    ├── StorageError - Shared storage read/write failures
    ├── CoordinationError - Election and transport errors
    │   ├── TransportUnavailableError - A broadcast backend cannot start
    │   └── LeaseUnreadableError - Lease slot cannot be read or parsed
    └── CaptureError - Capture scheduler errors
        ├── SourceAcquisitionDeniedError - Capture source refused
        ├── CaptureTickError - One failed capture transaction
        │   ├── FrameRenderError
        │   ├── UploadTargetRequestError
        │   ├── UploadTransferError
        │   └── MetadataPersistError
        └── CaptureCeilingReachedError - Too many consecutive failures
"""

from __future__ import annotations

from typing import Optional


class SnapLeaderError(Exception):
    """Base exception for all SnapLeader errors."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        """Initialize the error.

        Args:
            message: Error message
            retry_after: Optional seconds to wait before retrying
        """
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class ConfigurationError(SnapLeaderError):
    """Raised when a configuration fails validation."""

    def __init__(self, message: str = "Invalid configuration", errors: Optional[list] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if self.errors:
            return f"{self.message}: {'; '.join(self.errors)}"
        return self.message


class StorageError(SnapLeaderError):
    """Raised when shared storage cannot be read or written."""

    def __init__(self, message: str = "Shared storage unavailable", key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class CoordinationError(SnapLeaderError):
    """Base exception for leader election errors."""


class TransportUnavailableError(CoordinationError):
    """Raised when a broadcast backend cannot be started."""

    def __init__(
        self,
        message: str = "Transport unavailable",
        transport: Optional[str] = None,
    ) -> None:
        """Initialize the transport error.

        Args:
            message: Error message
            transport: Name of the backend that failed
        """
        super().__init__(message)
        self.transport = transport

    def __str__(self) -> str:
        if self.transport:
            return f"{self.message} ({self.transport})"
        return self.message


class LeaseUnreadableError(CoordinationError):
    """Raised when the lease slot holds data that cannot be read."""

    def __init__(self, message: str = "Lease record unreadable", raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class CaptureError(SnapLeaderError):
    """Base exception for capture scheduler errors."""


class SourceAcquisitionDeniedError(CaptureError):
    """Raised when a capture source cannot be acquired.

    Acquisition failures are surfaced immediately and never retried
    automatically; a fresh ``start()`` is required.
    """

    def __init__(self, message: str = "Screen sharing was denied or cancelled") -> None:
        super().__init__(message)


class CaptureTickError(CaptureError):
    """A single capture transaction failed at some stage."""

    stage = "capture"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        """Initialize the tick error.

        Args:
            message: Error message
            status: HTTP status of the failing call, when there was one
        """
        super().__init__(message)
        self.status = status


class FrameRenderError(CaptureTickError):
    """The source produced no usable frame."""

    stage = "render"


class UploadTargetRequestError(CaptureTickError):
    """The backend refused to issue a signed upload target."""

    stage = "upload_target"


class UploadTransferError(CaptureTickError):
    """Uploading the encoded frame to the signed target failed."""

    stage = "upload"


class MetadataPersistError(CaptureTickError):
    """The backend refused to persist the capture metadata."""

    stage = "persist"


class CaptureCeilingReachedError(CaptureError):
    """Raised when consecutive failures hit the ceiling; scheduling pauses."""

    def __init__(self, failures: int) -> None:
        super().__init__(
            f'Screenshot capture paused after {failures} failures. Click "Retry" to resume.'
        )
        self.failures = failures
