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
Capture Configuration for SnapLeader.

Scheduling, backoff, frame encoding and backend settings for the capture
scheduler.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List


@dataclass
class CaptureConfig:
    """Configuration for periodic capture.

    Attributes:
        min_interval_s: Lower bound of the healthy capture interval
        max_interval_s: Upper bound of the healthy capture interval
        backoff_base_s: Interval after the first failure
        backoff_max_s: Cap on the failure backoff interval
        max_consecutive_failures: Failures after which scheduling pauses
        ready_timeout_s: Maximum wait for the source to produce a frame
        jpeg_quality: JPEG quality (1-95) for uploaded frames
        max_width: Maximum frame width after scaling
        max_height: Maximum frame height after scaling
        min_frame_bytes: Encoded frames smaller than this are rejected
        backend_url: Base URL of the time-tracking backend
        request_timeout_s: Timeout for each backend request
    """

    # Scheduling
    min_interval_s: float = 180.0    # 3 minutes
    max_interval_s: float = 300.0    # 5 minutes
    backoff_base_s: float = 30.0
    backoff_max_s: float = 480.0     # 8 minutes
    max_consecutive_failures: int = 8

    # Frame
    ready_timeout_s: float = 3.0
    jpeg_quality: int = 70
    max_width: int = 1280
    max_height: int = 720
    min_frame_bytes: int = 1000

    # Backend
    backend_url: str = "http://localhost:8000"
    request_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "CaptureConfig":
        """Create CaptureConfig from environment variables.

        Environment variables:
            SNAPLEADER_CAPTURE_MIN_INTERVAL: Healthy interval lower bound (s)
            SNAPLEADER_CAPTURE_MAX_INTERVAL: Healthy interval upper bound (s)
            SNAPLEADER_CAPTURE_MAX_FAILURES: Consecutive failure ceiling
            SNAPLEADER_CAPTURE_JPEG_QUALITY: JPEG quality
            SNAPLEADER_BACKEND_URL: Backend base URL
            SNAPLEADER_REQUEST_TIMEOUT: Backend request timeout (s)

        Returns:
            CaptureConfig with values from environment
        """
        return cls(
            min_interval_s=float(os.environ.get("SNAPLEADER_CAPTURE_MIN_INTERVAL", "180")),
            max_interval_s=float(os.environ.get("SNAPLEADER_CAPTURE_MAX_INTERVAL", "300")),
            max_consecutive_failures=int(os.environ.get("SNAPLEADER_CAPTURE_MAX_FAILURES", "8")),
            jpeg_quality=int(os.environ.get("SNAPLEADER_CAPTURE_JPEG_QUALITY", "70")),
            backend_url=os.environ.get("SNAPLEADER_BACKEND_URL", "http://localhost:8000"),
            request_timeout_s=float(os.environ.get("SNAPLEADER_REQUEST_TIMEOUT", "30")),
        )

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.min_interval_s <= 0:
            errors.append("min_interval_s must be positive")

        if self.max_interval_s < self.min_interval_s:
            errors.append("max_interval_s must be >= min_interval_s")

        if self.backoff_base_s <= 0:
            errors.append("backoff_base_s must be positive")

        if self.backoff_max_s < self.backoff_base_s:
            errors.append("backoff_max_s must be >= backoff_base_s")

        if self.max_consecutive_failures < 1:
            errors.append("max_consecutive_failures must be at least 1")

        if self.ready_timeout_s <= 0:
            errors.append("ready_timeout_s must be positive")

        if not 1 <= self.jpeg_quality <= 95:
            errors.append("jpeg_quality must be between 1 and 95")

        if self.max_width <= 0 or self.max_height <= 0:
            errors.append("max_width and max_height must be positive")

        if not self.backend_url:
            errors.append("backend_url is required")

        return errors
