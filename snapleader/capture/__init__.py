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
Periodic Capture for SnapLeader.

Key Components:
- CaptureScheduler: Capture loop with backoff, failure ceiling and retry
- CaptureSource: Desktop (Pillow ImageGrab) and browser page (Playwright) sources
- CaptureBackend: Signed upload and metadata persistence (aiohttp)
- next_capture_interval: Pure interval policy
"""

from snapleader.capture.backend import (
    CaptureBackend,
    CaptureRecord,
    HTTPCaptureBackend,
    UploadTarget,
)
from snapleader.capture.backoff import next_capture_interval
from snapleader.capture.config import CaptureConfig
from snapleader.capture.scheduler import CaptureScheduler, CaptureSession, CaptureState
from snapleader.capture.source import (
    CaptureSource,
    DesktopCaptureSource,
    PlaywrightCaptureSource,
    capture_frame,
    render_frame,
)

__all__ = [
    "CaptureBackend",
    "CaptureConfig",
    "CaptureRecord",
    "CaptureScheduler",
    "CaptureSession",
    "CaptureSource",
    "CaptureState",
    "DesktopCaptureSource",
    "HTTPCaptureBackend",
    "PlaywrightCaptureSource",
    "UploadTarget",
    "capture_frame",
    "next_capture_interval",
    "render_frame",
]
