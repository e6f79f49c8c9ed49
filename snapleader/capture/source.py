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
Capture Sources and Frame Rendering for SnapLeader.

A capture source is acquired once per capture session and then asked for a
frame on every tick. Acquisition may be refused (no display, page already
closed); that is reported as SourceAcquisitionDeniedError and never retried
automatically.

Sources:
- DesktopCaptureSource: the local screen through Pillow's ImageGrab
- PlaywrightCaptureSource: a Playwright page; closing the page ends the source

Every frame goes through render_frame(), which bounds it to the configured
size and re-encodes it as JPEG.
"""

from __future__ import annotations

import asyncio
import io
from abc import ABC, abstractmethod
from typing import Callable, Optional

from PIL import Image, ImageGrab, UnidentifiedImageError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from snapleader.capture.config import CaptureConfig
from snapleader.exceptions import FrameRenderError, SourceAcquisitionDeniedError
from snapleader.utils.logger import logger


class CaptureSource(ABC):
    """A live frame source held for the length of a capture session."""

    name = "source"

    def __init__(self) -> None:
        self._live = False
        self._on_ended: Optional[Callable[[], None]] = None

    @property
    def is_live(self) -> bool:
        """Check whether the source can still produce frames."""
        return self._live

    def set_on_ended(self, callback: Optional[Callable[[], None]]) -> None:
        """Install the callback fired when the source ends on its own."""
        self._on_ended = callback

    @abstractmethod
    async def acquire(self) -> None:
        """Acquire the source.

        Raises:
            SourceAcquisitionDeniedError: If the source is refused
        """

    async def wait_until_ready(self) -> None:
        """Wait until the source can produce a frame."""

    @abstractmethod
    async def grab_frame(self) -> bytes:
        """Grab one frame as encoded image bytes.

        Raises:
            FrameRenderError: If no frame could be grabbed
        """

    async def release(self) -> None:
        """Stop the source. Safe to call more than once."""
        self._live = False

    def _ended(self) -> None:
        """Mark the source as ended by something other than release()."""
        if not self._live:
            return
        self._live = False
        logger.info(f"Capture source {self.name} ended")
        if self._on_ended:
            try:
                self._on_ended()
            except Exception as e:
                logger.error(f"Capture source end callback error: {e}")


class DesktopCaptureSource(CaptureSource):
    """Captures the local screen with Pillow's ImageGrab.

    Example:
        >>> source = DesktopCaptureSource()
        >>> await source.acquire()
        >>> png_bytes = await source.grab_frame()
    """

    name = "desktop"

    def __init__(self, all_screens: bool = False) -> None:
        super().__init__()
        self.all_screens = all_screens

    def _grab(self) -> bytes:
        image = ImageGrab.grab(all_screens=self.all_screens)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    async def acquire(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            # A test grab; fails when no display is reachable
            await loop.run_in_executor(None, self._grab)
        except OSError as e:
            raise SourceAcquisitionDeniedError(f"Screen capture unavailable: {e}") from e
        self._live = True
        logger.info("Desktop capture source acquired")

    async def grab_frame(self) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._grab)
        except OSError as e:
            raise FrameRenderError(f"Screen grab failed: {e}") from e


class PlaywrightCaptureSource(CaptureSource):
    """Captures the viewport of a Playwright page.

    The page belongs to the caller; release() detaches from it and closes
    it only when close_on_release is set. If the page is closed elsewhere
    the source ends and the scheduler stops.

    Example:
        >>> page = await browser.new_page()
        >>> await page.goto("https://example.com")
        >>> source = PlaywrightCaptureSource(page)
        >>> await source.acquire()
    """

    name = "browser"

    def __init__(self, page: Page, close_on_release: bool = False) -> None:
        super().__init__()
        self.page = page
        self.close_on_release = close_on_release

    async def acquire(self) -> None:
        if self.page.is_closed():
            raise SourceAcquisitionDeniedError("Browser page is already closed")
        self.page.on("close", self._handle_close)
        self._live = True
        logger.info(f"Browser capture source acquired: {self.page.url}")

    def _handle_close(self, page: Page) -> None:
        self._ended()

    async def wait_until_ready(self) -> None:
        try:
            await self.page.wait_for_load_state("load")
        except PlaywrightError as e:
            raise FrameRenderError(f"Page not ready: {e}") from e

    async def grab_frame(self) -> bytes:
        try:
            return await self.page.screenshot(type="png", full_page=False)
        except PlaywrightError as e:
            raise FrameRenderError(f"Page screenshot failed: {e}") from e

    async def release(self) -> None:
        was_live = self._live
        await super().release()
        if not was_live:
            return
        self.page.remove_listener("close", self._handle_close)
        if self.close_on_release and not self.page.is_closed():
            await self.page.close()


def render_frame(raw: bytes, config: Optional[CaptureConfig] = None) -> bytes:
    """Bound a frame to the configured size and encode it as JPEG.

    Args:
        raw: Encoded image bytes in any format Pillow can read
        config: Size and quality settings (defaults to CaptureConfig())

    Returns:
        JPEG bytes

    Raises:
        FrameRenderError: If the frame is empty, unreadable or encodes too small
    """
    config = config or CaptureConfig()

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise FrameRenderError(f"Frame could not be decoded: {e}") from e

    width, height = image.size
    if width == 0 or height == 0:
        raise FrameRenderError("Frame has zero dimensions")

    if image.mode != "RGB":
        image = image.convert("RGB")

    # Keeps aspect ratio and never upscales
    image.thumbnail((config.max_width, config.max_height), Image.Resampling.BILINEAR)

    buffer = io.BytesIO()
    try:
        image.save(buffer, format="JPEG", quality=config.jpeg_quality)
    except OSError as e:
        raise FrameRenderError(f"Frame could not be encoded: {e}") from e

    data = buffer.getvalue()
    if len(data) < config.min_frame_bytes:
        raise FrameRenderError(f"Encoded frame too small ({len(data)} bytes)")
    return data


async def capture_frame(source: Optional[CaptureSource], config: Optional[CaptureConfig] = None) -> bytes:
    """Render one JPEG frame from a live source.

    Waits at most config.ready_timeout_s for the source to become ready.

    Raises:
        FrameRenderError: If the source is not live, not ready in time or
            produced an unusable frame
    """
    config = config or CaptureConfig()

    if source is None or not source.is_live:
        raise FrameRenderError("Capture source is not live")

    try:
        await asyncio.wait_for(source.wait_until_ready(), timeout=config.ready_timeout_s)
    except asyncio.TimeoutError as e:
        raise FrameRenderError(
            f"Capture source not ready within {config.ready_timeout_s}s"
        ) from e

    raw = await source.grab_frame()
    return render_frame(raw, config)
