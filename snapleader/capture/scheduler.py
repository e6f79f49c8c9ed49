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
Capture Scheduler for SnapLeader.

Drives periodic capture on the leader node:
- Acquire a capture source once per session (never retried automatically)
- Capture immediately, then at a jittered 3-5 minute interval
- Back off exponentially on failures and pause at the failure ceiling
- Manual retry lifts the ceiling without re-acquiring the source
- Non-failure pause/resume for leadership changes

Each tick is one transaction: render a frame, request a signed upload
target, upload, persist metadata. A failure at any step aborts the tick
and counts as one consecutive failure.

Ticks run in their own task and are shielded from loop cancellation, so a
stop() never cuts a network call short. Each tick carries the session
generation it was started under; a tick that finishes after stop() or
destroy() applies nothing.

    IDLE --start()--> CAPTURING <--pause/resume--> PAUSED
                          |                          ^
                          +---- failure ceiling -----+
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from snapleader.capture.backend import CaptureBackend, CaptureRecord
from snapleader.capture.backoff import next_capture_interval
from snapleader.capture.config import CaptureConfig
from snapleader.capture.source import CaptureSource, capture_frame
from snapleader.exceptions import (
    CaptureCeilingReachedError,
    CaptureError,
    CaptureTickError,
    ConfigurationError,
    SourceAcquisitionDeniedError,
)
from snapleader.utils.logger import logger


class CaptureState(str, Enum):
    """State of the capture scheduler."""
    IDLE = "idle"
    CAPTURING = "capturing"
    PAUSED = "paused"


@dataclass
class CaptureSession:
    """Everything the scheduler holds between start() and stop()."""
    source: Optional[CaptureSource] = None
    consecutive_failures: int = 0
    scheduled_at: Optional[float] = None
    state: CaptureState = CaptureState.IDLE


class CaptureScheduler:
    """Periodic capture with backoff, failure ceiling and manual retry.

    Example:
        >>> scheduler = CaptureScheduler(
        ...     backend=HTTPCaptureBackend("https://tracker.example.com"),
        ...     source_factory=DesktopCaptureSource,
        ...     on_error=lambda e: print(e),
        ... )
        >>> await scheduler.start("entry-1", "project-1")
        >>> scheduler.pause_scheduling()
        >>> scheduler.resume_scheduling()
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        backend: CaptureBackend,
        source_factory: Callable[[], CaptureSource],
        config: Optional[CaptureConfig] = None,
        on_state_change: Optional[Callable[[CaptureState], None]] = None,
        on_error: Optional[Callable[[CaptureError], None]] = None,
        on_error_cleared: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the scheduler.

        Args:
            backend: Where frames and metadata go
            source_factory: Creates a fresh capture source for each start()
            config: Capture configuration
            on_state_change: Called with the new state on every transition
            on_error: Called with each tick error, the ceiling error and
                acquisition denials
            on_error_cleared: Called when retry(), a success or a fresh start()
                clears a reported error
            sleep: Awaitable used to wait between ticks
            rng: Random source for interval jitter
            clock: Time source for scheduled_at

        Raises:
            ConfigurationError: If config fails validation
        """
        self.config = config or CaptureConfig()
        errors = self.config.validate()
        if errors:
            raise ConfigurationError("Invalid capture configuration", errors=errors)

        self.backend = backend
        self._source_factory = source_factory
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

        self.session = CaptureSession()
        self._activity_id: Optional[str] = None
        self._project_id: Optional[str] = None

        self._ceiling_reached = False
        # An error was reported and no clearance has followed yet
        self._error_outstanding = False
        self._destroyed = False
        self._generation = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None

        self.last_interval: Optional[float] = None
        self.last_record: Optional[CaptureRecord] = None
        self.captures_total = 0

        self._on_state_change = on_state_change
        self._on_error = on_error
        self._on_error_cleared = on_error_cleared

    # ==================== Properties ====================

    @property
    def state(self) -> CaptureState:
        """Get current state."""
        return self.session.state

    @property
    def consecutive_failures(self) -> int:
        """Failures since the last success or retry."""
        return self.session.consecutive_failures

    @property
    def ceiling_reached(self) -> bool:
        """Check if scheduling is paused by the failure ceiling."""
        return self._ceiling_reached

    @property
    def has_source(self) -> bool:
        """Check if a live capture source is held."""
        return self.session.source is not None and self.session.source.is_live

    @property
    def activity_id(self) -> Optional[str]:
        return self._activity_id

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    # ==================== Lifecycle ====================

    async def start(self, activity_id: str, project_id: Optional[str] = None) -> bool:
        """Acquire a source, capture once and start scheduling.

        Acquisition failures are reported through on_error and leave the
        scheduler IDLE; they are not retried.

        Args:
            activity_id: Activity the captures belong to
            project_id: Project of the activity

        Returns:
            True if capture is running after the call
        """
        if self._destroyed:
            return False

        self.set_activity(activity_id, project_id)
        if self.session.state != CaptureState.IDLE:
            return self.session.state == CaptureState.CAPTURING

        generation = self._generation
        source = self._source_factory()
        source.set_on_ended(self._handle_source_ended)

        try:
            await source.acquire()
        except SourceAcquisitionDeniedError as e:
            logger.warning(f"Capture source denied: {e.message}")
            self._report_error(e)
            return False

        if self._destroyed or generation != self._generation:
            # stop() or destroy() ran while acquiring
            await source.release()
            return False

        self.session = CaptureSession(source=source)
        self._ceiling_reached = False
        if self._error_outstanding:
            self._clear_errors()
        self._set_state(CaptureState.CAPTURING)
        self._start_loop(capture_first=True)

        logger.info(f"Capture started for activity {activity_id} ({source.name} source)")
        return True

    async def stop(self) -> None:
        """Release the source, cancel scheduling and reset the session."""
        self._generation += 1

        loop_task = self._loop_task
        self._loop_task = None
        if loop_task and loop_task is not asyncio.current_task():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass

        source = self.session.source
        self.session = CaptureSession(state=self.session.state)
        self._ceiling_reached = False
        if source is not None:
            source.set_on_ended(None)
            await source.release()
            logger.info("Capture stopped")

        self._set_state(CaptureState.IDLE)

    async def destroy(self) -> None:
        """Stop and refuse any further start()."""
        if self._destroyed:
            return
        await self.stop()
        self._destroyed = True

    def set_activity(self, activity_id: Optional[str], project_id: Optional[str] = None) -> None:
        """Change the activity future captures are filed under.

        Ticks with no activity are skipped without counting as failures.
        """
        self._activity_id = activity_id
        self._project_id = project_id

    # ==================== Control ====================

    def retry(self) -> bool:
        """Clear the failure count and resume on the existing source.

        Returns:
            False if there is no live source to resume on
        """
        if self._destroyed or not self.has_source:
            logger.warning("Capture retry ignored: no live capture source")
            return False

        self.session.consecutive_failures = 0
        self._ceiling_reached = False
        self._clear_errors()

        self._set_state(CaptureState.CAPTURING)
        self._start_loop(capture_first=False)
        logger.info("Capture retry requested, scheduling resumed")
        return True

    def pause_scheduling(self) -> None:
        """Pause without counting a failure (e.g. leadership lost)."""
        if self.session.state != CaptureState.CAPTURING:
            return
        self._cancel_loop()
        self.session.scheduled_at = None
        self._set_state(CaptureState.PAUSED)

    def resume_scheduling(self) -> None:
        """Resume after pause_scheduling(). No-op while the ceiling is in effect."""
        if self._destroyed or self.session.state != CaptureState.PAUSED:
            return
        if self._ceiling_reached:
            logger.debug("Capture resume ignored: failure ceiling reached, retry required")
            return
        if not self.has_source:
            return
        self._set_state(CaptureState.CAPTURING)
        self._start_loop(capture_first=False)

    # ==================== Loop ====================

    def _start_loop(self, capture_first: bool) -> None:
        self._cancel_loop()
        self._loop_task = asyncio.create_task(self._run_loop(self._generation, capture_first))

    def _cancel_loop(self) -> None:
        if self._loop_task and self._loop_task is not asyncio.current_task():
            self._loop_task.cancel()
        self._loop_task = None

    def _is_current(self, generation: int) -> bool:
        return not self._destroyed and generation == self._generation

    async def _run_loop(self, generation: int, capture_first: bool) -> None:
        """Background loop that waits out each interval and runs a tick."""
        if capture_first:
            try:
                await self._run_tick(generation)
            except asyncio.CancelledError:
                return

        while self._is_current(generation) and self.session.state == CaptureState.CAPTURING:
            delay = next_capture_interval(self.session.consecutive_failures, self.config, self._rng)
            self.last_interval = delay
            self.session.scheduled_at = self._clock() + delay
            logger.debug(f"Next capture in {delay:.1f}s")
            try:
                await self._sleep(delay)
                if not self._is_current(generation) or self.session.state != CaptureState.CAPTURING:
                    break
                await self._run_tick(generation)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Capture loop error: {e}")

    async def _run_tick(self, generation: int) -> None:
        # Cancelling the loop must not cancel the tick's network calls
        self._tick_task = asyncio.create_task(self._tick(generation))
        await asyncio.shield(self._tick_task)

    async def _tick(self, generation: int) -> None:
        """Run one capture transaction."""
        activity_id, project_id = self._activity_id, self._project_id
        if not activity_id:
            logger.debug("Capture tick skipped: no tracked activity")
            return

        try:
            frame = await capture_frame(self.session.source, self.config)
            if not self._is_current(generation):
                return
            target = await self.backend.request_upload_target(activity_id)
            if not self._is_current(generation):
                return
            await self.backend.upload(target, frame)
            if not self._is_current(generation):
                return
            record = CaptureRecord.create(activity_id, project_id, target)
            await self.backend.persist_metadata(record)
        except CaptureTickError as e:
            if self._is_current(generation):
                self._record_failure(e)
            return
        except Exception as e:
            logger.error(f"Unexpected capture error: {e}")
            if self._is_current(generation):
                self._record_failure(CaptureTickError(f"Unexpected capture error: {e}"))
            return

        if self._is_current(generation):
            self._record_success(record)

    def _record_success(self, record: CaptureRecord) -> None:
        self.session.consecutive_failures = 0
        self.last_record = record
        self.captures_total += 1
        logger.info(f"Captured frame for activity {record.activity_id}: {record.storage_key}")
        if self._error_outstanding:
            self._clear_errors()

    def _record_failure(self, error: CaptureTickError) -> None:
        self.session.consecutive_failures += 1
        failures = self.session.consecutive_failures
        limit = self.config.max_consecutive_failures
        logger.warning(f"Capture failed at {error.stage} ({failures}/{limit}): {error.message}")

        if failures >= limit:
            self._ceiling_reached = True
            self.session.scheduled_at = None
            self._set_state(CaptureState.PAUSED)
            logger.error(f"Capture paused after {failures} consecutive failures")
            self._report_error(CaptureCeilingReachedError(failures))
        else:
            self._report_error(error)

    def _handle_source_ended(self) -> None:
        if self._destroyed:
            return
        logger.info("Capture source ended, stopping capture")
        self._stop_task = asyncio.get_running_loop().create_task(self.stop())

    # ==================== Status ====================

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "state": self.session.state.value,
            "consecutive_failures": self.session.consecutive_failures,
            "ceiling_reached": self._ceiling_reached,
            "has_source": self.has_source,
            "activity_id": self._activity_id,
            "scheduled_at": self.session.scheduled_at,
            "captures_total": self.captures_total,
        }

    # ==================== Callbacks ====================

    def _set_state(self, state: CaptureState) -> None:
        if self.session.state == state:
            return
        self.session.state = state
        self._emit(self._on_state_change, state)

    def _report_error(self, error: CaptureError) -> None:
        self._error_outstanding = True
        self._emit(self._on_error, error)

    def _clear_errors(self) -> None:
        self._error_outstanding = False
        self._emit(self._on_error_cleared)

    def _emit(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None or self._destroyed:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Capture callback error: {e}")
