# =============================================================================
# Dental Stream Client - Frame Scheduler
# =============================================================================
# Paces frame captures against the session's target frame rate and ships
# each captured frame to the server.
#
# A timer task calls tick() every half frame interval.  A tick issues a
# capture only when the session is alive, streaming is on, no capture is
# outstanding and a full interval has passed since the last accepted frame.
# The last-capture timestamp is only advanced once a capture returns data,
# so a slow camera naturally lowers the effective frame rate instead of
# piling up requests.
# =============================================================================

import asyncio
import logging
import time
from typing import Callable, Optional

from stream import codec
from stream.capture import CaptureError, FrameSource
from stream.session import CancellationToken, SessionState

logger = logging.getLogger(__name__)

ACK_EVERY_FRAMES = 10
STATUS_EVERY_FRAMES = 15


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def frame_interval_ms(fps: int) -> float:
    """Minimum time between two accepted captures, in milliseconds."""
    return 1000.0 / fps


class FrameScheduler:
    """
    Capture pacing and outbound frame emission.

    Args:
        session:    Shared session state (frame counter, status line).
        source:     Frame source to capture from.
        connection: Anything with an ``is_connected`` property and an
                    ``async send(message)`` method, normally the
                    ConnectionManager.
        token:      Session liveness token.
        clock:      Returns the current time in epoch milliseconds.  Used
                    both for pacing and for the frame timestamp.
        autorun:    Start a timer task that ticks on its own.  Tests turn
                    this off and call tick() directly.
    """

    def __init__(
        self,
        session: SessionState,
        source: FrameSource,
        connection,
        token: CancellationToken,
        clock: Callable[[], int] = _wall_clock_ms,
        autorun: bool = True,
    ):
        self._session = session
        self._source = source
        self._connection = connection
        self._token = token
        self._clock = clock
        self._autorun = autorun

        self._running = False
        self._generation = 0
        self._fps = session.target_fps
        self._last_capture_ms: Optional[int] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    # -----------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def interval_ms(self) -> float:
        return frame_interval_ms(self._fps)

    @property
    def tick_interval_seconds(self) -> float:
        """Timer period: half the frame interval, to keep jitter low."""
        return self.interval_ms / 2000.0

    @property
    def capture_in_flight(self) -> bool:
        return self._in_flight is not None

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def start(self, fps: int) -> None:
        """
        Begin pacing captures at ``fps``. Restarts cleanly if already running.
        """
        self.stop()
        self._generation += 1
        self._fps = fps
        self._running = True
        logger.info(
            "Frame scheduler started (%d FPS, interval=%.1fms)", fps, self.interval_ms
        )
        if self._autorun:
            self._timer_task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """
        Stop pacing and forget any capture in progress.

        Safe to call repeatedly and before start().
        """
        was_running = self._running
        self._running = False

        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if self._in_flight is not None:
            self._in_flight.cancel()
            self._in_flight = None
        self._last_capture_ms = None

        if was_running:
            logger.info("Frame scheduler stopped")

    async def _run(self) -> None:
        while self._running and not self._token.cancelled:
            self.tick(self._clock())
            await asyncio.sleep(self.tick_interval_seconds)

    # -----------------------------------------------------------------
    # Pacing
    # -----------------------------------------------------------------

    def tick(self, now_ms: int) -> Optional[asyncio.Task]:
        """
        Decide whether to capture a frame at ``now_ms``.

        Returns:
            The capture task if one was issued, otherwise None.
        """
        if self._token.cancelled or not self._running:
            return None
        if self._in_flight is not None:
            return None
        if (
            self._last_capture_ms is not None
            and now_ms - self._last_capture_ms < self.interval_ms
        ):
            return None

        task = asyncio.create_task(self._capture_and_send(now_ms, self._generation))
        self._in_flight = task
        return task

    def _is_current(self, generation: int) -> bool:
        return (
            self._running
            and generation == self._generation
            and not self._token.cancelled
        )

    async def _capture_and_send(self, issued_at_ms: int, generation: int) -> None:
        task = asyncio.current_task()
        try:
            frame = await self._source.capture_frame()
        except CaptureError as exc:
            # Dropped frames are expected; stay quiet while winding down
            if self._is_current(generation):
                logger.info("Frame capture skipped: %s", exc)
            return
        except Exception:
            if self._is_current(generation):
                logger.exception("Unexpected frame capture failure")
            return
        finally:
            if self._in_flight is task:
                self._in_flight = None

        if not self._is_current(generation) or not self._connection.is_connected:
            return

        self._last_capture_ms = issued_at_ms
        frame_number = self._session.next_frame()
        fps = self._fps

        await self._connection.send(
            codec.frame_message(
                frame.data_b64, frame_number, issued_at_ms, frame.width, frame.height
            )
        )
        if not self._is_current(generation):
            return

        if frame_number % ACK_EVERY_FRAMES == 0:
            await self._connection.send(codec.ack_message(frame_number, fps))

        if frame_number % STATUS_EVERY_FRAMES == 0:
            self._session.set_status(f"Streaming ({fps} FPS) - {frame_number} frames")
