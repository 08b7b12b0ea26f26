# =============================================================================
# Dental Stream Client - Stream Controller
# =============================================================================
# Owns one streaming session end to end.  It creates the session state and
# its liveness token, wires the connection manager, frame scheduler and
# protocol codec together, turns user intents (start, stop, change frame
# rate, flip camera, clear history) into state transitions, and tears
# everything down on close.
#
#   FrameSource --capture--> FrameScheduler --frame--> ConnectionManager --> server
#   server --> ConnectionManager --raw--> codec.decode --> SessionState --> renderers
# =============================================================================

import asyncio
import logging
from typing import Optional, Set

from config import FPS_OPTIONS, Config
from shared.schemas import (
    AckReceipt,
    ErrorMessage,
    PredictionMessage,
    StatusMessage,
    UnknownMessage,
)
from stream import codec
from stream.capture import FrameSource
from stream.connection import ConnectionManager, Connector
from stream.scheduler import FrameScheduler
from stream.session import (
    CameraFacing,
    CancellationToken,
    ConnectionState,
    Prediction,
    SessionState,
)

logger = logging.getLogger(__name__)


class StreamController:
    """
    Coordinator for a single streaming session.

    Args:
        config:    Client configuration.
        source:    Frame source the scheduler captures from.
        connector: Optional WebSocket connector override, mainly for tests.
        scheduler_autorun: Passed through to FrameScheduler.
    """

    def __init__(
        self,
        config: Config,
        source: FrameSource,
        connector: Optional[Connector] = None,
        scheduler_autorun: bool = True,
    ):
        self._config = config
        self._source = source

        self.session = SessionState(target_fps=config.target_fps)
        self.token = CancellationToken()

        connection_kwargs = {}
        if connector is not None:
            connection_kwargs["connector"] = connector
        self.connection = ConnectionManager(
            config.server_url,
            self.session,
            self.token,
            on_message=self._dispatch,
            connect_timeout=config.connect_timeout_seconds,
            **connection_kwargs,
        )
        self.connection.add_disconnect_callback(self._on_connection_lost)

        self.scheduler = FrameScheduler(
            self.session,
            source,
            self.connection,
            self.token,
            autorun=scheduler_autorun,
        )

        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._retry_attempts = 0
        self._fps_change_seq = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_retry(self) -> Optional[asyncio.TimerHandle]:
        """The scheduled start retry, if one is waiting."""
        return self._retry_handle

    # -----------------------------------------------------------------
    # Session lifecycle
    # -----------------------------------------------------------------

    async def open(self) -> bool:
        """Connect to the server. A failure here is not retried."""
        return await self.connection.connect()

    async def close(self) -> None:
        """
        Tear the session down.

        After this returns no timer, capture or socket callback can touch
        the session state again.
        """
        if self.token.cancelled:
            return
        logger.info("Closing streaming session")
        self.token.cancel()
        self._cancel_retry()
        for task in list(self._tasks):
            task.cancel()
        self.scheduler.stop()
        await self.connection.disconnect()

    # -----------------------------------------------------------------
    # User intents
    # -----------------------------------------------------------------

    async def start_analysis(self) -> bool:
        """
        Begin streaming frames for analysis.

        Connects first if needed.  If that connection attempt fails, one
        retry is scheduled after the reconnect delay.

        Returns:
            True if streaming started.
        """
        self._cancel_retry()
        self._retry_attempts = 0
        return await self._start()

    async def stop_analysis(self) -> bool:
        """
        Stop streaming. A no-op (apart from cancelling a pending retry) when idle.

        Returns:
            True if a running stream was stopped.
        """
        self._cancel_retry()
        self._retry_attempts = 0
        if self.token.cancelled or not self.session.analysis_active:
            return False

        self.scheduler.stop()
        self.session.stop_stream()
        if self.connection.is_connected:
            await self.connection.send(codec.stop_message())
        logger.info("Analysis stopped")
        return True

    async def set_target_fps(self, fps: int) -> None:
        """
        Change the capture rate, restarting the scheduler if streaming.

        The scheduler is stopped, left to settle for ``fps_settle_seconds``
        and restarted at the new cadence.  When several changes overlap only
        the latest restarts it.

        Raises:
            ValueError: If ``fps`` is not one of FPS_OPTIONS.
        """
        self.session.set_target_fps(fps)
        if not self.session.analysis_active:
            return

        self._fps_change_seq += 1
        seq = self._fps_change_seq
        self.session.set_status(f"Switching to {fps} FPS...")
        self.scheduler.stop()

        await asyncio.sleep(self._config.fps_settle_seconds)

        if seq != self._fps_change_seq or self.token.cancelled:
            return
        if not self.session.analysis_active or not self.connection.is_connected:
            return
        self.scheduler.start(self.session.target_fps)
        self.session.set_status(f"Streaming video ({self.session.target_fps} FPS)...")

    async def toggle_fps(self) -> int:
        """Step to the next rate in FPS_OPTIONS, wrapping around."""
        index = FPS_OPTIONS.index(self.session.target_fps)
        fps = FPS_OPTIONS[(index + 1) % len(FPS_OPTIONS)]
        await self.set_target_fps(fps)
        return fps

    def toggle_facing(self) -> CameraFacing:
        facing = self.session.toggle_facing()
        self._source.set_facing(facing)
        return facing

    def clear_history(self) -> None:
        self.session.clear_history()

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    async def _start(self) -> bool:
        if self.token.cancelled:
            return False
        if self.session.analysis_active:
            logger.debug("Start ignored: already streaming")
            return False

        if not self.connection.is_connected:
            if self.connection.state is not ConnectionState.DISCONNECTED:
                logger.debug("Start ignored: connection is %s", self.connection.state.value)
                return False
            if not await self.connection.connect():
                self._schedule_retry()
                return False
            if self.token.cancelled:
                return False

        self._cancel_retry()
        self._retry_attempts = 0
        if not self.session.start_stream():
            return False

        fps = self.session.target_fps
        await self.connection.send(
            codec.start_message(fps, self._config.predict_every_frames)
        )
        # Stopped or disconnected while the start command was in flight
        if self.token.cancelled or not self.session.analysis_active:
            return False

        self.scheduler.start(fps)
        logger.info("Analysis started at %d FPS", fps)
        return True

    def _schedule_retry(self) -> None:
        if self.token.cancelled:
            return
        if self._retry_attempts >= self._config.reconnect_max_attempts:
            logger.warning("Giving up after %d reconnect attempts", self._retry_attempts)
            self._retry_attempts = 0
            self.session.set_status("Connection failed - tap to retry")
            return

        delay = min(
            self._config.reconnect_delay_seconds * (2 ** self._retry_attempts),
            self._config.reconnect_max_delay_seconds,
        )
        self._retry_attempts += 1
        self._cancel_retry()
        logger.info(
            "Retrying start in %.1fs (attempt %d/%d)",
            delay, self._retry_attempts, self._config.reconnect_max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        if self.token.cancelled:
            return
        self._spawn(self._start())

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_connection_lost(self) -> None:
        # Session state has already forced analysis off
        self.scheduler.stop()

    def _dispatch(self, raw) -> None:
        """Apply one inbound frame to the session."""
        if self.token.cancelled:
            return
        message = codec.decode(raw)
        if message is None:
            return

        if isinstance(message, PredictionMessage):
            self.session.on_prediction_received(
                Prediction(label=message.predicted_class, confidence=message.confidence)
            )
        elif isinstance(message, StatusMessage):
            self.session.on_system_notice(message.message)
        elif isinstance(message, ErrorMessage):
            if self.session.on_error_notice(message.message):
                logger.error("Server reported an error: %s", message.message)
            else:
                logger.warning("Server reported an error: %s", message.message)
        elif isinstance(message, AckReceipt):
            logger.debug("Server acknowledged %s frames", message.frame_count)
        elif isinstance(message, UnknownMessage):
            logger.debug("Ignoring message of type %r", message.msg_type)
