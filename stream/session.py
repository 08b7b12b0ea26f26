# =============================================================================
# Dental Stream Client - Session State
# =============================================================================
# Holds everything a streaming session knows: connection state, whether
# analysis is active, the target frame rate, frame counters, the current
# prediction and a bounded chat-style history of predictions and notices.
#
# SessionState is a plain container with explicit mutation entry points.
# The connection manager, frame scheduler and controller write to it; the
# rendering side only reads it and subscribes to change notifications.
# =============================================================================

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, List, Optional, Union

from config import FPS_OPTIONS

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 12


class ConnectionState(str, Enum):
    """Lifecycle of the single WebSocket session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class CameraFacing(str, Enum):
    FRONT = "front"
    BACK = "back"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Prediction:
    """
    A labelled classification result.

    Attributes:
        label:       Predicted class name as sent by the server.
        confidence:  Confidence in [0, 1].
        observed_at: When the client received the prediction.
    """

    label: str
    confidence: float
    observed_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SystemNotice:
    """A status or error line shown alongside predictions in the history."""

    text: str
    observed_at: datetime = field(default_factory=_utcnow)
    is_error: bool = False


ChatEntry = Union[Prediction, SystemNotice]
Listener = Callable[["SessionState"], None]


class CancellationToken:
    """
    Liveness marker for a session.

    Every asynchronous continuation (capture completion, socket callbacks,
    retry timers) checks ``cancelled`` before touching session state.
    Once cancelled a token stays cancelled.
    """

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class SessionState:
    """
    State of one streaming session.

    Args:
        target_fps: Initial frame rate, one of FPS_OPTIONS.
    """

    def __init__(self, target_fps: int = 5):
        if target_fps not in FPS_OPTIONS:
            raise ValueError(f"target_fps must be one of {FPS_OPTIONS}, got {target_fps}")

        self.connection_state = ConnectionState.DISCONNECTED
        self.analysis_active = False
        self.target_fps = target_fps
        self.frame_count = 0
        self.current_prediction: Optional[Prediction] = None
        self.history: Deque[ChatEntry] = deque(maxlen=HISTORY_LIMIT)
        self.total_predictions = 0
        self.status = "Initializing..."
        self.facing = CameraFacing.FRONT
        self.error_alert_shown = False

        self._listeners: List[Listener] = []

    # -----------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a callback invoked with this SessionState after every change.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    # -----------------------------------------------------------------
    # Inbound messages
    # -----------------------------------------------------------------

    def on_prediction_received(self, prediction: Prediction) -> None:
        """
        Record a prediction from the server.

        The prediction always lands in the history; it only becomes the
        current prediction while analysis is active, so a late result
        arriving after stop cannot resurrect a cleared display.
        """
        if self.analysis_active:
            self.current_prediction = prediction
        self.history.append(prediction)
        self.total_predictions += 1
        self._notify()

    def on_system_notice(self, text: str) -> None:
        self.history.append(SystemNotice(text=text))
        self._notify()

    def on_error_notice(self, text: str) -> bool:
        """
        Record an application-level error reported by the server.

        Updates the status line and appends an error notice to the history.
        Streaming is not affected.

        Returns:
            True if this is the first error of the session (the caller may
            raise a one-time alert), False otherwise.
        """
        first = not self.error_alert_shown
        self.error_alert_shown = True
        self.status = f"Error: {text}"
        self.history.append(SystemNotice(text=text, is_error=True))
        self._notify()
        return first

    # -----------------------------------------------------------------
    # Streaming lifecycle
    # -----------------------------------------------------------------

    def start_stream(self, target_fps: Optional[int] = None) -> bool:
        """
        Mark analysis as active and reset per-stream counters.

        Args:
            target_fps: Optional new frame rate to stream at.

        Returns:
            True if the stream was started, False if rejected because the
            connection is not up or a stream is already active.
        """
        if self.connection_state is not ConnectionState.CONNECTED:
            logger.debug("Stream start rejected: connection is %s", self.connection_state.value)
            return False
        if self.analysis_active:
            logger.debug("Stream start rejected: already streaming")
            return False
        if target_fps is not None:
            self._check_fps(target_fps)
            self.target_fps = target_fps

        self.analysis_active = True
        self.frame_count = 0
        self.current_prediction = None
        self.status = f"Starting video stream ({self.target_fps} FPS)..."
        self._notify()
        return True

    def stop_stream(self) -> bool:
        """
        Mark analysis as inactive. A no-op when already idle.

        Returns:
            True if a running stream was stopped.
        """
        if not self.analysis_active:
            return False
        self.analysis_active = False
        self.current_prediction = None
        self.status = "Ready for analysis"
        self._notify()
        return True

    def next_frame(self) -> int:
        """Count one accepted capture and return the new frame count."""
        self.frame_count += 1
        return self.frame_count

    def set_target_fps(self, fps: int) -> None:
        self._check_fps(fps)
        self.target_fps = fps
        self._notify()

    def clear_history(self) -> None:
        self.history.clear()
        self.total_predictions = 0
        self.current_prediction = None
        self._notify()

    # -----------------------------------------------------------------
    # Connection & display
    # -----------------------------------------------------------------

    def set_connection_state(self, state: ConnectionState) -> None:
        """
        Record a connection transition.

        Leaving CONNECTED forces analysis off: streaming never continues
        against a dead socket.
        """
        if state is self.connection_state:
            return
        self.connection_state = state
        if state is not ConnectionState.CONNECTED and self.analysis_active:
            self.analysis_active = False
            self.current_prediction = None
        self._notify()

    def set_status(self, text: str) -> None:
        if text == self.status:
            return
        self.status = text
        self._notify()

    def toggle_facing(self) -> CameraFacing:
        if self.facing is CameraFacing.FRONT:
            self.facing = CameraFacing.BACK
        else:
            self.facing = CameraFacing.FRONT
        self._notify()
        return self.facing

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    @staticmethod
    def _check_fps(fps: int) -> None:
        if fps not in FPS_OPTIONS:
            raise ValueError(f"fps must be one of {FPS_OPTIONS}, got {fps}")
