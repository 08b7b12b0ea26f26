# =============================================================================
# Dental Stream Client - Protocol Codec
# =============================================================================
# Serializes the four outbound message kinds to JSON text frames and turns
# inbound text frames into typed messages.  Inbound parsing is tolerant: the
# message kind may live in ``type``, ``action`` or ``msg_type`` and is matched
# case-insensitively.  Anything unparseable is logged and dropped.
# =============================================================================

import json
import logging
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

from shared.schemas import (
    AckMessage,
    AckReceipt,
    ErrorMessage,
    PredictionMessage,
    StartStreamMessage,
    StatusMessage,
    StopStreamMessage,
    UnknownMessage,
    VideoFrameMessage,
)

logger = logging.getLogger(__name__)

OutboundMessage = Union[VideoFrameMessage, AckMessage, StartStreamMessage, StopStreamMessage]
InboundMessage = Union[PredictionMessage, StatusMessage, ErrorMessage, AckReceipt, UnknownMessage]

_OUTBOUND_TYPES = (VideoFrameMessage, AckMessage, StartStreamMessage, StopStreamMessage)
_DISCRIMINATOR_FIELDS = ("type", "action", "msg_type")
_INBOUND_MODELS = {
    "prediction": PredictionMessage,
    "status": StatusMessage,
    "error": ErrorMessage,
    "ack": AckReceipt,
}


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

def encode(message: OutboundMessage) -> str:
    """
    Serialize an outbound message to its JSON wire form.

    Args:
        message: One of VideoFrameMessage, AckMessage, StartStreamMessage
                 or StopStreamMessage.

    Returns:
        str: Compact JSON text.

    Raises:
        TypeError: If ``message`` is any other kind of object.
    """
    if not isinstance(message, _OUTBOUND_TYPES):
        raise TypeError(f"Unsupported outbound message: {type(message).__name__}")
    return message.model_dump_json(exclude_none=True)


def frame_message(
    frame_b64: str, frame_number: int, timestamp_ms: int, width: int, height: int
) -> VideoFrameMessage:
    return VideoFrameMessage(
        frame=frame_b64,
        frame_number=frame_number,
        timestamp=timestamp_ms,
        width=width,
        height=height,
    )


def ack_message(frame_count: int, fps: int) -> AckMessage:
    return AckMessage(frame_count=frame_count, fps=fps)


def start_message(target_fps: int, predict_every_frames: int = 1) -> StartStreamMessage:
    return StartStreamMessage(target_fps=target_fps, predict_every_frames=predict_every_frames)


def stop_message() -> StopStreamMessage:
    return StopStreamMessage()


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

def message_kind(data: dict) -> str:
    """
    Read the message discriminator from the first non-empty of
    ``type``, ``action`` or ``msg_type``, lower-cased.
    """
    for key in _DISCRIMINATOR_FIELDS:
        value = data.get(key)
        if value:
            return str(value).lower()
    return ""


def decode(raw: Union[str, bytes]) -> Optional[InboundMessage]:
    """
    Parse and classify an inbound text frame.

    Args:
        raw: The frame as received from the socket.

    Returns:
        The typed message, or None if the payload was malformed.  Unknown
        message kinds come back as UnknownMessage so the caller can log them.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        # JSONDecodeError is a ValueError; very deep nesting hits the recursion limit
        logger.warning("Dropping unparseable message: %s", exc)
        return None

    if not isinstance(data, dict):
        logger.warning("Dropping non-object message: %.80r", data)
        return None

    kind = message_kind(data)
    model: Optional[type] = _INBOUND_MODELS.get(kind)
    if model is None:
        logger.debug("Unhandled message type %r: %.200r", kind, data)
        return UnknownMessage(msg_type=kind)

    try:
        message: BaseModel = model.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Dropping invalid %s message (%d errors): %s",
            kind, exc.error_count(), exc.errors()[0]["msg"],
        )
        return None
    return message
