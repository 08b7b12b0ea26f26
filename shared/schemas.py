# =============================================================================
# Dental Stream Client - Shared Wire Schemas
# =============================================================================
# Pydantic models defining the data contracts between the streaming client
# and the inference server.  Every message crossing the WebSocket is one of
# the models below, serialized as a UTF-8 JSON text frame.
#
# Outbound frames use a ``type`` discriminator while control and ack
# messages use ``action``; the server replies with either (or ``msg_type``).
# Field declaration order is the wire order.
# =============================================================================

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Client -> Server
# ---------------------------------------------------------------------------

class VideoFrameMessage(BaseModel):
    """
    A single captured still frame.

    Attributes:
        frame:        Base64-encoded JPEG bytes.
        frame_number: Ordinal of the frame within the current stream (1-based).
        timestamp:    Capture time in epoch milliseconds.
        width:        Frame width in pixels.
        height:       Frame height in pixels.
    """

    type: Literal["video_frame"] = "video_frame"
    frame: str = Field(..., description="Base64-encoded JPEG bytes")
    frame_number: int = Field(..., ge=0, description="Frame ordinal in this stream")
    timestamp: int = Field(..., ge=0, description="Capture time, epoch ms")
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)


class AckMessage(BaseModel):
    """Periodic acknowledgment of frames sent, for server-side bookkeeping."""

    action: Literal["ack"] = "ack"
    frame_count: int = Field(..., ge=0)
    fps: int = Field(..., gt=0)


class StartStreamMessage(BaseModel):
    """Asks the server to begin predicting on incoming frames."""

    action: Literal["start_video_stream"] = "start_video_stream"
    target_fps: int = Field(..., gt=0)
    predict_every_frames: int = Field(default=1, gt=0)


class StopStreamMessage(BaseModel):
    """Tells the server the client has stopped streaming."""

    action: Literal["stop_video_stream"] = "stop_video_stream"


# ---------------------------------------------------------------------------
# Server -> Client
# ---------------------------------------------------------------------------

class PredictionMessage(BaseModel):
    """
    Classification result for a recent frame.

    Attributes:
        predicted_class: Label produced by the model (e.g., "cavity").
        confidence:      Model confidence in [0, 1].
    """

    predicted_class: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class StatusMessage(BaseModel):
    """Informational notice from the server."""

    message: str = ""

    @field_validator("message", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value


class ErrorMessage(BaseModel):
    """Application-level error reported by the server. Never fatal."""

    message: str = "Analysis error"

    @field_validator("message", mode="before")
    @classmethod
    def _default_message(cls, value):
        return value or "Analysis error"


class AckReceipt(BaseModel):
    """Server acknowledgment of frames received. Informational only."""

    frame_count: Optional[int] = None


class UnknownMessage(BaseModel):
    """Any inbound message whose discriminator is not recognised."""

    msg_type: str
