# =============================================================================
# Dental Stream Client - Frame Capture
# =============================================================================
# Provides the frame sources the scheduler pulls still frames from.  Each
# capture returns a JPEG, base64-encoded for the JSON wire format, plus its
# dimensions.  Pixel grabbing and JPEG encoding are blocking, so they run in
# a worker thread via asyncio.to_thread and never stall the event loop.
#
#   ScreenFrameSource    - grabs a monitor with mss (stand-in for a camera)
#   ImageFileFrameSource - re-encodes a still image from disk
# =============================================================================

import asyncio
import base64
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import mss
from mss.exception import ScreenShotError
from PIL import Image

from stream.session import CameraFacing

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """A transient failure to capture a frame. The frame is simply skipped."""


@dataclass(frozen=True)
class CapturedFrame:
    """
    A single encoded still frame.

    Attributes:
        data_b64: Base64-encoded JPEG bytes.
        width:    Width in pixels after any downscaling.
        height:   Height in pixels after any downscaling.
    """

    data_b64: str
    width: int
    height: int


def encode_jpeg(image: Image.Image, quality: int = 40, max_width: int = 640) -> CapturedFrame:
    """
    Downscale an image to at most ``max_width`` pixels wide and JPEG-encode it.

    Args:
        image:     Source PIL image, any mode.
        quality:   JPEG quality (1-95).
        max_width: Maximum output width; 0 disables downscaling.

    Returns:
        CapturedFrame: The encoded frame.
    """
    if image.mode != "RGB":
        image = image.convert("RGB")

    if max_width > 0 and image.width > max_width:
        scale = max_width / float(image.width)
        image = image.resize((max_width, max(1, int(image.height * scale))), Image.BILINEAR)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=max(1, min(quality, 95)))
    data_b64 = base64.b64encode(buffer.getvalue()).decode("ascii")
    return CapturedFrame(data_b64=data_b64, width=image.width, height=image.height)


class FrameSource(ABC):
    """
    Asynchronous still-frame provider.

    Args:
        quality:   JPEG quality for encoded frames.
        max_width: Maximum frame width in pixels.
    """

    def __init__(self, quality: int = 40, max_width: int = 640):
        self._quality = quality
        self._max_width = max_width
        self._facing = CameraFacing.FRONT

    @property
    def facing(self) -> CameraFacing:
        return self._facing

    def set_facing(self, facing: CameraFacing) -> None:
        """Select which camera to capture from. Sources with one camera ignore it."""
        self._facing = facing
        logger.info("Camera facing set to %s", facing.value)

    async def capture_frame(self) -> CapturedFrame:
        """
        Capture and encode one frame without blocking the event loop.

        Raises:
            CaptureError: If the frame could not be captured.
        """
        return await asyncio.to_thread(self._capture_blocking)

    @abstractmethod
    def _capture_blocking(self) -> CapturedFrame:
        ...


class ScreenFrameSource(FrameSource):
    """
    Captures a monitor with the mss library.

    Args:
        monitor_index: Index of the monitor to capture (1 = primary).
    """

    def __init__(self, monitor_index: int = 1, quality: int = 40, max_width: int = 640):
        super().__init__(quality=quality, max_width=max_width)
        self._monitor_index = monitor_index

    def _capture_blocking(self) -> CapturedFrame:
        try:
            with mss.mss() as sct:
                # mss monitor list: index 0 = all monitors combined, 1+ = individual
                monitor = sct.monitors[self._monitor_index]
                raw = sct.grab(monitor)
        except (ScreenShotError, IndexError) as exc:
            raise CaptureError(f"screen grab failed: {exc}") from exc

        # mss returns BGRA; convert to PIL Image then to RGB
        image = Image.frombytes("RGB", raw.size, raw.bgra, "raw", "BGRX")
        frame = encode_jpeg(image, self._quality, self._max_width)
        logger.debug(
            "Captured frame: %dx%d from monitor %d",
            frame.width, frame.height, self._monitor_index,
        )
        return frame


class ImageFileFrameSource(FrameSource):
    """
    Serves a still image from disk as every frame.

    The file is re-read on each capture so it can be swapped while
    streaming.

    Args:
        path: Path to any image format Pillow can open.
    """

    def __init__(self, path: str, quality: int = 40, max_width: int = 640):
        super().__init__(quality=quality, max_width=max_width)
        self._path = path

    def _capture_blocking(self) -> CapturedFrame:
        try:
            with Image.open(self._path) as image:
                image.load()
                return encode_jpeg(image, self._quality, self._max_width)
        except (OSError, Image.DecompressionBombError) as exc:  # OSError includes UnidentifiedImageError
            raise CaptureError(f"cannot read {self._path}: {exc}") from exc
