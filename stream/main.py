# =============================================================================
# Dental Stream Client - Command Line Entry Point
# =============================================================================
# Runs a streaming session from the terminal: connects to the inference
# server, streams frames from the screen (or a still image) at the target
# frame rate and logs predictions as they arrive.  Press Ctrl+C to stop.
# =============================================================================

import argparse
import asyncio
import logging
from typing import Optional

from config import FPS_OPTIONS, Config, get_config
from stream.capture import FrameSource, ImageFileFrameSource, ScreenFrameSource
from stream.controller import StreamController
from stream.session import Prediction, SessionState, SystemNotice

logger = logging.getLogger(__name__)


def format_class_name(class_name: str) -> str:
    """Turn a model label such as ``early_cavity`` into ``Early Cavity``."""
    return " ".join(word.capitalize() for word in class_name.replace("_", " ").split())


class ConsoleRenderer:
    """
    Logs session changes: the status line, new predictions and notices.

    Subscribe ``renderer.render`` to a SessionState.
    """

    def __init__(self):
        self._last_status: Optional[str] = None
        self._last_entry = None

    def render(self, session: SessionState) -> None:
        if session.status != self._last_status:
            self._last_status = session.status
            logger.info("Status: %s", session.status)

        entry = session.history[-1] if session.history else None
        if entry is None or entry is self._last_entry:
            return
        self._last_entry = entry

        local_time = entry.observed_at.astimezone().strftime("%H:%M:%S")
        if isinstance(entry, Prediction):
            logger.info(
                "[%s] %s  %.1f%%  (%d predictions)",
                local_time, format_class_name(entry.label),
                entry.confidence * 100, session.total_predictions,
            )
        elif isinstance(entry, SystemNotice):
            level = logging.ERROR if entry.is_error else logging.INFO
            logger.log(level, "[%s] %s", local_time, entry.text)


def build_source(config: Config) -> FrameSource:
    if config.capture_image_path:
        return ImageFileFrameSource(
            config.capture_image_path,
            quality=config.capture_quality,
            max_width=config.capture_max_width,
        )
    return ScreenFrameSource(
        monitor_index=config.capture_monitor,
        quality=config.capture_quality,
        max_width=config.capture_max_width,
    )


async def run_client(config: Config, duration: Optional[float] = None) -> None:
    """
    Stream until ``duration`` seconds have passed, or forever.

    Args:
        config:   Client configuration.
        duration: Optional run time in seconds.
    """
    controller = StreamController(config, build_source(config))
    renderer = ConsoleRenderer()
    controller.session.subscribe(renderer.render)

    try:
        await controller.open()
        await controller.start_analysis()
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        await controller.stop_analysis()
        await controller.close()
        logger.info(
            "Session ended: %d frames sent in the last stream, %d predictions",
            controller.session.frame_count, controller.session.total_predictions,
        )


def main():
    """CLI entry point for the streaming client."""
    parser = argparse.ArgumentParser(
        description="Dental Stream Client - live frame streaming to an inference server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--server-url", type=str, default=None,
        help="WebSocket endpoint (e.g., ws://127.0.0.1:8000/ws/predict)",
    )
    parser.add_argument(
        "--fps", type=int, choices=FPS_OPTIONS, default=None,
        help="Target frames per second (overrides config)",
    )
    parser.add_argument(
        "--image", type=str, default=None,
        help="Stream a still image file instead of screen captures",
    )
    parser.add_argument(
        "--monitor", type=int, default=None,
        help="Monitor index to capture (1 = primary)",
    )
    parser.add_argument(
        "--duration", type=float, default=None,
        help="Stop after this many seconds (default: run until Ctrl+C)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    config = get_config()
    if args.server_url is not None:
        config.server_url = args.server_url
    if args.fps is not None:
        config.target_fps = args.fps
    if args.image is not None:
        config.capture_image_path = args.image
    if args.monitor is not None:
        config.capture_monitor = args.monitor

    print("\n" + "=" * 60)
    print("  Dental Stream Client")
    print("=" * 60)
    print(f"  Server      : {config.server_url}")
    print(f"  Target FPS  : {config.target_fps}")
    print(f"  Source      : {config.capture_image_path or f'monitor {config.capture_monitor}'}")
    print(f"  JPEG quality: {config.capture_quality}")
    print("=" * 60 + "\n")

    try:
        asyncio.run(run_client(config, duration=args.duration))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received. Shutting down...")


if __name__ == "__main__":
    main()
