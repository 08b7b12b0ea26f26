# =============================================================================
# Dental Stream Client - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the streaming client. Parameters are overridable via environment variables
# with the STREAM_ prefix (e.g., STREAM_TARGET_FPS=8).
# =============================================================================

import os
from dataclasses import dataclass, field
from typing import Optional

# Frame rates the client may stream at
FPS_OPTIONS = (3, 5, 8, 10)


@dataclass
class Config:
    """
    Centralized configuration for the Dental Stream client.

    All fields can be overridden via environment variables prefixed with STREAM_.
    """

    # -- Networking --
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    server_path: str = "/ws/predict"
    connect_timeout_seconds: float = 10.0

    # -- Reconnection --
    reconnect_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 8.0
    reconnect_max_attempts: int = 5

    # -- Streaming --
    target_fps: int = 5
    predict_every_frames: int = 1
    fps_settle_seconds: float = 0.2

    # -- Frame Capture --
    capture_monitor: int = 1
    capture_quality: int = 40  # JPEG quality, 1-95
    capture_max_width: int = 640
    capture_image_path: Optional[str] = None  # still image instead of screen grabs

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.server_url = f"ws://{self.server_host}:{self.server_port}{self.server_path}"
        if self.target_fps not in FPS_OPTIONS:
            raise ValueError(
                f"target_fps must be one of {FPS_OPTIONS}, got {self.target_fps}"
            )

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for STREAM_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "server_host": str,
            "server_port": int,
            "server_path": str,
            "connect_timeout_seconds": float,
            "reconnect_delay_seconds": float,
            "reconnect_max_delay_seconds": float,
            "reconnect_max_attempts": int,
            "target_fps": int,
            "predict_every_frames": int,
            "fps_settle_seconds": float,
            "capture_monitor": int,
            "capture_quality": int,
            "capture_max_width": int,
            "capture_image_path": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"STREAM_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
