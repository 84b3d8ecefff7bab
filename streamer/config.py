"""Streamer configuration: YAML file values overridden by command line values."""

from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigError
from .utils import get_setting, load_config


@dataclass
class StreamerConfig:
    """Settings of one streamer process.

    Attributes:
        fps: target frames per second of the streaming loop
        camera_count: number of cameras opened by the session
        cameras: device ids per camera, defaults to 0..camera_count-1
        destinations: collector addresses (host:port or full URL)
        endpoint: path appended to every destination address
        verbose: log informational messages
        host: handshake server bind address
        port: handshake server port
        jpeg_quality: JPEG quality 1-100 of pushed frames
        request_timeout: seconds per POST, None keeps the requests default
        video_size: capture resolution, e.g. "1280x720"
        mock: generate random frames instead of opening cameras
        denoising: enable the (no-op) denoising hook
    """

    fps: int = 1
    camera_count: int = 1
    cameras: List = field(default_factory=list)
    destinations: List[str] = field(default_factory=list)
    endpoint: str = "api/frame"
    verbose: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    jpeg_quality: int = 80
    request_timeout: Optional[float] = None
    video_size: str = "1280x720"
    mock: bool = False
    denoising: bool = False

    def camera_id(self, device_index: int):
        if device_index < len(self.cameras):
            return self.cameras[device_index]
        return device_index

    def validate(self):
        if self.fps <= 0:
            raise ConfigError(f"fps must be positive, got {self.fps}")
        if self.camera_count <= 0:
            raise ConfigError(f"camera_count must be positive, got {self.camera_count}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigError(f"jpeg_quality must be within 1-100, got {self.jpeg_quality}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"invalid port {self.port}")
        if 'x' not in self.video_size.lower():
            raise ConfigError(f"invalid video_size {self.video_size!r}")
        return self


def build_config(path: Optional[str] = None, **overrides) -> StreamerConfig:
    """Load the YAML file at ``path`` and apply non-None ``overrides`` on top"""
    data = load_config(path) if path else {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    defaults = StreamerConfig()
    values = {}
    for name in defaults.__dataclass_fields__:
        values[name] = get_setting(overrides.get(name), data.get(name), getattr(defaults, name))

    destinations = values["destinations"]
    if isinstance(destinations, str):
        values["destinations"] = [destinations]
    try:
        values["fps"] = int(values["fps"])
        values["camera_count"] = int(values["camera_count"])
        values["port"] = int(values["port"])
        values["jpeg_quality"] = int(values["jpeg_quality"])
        if values["request_timeout"] is not None:
            values["request_timeout"] = float(values["request_timeout"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid config value: {e}") from e

    return StreamerConfig(**values).validate()
