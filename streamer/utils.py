import os
import platform
import logging
from typing import Optional, List

import av
import yaml

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = platform.system() == "Windows"
IS_LINUX = platform.system() == "Linux"
IS_JETSON = os.path.exists("/etc/nv_tegra_release") if IS_LINUX else False

# Common DirectShow device names, DirectShow cannot open devices by index
WINDOWS_CAMERA_NAMES = [
    "Integrated Webcam",
    "USB2.0 HD UVC WebCam",
    "USB Camera",
    "Webcam",
    "Camera",
]


def get_setting(cli_value, config_value, default):
    return cli_value if cli_value is not None else (config_value if config_value is not None else default)


def load_config(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}


def get_camera_device_path(camera_id) -> str:
    """Get the appropriate camera device path based on the platform"""
    if IS_WINDOWS:
        return f"video={camera_id}"
    return f"/dev/video{camera_id}"


def get_platform_backend() -> str:
    """Return the single appropriate AV input backend for the current platform."""
    if IS_WINDOWS:
        return 'dshow'
    elif IS_LINUX:
        return 'v4l2'
    else:
        # macOS or others
        return 'avfoundation'


def _probe(device_path: str, input_format: str) -> bool:
    try:
        container = av.open(device_path, format=input_format)
    except Exception as e:
        logger.debug(f"Probe of {device_path} failed: {e}")
        return False
    try:
        return bool(container.streams.video)
    finally:
        container.close()


def list_available_cameras() -> List:
    """List available camera devices based on platform"""
    if IS_WINDOWS:
        # Best-effort: probe the common device names
        return [name for name in WINDOWS_CAMERA_NAMES
                if _probe(get_camera_device_path(name), 'dshow')]
    if IS_LINUX:
        return [i for i in range(10)
                if os.path.exists(f"/dev/video{i}") and _probe(f"/dev/video{i}", 'v4l2')]
    # macOS (avfoundation) cannot be enumerated reliably without the FFmpeg CLI
    return []


def resolve_windows_camera_name(camera_id) -> Optional[str]:
    """Best-effort: map a numeric/unknown Windows camera_id to a plausible DirectShow name."""
    if isinstance(camera_id, str) and camera_id.strip():
        return camera_id
    for name in WINDOWS_CAMERA_NAMES:
        if _probe(f"video={name}", 'dshow'):
            return name
    return None
