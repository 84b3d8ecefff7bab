"""
Edge camera streamer package
Captures frames from one or more cameras and pushes them to remote collectors
at a bounded frame rate, with a local token handshake endpoint.
Uses PyAV for capture, Pillow for JPEG encoding, requests and Flask for HTTP.
"""

from .camera import CaptureSource, CameraCapture, MockCapture
from .config import StreamerConfig, build_config
from .errors import (
    StreamerError,
    ConfigError,
    ConstructionError,
    CaptureError,
    TransportError,
    NoDestinationsError,
    SessionClosedError,
)
from .frame_buffer import Frame, FrameBuffer
from .server import HandshakeServer, create_app
from .session import CameraSession, SessionState
from .transport import Destination, FrameSender, ACCEPTED_STATUS

__all__ = [
    "ACCEPTED_STATUS",
    "CameraCapture",
    "CameraSession",
    "CaptureError",
    "CaptureSource",
    "ConfigError",
    "ConstructionError",
    "Destination",
    "Frame",
    "FrameBuffer",
    "FrameSender",
    "HandshakeServer",
    "MockCapture",
    "NoDestinationsError",
    "SessionClosedError",
    "SessionState",
    "StreamerConfig",
    "StreamerError",
    "TransportError",
    "build_config",
    "create_app",
]
