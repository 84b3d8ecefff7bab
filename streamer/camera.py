import os
import logging
import platform
from typing import Optional, Dict, List

import av
from PIL import Image

from .errors import CaptureError, ConstructionError
from .utils import get_camera_device_path, get_platform_backend, resolve_windows_camera_name, IS_WINDOWS, IS_JETSON

logger = logging.getLogger(__name__)


def parse_video_size(video_size: str):
    width, height = video_size.lower().split('x')
    return int(width), int(height)


class CaptureSource:
    """A camera device that produces frames on demand.

    ``read`` returns the next image or None when the device delivered nothing,
    ``release`` frees the device and may be called more than once.
    """

    def __init__(self, device_index: int):
        self.device_index = device_index

    def open(self):
        pass

    def read(self) -> Optional[Image.Image]:
        raise NotImplementedError

    def release(self):
        pass


class CameraCapture(CaptureSource):
    """Handles capture from a single camera using av (PyAV)"""

    def __init__(self, device_index: int, camera_id=None, fps: int = 30, video_size: str = "1280x720"):
        super().__init__(device_index)
        camera_id = device_index if camera_id is None else camera_id
        # On Windows, prefer device names for DirectShow. If numeric provided, try to resolve.
        if IS_WINDOWS and not isinstance(camera_id, str):
            resolved = resolve_windows_camera_name(camera_id)
            self.camera_id = resolved if resolved is not None else camera_id
        else:
            self.camera_id = camera_id
        self.fps = fps
        self.video_size = video_size
        self.container = None
        self.video_stream = None

    def open(self):
        """Open the camera, raising ConstructionError if every attempt fails"""
        input_format = get_platform_backend()
        input_url = get_camera_device_path(self.camera_id)

        logger.info(f"Platform: {platform.system()}, Jetson: {IS_JETSON}")
        logger.info(f"Using backend: {input_format}")

        base_options = self._get_format_options()
        if input_format == 'dshow':
            # Many dshow devices fail if you force size/framerate. Try progressively.
            option_attempts: List[Dict[str, str]] = [
                {},
                {'framerate': base_options['framerate']},
                {'video_size': '640x480'},
                {'video_size': self.video_size},
                {'video_size': self.video_size, 'framerate': base_options['framerate']},
            ]
        else:
            option_attempts = [base_options]

        last_error: Optional[Exception] = None
        for opts in option_attempts:
            try:
                logger.debug(f"Opening with {input_format} URL: {input_url}, options: {opts}")
                self.container = av.open(input_url, format=input_format, options=opts)
                self.video_stream = self.container.streams.video[0]
                self.video_stream.thread_type = 'AUTO'
                logger.info(f"Camera {self.camera_id} opened with format {input_format} and options {opts}")
                return
            except Exception as e:
                last_error = e
                self.release()
        raise ConstructionError(
            f"failed to open camera {self.camera_id} with format {input_format}: {last_error}")

    def _get_format_options(self) -> Dict[str, str]:
        return {
            'video_size': self.video_size,
            'framerate': str(self.fps),
        }

    def read(self) -> Optional[Image.Image]:
        if self.container is None:
            raise CaptureError(self.device_index, "camera is not open")
        try:
            for frame in self.container.decode(self.video_stream):
                return frame.to_image()
        except Exception as e:
            raise CaptureError(self.device_index, f"unexpected error while reading: {e}") from e
        return None

    def release(self):
        if self.container is not None:
            try:
                self.container.close()
            finally:
                self.container = None
                self.video_stream = None
            logger.info(f"Camera {self.camera_id} released")


class MockCapture(CaptureSource):
    """Generates random RGB frames when no hardware is attached"""

    def __init__(self, device_index: int, width: int = 1280, height: int = 720):
        super().__init__(device_index)
        self.width = width
        self.height = height
        self.is_open = False

    def open(self):
        logger.info(f"Camera {self.device_index} running in mock mode ({self.width}x{self.height})")
        self.is_open = True

    def read(self) -> Optional[Image.Image]:
        if not self.is_open:
            raise CaptureError(self.device_index, "camera is not open")
        # os.urandom avoids a numpy dependency
        random_bytes = os.urandom(self.width * self.height * 3)
        return Image.frombytes('RGB', (self.width, self.height), random_bytes)

    def release(self):
        self.is_open = False


def open_source(device_index: int, config) -> CaptureSource:
    """Create and open the capture source for one device of the session"""
    if config.mock:
        width, height = parse_video_size(config.video_size)
        source = MockCapture(device_index, width, height)
    else:
        source = CameraCapture(device_index, config.camera_id(device_index),
                               fps=config.fps, video_size=config.video_size)
    source.open()
    return source
