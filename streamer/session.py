import time
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .camera import CaptureSource, CameraCapture, open_source
from .errors import CaptureError, ConstructionError, NoDestinationsError, SessionClosedError, StreamerError
from .frame_buffer import Frame, FrameBuffer, preprocess
from .transport import Destination, FrameSender

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    CLOSED = "closed"


def _open_camera(device_index: int, fps: int) -> CaptureSource:
    source = CameraCapture(device_index, fps=fps)
    source.open()
    return source


class CameraSession:
    """Captures frames from a set of cameras and streams them to destinations.

    All cameras are opened when the session is created and stay open until
    ``close``. ``stream`` holds the session lock for the whole run, so
    destinations added while it runs only take effect on the next run.
    """

    def __init__(self, camera_count: int, fps: int,
                 source_factory: Optional[Callable[[int], CaptureSource]] = None,
                 sender: Optional[FrameSender] = None,
                 denoising: bool = False,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 on_drop: Optional[Callable[[int], None]] = None):
        if camera_count <= 0:
            raise ConstructionError(f"invalid amount of cameras {camera_count}")
        if fps <= 0:
            raise ConstructionError(f"invalid frame rate {fps}")
        if source_factory is None:
            source_factory = lambda index: _open_camera(index, fps)

        self.fps = fps
        self.denoising = denoising
        self.devices: List[CaptureSource] = self._open_devices(camera_count, source_factory)
        self.buffer = FrameBuffer(camera_count)

        self._owns_sender = sender is None
        self.sender = sender if sender is not None else FrameSender()
        self._clock = clock
        self._sleep = sleep
        self._on_drop = on_drop

        self._destinations: List[Destination] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._state = SessionState.IDLE
        self._thread: Optional[threading.Thread] = None
        self._stream_thread: Optional[threading.Thread] = None
        self._close_pending = False
        self._error: Optional[StreamerError] = None
        self._sequence = 0
        self.dropped_frames = 0

        logger.info(f"Created camera session with {camera_count} cameras at {fps} fps")

    @classmethod
    def from_config(cls, config, **kwargs) -> "CameraSession":
        sender = FrameSender(quality=config.jpeg_quality, timeout=config.request_timeout)
        try:
            session = cls(config.camera_count, config.fps,
                          source_factory=lambda index: open_source(index, config),
                          sender=sender, denoising=config.denoising, **kwargs)
        except Exception:
            sender.close()
            raise
        session._owns_sender = True
        for address in config.destinations:
            session.add_destination(address, config.endpoint)
        return session

    @staticmethod
    def _open_devices(camera_count: int, source_factory) -> List[CaptureSource]:
        devices: List[CaptureSource] = []
        try:
            for i in range(camera_count):
                devices.append(source_factory(i))
        except Exception as e:
            # Roll back so the caller never owns half-opened cameras
            for device in reversed(devices):
                try:
                    device.release()
                except Exception:
                    logger.exception(f"Rollback: error releasing camera {device.device_index}")
            if isinstance(e, ConstructionError):
                raise
            raise ConstructionError(f"failed to open camera {len(devices)}: {e}") from e
        return devices

    @property
    def camera_count(self) -> int:
        return len(self.devices)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def destinations(self) -> Tuple[Destination, ...]:
        return tuple(self._destinations)

    def _ensure_open(self):
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("camera session is closed")

    def add_destination(self, address: str, endpoint: str) -> Destination:
        """Register a streaming destination, waiting for a running stream to end"""
        with self._lock:
            self._ensure_open()
            destination = Destination.parse(address, endpoint)
            self._destinations.append(destination)
        logger.info(f"Added streaming destination {destination.url}")
        return destination

    def capture_frames(self) -> List[Frame]:
        """Get a single frame from each of the cameras in index order"""
        self._ensure_open()
        frames = []
        for i, device in enumerate(self.devices):
            frame = Frame(i, device.read())
            if frame.empty:
                frame.release()
                raise CaptureError(i, "retrieved an empty frame")
            frame = preprocess(frame, self.denoising)
            self.buffer.install(i, frame)
            frames.append(frame)
        return frames

    def stream(self):
        """Stream frames at the session frame rate until a stop is requested.

        Raises NoDestinationsError without streaming when nothing is
        registered. Capture and transport errors end the run and propagate.
        """
        try:
            self._stream_locked()
        finally:
            # close() called from inside the run was deferred until the lock is free
            if self._close_pending:
                self.close()

    def _stream_locked(self):
        with self._lock:
            self._ensure_open()
            if not self._destinations:
                raise NoDestinationsError()

            self._state = SessionState.RUNNING
            self._stream_thread = threading.current_thread()
            logger.info(f"Streaming to {len(self._destinations)} destinations")
            try:
                self._run(tuple(self._destinations))
            finally:
                self._stream_thread = None
                self._state = SessionState.STOPPED
            logger.info("Streaming stopped")

    def _run(self, destinations: Tuple[Destination, ...]):
        interval = 1.0 / self.fps
        captured = 0
        start = self._clock()

        while not self._stop_event.is_set():
            elapsed = self._clock() - start
            if elapsed >= 1.0:
                if captured < self.fps:
                    self._report_drop(self.fps - captured)
                captured = 0
                start = self._clock()
                continue
            elif captured >= self.fps:
                # Rate ceiling reached, wait out the rest of the window
                self._sleep(1.0 - elapsed)
                continue

            frames = self.capture_frames()
            captured += 1

            self.sender.send(frames, destinations, self._sequence)
            self._sequence += 1

            self._sleep(interval)

        self._stop_event.clear()

    def _report_drop(self, count: int):
        self.dropped_frames += count
        logger.warning(f"dropped {count} frames")
        if self._on_drop is not None:
            self._on_drop(count)

    def start(self):
        """Run ``stream`` in a background thread"""
        self._ensure_open()
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("camera session is already streaming")
        if self._error is not None:
            logger.error(f"Discarding error of a stream that was never joined: {self._error}")
            self._error = None
        self._thread = threading.Thread(target=self._stream_background, name="camera-stream", daemon=True)
        self._thread.start()

    def _stream_background(self):
        try:
            self.stream()
        except StreamerError as e:
            self._error = e

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background stream. Returns False on timeout and
        re-raises the error that ended the stream."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            return False
        error, self._error = self._error, None
        if error is not None:
            raise error
        return True

    def stop(self):
        """Ask the stream to stop at the next iteration boundary"""
        self._stop_event.set()

    def close(self):
        """Stop streaming and release every camera and buffered frame"""
        if self._state is SessionState.CLOSED:
            return
        self._stop_event.set()
        if self._stream_thread is threading.current_thread():
            # The running stream holds the lock, it closes the session once it unwinds
            self._close_pending = True
            return
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        # Taking the lock guarantees no stream run is reading from the cameras
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._state = SessionState.CLOSED

            first_error = None
            for device in self.devices:
                try:
                    device.release()
                except Exception as e:
                    logger.error(f"Failed to release camera {device.device_index}: {e}")
                    first_error = first_error or e
            self.buffer.release_all()
            if self._owns_sender:
                self.sender.close()

        logger.info("Camera session closed")
        if first_error is not None:
            raise first_error

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
