from typing import Optional


class StreamerError(Exception):
    """Base class for all streamer errors"""


class ConfigError(StreamerError):
    """Raised when the configuration holds invalid values"""


class ConstructionError(StreamerError):
    """Raised when a camera session cannot be created"""


class SessionClosedError(StreamerError):
    """Raised when a closed camera session is used"""


class NoDestinationsError(StreamerError):
    """Raised when streaming is started without any destination"""

    def __init__(self, message: str = "insufficient amount of streaming destinations"):
        super().__init__(message)


class CaptureError(StreamerError):
    """Raised when a camera fails to deliver a frame"""

    def __init__(self, device_index: int, message: str):
        self.device_index = device_index
        super().__init__(f"camera {device_index}: {message}")


class TransportError(StreamerError):
    """Raised when a frame cannot be encoded or delivered"""

    def __init__(self, message: str, destination: Optional[str] = None,
                 device_index: Optional[int] = None, status: Optional[int] = None):
        self.destination = destination
        self.device_index = device_index
        self.status = status
        super().__init__(message)
