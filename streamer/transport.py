import io
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import requests

from .errors import TransportError
from .frame_buffer import Frame

logger = logging.getLogger(__name__)

# Status the collector answers with once it has taken a frame
ACCEPTED_STATUS = 202
CONTENT_TYPE = "image/jpeg"


@dataclass(frozen=True)
class Destination:
    """A collector frames are pushed to: base address plus endpoint path"""

    base: str
    endpoint: str

    @classmethod
    def parse(cls, address: str, endpoint: str) -> "Destination":
        if "://" not in address:
            address = f"http://{address}"
        return cls(address.rstrip("/"), endpoint.strip("/"))

    @property
    def url(self) -> str:
        if not self.endpoint:
            return self.base
        return f"{self.base}/{self.endpoint}"

    def frame_url(self, device_index: int, sequence: int) -> str:
        return f"{self.url}/{device_index}/{sequence}"


class FrameSender:
    """Encodes frames to JPEG and POSTs them to every destination.

    Sends are blocking and sequential. The first failure aborts the whole
    frame set.
    """

    def __init__(self, http: Optional[requests.Session] = None, quality: int = 80,
                 timeout: Optional[float] = None):
        self.http = http if http is not None else requests.Session()
        self.quality = quality
        self.timeout = timeout

    def encode(self, frame: Frame) -> bytes:
        if frame.empty:
            raise TransportError(f"cannot encode empty frame from camera {frame.device_index}",
                                 device_index=frame.device_index)
        buffer = io.BytesIO()
        try:
            image = frame.image if frame.image.mode == 'RGB' else frame.image.convert('RGB')
            image.save(buffer, format='JPEG', quality=self.quality)
        except (OSError, ValueError) as e:
            raise TransportError(f"failed to encode frame from camera {frame.device_index}: {e}",
                                 device_index=frame.device_index) from e
        return buffer.getvalue()

    def post(self, destination: Destination, device_index: int, sequence: int, data: bytes):
        url = destination.frame_url(device_index, sequence)
        try:
            resp = self.http.post(url, data=data, headers={"Content-Type": CONTENT_TYPE},
                                  timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"failed to send frame from camera {device_index} to {url}: {e}",
                                 destination=destination.url, device_index=device_index) from e

        if resp.status_code != ACCEPTED_STATUS:
            raise TransportError(
                f"{destination.url} answered frame from camera {device_index} "
                f"with http status code {resp.status_code}",
                destination=destination.url, device_index=device_index, status=resp.status_code)
        logger.debug(f"Sent frame {sequence} from camera {device_index} to {url}")

    def send(self, frames: Iterable[Frame], destinations: Sequence[Destination], sequence: int):
        for frame in frames:
            data = self.encode(frame)
            for destination in destinations:
                self.post(destination, frame.device_index, sequence, data)

    def close(self):
        self.http.close()
