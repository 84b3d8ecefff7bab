import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """A single captured image and the index of the device it came from"""

    device_index: int
    image: Optional[Image.Image]
    captured_at: float = field(default_factory=time.time)

    @property
    def empty(self) -> bool:
        return self.image is None or self.image.width == 0 or self.image.height == 0

    def release(self):
        if self.image is not None:
            self.image.close()
            self.image = None


def preprocess(frame: Frame, denoising: bool = False) -> Frame:
    """Per-frame processing hook. Denoising is accepted but not implemented."""
    return frame


class FrameBuffer:
    """Holds the most recent frame of every device.

    A slot is released before it is overwritten, so there is never more than
    one live frame per device.
    """

    def __init__(self, size: int):
        self._slots: List[Optional[Frame]] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, index: int) -> Optional[Frame]:
        return self._slots[index]

    def install(self, index: int, frame: Frame):
        previous = self._slots[index]
        if previous is not None:
            previous.release()
        self._slots[index] = frame

    def frames(self) -> List[Frame]:
        return [frame for frame in self._slots if frame is not None]

    def live_count(self) -> int:
        return len(self.frames())

    def release_all(self):
        for i, frame in enumerate(self._slots):
            if frame is not None:
                frame.release()
                self._slots[i] = None
