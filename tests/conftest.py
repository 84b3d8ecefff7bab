"""Shared fakes: scriptable capture sources and a manual clock."""

from unittest.mock import MagicMock

import pytest

from streamer.camera import CaptureSource


def make_image(width=4, height=4):
    image = MagicMock()
    image.width = width
    image.height = height
    return image


class FakeSource(CaptureSource):
    """Capture source returning mock images, optionally failing or stalling"""

    def __init__(self, device_index, clock=None, read_delay=0.0, empty_after=None):
        super().__init__(device_index)
        self.clock = clock
        self.read_delay = read_delay
        self.empty_after = empty_after
        self.images = []
        self.read_times = []
        self.release_count = 0

    def read(self):
        if self.clock is not None:
            self.read_times.append(self.clock.now)
            self.clock.advance(self.read_delay)
        if self.empty_after is not None and len(self.images) >= self.empty_after:
            return None
        image = make_image()
        self.images.append(image)
        return image

    def release(self):
        self.release_count += 1


class FakeClock:
    """Time only moves when the session sleeps or a device stalls"""

    def __init__(self):
        self.now = 0.0
        self.on_sleep = None

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep(self.now)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sources():
    created = []

    def factory(index, **kwargs):
        source = FakeSource(index, **kwargs)
        created.append(source)
        return source

    factory.created = created
    return factory
