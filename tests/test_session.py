"""CameraSession tests: construction, pacing, destinations and teardown."""

import threading
import time
import tracemalloc
from unittest.mock import MagicMock, patch

import pytest

from streamer.errors import (
    CaptureError,
    ConstructionError,
    NoDestinationsError,
    SessionClosedError,
    TransportError,
)
from streamer.camera import MockCapture
from streamer.session import CameraSession, SessionState


def _session(sources, camera_count=1, fps=4, clock=None, **kwargs):
    factory_kwargs = kwargs.pop("source_kwargs", {})
    if clock is not None:
        factory_kwargs.setdefault("clock", clock)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("sleep", clock.sleep)
    return CameraSession(
        camera_count,
        fps,
        source_factory=lambda index: sources(index, **factory_kwargs),
        sender=kwargs.pop("sender", MagicMock()),
        **kwargs,
    )


def _open_mock(index):
    source = MockCapture(index, 64, 48)
    source.open()
    return source


def _stop_at(session, clock, deadline):
    def on_sleep(now):
        if now >= deadline:
            session.stop()

    clock.on_sleep = on_sleep


# ============================================================
# Construction / teardown
# ============================================================


class TestConstruction:

    @pytest.mark.parametrize("camera_count", [0, -1])
    def test_invalid_camera_count(self, sources, camera_count):
        with pytest.raises(ConstructionError):
            _session(sources, camera_count=camera_count)
        assert sources.created == []

    def test_invalid_fps(self, sources):
        with pytest.raises(ConstructionError):
            _session(sources, fps=0)

    def test_opens_every_device(self, sources):
        session = _session(sources, camera_count=3)
        assert session.camera_count == 3
        assert len(session.buffer) == 3
        assert [s.device_index for s in session.devices] == [0, 1, 2]
        assert session.state is SessionState.IDLE

    def test_rolls_back_opened_devices_on_failure(self, sources):
        def factory(index):
            if index == 2:
                raise OSError("device busy")
            return sources(index)

        with pytest.raises(ConstructionError, match="camera 2"):
            CameraSession(3, 4, source_factory=factory, sender=MagicMock())

        assert [s.release_count for s in sources.created] == [1, 1]

    def test_construction_error_passes_through(self, sources):
        def factory(index):
            raise ConstructionError("failed to open camera 0")

        with pytest.raises(ConstructionError, match="failed to open camera 0"):
            CameraSession(1, 4, source_factory=factory, sender=MagicMock())


class TestClose:

    def test_releases_devices_and_frames(self, sources):
        session = _session(sources, camera_count=2)
        frames = session.capture_frames()
        images = [frame.image for frame in frames]

        session.close()

        assert session.state is SessionState.CLOSED
        assert [s.release_count for s in sources.created] == [1, 1]
        assert session.buffer.live_count() == 0
        for image in images:
            image.close.assert_called_once()

    def test_second_close_is_noop(self, sources):
        session = _session(sources, camera_count=2)
        session.capture_frames()
        session.close()
        session.close()
        assert [s.release_count for s in sources.created] == [1, 1]

    def test_closed_session_is_unusable(self, sources):
        session = _session(sources)
        session.close()
        with pytest.raises(SessionClosedError):
            session.add_destination("127.0.0.1:8000", "api/frame")
        with pytest.raises(SessionClosedError):
            session.stream()
        with pytest.raises(SessionClosedError):
            session.capture_frames()

    def test_context_manager_closes(self, sources):
        with _session(sources) as session:
            pass
        assert session.state is SessionState.CLOSED

    def test_close_from_drop_callback(self, sources, clock):
        holder = {}
        session = _session(sources, fps=4, clock=clock, source_kwargs={"read_delay": 0.5},
                           on_drop=lambda count: holder["session"].close())
        holder["session"] = session
        session.add_destination("127.0.0.1:8000", "api/frame")

        session.stream()

        assert session.state is SessionState.CLOSED
        assert [s.release_count for s in sources.created] == [1]
        assert session.buffer.live_count() == 0

    def test_close_from_drop_callback_in_background(self, sources, clock):
        holder = {}
        session = _session(sources, camera_count=2, fps=4, clock=clock,
                           source_kwargs={"read_delay": 0.5},
                           on_drop=lambda count: holder["session"].close())
        holder["session"] = session
        session.add_destination("127.0.0.1:8000", "api/frame")

        session.start()

        assert session.join(2.0)
        assert session.state is SessionState.CLOSED
        assert [s.release_count for s in sources.created] == [1, 1]


# ============================================================
# Frame buffer through the session
# ============================================================


class TestCaptureFrames:

    @pytest.mark.parametrize("camera_count", [1, 2, 4])
    def test_one_live_frame_per_device(self, sources, camera_count):
        session = _session(sources, camera_count=camera_count)
        for _ in range(50):
            session.capture_frames()
            assert session.buffer.live_count() == camera_count

        for source in sources.created:
            assert len(source.images) == 50
            for image in source.images[:-1]:
                image.close.assert_called_once()
            source.images[-1].close.assert_not_called()

        session.close()
        for source in sources.created:
            source.images[-1].close.assert_called_once()

    def test_frames_in_device_order(self, sources):
        session = _session(sources, camera_count=3)
        frames = session.capture_frames()
        assert [frame.device_index for frame in frames] == [0, 1, 2]

    def test_empty_frame_names_device(self, sources):
        def factory(index):
            return sources(index, empty_after=0 if index == 1 else None)

        session = CameraSession(3, 4, source_factory=factory, sender=MagicMock())
        with pytest.raises(CaptureError) as exc_info:
            session.capture_frames()
        assert exc_info.value.device_index == 1
        assert "camera 1" in str(exc_info.value)

    def test_memory_stays_bounded(self):
        session = CameraSession(2, 4, source_factory=_open_mock, sender=MagicMock())
        tracemalloc.start()
        try:
            for _ in range(20):
                session.capture_frames()
            baseline, _ = tracemalloc.get_traced_memory()

            for _ in range(200):
                session.capture_frames()
                current, _ = tracemalloc.get_traced_memory()
                assert current <= baseline * 1.05 + 16 * 1024
        finally:
            tracemalloc.stop()
            session.close()


# ============================================================
# Streaming loop
# ============================================================


class TestStream:

    def test_no_destinations(self, sources):
        session = _session(sources)
        with pytest.raises(NoDestinationsError):
            session.stream()
        assert session.state is SessionState.IDLE

    def test_rate_is_capped_at_fps(self, sources, clock):
        drops = []
        session = _session(sources, fps=4, clock=clock, on_drop=drops.append)
        session.add_destination("127.0.0.1:8000", "api/frame")
        _stop_at(session, clock, 3.0)

        session.stream()

        read_times = sources.created[0].read_times
        per_window = [sum(1 for t in read_times if w <= t < w + 1) for w in range(3)]
        assert per_window == [4, 4, 4]
        assert drops == []
        assert session.dropped_frames == 0
        assert session.state is SessionState.STOPPED

    def test_shortfall_reported_once_per_window(self, sources, clock):
        drops = []
        session = _session(sources, fps=4, clock=clock, on_drop=drops.append,
                           source_kwargs={"read_delay": 0.5})
        session.add_destination("127.0.0.1:8000", "api/frame")
        _stop_at(session, clock, 3.5)

        session.stream()

        assert drops == [2, 2]
        assert session.dropped_frames == 4

    def test_drop_logged_as_warning(self, sources, clock, caplog):
        session = _session(sources, fps=4, clock=clock, source_kwargs={"read_delay": 0.5})
        session.add_destination("127.0.0.1:8000", "api/frame")
        _stop_at(session, clock, 2.0)

        with caplog.at_level("WARNING", logger="streamer.session"):
            session.stream()

        assert "dropped 2 frames" in caplog.text

    def test_sends_every_frame_with_increasing_sequence(self, sources, clock):
        sender = MagicMock()
        session = _session(sources, camera_count=2, fps=2, clock=clock, sender=sender)
        destination = session.add_destination("127.0.0.1:8000", "api/frame")
        _stop_at(session, clock, 2.0)

        session.stream()

        assert sender.send.call_count == 4
        sequences = [c.args[2] for c in sender.send.call_args_list]
        assert sequences == [0, 1, 2, 3]
        frames, destinations, _ = sender.send.call_args_list[0].args
        assert [f.device_index for f in frames] == [0, 1]
        assert destinations == (destination,)

    def test_stop_flag_cleared_after_run(self, sources, clock):
        session = _session(sources, fps=4, clock=clock)
        session.add_destination("127.0.0.1:8000", "api/frame")
        _stop_at(session, clock, 1.0)
        session.stream()

        assert not session._stop_event.is_set()

    def test_capture_failure_aborts(self, sources, clock):
        def factory(index):
            return sources(index, clock=clock, empty_after=2 if index == 1 else None)

        session = CameraSession(2, 4, source_factory=factory, sender=MagicMock(),
                                clock=clock, sleep=clock.sleep)
        session.add_destination("127.0.0.1:8000", "api/frame")

        with pytest.raises(CaptureError) as exc_info:
            session.stream()
        assert exc_info.value.device_index == 1
        assert session.state is SessionState.STOPPED

    def test_transport_failure_aborts(self, sources, clock):
        sender = MagicMock()
        sender.send.side_effect = TransportError("bad status", status=500)
        session = _session(sources, clock=clock, sender=sender)
        session.add_destination("127.0.0.1:8000", "api/frame")

        with pytest.raises(TransportError):
            session.stream()
        assert sender.send.call_count == 1
        assert session.state is SessionState.STOPPED


# ============================================================
# Background streaming and locking
# ============================================================


def _wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def _wait_for_state(session, state, timeout=2.0):
    _wait_for(lambda: session.state is state, timeout)


class TestBackground:

    def test_add_destination_waits_for_running_stream(self, sources):
        sender = MagicMock()
        session = _session(sources, fps=20, sender=sender)
        session.add_destination("127.0.0.1:8000", "foo")
        session.start()
        _wait_for_state(session, SessionState.RUNNING)

        adder = threading.Thread(target=session.add_destination, args=("127.0.0.1:8001", "bar"))
        adder.start()
        adder.join(0.2)
        assert adder.is_alive()
        assert len(session.destinations) == 1

        session.stop()
        assert session.join(2.0)
        adder.join(2.0)
        assert not adder.is_alive()
        assert len(session.destinations) == 2
        for c in sender.send.call_args_list:
            assert len(c.args[1]) == 1
        session.close()

    def test_restart_uses_new_destinations(self, sources):
        sender = MagicMock()
        session = _session(sources, fps=20, sender=sender)
        session.add_destination("127.0.0.1:8000", "foo")
        session.start()
        _wait_for_state(session, SessionState.RUNNING)
        session.stop()
        assert session.join(2.0)

        session.add_destination("127.0.0.1:8001", "bar")
        sender.reset_mock()
        session.start()
        _wait_for(lambda: sender.send.called)
        session.close()

        assert session.state is SessionState.CLOSED
        assert sender.send.call_count >= 1
        assert len(sender.send.call_args_list[0].args[1]) == 2

    def test_join_raises_loop_error(self, sources):
        session = _session(sources)
        session.start()
        with pytest.raises(NoDestinationsError):
            session.join(2.0)
        session.close()

    def test_unjoined_error_logged_on_restart(self, sources, caplog):
        session = _session(sources, fps=20)
        session.start()
        _wait_for(lambda: not session._thread.is_alive())
        session.add_destination("127.0.0.1:8000", "foo")

        with caplog.at_level("ERROR", logger="streamer.session"):
            session.start()
        assert "insufficient amount of streaming destinations" in caplog.text

        session.close()
        assert session.join(2.0)

    def test_close_waits_for_stream(self, sources):
        session = _session(sources, camera_count=2, fps=20)
        session.add_destination("127.0.0.1:8000", "foo")
        session.start()
        _wait_for_state(session, SessionState.RUNNING)

        session.close()

        assert not session._thread.is_alive()
        assert [s.release_count for s in sources.created] == [1, 1]
        assert session.buffer.live_count() == 0


def test_from_config_registers_destinations():
    from streamer.config import StreamerConfig

    config = StreamerConfig(fps=2, camera_count=2, mock=True, video_size="8x6",
                            destinations=["127.0.0.1:8000", "https://collector.local"])
    session = CameraSession.from_config(config)
    try:
        assert [d.url for d in session.destinations] == [
            "http://127.0.0.1:8000/api/frame",
            "https://collector.local/api/frame",
        ]
        frames = session.capture_frames()
        assert [f.image.size for f in frames] == [(8, 6), (8, 6)]
    finally:
        session.close()


@patch("streamer.session.open_source", side_effect=ConstructionError("failed to open camera 0"))
@patch("streamer.session.FrameSender")
def test_from_config_closes_sender_on_failure(mock_sender_cls, _open_source):
    from streamer.config import StreamerConfig

    with pytest.raises(ConstructionError):
        CameraSession.from_config(StreamerConfig())
    mock_sender_cls.return_value.close.assert_called_once()
