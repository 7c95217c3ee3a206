import cv2
import numpy as np
import pytest

from qbresidual import main as cli
from qbresidual import video_source as video_source_module
from qbresidual.errors import UnsupportedFormatError
from qbresidual.timer import FPSTimer
from qbresidual.video_source import VideoSource

from conftest import constant_layer


@pytest.fixture
def video(tmp_path):
    path = str(tmp_path / "clip.avi")
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (16, 8))
    if not writer.isOpened():
        pytest.skip("OpenCV build cannot write MJPG")
    for i in range(5):
        writer.write(np.full((8, 16, 3), 40 * i, dtype=np.uint8))
    writer.release()
    return path


class OddSizedCapture:
    """Stands in for cv2.VideoCapture; yields 7x5 frames yuv420p cannot hold."""

    def __init__(self, path):
        self.reads = 0

    def isOpened(self):
        return True

    def set(self, prop, value):
        return True

    def get(self, prop):
        return 0.0

    def read(self):
        self.reads += 1
        if self.reads > 3:
            return False, None
        return True, np.zeros((5, 7, 3), dtype=np.uint8)

    def release(self):
        pass


@pytest.fixture
def odd_capture(monkeypatch):
    monkeypatch.setattr(video_source_module.cv2, "VideoCapture", OddSizedCapture)


class TestVideoSource:
    @pytest.mark.parametrize("prefetch", [0, 2])
    def test_reads_planar_frames_in_order(self, video, prefetch):
        source = VideoSource(video, pix_fmt="yuv420p", prefetch=prefetch)
        frames = []
        while True:
            ret, frame = source.read()
            if not ret:
                break
            frames.append(frame)
        source.release()

        assert [f.pkt_pos for f in frames] == [0, 1, 2, 3, 4]
        assert all(f.is_writable() for f in frames)
        assert [p.shape for p in frames[0].planes] == [(8, 16), (4, 8), (4, 8)]

    @pytest.mark.parametrize("prefetch", [0, 4])
    def test_conversion_error_reaches_reader(self, odd_capture, prefetch):
        source = VideoSource("odd.mp4", pix_fmt="yuv420p", prefetch=prefetch)
        try:
            with pytest.raises(UnsupportedFormatError):
                source.read()
            if prefetch:
                assert source.read() == (False, None)
        finally:
            source.release()


class TestCli:
    def test_runs_native_filter(self, video, native_model, capsys):
        model = native_model([constant_layer(0.0)])
        status = cli.main(["--video", video, "--model", model, "--no-display",
                           "--prefetch", "2", "--timing-interval", "2"])
        assert status == 0
        lines = [ln for ln in capsys.readouterr().out.splitlines() if ln.startswith("[timing]")]
        assert len(lines) == 3
        assert "frames=5" in lines[-1]
        assert "infer_errors=0" in lines[-1]

    def test_writes_output(self, video, native_model, tmp_path):
        out_path = tmp_path / "out.avi"
        status = cli.main(["--video", video, "--model", native_model(), "--no-display",
                           "--mode", "random", "--output", str(out_path), "--max-frames", "3"])
        assert status == 0
        assert out_path.exists()

    def test_missing_model_exits_nonzero(self, video, capsys):
        assert cli.main(["--video", video, "--no-display"]) == 1
        assert "model file" in capsys.readouterr().err

    def test_conversion_error_exits_nonzero(self, odd_capture, native_model, capsys):
        status = cli.main(["--video", "odd.mp4", "--model", native_model(), "--no-display"])
        assert status == 1
        assert "even dimensions" in capsys.readouterr().err

    @pytest.mark.parametrize("interval", ["0", "-3"])
    def test_timing_interval_must_be_positive(self, interval):
        with pytest.raises(SystemExit):
            cli.parse_args(["--timing-interval", interval])

    def test_missing_video_exits_nonzero(self, native_model, tmp_path, capsys):
        status = cli.main(["--video", str(tmp_path / "nope.mp4"), "--model", native_model(),
                           "--no-display"])
        assert status == 1
        assert "Cannot open video" in capsys.readouterr().err


class TestFPSTimer:
    def test_counts_frames(self):
        timer = FPSTimer(window=0.0)
        for _ in range(3):
            fps = timer.update()
        assert timer.total == 3
        assert fps > 0
