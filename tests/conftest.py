import numpy as np
import pytest

from qbresidual import models
from qbresidual.errors import ModelLoadError, ShapeNegotiationError
from qbresidual.frame import Frame
from qbresidual.models.base_backend import BaseBackend, ModelHandle
from qbresidual.models.native import ConvLayer, save_native_model


class MockBackend(BaseBackend):
    """Backend returning a constant residual; can fail on chosen calls."""

    name = "mock"

    def __init__(self, residual=0.0, fail_on=(), reject_shape=False):
        self.residual = residual
        self.fail_on = set(fail_on)
        self.reject_shape = reject_shape
        self.loaded = []
        self.freed = []
        self.negotiations = 0
        self.infer_calls = 0

    def load_model(self, path):
        if path == "missing":
            raise ModelLoadError("no such model")
        handle = ModelHandle(backend=self.name, path=path, model=object())
        self.loaded.append(handle)
        return handle

    def check_input_output(self, handle, input, input_name, output_names):
        self.negotiations += 1
        if self.reject_shape:
            raise ShapeNegotiationError(f"cannot run {input.width}x{input.height}")

    def preprocess(self, handle, samples):
        return samples

    def run(self, handle, tensor):
        self.infer_calls += 1
        if self.infer_calls in self.fail_on:
            raise RuntimeError("backend exploded")
        return np.full(tensor.shape, self.residual, dtype=np.float32)

    def postprocess(self, handle, output):
        return output

    def release(self, handle):
        self.freed.append(handle)


@pytest.fixture
def register_mock(monkeypatch):
    """Register a MockBackend under the name "mock" and return it."""

    def _register(**kwargs):
        backend = MockBackend(**kwargs)
        monkeypatch.setitem(models._REGISTRY, "mock", (lambda **options: backend, None))
        return backend

    return _register


def constant_layer(value, cin=3, cout=3, size=1, activation="none"):
    return ConvLayer(
        kernel=np.zeros((size, size, cin, cout), dtype=np.float32),
        bias=np.full(cout, value, dtype=np.float32),
        activation=activation,
    )


@pytest.fixture
def native_model(tmp_path):
    """Write a native model and return its path; default is a zero residual."""

    def _write(layers=None, name="model.npz"):
        path = tmp_path / name
        save_native_model(path, layers if layers is not None else [constant_layer(0.0)])
        return str(path)

    return _write


def make_frame(pix_fmt="yuv420p", width=4, height=4, value=100, pos=0, exclusive=True):
    frame = Frame.alloc(pix_fmt, width, height, pts=pos * 40, pkt_pos=pos,
                        duration=40, time_base=(1, 1000))
    for plane in frame.planes:
        plane[...] = value
    frame.exclusive = exclusive
    return frame


@pytest.fixture
def frame_factory():
    return make_frame
