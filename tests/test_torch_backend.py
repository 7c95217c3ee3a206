"""TorchScript backend; skipped when torch is not installed."""

import numpy as np
import pytest

torch = pytest.importorskip("torch")

from qbresidual import ResidualFilter  # noqa: E402
from qbresidual.errors import InferenceError, ModelLoadError, ShapeNegotiationError  # noqa: E402
from qbresidual.models import DataType, TensorDescriptor, resolve  # noqa: E402
from qbresidual.models.native import ConvLayer, NativeBackend, conv2d_same  # noqa: E402
from qbresidual.models.torch_backend import TorchBackend, export_torchscript  # noqa: E402

from conftest import constant_layer  # noqa: E402


def _layers():
    rng = np.random.default_rng(5)
    return [
        ConvLayer(rng.normal(0, 0.2, (3, 3, 3, 4)).astype(np.float32),
                  rng.normal(0, 0.1, 4).astype(np.float32), "relu"),
        ConvLayer(rng.normal(0, 0.2, (1, 1, 4, 3)).astype(np.float32),
                  np.zeros(3, dtype=np.float32), "tanh"),
    ]


@pytest.fixture
def torchscript_model(tmp_path):
    def _write(layers):
        path = tmp_path / "model.pt"
        export_torchscript(layers, str(path), height=8, width=8)
        return str(path)
    return _write


class TestTorchBackend:
    def test_resolves_by_name(self):
        assert isinstance(resolve("torch", device="cpu"), TorchBackend)

    def test_matches_native_backend(self, torchscript_model):
        layers = _layers()
        backend = TorchBackend(device="cpu")
        handle = backend.load_model(torchscript_model(layers))
        backend.set_input_output(handle, TensorDescriptor(DataType.FLOAT, 10, 6, 3), "x", ["y"])

        x = np.random.default_rng(2).random((6, 10, 3), dtype=np.float32)
        expected = x
        for layer in layers:
            expected = conv2d_same(expected, layer)

        out = backend.infer(handle, x)
        assert out.shape == (6, 10, 3)
        np.testing.assert_allclose(out, expected, atol=1e-4)
        backend.free_model(handle)
        assert handle.released

    def test_missing_file(self, tmp_path):
        with pytest.raises(ModelLoadError):
            TorchBackend(device="cpu").load_model(str(tmp_path / "none.pt"))

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "bad.pt"
        path.write_bytes(b"\x00" * 64)
        with pytest.raises(ModelLoadError):
            TorchBackend(device="cpu").load_model(str(path))

    def test_rejects_other_channel_counts(self, torchscript_model):
        backend = TorchBackend(device="cpu")
        handle = backend.load_model(torchscript_model([constant_layer(0.0)]))
        with pytest.raises(ShapeNegotiationError):
            backend.set_input_output(handle, TensorDescriptor(DataType.FLOAT, 4, 4, 1), "x", ["y"])

    def test_runtime_failure_is_inference_error(self, torchscript_model):
        backend = TorchBackend(device="cpu")
        handle = backend.load_model(torchscript_model([constant_layer(0.0)]))
        backend.set_input_output(handle, TensorDescriptor(DataType.FLOAT, 4, 4, 3), "x", ["y"])
        with pytest.raises(InferenceError):
            backend.infer(handle, np.zeros((4, 4, 2), dtype=np.float32))

    def test_filter_with_torch_backend(self, torchscript_model, frame_factory):
        path = torchscript_model([constant_layer(4.0 / 255.0)])
        with ResidualFilter(backend="torch", model=path, device="cpu") as residual:
            out = residual.filter_frame(frame_factory(value=50))
        assert (out.planes[0] == 54).all()

    def test_native_and_torch_agree_in_filter(self, torchscript_model, native_model, frame_factory):
        layers = _layers()
        outputs = []
        for backend, path in (("native", native_model(layers)), ("torch", torchscript_model(layers))):
            frame = frame_factory(pix_fmt="yuv444p", width=8, height=8, value=120)
            with ResidualFilter(backend=backend, model=path, device="cpu") as residual:
                outputs.append(residual.filter_frame(frame))
        for a, b in zip(outputs[0].planes, outputs[1].planes):
            assert np.abs(a.astype(int) - b.astype(int)).max() <= 1

    def test_native_backend_unaffected(self):
        assert isinstance(resolve("native"), NativeBackend)
