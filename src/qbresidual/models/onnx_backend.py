import logging

import numpy as np
import onnxruntime as ort

from qbresidual.errors import ModelLoadError, ShapeNegotiationError
from qbresidual.models.base_backend import BaseBackend, DataType, ModelHandle

logger = logging.getLogger(__name__)

PROVIDER_MODES = {
    "auto": None,
    "cpu": "CPUExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "tensorrt": "TensorrtExecutionProvider",
    "rocm": "ROCMExecutionProvider",
    "dml": "DmlExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
}
# "auto" takes the first installed one
ACCELERATOR_PRIORITY = [
    PROVIDER_MODES[m] for m in ("tensorrt", "cuda", "rocm", "dml", "coreml", "openvino")
]


class OnnxSession:
    """Per-model ONNX Runtime state kept inside a ModelHandle."""

    def __init__(self, session):
        self.session = session
        self.layout = None  # "nchw" | "nhwc"
        self.dtype = np.float32
        self.input_name = None
        self._input = None
        self._input_cast = None


class OnnxBackend(BaseBackend):
    """External tensor-graph backend on ONNX Runtime."""

    name = "onnx"

    def __init__(self, provider="auto", device_id=0):
        self.provider = provider
        self.device_id = device_id

    def load_model(self, path):
        so = ort.SessionOptions()
        so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        so.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL

        providers = self._build_providers(self.provider, self.device_id)
        try:
            session = ort.InferenceSession(path, sess_options=so, providers=providers)
        except Exception as exc:
            raise ModelLoadError(f"onnxruntime could not load {path!r}: {exc}") from exc

        logger.info("ONNX model loaded from %s", path)
        return ModelHandle(backend=self.name, path=path, model=OnnxSession(session))

    def _build_providers(self, provider, device_id):
        """Execution providers for ``provider``, CPU always appended last."""
        mode = provider.lower()
        if mode not in PROVIDER_MODES:
            raise ModelLoadError(f"provider must be one of: {sorted(PROVIDER_MODES)}")

        available = set(ort.get_available_providers())
        if mode == "auto":
            candidates = [ep for ep in ACCELERATOR_PRIORITY if ep in available][:1]
        elif mode == "cpu":
            candidates = []
        else:
            candidates = [PROVIDER_MODES[mode]]
            if candidates[0] not in available:
                raise ModelLoadError(
                    f"{candidates[0]} is not available; installed: {sorted(available)}"
                )

        if "CPUExecutionProvider" in available:
            candidates.append("CPUExecutionProvider")
        if not candidates:
            raise ModelLoadError(f"no usable execution provider; installed: {sorted(available)}")

        resolved = [
            (ep, {"device_id": device_id}) if ep == "DmlExecutionProvider" else ep
            for ep in candidates
        ]
        logger.info("ONNX providers: %s", resolved)
        return resolved

    def _resolve_input(self, session, input_name):
        inputs = session.get_inputs()
        if not inputs:
            raise ShapeNegotiationError("ONNX graph has no inputs")
        for item in inputs:
            if item.name == input_name:
                return item
        logger.info("ONNX graph has no input %r, using %r", input_name, inputs[0].name)
        return inputs[0]

    def check_input_output(self, handle, input, input_name, output_names):
        state = handle.model
        graph_input = self._resolve_input(state.session, input_name)
        shape = graph_input.shape
        if len(shape) != 4:
            raise ShapeNegotiationError(
                f"expected a 4-D image input, {graph_input.name} has shape {shape}"
            )

        if shape[3] == input.channels and shape[1] != input.channels:
            state.layout = "nhwc"
            h, w, channels = shape[1], shape[2], shape[3]
        else:
            state.layout = "nchw"
            channels, h, w = shape[1], shape[2], shape[3]

        for label, static, wanted in (("channels", channels, input.channels),
                                      ("height", h, input.height),
                                      ("width", w, input.width)):
            if isinstance(static, int) and static > 0 and static != wanted:
                raise ShapeNegotiationError(
                    f"model input {graph_input.name} has static {label}={static}, "
                    f"stream needs {wanted}"
                )

        if "float16" in graph_input.type:
            state.dtype = np.float16
        elif "float" in graph_input.type:
            state.dtype = np.float32
        elif "uint8" in graph_input.type and input.dtype is DataType.UINT8:
            state.dtype = np.uint8
        else:
            raise ShapeNegotiationError(
                f"unsupported input type {graph_input.type} for {input.dtype.value} data"
            )

        known = {o.name for o in state.session.get_outputs()}
        missing = [name for name in output_names if name not in known]
        if missing:
            raise ShapeNegotiationError(
                f"model has no output(s) {missing}; available: {sorted(known)}"
            )

        c, hh, ww = input.channels, input.height, input.width
        if state.layout == "nchw":
            state._input = np.empty((1, c, hh, ww), dtype=np.float32)
        else:
            state._input = np.empty((1, hh, ww, c), dtype=np.float32)
        if state.dtype != np.float32:
            state._input_cast = np.empty(state._input.shape, dtype=state.dtype)
        state.input_name = graph_input.name
        logger.info("ONNX input %s negotiated as %s %dx%dx%d (%s)",
                    graph_input.name, state.layout, ww, hh, c, np.dtype(state.dtype).name)

    def preprocess(self, handle, samples):
        state = handle.model
        if state.layout == "nchw":
            state._input[0] = np.transpose(samples, (2, 0, 1))
        else:
            state._input[0] = samples
        if state._input_cast is not None:
            if state.dtype == np.uint8:
                np.clip(np.rint(state._input * 255.0), 0, 255, out=state._input)
            state._input_cast[...] = state._input
            return state._input_cast
        return state._input

    def run(self, handle, tensor):
        state = handle.model
        return state.session.run(handle.output_names, {state.input_name: tensor})

    def postprocess(self, handle, output):
        output = np.asarray(output[0])
        if output.ndim == 4:
            output = output[0]
        if handle.model.layout == "nchw":
            output = np.transpose(output, (1, 2, 0))
        if output.dtype == np.uint8:
            return output.astype(np.float32) / 255.0
        return output.astype(np.float32, copy=False)

    def release(self, handle):
        handle.model.session = None
