import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional

from qbresidual.errors import InferenceError, QBResidualError, ShapeNegotiationError


class DataType(enum.Enum):
    FLOAT = "float"
    UINT8 = "uint8"


@dataclass(frozen=True)
class TensorDescriptor:
    dtype: DataType
    width: int
    height: int
    channels: int


@dataclass
class ModelHandle:
    """Backend-owned state for one loaded network.

    Only the backend that created it looks inside ``model``.
    """

    backend: str
    path: str
    model: Any
    input: Optional[TensorDescriptor] = None
    input_name: Optional[str] = None
    output_names: List[str] = field(default_factory=list)
    released: bool = False

    @property
    def negotiated(self):
        return self.input is not None


class BaseBackend:
    """
    Abstract inference backend.
    Native, ONNX and TorchScript backends all implement this.
    """

    name = "base"

    def load_model(self, path):
        """
        Load a model description file and return a ModelHandle.
        Raises ModelLoadError.
        """
        raise NotImplementedError

    def set_input_output(self, handle, input, input_name, output_names):
        """
        Fix the input tensor description and the outputs to fetch.
        Must be called exactly once before infer().
        """
        if handle.negotiated:
            raise ShapeNegotiationError("input/output already set for this model")
        output_names = list(output_names)
        if not output_names:
            raise ShapeNegotiationError("at least one output name is required")
        self.check_input_output(handle, input, input_name, output_names)
        handle.input = input
        handle.input_name = input_name
        handle.output_names = output_names

    def check_input_output(self, handle, input, input_name, output_names):
        """
        Backend-specific validation, raising ShapeNegotiationError.
        """
        raise NotImplementedError

    def preprocess(self, handle, samples):
        """
        Convert (H, W, C) float32 samples into the backend's input tensor.
        """
        raise NotImplementedError

    def run(self, handle, tensor):
        """
        Execute the network.
        """
        raise NotImplementedError

    def postprocess(self, handle, output):
        """
        Convert the backend output back to (H, W, C) float32 samples.
        """
        raise NotImplementedError

    def infer(self, handle, samples):
        """
        Full pipeline: samples → tensor → inference → samples
        """
        if handle is None or handle.released:
            raise InferenceError("model has been released")
        if not handle.negotiated:
            raise InferenceError("infer() called before set_input_output()")
        try:
            tensor = self.preprocess(handle, samples)
            output = self.run(handle, tensor)
            return self.postprocess(handle, output)
        except QBResidualError:
            raise
        except Exception as exc:
            raise InferenceError(f"{self.name} inference failed: {exc}") from exc

    def free_model(self, handle):
        """
        Release a handle. No-op for None or an already released handle.
        """
        if handle is None or handle.released:
            return
        self.release(handle)
        handle.model = None
        handle.released = True

    def release(self, handle):
        pass
