from __future__ import annotations

import importlib
import pickle
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import numpy as np
import torch
from torch import Tensor

from ..errors import EngineUnavailable
from ..logging import get_logger

_TFLITE_SUFFIXES: Final[frozenset[str]] = frozenset({".tflite"})
_TORCHSCRIPT_SUFFIXES: Final[frozenset[str]] = frozenset({".pt", ".ts", ".torchscript"})
# FlatBuffer file identifier of TensorFlow Lite models lives at bytes 4..8
_TFLITE_IDENT: Final[bytes] = b"TFL3"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class ModelBackend(Protocol):
    name: str
    thread_safe: bool

    @property
    def input_shape(self) -> tuple[int, ...] | None: ...

    def run(self, x: Tensor) -> Tensor: ...

    def close(self) -> None: ...


class TfliteInterpreter(Protocol):
    def allocate_tensors(self) -> None: ...
    def get_input_details(self) -> list[dict[str, object]]: ...
    def get_output_details(self) -> list[dict[str, object]]: ...
    def set_tensor(self, tensor_index: int, value: object) -> None: ...
    def invoke(self) -> None: ...
    def get_tensor(self, tensor_index: int) -> object: ...


class TfliteBackend:
    """TensorFlow Lite interpreter over a read-only model file.

    The interpreter is built from ``model_path`` so TFLite memory-maps the
    flatbuffer itself; dropping the interpreter in :meth:`close` releases the
    mapping.
    """

    name = "tflite"
    thread_safe = False

    def __init__(self, interpreter: TfliteInterpreter) -> None:
        self._interpreter: TfliteInterpreter | None = interpreter
        interpreter.allocate_tensors()
        inp = interpreter.get_input_details()[0]
        out = interpreter.get_output_details()[0]
        self._in_index = int(str(inp["index"]))
        self._out_index = int(str(out["index"]))
        self._in_shape = _shape_of(inp.get("shape"))

    @classmethod
    def from_path(cls, path: Path, num_threads: int | None = None) -> TfliteBackend:
        _check_tflite_header(path)
        interpreter_cls = _tflite_interpreter_class()
        return cls(interpreter_cls(model_path=path.as_posix(), num_threads=num_threads))

    @property
    def input_shape(self) -> tuple[int, ...] | None:
        return self._in_shape

    def run(self, x: Tensor) -> Tensor:
        interp = self._interpreter
        if interp is None:
            raise EngineUnavailable("Model was closed")
        arr = np.ascontiguousarray(x.detach().cpu().numpy(), dtype=np.float32)
        interp.set_tensor(self._in_index, arr)
        interp.invoke()
        out = np.asarray(interp.get_tensor(self._out_index), dtype=np.float32)
        # get_tensor returns a copy, but keep ownership explicit
        return torch.from_numpy(out.copy())

    def close(self) -> None:
        self._interpreter = None


class TorchModule(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...


class TorchScriptBackend:
    """TorchScript module taking the same NHWC float input as the TFLite model."""

    name = "torchscript"
    thread_safe = True

    def __init__(self, module: TorchModule) -> None:
        self._module: TorchModule | None = module
        module.eval()

    @classmethod
    def from_path(cls, path: Path) -> TorchScriptBackend:
        return cls(_jit_load(path))

    @property
    def input_shape(self) -> tuple[int, ...] | None:
        return None

    def run(self, x: Tensor) -> Tensor:
        module = self._module
        if module is None:
            raise EngineUnavailable("Model was closed")
        with torch.no_grad():
            out = module(x)
        if not isinstance(out, Tensor):
            raise RuntimeError("TorchScript model did not return a tensor")
        return out.detach().to(dtype=torch.float32).cpu()

    def close(self) -> None:
        self._module = None


def open_backend(path: Path, num_threads: int | None = None) -> ModelBackend:
    """Open ``path`` with the backend matching its suffix.

    Every failure is reported as :class:`EngineUnavailable`.
    """
    if not path.is_file():
        raise EngineUnavailable(f"Model file not found: {path.as_posix()}")
    suffix = path.suffix.lower()
    logger = get_logger()
    try:
        if suffix in _TFLITE_SUFFIXES:
            return TfliteBackend.from_path(path, num_threads=num_threads)
        if suffix in _TORCHSCRIPT_SUFFIXES:
            return TorchScriptBackend.from_path(path)
    except _LOAD_ERRORS as exc:
        logger.info("model_load_failed path=%s error=%s", path.as_posix(), type(exc).__name__)
        raise EngineUnavailable(f"Failed to load model: {exc}") from exc
    raise EngineUnavailable(f"Unsupported model format: {suffix or '<none>'}")


def _check_tflite_header(path: Path) -> None:
    with path.open("rb") as f:
        head = f.read(8)
    if len(head) < 8 or head[4:8] != _TFLITE_IDENT:
        raise EngineUnavailable("Model file is not a TensorFlow Lite flatbuffer")


def _shape_of(raw: object) -> tuple[int, ...] | None:
    if raw is None:
        return None
    return tuple(int(v) for v in np.asarray(raw).reshape(-1).tolist())


if TYPE_CHECKING:

    def _tflite_interpreter_class() -> type[TfliteInterpreter]: ...

    def _jit_load(path: Path) -> TorchModule: ...
else:

    def _tflite_interpreter_class() -> type[TfliteInterpreter]:
        try:
            tf = importlib.import_module("tensorflow")
        except ImportError as exc:
            raise EngineUnavailable("TensorFlow Lite runtime is not installed") from exc
        cls = getattr(getattr(tf, "lite", None), "Interpreter", None)
        if not callable(cls):
            raise EngineUnavailable("tensorflow.lite.Interpreter is not available")
        return cls

    def _jit_load(path: Path) -> TorchModule:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))
