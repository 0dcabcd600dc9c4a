from __future__ import annotations

import os
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import AbstractContextManager, nullcontext
from pathlib import Path
from types import TracebackType
from typing import Final

import torch
from torch import Tensor

from ..config import Settings
from ..errors import EmptyOutput, EngineUnavailable
from ..logging import get_logger, log_event
from ..preprocess import preprocess_signature
from .backends import ModelBackend, open_backend
from .manifest import ModelManifest
from .types import CHANNELS

_MAX_POOL_SIZE: Final[int] = 8

BackendFactory = Callable[[Path, int | None], ModelBackend]


class InferenceEngine:
    """Owns one loaded classifier model and runs forward passes on it.

    Load once with :meth:`load` (or use the engine as a context manager),
    share it across requests, and release it with :meth:`close`.
    """

    def __init__(self, settings: Settings, backend_factory: BackendFactory = open_backend) -> None:
        self._settings = settings
        self._backend_factory = backend_factory
        self._logger = get_logger()
        self._model_lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._backend: ModelBackend | None = None
        self._manifest: ModelManifest | None = None
        self._model_id: str | None = None
        self._labels: tuple[str, ...] = settings.classifier.labels
        self._input_size: int = settings.classifier.input_size
        self._last_model_mtime: float | None = None
        torch.set_num_threads(1)

    def __enter__(self) -> InferenceEngine:
        self.load()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def ready(self) -> bool:
        return self._backend is not None

    @property
    def model_id(self) -> str | None:
        return self._model_id

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def input_size(self) -> int:
        return self._input_size

    @property
    def model_path(self) -> Path:
        return self._settings.classifier.model_path

    @property
    def backend_name(self) -> str | None:
        backend = self._backend
        return backend.name if backend is not None else None

    def load(self) -> None:
        """Load the configured model, replacing any model already loaded.

        Raises EngineUnavailable when the file is missing, unreadable, or does
        not match the configured input layout.
        """
        path = self.model_path
        if not path.is_file():
            raise EngineUnavailable(f"Model file not found: {path.as_posix()}")
        manifest = _read_manifest(path)
        labels = manifest.labels if manifest is not None else self._settings.classifier.labels
        size = manifest.input_size if manifest is not None else self._settings.classifier.input_size
        try:
            mtime: float | None = path.stat().st_mtime
        except OSError:
            # Hot reload is disabled when mtimes cannot be read
            self._logger.info("model_mtime_unavailable")
            mtime = None

        threads = self._settings.app.threads or None
        backend = self._backend_factory(path, threads)
        expected_in = (1, size, size, CHANNELS)
        if backend.input_shape is not None and tuple(backend.input_shape) != expected_in:
            backend.close()
            raise EngineUnavailable(
                f"Model input shape {tuple(backend.input_shape)} does not match {expected_in}"
            )

        with self._model_lock:
            old = self._backend
            self._backend = backend
            self._manifest = manifest
            self._model_id = manifest.model_id if manifest is not None else path.stem
            self._labels = labels
            self._input_size = size
            self._last_model_mtime = mtime
        if old is not None:
            old.close()
        log_event(
            "model_loaded",
            {"model_id": self._model_id, "backend": backend.name, "path": path.as_posix()},
        )

    def try_load(self) -> bool:
        try:
            self.load()
        except EngineUnavailable as exc:
            self._logger.warning("model_unavailable reason=%s", exc.message.replace(" ", "_"))
            return False
        return True

    def close(self) -> None:
        with self._model_lock:
            backend = self._backend
            pool = self._pool
            self._backend = None
            self._pool = None
            self._last_model_mtime = None
        if pool is not None:
            pool.shutdown(wait=True)
        if backend is not None:
            backend.close()

    def run(
        self, input_tensor: Tensor, expected_output_shape: Sequence[int] | None = None
    ) -> list[float]:
        """Run one forward pass and return the flattened output scores.

        ``input_tensor`` is the flat channel-interleaved tensor produced by
        ``preprocess``; it is fed to the model as ``(1, size, size, 3)``.
        """
        with self._model_lock:
            backend = self._backend
            size = self._input_size
            n_labels = len(self._labels)
        if backend is None:
            raise EngineUnavailable("Model not loaded")
        expected = (
            tuple(expected_output_shape) if expected_output_shape is not None else (1, n_labels)
        )
        n = size * size * CHANNELS
        if int(input_tensor.numel()) != n:
            raise ValueError(f"input tensor must have {n} values, got {int(input_tensor.numel())}")
        x = input_tensor.reshape(1, size, size, CHANNELS).to(dtype=torch.float32)

        with self._run_guard(backend):
            out = backend.run(x)
        if tuple(int(d) for d in out.shape) != expected:
            raise EmptyOutput(f"model output shape {tuple(out.shape)} does not match {expected}")
        return [float(v) for v in out.reshape(-1).tolist()]

    def submit(self, input_tensor: Tensor) -> Future[list[float]]:
        with self._model_lock:
            if self._pool is None:
                self._pool = _make_pool(self._settings)
            pool = self._pool
        return pool.submit(self.run, input_tensor)

    def reload_if_changed(self) -> bool:
        """Reload the model if its file changed on disk.

        Returns True if a reload occurred and the engine remains ready.
        """
        last = self._last_model_mtime
        if last is None:
            return False
        try:
            current = self.model_path.stat().st_mtime
        except OSError:
            self._logger.info("model_mtime_unavailable")
            return False
        if current <= last:
            return False
        return self.try_load()

    def _run_guard(self, backend: ModelBackend) -> AbstractContextManager[object]:
        if self._settings.classifier.serialize_requests or not backend.thread_safe:
            return self._run_lock
        return nullcontext()


def _read_manifest(model_path: Path) -> ModelManifest | None:
    path = ModelManifest.sidecar_for(model_path)
    if not path.exists():
        return None
    try:
        manifest = ModelManifest.from_path(path)
    except (OSError, ValueError) as exc:
        raise EngineUnavailable(f"Invalid model manifest: {exc}") from None
    if manifest.preprocess_hash != preprocess_signature():
        raise EngineUnavailable("Model manifest was built for a different preprocessing recipe")
    return manifest


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(_MAX_POOL_SIZE, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="classify")
