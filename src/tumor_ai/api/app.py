from __future__ import annotations

import threading
import time
from collections.abc import AsyncIterator, Callable
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Annotated, Final

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, new_error, status_for
from ..inference.engine import InferenceEngine
from ..inference.postprocess import format_result
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..pipeline import Classifier
from ..preprocess import decode_image
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ActiveModelResponse, ClassifyResponse

_SUPPORTED_TYPES: Final[frozenset[str]] = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/bmp"}
)


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    # A missing model leaves the service up but not ready
    engine.try_load()
    return engine


def _start_reloader(
    engine: InferenceEngine, interval: float
) -> tuple[threading.Event, threading.Thread]:
    stop_evt = threading.Event()

    def _loop() -> None:
        while not stop_evt.is_set():
            engine.reload_if_changed()
            stop_evt.wait(interval)

    thread = threading.Thread(target=_loop, name="model-reloader", daemon=True)
    thread.start()
    return stop_evt, thread


def _make_lifespan(
    engine: InferenceEngine, reload_interval_seconds: float | None
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        reloader: tuple[threading.Event, threading.Thread] | None = None
        if reload_interval_seconds is not None and float(reload_interval_seconds) > 0.0:
            reloader = _start_reloader(engine, float(reload_interval_seconds))
        try:
            yield
        finally:
            if reloader is not None:
                stop_evt, thread = reloader
                stop_evt.set()
                thread.join(timeout=1.0)
            engine.close()

    return _lifespan


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "model_loaded": False,
            "model_path": engine.model_path.as_posix(),
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        return {
            "model_loaded": engine.ready,
            "model_id": engine.model_id if engine.ready else None,
            "backend": engine.backend_name,
            "labels": list(engine.labels),
            "input_size": engine.input_size,
        }

    app.add_api_route(
        "/v1/models/active", _model_active, methods=["GET"], response_model=ActiveModelResponse
    )


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise AppError(
                ErrorCode.malformed_multipart,
                status_for(ErrorCode.malformed_multipart),
                "Unexpected form field",
            )
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise AppError(
            ErrorCode.malformed_multipart,
            status_for(ErrorCode.malformed_multipart),
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in _SUPPORTED_TYPES:
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Only PNG, JPEG, WebP and BMP are supported",
        )


def _raise_if_too_large(n_bytes: int, limits: Limits) -> None:
    if n_bytes > limits.max_bytes:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "File exceeds size limit"
        )


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise AppError(
            ErrorCode.bad_dimensions,
            status_for(ErrorCode.bad_dimensions),
            "Image dimensions too large",
        )


def _register_classify(
    app: FastAPI,
    dep_api_key: DependsParamType,
    classifier: Classifier,
    settings: Settings,
    limits: Limits,
) -> None:
    async def _classify(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None:
            _raise_if_too_large(content_length, limits)

        raw = await file.read()
        _raise_if_too_large(len(raw), limits)
        img = decode_image(raw)
        _validate_image_dimensions(img, limits)

        engine = classifier.engine
        if not engine.ready:
            raise AppError(
                ErrorCode.engine_unavailable,
                status_for(ErrorCode.engine_unavailable),
                "Model not loaded",
            )

        t0 = time.perf_counter()
        tensor = classifier.prepare(img)
        fut = engine.submit(tensor)
        try:
            scores = fut.result(timeout=float(settings.classifier.predict_timeout_seconds))
        except FutureTimeout:
            fut.cancel()
            raise AppError(
                ErrorCode.timeout, status_for(ErrorCode.timeout), "Prediction timed out"
            ) from None
        out = classifier.finish(scores, t0)

        return {
            "label": out.label,
            "confidence": float(out.confidence),
            "scores": [float(s) for s in out.scores],
            "labels": list(out.labels),
            "model_id": out.model_id,
            "display": format_result(out.result),
            "latency_ms": int((time.perf_counter() - t0) * 1000.0),
        }

    for path in ("/v1/classify", "/v1/predict"):
        app.add_api_route(
            path,
            _classify,
            methods=["POST"],
            response_model=ClassifyResponse,
            dependencies=[dep_api_key],
        )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
    *,
    reload_interval_seconds: float | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).
    - `reload_interval_seconds`: When > 0, a background thread polls the model file
      and reloads it when it changes.
    """
    s = settings or Settings.load()
    init_logging()
    engine: InferenceEngine = (
        engine_provider() if engine_provider is not None else _create_engine(s)
    )
    classifier = Classifier(engine)
    limits = Limits.from_settings(s)

    app = FastAPI(
        title="tumor-ai",
        version=get_version().version,
        lifespan=_make_lifespan(engine, reload_interval_seconds),
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)
    app.state.engine = engine
    app.state.settings = s

    _register_basic(app, engine)
    _register_models(app, engine)
    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_classify(app, api_dep, classifier, s, limits)
    return app
