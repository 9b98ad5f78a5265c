from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..inference.engine import InferenceEngine
from ..inference.slots import RequestSlots
from ..inference.types import PredictionResult
from ..logging import init_logging, log_event
from ..middleware import REQUEST_ID_HEADER, RequestIdMiddleware, api_key_dependency
from ..pipeline import classify_image, decode_image, ensure_supported_media_type, try_classify
from ..presentation import (
    HtmlRenderer,
    Renderer,
    percent,
    render_message,
    render_page,
    render_preview,
)
from ..request_context import current_request_id
from ..version import get_version
from .schemas import ClassProbability, PredictResponse

SESSION_HEADER = "X-Session-ID"


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = current_request_id()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    # Runs outside RequestIdMiddleware, after the contextvar has been reset
    rid = current_request_id() or str(getattr(request.state, "request_id", ""))
    body = new_error(ErrorCode.internal_error, rid)
    return JSONResponse(
        status_code=500, content=body.to_dict(), headers={REQUEST_ID_HEADER: rid}
    )


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    engine.load()
    return engine


def to_response(result: PredictionResult) -> PredictResponse:
    return PredictResponse(
        predicted_class=int(result.predicted_class),
        label=result.label,
        confidence=float(result.confidence),
        probabilities=[float(p) for p in result.probabilities],
        classes=[
            ClassProbability(label=name, probability=float(p), percent=percent(p))
            for name, p in zip(result.labels, result.probabilities, strict=True)
        ],
        model_id=result.model_id,
        latency_ms=int(result.latency_ms),
    )


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


async def _read_upload(
    request: Request, file: UploadFile, limits: Limits, content_length: int | None
) -> bytes:
    form = await request.form()
    _strict_validate_multipart(form)
    # Media type is checked before any bytes are decoded
    ensure_supported_media_type(file.content_type)
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")
    raw = await file.read()
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large)
    return raw


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "state": engine.state.value,
            "reason": engine.failure_reason,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(
    app: FastAPI, engine: InferenceEngine, admin_dep: DependsParamType
) -> None:
    async def _labels() -> dict[str, object]:
        return {"labels": list(engine.labels)}

    async def _model_active() -> dict[str, object]:
        man = engine.manifest
        if man is None or not engine.ready:
            return {"model_loaded": False, "model_id": None, "state": engine.state.value}
        out: dict[str, object] = {"model_loaded": True, "state": engine.state.value}
        out.update(man.to_dict())
        return out

    async def _reload() -> dict[str, object]:
        # Artifact I/O and model construction stay off the event loop
        state = await asyncio.to_thread(engine.load)
        log_event("model_reload_requested", {"state": state.value})
        return {
            "state": state.value,
            "model_id": engine.model_id,
            "reason": engine.failure_reason,
        }

    app.add_api_route("/v1/labels", _labels, methods=["GET"])
    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])
    app.add_api_route(
        "/v1/admin/models/reload", _reload, methods=["POST"], dependencies=[admin_dep]
    )


def _register_predict(
    app: FastAPI,
    engine: InferenceEngine,
    settings: Settings,
    limits: Limits,
    slots: RequestSlots,
) -> None:
    timeout_s = float(settings.classifier.predict_timeout_seconds)

    async def _predict(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
        x_session_id: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> PredictResponse:
        raw = await _read_upload(request, file, limits, content_length)
        img = decode_image(raw, limits)
        result = await classify_image(
            img, engine, timeout_s=timeout_s, slots=slots, session=x_session_id or None
        )
        return to_response(result)

    for path in ("/v1/predict", "/v1/classify"):
        app.add_api_route(path, _predict, methods=["POST"], response_model=PredictResponse)


def _register_page(
    app: FastAPI,
    engine: InferenceEngine,
    settings: Settings,
    limits: Limits,
    renderer: Renderer,
) -> None:
    timeout_s = float(settings.classifier.predict_timeout_seconds)

    async def _index() -> HTMLResponse:
        return HTMLResponse(render_page())

    async def _upload(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> HTMLResponse:
        try:
            raw = await _read_upload(request, file, limits, content_length)
        except AppError as exc:
            page = render_page(render_message(exc.message))
            return HTMLResponse(page, status_code=exc.http_status)
        try:
            img = decode_image(raw, limits)
        except AppError as exc:
            if exc.code is ErrorCode.unsupported_media_type:
                page = render_page(render_message(exc.message))
                return HTMLResponse(page, status_code=exc.http_status)
            # The file passed the type gate but cannot be turned into pixels
            log_event("prediction_failed", {"reason": exc.code.value})
            return HTMLResponse(render_page(renderer.render(None)))
        preview = render_preview(raw, img.format or "")
        result = await try_classify(img, engine, timeout_s=timeout_s)
        return HTMLResponse(render_page(preview + renderer.render(result)))

    app.add_api_route("/", _index, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/", _upload, methods=["POST"], response_class=HTMLResponse)


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
    *,
    renderer: Renderer | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).
    - `renderer`: Presentation used by the HTML page; defaults to `HtmlRenderer`.
    """
    s = settings or Settings.load()
    init_logging()

    engine: InferenceEngine = (
        engine_provider() if engine_provider is not None else _create_engine(s)
    )

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        engine.shutdown()

    app = FastAPI(title="vegetable-ai", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    limits = Limits.from_settings(s)
    slots = RequestSlots()
    admin_dep: DependsParamType = Depends(api_key_dependency(s))

    app.state.engine = engine
    app.state.settings = s
    app.state.slots = slots

    _register_basic(app, engine)
    _register_models(app, engine, admin_dep)
    _register_predict(app, engine, s, limits, slots)
    _register_page(app, engine, s, limits, renderer or HtmlRenderer())
    return app


# Default ASGI app for uvicorn
app = create_app()
