from __future__ import annotations

import io
import time
from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..logging import get_logger, init_logging, log_event, request_id_var
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..session import SketchSession, StatusReport
from ..version import get_version
from .schemas import (
    EpochOut,
    LabelIn,
    LabelsResponse,
    PredictResponse,
    StatusResponse,
    TrainResponse,
)

ImageFile.LOAD_TRUNCATED_IMAGES = False


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error error=%s", exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _raise_for_report(report: StatusReport) -> None:
    if not report.ok and report.code is not None:
        raise app_error(report.code, report.message)


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "File exceeds size limit")


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


def _open_image_bytes(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
        return img
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except OSError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg"):
        raise app_error(ErrorCode.unsupported_media_type, "Only PNG and JPEG are supported")


async def _read_upload(
    request: Request, file: UploadFile, limits: Limits, content_length: int | None
) -> Image.Image:
    form = await request.form()
    _strict_validate_multipart(form)
    _ensure_supported_content_type((file.content_type or "").lower())
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")
    raw = await file.read()
    _raise_if_too_large(raw, limits)
    img = _open_image_bytes(raw)
    _validate_image_dimensions(img, limits)
    return img


def _labels_body(session: SketchSession) -> LabelsResponse:
    return LabelsResponse(
        labels=list(session.labels),
        current=session.current_label,
        counts=session.label_counts(),
        status=session.status,
    )


def _status_body(report: StatusReport) -> StatusResponse:
    return StatusResponse(
        ok=report.ok,
        status=report.message,
        code=report.code.value if report.code is not None else None,
    )


def _register_basic(app: FastAPI, session: SketchSession) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        live = session.slot.get()
        if live is None:
            return {"status": "not_ready", "training": session.training}
        return {
            "status": "ready",
            "model_id": live.model_id,
            "labels": list(live.labels),
            "stale": live.labels != session.labels,
            "training": session.training,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {
            "service": v.service,
            "version": v.version,
            "arch": v.arch,
            "preprocess": v.preprocess,
            "commit": v.commit,
        }

    async def _status() -> dict[str, object]:
        return {"status": session.status, "training": session.training}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/v1/status", _status, methods=["GET"])


def _register_labels(app: FastAPI, session: SketchSession, dep: DependsParamType) -> None:
    async def _list() -> LabelsResponse:
        return _labels_body(session)

    def _add(body: LabelIn) -> LabelsResponse:
        _raise_for_report(session.add_label(body.label))
        return _labels_body(session)

    def _remove(label: str) -> LabelsResponse:
        _raise_for_report(session.remove_label(label))
        return _labels_body(session)

    def _select(body: LabelIn) -> LabelsResponse:
        _raise_for_report(session.select_label(body.label))
        return _labels_body(session)

    app.add_api_route("/v1/labels", _list, methods=["GET"], response_model=LabelsResponse)
    app.add_api_route(
        "/v1/labels", _add, methods=["POST"], response_model=LabelsResponse, dependencies=[dep]
    )
    app.add_api_route(
        "/v1/labels/current",
        _select,
        methods=["PUT"],
        response_model=LabelsResponse,
        dependencies=[dep],
    )
    app.add_api_route(
        "/v1/labels/{label}",
        _remove,
        methods=["DELETE"],
        response_model=LabelsResponse,
        dependencies=[dep],
    )


def _register_examples(
    app: FastAPI, session: SketchSession, dep: DependsParamType, limits: Limits
) -> None:
    async def _add_example(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        label: str | None = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> LabelsResponse:
        img = await _read_upload(request, file, limits, content_length)
        _raise_for_report(await run_in_threadpool(session.add_example, img, label))
        return _labels_body(session)

    def _reset() -> LabelsResponse:
        session.reset_examples()
        return _labels_body(session)

    app.add_api_route(
        "/v1/examples",
        _add_example,
        methods=["POST"],
        response_model=LabelsResponse,
        dependencies=[dep],
    )
    app.add_api_route(
        "/v1/examples",
        _reset,
        methods=["DELETE"],
        response_model=LabelsResponse,
        dependencies=[dep],
    )


def _register_model(app: FastAPI, session: SketchSession, dep: DependsParamType) -> None:
    # Sync handler: FastAPI runs it in its worker threadpool while training blocks.
    def _train() -> TrainResponse:
        report = session.train()
        _raise_for_report(report)
        result = report.train_result
        if result is None:
            raise app_error(ErrorCode.training_failed)
        return TrainResponse(
            model_id=result.model_id,
            epochs=[
                EpochOut(
                    epoch=p.epoch,
                    total_epochs=p.total_epochs,
                    loss=p.loss,
                    accuracy=p.accuracy,
                )
                for p in result.history
            ],
            n_examples=result.n_examples,
            train_accuracy=result.train_accuracy,
            status=report.message,
        )

    def _save() -> StatusResponse:
        report = session.save()
        _raise_for_report(report)
        return _status_body(report)

    def _load() -> StatusResponse:
        return _status_body(session.load())

    app.add_api_route(
        "/v1/train", _train, methods=["POST"], response_model=TrainResponse, dependencies=[dep]
    )
    app.add_api_route(
        "/v1/model/save",
        _save,
        methods=["POST"],
        response_model=StatusResponse,
        dependencies=[dep],
    )
    app.add_api_route(
        "/v1/model/load",
        _load,
        methods=["POST"],
        response_model=StatusResponse,
        dependencies=[dep],
    )


def _register_predict(
    app: FastAPI,
    session: SketchSession,
    dep: DependsParamType,
    limits: Limits,
    timeout_s: float,
) -> None:
    async def _predict(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> PredictResponse:
        img = await _read_upload(request, file, limits, content_length)
        t0 = time.perf_counter()
        report = await run_in_threadpool(session.predict, img, timeout=timeout_s)
        _raise_for_report(report)
        pred = report.prediction
        if pred is None:
            raise app_error(ErrorCode.internal_error)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        log_event(
            "predict_finished",
            fields={
                "latency_ms": dt_ms,
                "label": pred.label,
                "confidence": pred.confidence,
                "model_id": pred.model_id,
                "stale": pred.stale,
            },
        )
        return PredictResponse(
            label=pred.label,
            confidence=pred.confidence,
            probs=dict(zip(pred.labels, pred.probs, strict=True)),
            stale=pred.stale,
            model_id=pred.model_id,
            latency_ms=dt_ms,
            status=report.message,
        )

    app.add_api_route(
        "/v1/predict",
        _predict,
        methods=["POST"],
        response_model=PredictResponse,
        dependencies=[dep],
    )


def create_app(
    settings: Settings | None = None,
    session: SketchSession | None = None,
    *,
    load_saved: bool = True,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `session`: Optional pre-built session (primarily for tests).
    - `load_saved`: Restore a previously saved model at startup, like a fresh page load.
    """
    s = settings or Settings.load()
    init_logging()
    app = FastAPI(title="sketch-learner", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    sess = session if session is not None else SketchSession(s)
    if load_saved:
        sess.load()
    limits = Limits.from_settings(s)
    key_dep: Callable[[str | None], None] = api_key_dependency(s)
    dep: DependsParamType = Depends(key_dep)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)
    app.state.session = sess

    _register_basic(app, sess)
    _register_labels(app, sess, dep)
    _register_examples(app, sess, dep, limits)
    _register_model(app, sess, dep)
    _register_predict(app, sess, dep, limits, float(s.sketch.predict_timeout_seconds))
    return app
