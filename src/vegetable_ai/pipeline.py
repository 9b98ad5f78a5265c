from __future__ import annotations

import asyncio
import io
import time
from concurrent.futures import CancelledError as FutureCancelledError
from typing import Final

from PIL import Image, ImageFile

from .config import Limits
from .errors import AppError, ErrorCode, InferenceError, ModelNotReadyError, app_error
from .inference.engine import InferenceEngine
from .inference.slots import RequestSlots, Ticket
from .inference.types import PredictionResult
from .labels import label_for
from .logging import get_logger, log_event
from .normalize import normalize_image
from .preprocess import run_preprocess

ImageFile.LOAD_TRUNCATED_IMAGES = False

SUPPORTED_MEDIA_TYPES: Final[tuple[str, ...]] = ("image/jpeg", "image/png")


def ensure_supported_media_type(ctype: str | None) -> None:
    if (ctype or "").lower() not in SUPPORTED_MEDIA_TYPES:
        raise app_error(ErrorCode.unsupported_media_type)


def decode_image(raw: bytes, limits: Limits) -> Image.Image:
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large)
    try:
        img = Image.open(io.BytesIO(raw))
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except (OSError, ValueError, SyntaxError):
        # UnidentifiedImageError is an OSError; truncated headers raise plain ones
        raise app_error(ErrorCode.invalid_image) from None
    if img.format not in ("JPEG", "PNG"):
        raise app_error(ErrorCode.unsupported_media_type)
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")
    try:
        img.load()
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except (OSError, ValueError, SyntaxError):
        raise app_error(ErrorCode.invalid_image) from None
    return img


async def classify_image(
    img: Image.Image,
    engine: InferenceEngine,
    *,
    timeout_s: float,
    slots: RequestSlots | None = None,
    session: str | None = None,
) -> PredictionResult:
    """Run one decoded image through normalize, preprocess, model and softmax.

    Raises ``AppError`` for every failure so routes can map it to a response.
    """
    slots = slots if slots is not None else RequestSlots()
    ticket = slots.begin(session)
    try:
        return await _classify(img, engine, timeout_s, slots, ticket)
    finally:
        slots.finish(ticket)


async def try_classify(
    img: Image.Image,
    engine: InferenceEngine,
    *,
    timeout_s: float,
) -> PredictionResult | None:
    """Like ``classify_image`` but converts any failure into ``None`` after logging it."""
    try:
        return await classify_image(img, engine, timeout_s=timeout_s)
    except AppError as exc:
        log_event("prediction_failed", {"reason": exc.code.value})
        return None
    except Exception:
        get_logger().exception("prediction_error")
        log_event("prediction_failed", {"reason": ErrorCode.internal_error.value})
        return None


async def _classify(
    img: Image.Image,
    engine: InferenceEngine,
    timeout_s: float,
    slots: RequestSlots,
    ticket: Ticket,
) -> PredictionResult:
    t0 = time.perf_counter()
    canonical = normalize_image(img)
    pre = run_preprocess(canonical)

    fut = engine.submit_predict(pre.tensor)
    slots.attach(ticket, fut)
    try:
        out = await asyncio.wait_for(asyncio.wrap_future(fut), timeout=timeout_s)
    except TimeoutError:
        fut.cancel()
        raise app_error(ErrorCode.timeout, "Prediction timed out") from None
    except (asyncio.CancelledError, FutureCancelledError):
        if not fut.cancelled() or slots.is_current(ticket):
            raise
        raise app_error(ErrorCode.superseded) from None
    except ModelNotReadyError as exc:
        raise app_error(ErrorCode.service_not_ready, str(exc)) from None
    except InferenceError as exc:
        get_logger().warning("inference_error %s", exc)
        raise app_error(ErrorCode.inference_failed) from None

    if not slots.is_current(ticket):
        raise app_error(ErrorCode.superseded)

    labels = engine.labels
    dt_ms = int((time.perf_counter() - t0) * 1000.0)
    result = PredictionResult(
        probabilities=out.probs,
        predicted_class=out.predicted_class,
        label=label_for(labels, out.predicted_class),
        labels=labels,
        model_id=out.model_id,
        latency_ms=dt_ms,
    )
    log_event(
        "prediction_finished",
        fields={
            "latency_ms": dt_ms,
            "predicted_class": result.predicted_class,
            "label": result.label,
            "confidence": float(result.confidence),
            "model_id": result.model_id,
        },
    )
    return result
