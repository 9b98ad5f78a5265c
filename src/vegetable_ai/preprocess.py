from __future__ import annotations

import math
from typing import Final

import torch
from PIL import Image
from torch import Tensor

from .errors import AppError, ErrorCode, app_error
from .inference.types import PreprocessOutput

INPUT_SIZE: Final[int] = 128
IMAGENET_MEAN: Final[tuple[float, float, float]] = (0.485, 0.456, 0.406)
IMAGENET_STD: Final[tuple[float, float, float]] = (0.229, 0.224, 0.225)
_PREPROCESS_SIGNATURE: Final[str] = "v1/rgb+nearest128+div255+imagenetnorm+nchw"


def run_preprocess(img: Image.Image) -> PreprocessOutput:
    """Turn a canonical RGB image into the model's (1, 3, 128, 128) input tensor.

    Order is fixed: nearest-neighbour resize, float cast, scale to [0, 1],
    subtract mean, divide by std, add batch dim, NHWC -> NCHW. Values are not
    clamped after normalization.
    """
    try:
        hwc = image_to_hwc(img)
        resized = resize_nearest(hwc, INPUT_SIZE, INPUT_SIZE)
        x = resized.to(torch.float32)
        x = x / 255.0
        x = x - torch.tensor(IMAGENET_MEAN, dtype=torch.float32)
        x = x / torch.tensor(IMAGENET_STD, dtype=torch.float32)
        x = x.unsqueeze(0)
        nchw = x.permute(0, 3, 1, 2).contiguous()
        return PreprocessOutput(tensor=nchw)
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc)) from None


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def image_to_hwc(img: Image.Image) -> Tensor:
    if img.mode != "RGB":
        raise app_error(ErrorCode.preprocessing_failed, f"expected RGB image, got {img.mode}")
    width, height = img.size
    if width <= 0 or height <= 0:
        raise app_error(ErrorCode.bad_dimensions, "image has no pixels")
    buf = bytearray(img.tobytes())
    if len(buf) != width * height * 3:
        raise app_error(ErrorCode.preprocessing_failed, "unexpected buffer size")
    return torch.frombuffer(buf, dtype=torch.uint8).reshape(height, width, 3)


def nearest_indices(in_size: int, out_size: int) -> list[int]:
    # Legacy (non half-pixel) convention: floor(dst * in / out)
    scale = in_size / out_size
    return [min(in_size - 1, math.floor(i * scale)) for i in range(out_size)]


def resize_nearest(hwc: Tensor, out_h: int, out_w: int) -> Tensor:
    """Nearest-neighbour resize of an (H, W, C) tensor; identity when sizes match."""
    in_h, in_w = int(hwc.shape[0]), int(hwc.shape[1])
    if (in_h, in_w) == (out_h, out_w):
        return hwc
    rows = torch.tensor(nearest_indices(in_h, out_h), dtype=torch.long)
    cols = torch.tensor(nearest_indices(in_w, out_w), dtype=torch.long)
    return hwc.index_select(0, rows).index_select(1, cols)
