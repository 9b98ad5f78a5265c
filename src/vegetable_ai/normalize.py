from __future__ import annotations

from PIL import Image, ImageOps

from .errors import ErrorCode, app_error


def normalize_image(img: Image.Image) -> Image.Image:
    """Re-render a decoded upload onto a fresh RGB canvas.

    The embedded EXIF orientation is applied first, matching the dimensions a
    browser reports for the same file. The canvas has exactly those
    dimensions; nothing is resized or cropped. Fully transparent pixels come
    out black and the alpha channel is dropped, which is what reading pixels
    back off a transparent 2D canvas yields.
    """
    try:
        oriented = ImageOps.exif_transpose(img)
        if oriented is None:
            raise app_error(ErrorCode.invalid_image, "EXIF transpose failed")
        rgb, mask = _split_alpha(oriented)
        canvas = Image.new("RGB", oriented.size, (0, 0, 0))
        canvas.paste(rgb, (0, 0), mask)
        return canvas
    except (OSError, ValueError, SyntaxError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc)) from None


def _split_alpha(img: Image.Image) -> tuple[Image.Image, Image.Image | None]:
    if img.mode in ("P", "1", "L", "RGB") and "transparency" in img.info:
        # Palette entries or a tRNS colour key mark transparent pixels
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA", "PA"):
        rgba = img.convert("RGBA")
        # Any non-zero alpha keeps the colour channels as they are
        visible = rgba.getchannel("A").point(lambda a: 255 if a > 0 else 0, mode="1")
        return rgba.convert("RGB"), visible
    if img.mode in ("I;16", "I;16B", "I;16L"):
        # 16-bit greyscale PNGs: scale down to 8 bits before widening to RGB
        img = img.convert("I").point(lambda p: p * (1 / 257)).convert("L")
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img, None
