from __future__ import annotations

import base64
import html
from typing import Final, Protocol

from .inference.types import PredictionResult

ERROR_MESSAGE: Final[str] = "Error in prediction."


class Renderer(Protocol):
    def render(self, result: PredictionResult | None) -> str: ...


def percent(p: float) -> int:
    # Half-up; round() would send 0.125 -> 12 via banker's rounding
    return int(p * 100 + 0.5)


class HtmlRenderer:
    """Render a prediction as a label heading plus one bar per class."""

    def render(self, result: PredictionResult | None) -> str:
        if result is None:
            return f'<div id="prediction-output"><p class="error">{ERROR_MESSAGE}</p></div>'
        label = html.escape(result.label)
        bars = "\n".join(
            self._bar(name, p, i == result.predicted_class)
            for i, (name, p) in enumerate(zip(result.labels, result.probabilities, strict=True))
        )
        return (
            '<div id="prediction-output">'
            f'<h4>Predicted Class: <span class="predicted">{label}</span></h4>'
            "</div>\n"
            f'<div id="probability-bars">\n{bars}\n</div>'
        )

    def _bar(self, name: str, p: float, is_max: bool) -> str:
        pct = percent(p)
        cls = "bar bar-max" if is_max else "bar"
        return (
            f'<div class="{cls}">'
            f'<div class="bar-label">{html.escape(name.upper())}</div>'
            f'<div class="bar-track"><div class="bar-fill" style="width: {pct}%"></div></div>'
            f'<div class="bar-value">{pct}%</div>'
            "</div>"
        )


_PAGE: Final[str] = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Vegetable classifier</title>
<style>
body {{ font-family: sans-serif; max-width: 40rem; margin: 2rem auto; }}
.error {{ color: #b00020; font-weight: bold; }}
.predicted {{ color: #007bff; }}
.preview {{ max-width: 100%; border-radius: 10px; }}
.bar {{ display: flex; align-items: center; border: 1px solid #007bff; border-radius: 10px;
  padding: 10px; margin-bottom: 15px; background-color: #f8f9fa; }}
.bar-max {{ border-width: 2px; font-weight: bold; color: #007bff; }}
.bar-label {{ width: 20%; font-size: 14px; }}
.bar-track {{ width: 60%; height: 15px; background-color: #e9ecef; border-radius: 7px;
  position: relative; overflow: hidden; }}
.bar-fill {{ height: 100%; background-color: #007bff; position: absolute; border-radius: 7px; }}
.bar-value {{ width: 20%; text-align: right; font-size: 14px; }}
</style>
</head>
<body>
<h1>Vegetable classifier</h1>
<form method="post" action="/" enctype="multipart/form-data">
<input type="file" id="image-upload" name="file" accept="image/jpeg,image/png" required>
<button type="submit">Classify</button>
</form>
{body}
</body>
</html>
"""


def render_page(body: str = "") -> str:
    return _PAGE.format(body=body)


def render_message(message: str) -> str:
    return f'<div id="prediction-output"><p class="error">{html.escape(message)}</p></div>'


def render_preview(raw: bytes, image_format: str) -> str:
    """Show the upload itself above the result, inlined as a ``data:`` URI."""
    mime = f"image/{image_format.lower()}"
    b64 = base64.b64encode(raw).decode("ascii")
    return (
        '<div id="output-image-upload">'
        f'<img src="data:{mime};base64,{b64}" alt="Uploaded Image" class="preview">'
        "</div>\n"
    )
