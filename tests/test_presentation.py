from __future__ import annotations

from vegetable_ai.inference.types import PredictionResult
from vegetable_ai.labels import DEFAULT_LABELS
from vegetable_ai.presentation import ERROR_MESSAGE, HtmlRenderer, percent, render_page


def _result() -> PredictionResult:
    probs = (0.05, 0.1, 0.025, 0.6, 0.1, 0.1, 0.025)
    return PredictionResult(
        probabilities=probs,
        predicted_class=3,
        label="potato",
        labels=DEFAULT_LABELS,
        model_id="m",
    )


def test_none_renders_error_message() -> None:
    out = HtmlRenderer().render(None)
    assert ERROR_MESSAGE in out
    assert "probability-bars" not in out


def test_one_bar_per_class_in_label_order() -> None:
    out = HtmlRenderer().render(_result())
    assert "Predicted Class:" in out and "potato" in out
    assert out.count("bar-label") == len(DEFAULT_LABELS)
    positions = [out.index(name.upper()) for name in DEFAULT_LABELS]
    assert positions == sorted(positions)
    assert "60%" in out


def test_only_predicted_class_highlighted() -> None:
    out = HtmlRenderer().render(_result())
    assert out.count("bar bar-max") == 1
    highlighted = out.split("bar bar-max", 1)[1]
    assert highlighted.split("</div>", 2)[0].endswith("POTATO")


def test_percent_rounds_half_up() -> None:
    assert percent(0.125) == 13
    assert percent(0.124) == 12
    assert percent(1.0) == 100
    assert percent(0.0) == 0


def test_page_wraps_body() -> None:
    page = render_page("<p>hello</p>")
    assert page.startswith("<!doctype html>")
    assert "<p>hello</p>" in page
    assert 'accept="image/jpeg,image/png"' in page
