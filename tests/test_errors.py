from __future__ import annotations

import pytest

from vegetable_ai.errors import ErrorCode, app_error, default_message, new_error, status_for


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (ErrorCode.invalid_image, 400),
        (ErrorCode.bad_dimensions, 400),
        (ErrorCode.preprocessing_failed, 400),
        (ErrorCode.malformed_multipart, 400),
        (ErrorCode.unauthorized, 401),
        (ErrorCode.superseded, 409),
        (ErrorCode.too_large, 413),
        (ErrorCode.unsupported_media_type, 415),
        (ErrorCode.inference_failed, 500),
        (ErrorCode.internal_error, 500),
        (ErrorCode.service_not_ready, 503),
        (ErrorCode.timeout, 504),
    ],
)
def test_status_for(code: ErrorCode, expected: int) -> None:
    assert int(status_for(code)) == expected


def test_app_error_uses_default_message() -> None:
    err = app_error(ErrorCode.unsupported_media_type)
    assert err.http_status == 415
    assert err.message == "Unsupported image format. Please upload a JPEG or PNG file."
    assert app_error(ErrorCode.timeout, "slow").message == "slow"


def test_new_error_body() -> None:
    body = new_error(ErrorCode.inference_failed, "rid-1").to_dict()
    assert body == {
        "code": "inference_failed",
        "message": default_message(ErrorCode.inference_failed),
        "request_id": "rid-1",
    }
    assert default_message(ErrorCode.inference_failed) == "Error in prediction."
